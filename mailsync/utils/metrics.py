"""
Metrics Collection Module
Tracks sync throughput, deduplication and error statistics
"""

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Deque


@dataclass
class SyncMetrics:
    """
    Collects operational metrics for a sync process.

    PATTERN RECOGNITION: This is similar to how web servers track request
    counts, response times and error rates. get_summary() produces a plain
    dict that can be logged or exported to a monitoring system.
    """

    messages_synced: int = 0
    messages_skipped: int = 0
    attachments_stored: int = 0
    attachments_deduplicated: int = 0
    retries: int = 0

    # Count of errors by type (e.g. "connect", "fetch", "attachment")
    errors_count: Counter = field(default_factory=Counter)

    # Seconds spent per account sync. Bounded so a long-running process
    # cannot grow it without limit.
    account_durations: Deque[float] = field(default_factory=lambda: deque(maxlen=1000))

    start_time: datetime = field(default_factory=datetime.now)

    def record_message_synced(self):
        self.messages_synced += 1

    def record_message_skipped(self):
        """A message was already present (idempotency guard hit)"""
        self.messages_skipped += 1

    def record_attachment(self, is_new: bool):
        """
        Record a stored attachment.

        Args:
            is_new: False when the content hash was already in the store
        """
        if is_new:
            self.attachments_stored += 1
        else:
            self.attachments_deduplicated += 1

    def record_error(self, error_type: str):
        """
        Record that an error occurred.

        Args:
            error_type: Type of error (e.g., "connect", "fetch", "attachment")
        """
        self.errors_count[error_type] += 1

    def record_account_duration(self, seconds: float):
        self.account_durations.append(seconds)

    def get_summary(self) -> Dict:
        """
        Get a summary of all metrics.

        Returns:
            Dictionary suitable for logging or export
        """
        stats = {}
        if self.account_durations:
            sorted_times = sorted(self.account_durations)
            n = len(sorted_times)
            stats = {
                "avg_s": sum(sorted_times) / n,
                "min_s": sorted_times[0],
                "max_s": sorted_times[-1],
                "p50_s": sorted_times[n // 2],
            }

        total_attachments = self.attachments_stored + self.attachments_deduplicated
        dedup_ratio = (
            self.attachments_deduplicated / total_attachments if total_attachments else 0.0
        )

        return {
            "uptime_seconds": (datetime.now() - self.start_time).total_seconds(),
            "messages_synced": self.messages_synced,
            "messages_skipped": self.messages_skipped,
            "attachments_stored": self.attachments_stored,
            "attachments_deduplicated": self.attachments_deduplicated,
            "dedup_ratio": dedup_ratio,
            "retries": self.retries,
            "errors": dict(self.errors_count),
            "account_duration_stats": stats,
        }

    def reset(self):
        """Reset all metrics to initial state."""
        self.messages_synced = 0
        self.messages_skipped = 0
        self.attachments_stored = 0
        self.attachments_deduplicated = 0
        self.retries = 0
        self.errors_count.clear()
        self.account_durations.clear()
        self.start_time = datetime.now()
