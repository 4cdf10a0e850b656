"""
Tests for sync metrics collection
"""

import unittest
from datetime import datetime, timedelta

from mailsync.utils.metrics import SyncMetrics


class TestSyncMetrics(unittest.TestCase):
    """Test cases for SyncMetrics"""

    def setUp(self):
        self.metrics = SyncMetrics()

    def test_initialization(self):
        self.assertEqual(self.metrics.messages_synced, 0)
        self.assertEqual(self.metrics.retries, 0)
        self.assertEqual(len(self.metrics.errors_count), 0)
        self.assertEqual(len(self.metrics.account_durations), 0)
        self.assertIsInstance(self.metrics.start_time, datetime)

    def test_record_messages(self):
        self.metrics.record_message_synced()
        self.metrics.record_message_synced()
        self.metrics.record_message_skipped()
        self.assertEqual(self.metrics.messages_synced, 2)
        self.assertEqual(self.metrics.messages_skipped, 1)

    def test_record_attachment_splits_new_and_deduplicated(self):
        self.metrics.record_attachment(is_new=True)
        self.metrics.record_attachment(is_new=False)
        self.metrics.record_attachment(is_new=False)

        summary = self.metrics.get_summary()
        self.assertEqual(summary["attachments_stored"], 1)
        self.assertEqual(summary["attachments_deduplicated"], 2)
        self.assertAlmostEqual(summary["dedup_ratio"], 2 / 3)

    def test_dedup_ratio_without_attachments(self):
        self.assertEqual(self.metrics.get_summary()["dedup_ratio"], 0.0)

    def test_record_error(self):
        self.metrics.record_error("connect")
        self.metrics.record_error("connect")
        self.metrics.record_error("fetch")
        self.assertEqual(self.metrics.get_summary()["errors"], {"connect": 2, "fetch": 1})

    def test_account_duration_stats(self):
        for seconds in (3.0, 1.0, 2.0):
            self.metrics.record_account_duration(seconds)

        stats = self.metrics.get_summary()["account_duration_stats"]
        self.assertEqual(stats["min_s"], 1.0)
        self.assertEqual(stats["max_s"], 3.0)
        self.assertEqual(stats["avg_s"], 2.0)
        self.assertEqual(stats["p50_s"], 2.0)

    def test_durations_are_bounded(self):
        for i in range(1500):
            self.metrics.record_account_duration(float(i))
        self.assertEqual(len(self.metrics.account_durations), 1000)

    def test_uptime(self):
        self.metrics.start_time = datetime.now() - timedelta(seconds=10)
        self.assertGreaterEqual(self.metrics.get_summary()["uptime_seconds"], 10)

    def test_reset(self):
        self.metrics.record_message_synced()
        self.metrics.record_attachment(is_new=True)
        self.metrics.record_error("fetch")
        self.metrics.retries = 4

        self.metrics.reset()

        summary = self.metrics.get_summary()
        self.assertEqual(summary["messages_synced"], 0)
        self.assertEqual(summary["attachments_stored"], 0)
        self.assertEqual(summary["retries"], 0)
        self.assertEqual(summary["errors"], {})


if __name__ == '__main__':
    unittest.main()
