#!/usr/bin/env python3
"""
Mail Sync Pipeline
Wires configuration, storage and the IMAP connector into the sync orchestrator
"""

import sys
import asyncio
import logging
from pathlib import Path
from typing import Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from mailsync.utils.config import Config
from mailsync.utils.cancellation import CancellationToken
from mailsync.utils.colors import Colors
from mailsync.utils.logging_utils import ColoredFormatter
from mailsync.utils.metrics import SyncMetrics
from mailsync.utils.security_validators import calculate_max_email_size
from mailsync.utils.structured_logging import JSONFormatter
from mailsync.modules.attachment_store import AttachmentStore
from mailsync.modules.email_data import SyncProgress, SyncResult, SyncStatus
from mailsync.modules.email_parser import EmailParser
from mailsync.modules.imap_connection import IMAPConnector
from mailsync.modules.repositories import (
    ConfigCredentialProvider,
    SqliteAccountRepository,
    SqliteMessageRepository,
    SqliteUnitOfWork,
)
from mailsync.modules.sync_orchestrator import SyncOrchestrator


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

EXIT_CODES = {
    SyncStatus.COMPLETED: 0,
    SyncStatus.NO_ACCOUNTS_CONFIGURED: 0,
    SyncStatus.FAILED: 1,
    SyncStatus.CANCELLED: 130,
}


class MailSyncPipeline:
    """Main pipeline: one sync run over every configured account"""

    def __init__(self, config_file: str = ".env"):
        """
        Initialize pipeline

        Args:
            config_file: Path to configuration file
        """
        self.config = Config(config_file)

        self._setup_logging()

        self.logger = logging.getLogger("MailSyncPipeline")
        self.logger.info("Initializing Mail Sync Pipeline")

        self.token = CancellationToken()
        self.metrics = SyncMetrics()
        self.orchestrator = self._build_orchestrator()

    def _setup_logging(self):
        """Setup logging: plain or JSON to the log file, colored or JSON to stdout"""
        log_path = Path(self.config.system.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        level_name = str(self.config.system.log_level).upper()
        level = logging._nameToLevel.get(level_name, logging.INFO)

        file_handler = logging.FileHandler(self.config.system.log_file)
        console_handler = logging.StreamHandler(sys.stdout)
        if self.config.system.log_format == "json":
            file_handler.setFormatter(JSONFormatter())
            console_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            console_handler.setFormatter(ColoredFormatter(LOG_FORMAT))

        logging.basicConfig(
            level=level,
            handlers=[file_handler, console_handler],
        )

        if level_name not in logging._nameToLevel:
            logging.getLogger("MailSyncPipeline").warning(
                "Invalid log level '%s'; defaulting to INFO",
                self.config.system.log_level
            )

    def _build_orchestrator(self) -> SyncOrchestrator:
        user_id = self.config.system.user_id
        accounts = [account.to_account(user_id) for account in self.config.email_accounts]

        unit_of_work = SqliteUnitOfWork(self.config.storage.database_path)
        sync = self.config.sync
        resilience = self.config.resilience

        connector = IMAPConnector(
            verify_ssl=True,
            max_email_size=calculate_max_email_size(sync.max_total_attachment_mb * 1024 * 1024),
            unverified_hosts=[
                account.imap_server
                for account in self.config.email_accounts
                if not account.verify_ssl and account.imap_server
            ],
        )

        return SyncOrchestrator(
            account_repository=SqliteAccountRepository(unit_of_work, accounts),
            message_repository=SqliteMessageRepository(unit_of_work),
            unit_of_work=unit_of_work,
            attachment_store=AttachmentStore(self.config.storage.attachment_path),
            connector=connector,
            credential_provider=ConfigCredentialProvider(self.config),
            parser=EmailParser(),
            metrics=self.metrics,
            progress_listener=self._log_progress,
            connectivity_retries=resilience.connectivity_retries,
            connectivity_base_delay=resilience.connectivity_base_delay,
            fetch_retries=resilience.fetch_retries,
            fetch_base_delay=resilience.fetch_base_delay,
            batch_size=sync.batch_size,
            max_concurrent_accounts=sync.max_concurrent_accounts,
            connection_timeout=sync.connection_timeout,
        )

    def _log_progress(self, progress: SyncProgress):
        self.logger.debug(
            f"Progress: {progress.accounts_processed} account(s), "
            f"{progress.messages_synced} new message(s) ({progress.message})"
        )

    def run(self) -> SyncResult:
        """Validate configuration and run one sync"""
        self.config.validate()
        self.logger.info("Starting Mail Sync Pipeline")
        result = asyncio.run(self.orchestrator.sync(
            self.config.system.user_id,
            self.config.sync.to_settings(),
            token=self.token,
        ))
        self.logger.info(f"Metrics: {self.metrics.get_summary()}")
        return result

    def stop(self):
        """Request cancellation; the current batch finishes first"""
        if not self.token.cancelled:
            self.logger.info("Stopping Mail Sync Pipeline")
            self.token.cancel()


def print_summary(result: SyncResult, stream=None):
    """Print a human-readable summary of a sync run"""
    stream = stream or sys.stdout
    color = Colors.get_status_color(result.status.value)
    print(file=stream)
    print(Colors.header("Sync Summary"), file=stream)
    print("=" * 60, file=stream)
    print(f"Status:           {Colors.colorize(result.status.value, color)}", file=stream)
    print(f"Accounts:         {result.accounts_processed}", file=stream)
    print(f"Messages found:   {result.total_emails_found}", file=stream)
    print(f"New messages:     {result.emails_synced}", file=stream)
    if result.duration_seconds is not None:
        print(f"Duration:         {result.duration_seconds:.1f}s", file=stream)

    for account in result.account_results:
        mark = Colors.success("ok") if account.success else Colors.error("failed")
        print(
            f"  {account.account_email:<35} {mark}  "
            f"{account.new_emails} new, {account.attachments_stored} attachment(s)",
            file=stream,
        )

    if result.errors:
        print(Colors.warning(f"\n{len(result.errors)} error(s):"), file=stream)
        for error in result.errors:
            print(f"  - {error}", file=stream)


def exit_code_for(result: Optional[SyncResult]) -> int:
    if result is None:
        return 1
    return EXIT_CODES.get(result.status, 1)


def main():
    """Main entry point"""
    from mailsync.app_runner import AppRunner
    sys.exit(AppRunner().run())


if __name__ == "__main__":
    main()
