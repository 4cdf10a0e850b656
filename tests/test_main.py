"""
Tests for pipeline wiring, run summary and exit codes
"""

import io
import logging
import os
import tempfile
import unittest
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

from mailsync.main import MailSyncPipeline, exit_code_for, print_summary
from mailsync.modules.email_data import AccountSyncResult, SyncResult, SyncStatus
from mailsync.modules.repositories import SqliteAccountRepository
from mailsync.utils.logging_utils import ColoredFormatter
from mailsync.utils.structured_logging import JSONFormatter


class TestExitCodes(unittest.TestCase):

    def test_exit_codes(self):
        cases = {
            SyncStatus.COMPLETED: 0,
            SyncStatus.NO_ACCOUNTS_CONFIGURED: 0,
            SyncStatus.FAILED: 1,
            SyncStatus.CANCELLED: 130,
            SyncStatus.IN_PROGRESS: 1,
        }
        for status, code in cases.items():
            with self.subTest(status=status):
                self.assertEqual(exit_code_for(SyncResult(user_id="u", status=status)), code)

    def test_missing_result(self):
        self.assertEqual(exit_code_for(None), 1)


class TestPrintSummary(unittest.TestCase):

    def test_summary_lists_accounts_and_errors(self):
        result = SyncResult(
            user_id="u",
            status=SyncStatus.COMPLETED,
            emails_synced=3,
            total_emails_found=5,
            accounts_processed=2,
            errors=["b@example.com: Authentication failed"],
            account_results=[
                AccountSyncResult("a@example.com", success=True, new_emails=3, attachments_stored=1),
                AccountSyncResult("b@example.com", success=False),
            ],
        )
        result.finished_at = result.started_at + timedelta(seconds=2.5)
        stream = io.StringIO()

        print_summary(result, stream)

        output = stream.getvalue()
        self.assertIn("completed", output)
        self.assertIn("New messages:     3", output)
        self.assertIn("Duration:         2.5s", output)
        self.assertIn("a@example.com", output)
        self.assertIn("3 new, 1 attachment(s)", output)
        self.assertIn("1 error(s)", output)
        self.assertIn("b@example.com: Authentication failed", output)


class TestMailSyncPipeline(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.env = {
            "GMAIL_ENABLED": "true",
            "GMAIL_EMAIL": "me@gmail.com",
            "GMAIL_APP_PASSWORD": "app-pass",
            "ATTACHMENT_STORAGE_PATH": str(root / "attachments"),
            "DATABASE_PATH": str(root / "mailsync.db"),
            "LOG_FILE": str(root / "logs" / "mailsync.log"),
            "SYNC_BATCH_SIZE": "10",
        }
        self._root_handlers = list(logging.getLogger().handlers)

    def tearDown(self):
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            if handler not in self._root_handlers:
                root_logger.removeHandler(handler)
                handler.close()
        self._tmp.cleanup()

    def _pipeline(self, **env):
        with patch.dict(os.environ, {**self.env, **env}, clear=True), \
             patch("mailsync.main.logging.basicConfig") as basic_config:
            pipeline = MailSyncPipeline("/nonexistent/mailsync.env")
        self._basic_config = basic_config
        return pipeline

    def test_wiring(self):
        pipeline = self._pipeline()
        orchestrator = pipeline.orchestrator

        self.assertIsInstance(orchestrator.account_repository, SqliteAccountRepository)
        self.assertEqual(orchestrator.batch_size, 10)
        self.assertIs(orchestrator.metrics, pipeline.metrics)
        self.assertEqual(orchestrator.account_repository.accounts[0].id, "gmail:me@gmail.com")
        self.assertTrue(Path(self.env["ATTACHMENT_STORAGE_PATH"]).is_dir())
        self.assertTrue(Path(self.env["LOG_FILE"]).parent.is_dir())

    def test_text_logging_colors_console_only(self):
        self._pipeline()
        file_handler, console_handler = self._basic_config.call_args.kwargs["handlers"]
        self.assertNotIsInstance(file_handler.formatter, ColoredFormatter)
        self.assertIsInstance(console_handler.formatter, ColoredFormatter)
        file_handler.close()

    def test_json_logging(self):
        self._pipeline(LOG_FORMAT="json")
        handlers = self._basic_config.call_args.kwargs["handlers"]
        for handler in handlers:
            self.assertIsInstance(handler.formatter, JSONFormatter)
        handlers[0].close()

    def test_unverified_hosts(self):
        pipeline = self._pipeline(
            IMAP_ENABLED="true",
            IMAP_EMAIL="me@corp.test",
            IMAP_IMAP_SERVER="Mail.Corp.Test",
            IMAP_APP_PASSWORD="pw",
            IMAP_VERIFY_SSL="false",
        )
        self.assertEqual(pipeline.orchestrator.connector.unverified_hosts, frozenset({"mail.corp.test"}))

    def test_stop_cancels_token(self):
        pipeline = self._pipeline()
        pipeline.stop()
        pipeline.stop()
        self.assertTrue(pipeline.token.cancelled)


if __name__ == '__main__':
    unittest.main()
