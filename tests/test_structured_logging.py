"""
Tests for structured logging functionality
"""

import json
import logging
import sys
import unittest

from mailsync.utils.structured_logging import JSONFormatter


def _record(msg="Test message", level=logging.INFO, exc_info=None, **extra):
    record = logging.LogRecord(
        name="SyncOrchestrator",
        level=level,
        pathname="sync_orchestrator.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=exc_info,
        func="sync",
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter(unittest.TestCase):
    """Test cases for JSONFormatter"""

    def setUp(self):
        self.formatter = JSONFormatter()

    def test_basic_json_format(self):
        data = json.loads(self.formatter.format(_record()))

        self.assertIn("timestamp", data)
        self.assertEqual(data["level"], "INFO")
        self.assertEqual(data["logger"], "SyncOrchestrator")
        self.assertEqual(data["message"], "Test message")
        self.assertEqual(data["module"], "sync_orchestrator")
        self.assertEqual(data["function"], "sync")
        self.assertEqual(data["line"], 42)
        self.assertNotIn("exception", data)

    def test_exception_logging(self):
        try:
            raise ValueError("Test error")
        except ValueError:
            exc_info = sys.exc_info()

        data = json.loads(self.formatter.format(_record(level=logging.ERROR, exc_info=exc_info)))

        self.assertIn("ValueError: Test error", data["exception"])

    def test_extra_fields_are_merged(self):
        record = _record(extra_fields={"account": "a***@example.com", "uid": "17"})
        data = json.loads(self.formatter.format(record))
        self.assertEqual(data["account"], "a***@example.com")
        self.assertEqual(data["uid"], "17")

    def test_sensitive_fields_are_redacted(self):
        """
        SECURITY STORY: secrets passed as extra fields must never be
        written to the log file.
        """
        record = _record(extra_fields={
            "app_password": "hunter2",
            "access_token": "ya29.abc",
            "IMAP_PASSWORD": "pw",
            "folder": "INBOX",
        })
        output = self.formatter.format(record)
        data = json.loads(output)

        self.assertEqual(data["app_password"], "[REDACTED]")
        self.assertEqual(data["access_token"], "[REDACTED]")
        self.assertEqual(data["IMAP_PASSWORD"], "[REDACTED]")
        self.assertEqual(data["folder"], "INBOX")
        self.assertNotIn("hunter2", output)

    def test_non_serializable_values_use_str(self):
        record = _record(extra_fields={"path": object()})
        data = json.loads(self.formatter.format(record))
        self.assertIn("object", data["path"])


if __name__ == '__main__':
    unittest.main()
