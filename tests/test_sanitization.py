"""
Tests for Sanitization Utility
"""

import unittest

from mailsync.utils.sanitization import redact_email, sanitize_for_logging


class TestSanitization(unittest.TestCase):

    def test_basic_sanitization(self):
        self.assertEqual(sanitize_for_logging("INBOX"), "INBOX")
        self.assertEqual(sanitize_for_logging(""), "")
        self.assertEqual(sanitize_for_logging(None), "")

    def test_newline_sanitization(self):
        """A folder name cannot forge a second log line"""
        self.assertEqual(
            sanitize_for_logging("INBOX\n2024-01-01 - ERROR - fake"),
            "INBOX\\n2024-01-01 - ERROR - fake",
        )
        self.assertEqual(sanitize_for_logging("a\r\nb"), "a\\r\\nb")

    def test_control_character_sanitization(self):
        self.assertEqual(sanitize_for_logging("Ding\x07"), "Ding")
        self.assertEqual(sanitize_for_logging("\x1b[31mRed\x1b[0m"), "Red")
        self.assertEqual(sanitize_for_logging("tab\tkept"), "tab\tkept")

    def test_unicode_normalization(self):
        self.assertEqual(sanitize_for_logging("ﬁle"), "file")

    def test_truncation(self):
        result = sanitize_for_logging("x" * 300)
        self.assertEqual(len(result), 255 + 3)
        self.assertTrue(result.endswith("..."))
        self.assertEqual(sanitize_for_logging("abcdef", max_length=3), "abc...")

    def test_non_string_input(self):
        self.assertEqual(sanitize_for_logging(42), "42")


class TestRedactEmail(unittest.TestCase):

    def test_masks_local_part(self):
        self.assertEqual(redact_email("alice@example.com"), "a***@example.com")

    def test_single_character_local_part(self):
        self.assertEqual(redact_email("a@example.com"), "***@example.com")

    def test_not_an_address(self):
        self.assertEqual(redact_email("alice"), "***")

    def test_empty(self):
        self.assertEqual(redact_email(""), "")
        self.assertEqual(redact_email(None), "")

    def test_control_characters_removed(self):
        self.assertEqual(redact_email("bob\n@example.com"), "b***@example.com")


if __name__ == '__main__':
    unittest.main()
