"""
Tests for filename, path and size validation helpers

SECURITY STORY: Attachment names and sizes come from whoever sent the mail.
None of them may influence where bytes land on disk or how much we download.
"""

import ssl
import tempfile
import unittest
from pathlib import Path

from mailsync.utils.security_validators import (
    DEFAULT_MAX_EMAIL_SIZE,
    MAX_SUBJECT_LENGTH,
    calculate_max_email_size,
    create_secure_ssl_context,
    is_within_directory,
    safe_extension,
    sanitize_filename,
    validate_subject_length,
)


class TestSanitizeFilename(unittest.TestCase):

    def test_normal_name(self):
        self.assertEqual(sanitize_filename("normal_file.txt"), "normal_file.txt")

    def test_path_components_removed(self):
        self.assertEqual(sanitize_filename("../../etc/passwd"), "passwd")
        self.assertEqual(sanitize_filename("..\\..\\windows\\system.ini"), "system.ini")

    def test_empty_names(self):
        for name in (None, "", "...", "///"):
            with self.subTest(name=name):
                self.assertEqual(sanitize_filename(name), "unnamed_attachment")

    def test_reserved_windows_names(self):
        self.assertEqual(sanitize_filename("CON.txt"), "_CON.txt")
        self.assertEqual(sanitize_filename("lpt1"), "_lpt1")

    def test_dangerous_characters_removed(self):
        self.assertEqual(sanitize_filename("a<b>c|d?.pdf"), "abcd.pdf")

    def test_length_capped(self):
        self.assertEqual(len(sanitize_filename("a" * 400 + ".txt")), 255)


class TestSafeExtension(unittest.TestCase):

    def test_lowercased(self):
        self.assertEqual(safe_extension("Report.PDF"), ".pdf")

    def test_last_suffix_only(self):
        self.assertEqual(safe_extension("archive.tar.gz"), ".gz")

    def test_generic_when_missing(self):
        for name in (None, "", "  ", "README", "name.", "weird.p-f"):
            with self.subTest(name=name):
                self.assertEqual(safe_extension(name), ".bin")

    def test_implausibly_long_extension(self):
        self.assertEqual(safe_extension("x." + "a" * 40), ".bin")


class TestIsWithinDirectory(unittest.TestCase):

    def test_inside_and_outside(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            self.assertTrue(is_within_directory(root / "ab" / "cd" / "blob.bin", root))
            self.assertFalse(is_within_directory(root / ".." / "escape.bin", root))
            self.assertFalse(is_within_directory(Path("/etc/passwd"), root))


class TestLimits(unittest.TestCase):

    def test_calculate_max_email_size(self):
        self.assertEqual(calculate_max_email_size(0), DEFAULT_MAX_EMAIL_SIZE)
        self.assertEqual(
            calculate_max_email_size(10 * 1024 * 1024),
            15 * 1024 * 1024,
        )

    def test_validate_subject_length(self):
        self.assertEqual(validate_subject_length("short"), "short")
        self.assertEqual(len(validate_subject_length("s" * 5000)), MAX_SUBJECT_LENGTH)


class TestSSLContext(unittest.TestCase):

    def test_verified_context(self):
        context = create_secure_ssl_context()
        self.assertEqual(context.minimum_version, ssl.TLSVersion.TLSv1_2)
        self.assertTrue(context.check_hostname)
        self.assertEqual(context.verify_mode, ssl.CERT_REQUIRED)

    def test_unverified_context(self):
        with self.assertLogs("mailsync.utils.security_validators", level="WARNING"):
            context = create_secure_ssl_context(verify=False)
        self.assertFalse(context.check_hostname)
        self.assertEqual(context.verify_mode, ssl.CERT_NONE)


if __name__ == '__main__':
    unittest.main()
