import unittest
from unittest.mock import Mock, MagicMock

from mailsync.utils.validators import check_default_credentials
from mailsync.utils.config import Config, EmailAccountConfig


def _account(**overrides):
    values = dict(
        enabled=True,
        email="real@test.com",
        app_password="real-password",
        provider="gmail",
        imap_server="imap.gmail.com",
    )
    values.update(overrides)
    return Mock(spec=EmailAccountConfig, **values)


class TestValidators(unittest.TestCase):
    def setUp(self):
        self.config = MagicMock(spec=Config)
        self.config.email_accounts = []

    def test_no_accounts(self):
        self.assertEqual(check_default_credentials(self.config), [])

    def test_no_defaults_clean(self):
        self.config.email_accounts = [_account()]
        self.assertEqual(check_default_credentials(self.config), [])

    def test_default_email(self):
        self.config.email_accounts = [_account(email="your-email@gmail.com")]
        errors = check_default_credentials(self.config)
        self.assertIn("Gmail account enabled but uses default email: your-email@gmail.com", errors)

    def test_default_password(self):
        self.config.email_accounts = [_account(app_password="your-app-password-here")]
        errors = check_default_credentials(self.config)
        self.assertIn("Gmail account enabled but uses default password", errors)

    def test_default_imap_server(self):
        self.config.email_accounts = [
            _account(provider="imap", imap_server="imap.example.com", email="your-email@example.com")
        ]
        errors = check_default_credentials(self.config)
        self.assertEqual(len(errors), 2)
        self.assertIn("Imap account enabled but uses default IMAP server", errors)

    def test_disabled_account_ignored(self):
        self.config.email_accounts = [
            _account(enabled=False, email="your-email@gmail.com", app_password="your-app-password-here")
        ]
        self.assertEqual(check_default_credentials(self.config), [])

    def test_each_account_reported(self):
        self.config.email_accounts = [
            _account(app_password="your-app-password-here"),
            _account(provider="outlook", email="your-email@outlook.com", imap_server="outlook.office365.com"),
        ]
        errors = check_default_credentials(self.config)
        self.assertEqual(errors, [
            "Gmail account enabled but uses default password",
            "Outlook account enabled but uses default email: your-email@outlook.com",
        ])


if __name__ == '__main__':
    unittest.main()
