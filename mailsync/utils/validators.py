from typing import List
from .config import Config

# Placeholder values shipped in .env.example
DEFAULT_EMAILS = (
    "your-email@gmail.com",
    "your-email@outlook.com",
    "your-email@example.com",
)
DEFAULT_PASSWORDS = (
    "your-app-password-here",
    "your-password-here",
)
DEFAULT_SERVERS = (
    "imap.example.com",
)


def check_default_credentials(config: Config) -> List[str]:
    """
    Check if the configuration still uses the example values.
    Returns a list of error messages.
    """
    errors = []

    for account in config.email_accounts:
        if not account.enabled:
            continue
        name = account.provider.title()
        if account.email in DEFAULT_EMAILS:
            errors.append(f"{name} account enabled but uses default email: {account.email}")
        if account.app_password in DEFAULT_PASSWORDS:
            errors.append(f"{name} account enabled but uses default password")
        if account.imap_server in DEFAULT_SERVERS:
            errors.append(f"{name} account enabled but uses default IMAP server")

    return errors
