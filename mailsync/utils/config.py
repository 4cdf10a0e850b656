"""
Configuration Management Module
Handles loading and validation of environment variables and settings
"""

import os
from typing import List, Optional
from dataclasses import dataclass
from dotenv import load_dotenv

from ..modules.email_data import EmailAccount, EmailProvider, EmailSyncSettings


@dataclass
class EmailAccountConfig:
    """Configuration for a single email account"""
    enabled: bool
    email: str
    provider: str
    imap_server: str
    imap_port: int
    app_password: str
    access_token: str = ""
    use_ssl: bool = True
    verify_ssl: bool = True
    is_primary: bool = False
    initial_sync_days: int = 0
    sync_attachments: bool = True
    max_attachment_size_mb: int = 0

    @property
    def account_id(self) -> str:
        """Stable id so repeated runs address the same stored account"""
        return f"{self.provider}:{self.email.lower()}"

    def to_account(self, user_id: str) -> EmailAccount:
        return EmailAccount(
            id=self.account_id,
            user_id=user_id,
            email_address=self.email,
            provider=EmailProvider(self.provider),
            imap_server=self.imap_server,
            imap_port=self.imap_port,
            use_ssl=self.use_ssl,
            is_active=self.enabled,
            is_primary=self.is_primary,
            credential_ref=self.account_id,
            initial_sync_days=self.initial_sync_days,
            sync_attachments=self.sync_attachments,
            max_attachment_size_mb=self.max_attachment_size_mb,
        )


@dataclass
class SyncConfig:
    """Sync window, folder selection and throughput settings"""
    history_months: int
    download_attachments: bool
    include_sent_folder: bool
    include_drafts_folder: bool
    include_archive_folder: bool
    batch_size: int
    max_concurrent_accounts: int
    connection_timeout: int
    max_total_attachment_mb: int

    def to_settings(self) -> EmailSyncSettings:
        return EmailSyncSettings(
            history_months=self.history_months,
            download_attachments=self.download_attachments,
            include_sent_folder=self.include_sent_folder,
            include_drafts_folder=self.include_drafts_folder,
            include_archive_folder=self.include_archive_folder,
        )


@dataclass
class ResilienceConfig:
    """Retry budgets and backoff base delays (seconds)"""
    connectivity_retries: int
    connectivity_base_delay: float
    fetch_retries: int
    fetch_base_delay: float


@dataclass
class StorageConfig:
    """Attachment store and message database locations"""
    attachment_path: str
    database_path: str


@dataclass
class SystemConfig:
    """Configuration for system settings"""
    user_id: str
    log_level: str
    log_file: str
    log_format: str


class Config:
    """Main configuration class"""

    # (env prefix, provider tag, default server, default port)
    ACCOUNT_SOURCES = (
        ("GMAIL", "gmail", "imap.gmail.com", 993),
        ("OUTLOOK", "outlook", "outlook.office365.com", 993),
        ("IMAP", "imap", "", 993),
        ("EXCHANGE", "exchange", "", 0),
    )

    def __init__(self, env_file: str = ".env"):
        """
        Initialize configuration from environment file

        Args:
            env_file: Path to environment file (default: .env)
        """
        load_dotenv(env_file)

        self.email_accounts = self._load_email_accounts()
        self.sync = self._load_sync_config()
        self.resilience = self._load_resilience_config()
        self.storage = self._load_storage_config()
        self.system = self._load_system_config()

    def _load_email_accounts(self) -> List[EmailAccountConfig]:
        """Load email account configurations"""
        accounts = []

        for prefix, provider, default_server, default_port in self.ACCOUNT_SOURCES:
            if not self._get_bool(f"{prefix}_ENABLED", False):
                continue

            accounts.append(EmailAccountConfig(
                enabled=True,
                email=os.getenv(f"{prefix}_EMAIL", ""),
                provider=provider,
                imap_server=os.getenv(f"{prefix}_IMAP_SERVER", default_server),
                imap_port=self._get_int(f"{prefix}_IMAP_PORT", default_port),
                app_password=os.getenv(f"{prefix}_APP_PASSWORD", ""),
                access_token=os.getenv(f"{prefix}_ACCESS_TOKEN", ""),
                use_ssl=self._get_bool(f"{prefix}_USE_SSL", True),
                verify_ssl=self._get_bool(f"{prefix}_VERIFY_SSL", True),
                is_primary=self._get_bool(f"{prefix}_PRIMARY", False),
                initial_sync_days=self._get_int(f"{prefix}_INITIAL_SYNC_DAYS", 0),
                sync_attachments=self._get_bool(f"{prefix}_SYNC_ATTACHMENTS", True),
                max_attachment_size_mb=self._get_int(f"{prefix}_MAX_ATTACHMENT_SIZE_MB", 0),
            ))

        return accounts

    def _load_sync_config(self) -> SyncConfig:
        """Load sync configuration"""
        return SyncConfig(
            history_months=self._get_int("HISTORY_MONTHS", 6),
            download_attachments=self._get_bool("DOWNLOAD_ATTACHMENTS", True),
            include_sent_folder=self._get_bool("INCLUDE_SENT_FOLDER", True),
            include_drafts_folder=self._get_bool("INCLUDE_DRAFTS_FOLDER", False),
            include_archive_folder=self._get_bool("INCLUDE_ARCHIVE_FOLDER", False),
            batch_size=self._get_int("SYNC_BATCH_SIZE", 25),
            max_concurrent_accounts=self._get_int("MAX_CONCURRENT_ACCOUNTS", 1),
            connection_timeout=self._get_int("CONNECTION_TIMEOUT", 30),
            max_total_attachment_mb=self._get_int("MAX_TOTAL_ATTACHMENT_MB", 0),
        )

    def _load_resilience_config(self) -> ResilienceConfig:
        """Load retry configuration"""
        return ResilienceConfig(
            connectivity_retries=self._get_int("CONNECT_RETRIES", 3),
            connectivity_base_delay=float(os.getenv("CONNECT_RETRY_BASE_DELAY", "1.0")),
            fetch_retries=self._get_int("FETCH_RETRIES", 3),
            fetch_base_delay=float(os.getenv("FETCH_RETRY_BASE_DELAY", "0.25")),
        )

    def _load_storage_config(self) -> StorageConfig:
        """Load storage locations"""
        return StorageConfig(
            attachment_path=os.getenv("ATTACHMENT_STORAGE_PATH", "data/attachments"),
            database_path=os.getenv("DATABASE_PATH", "data/mailsync.db"),
        )

    def _load_system_config(self) -> SystemConfig:
        """Load system configuration"""
        return SystemConfig(
            user_id=os.getenv("MAILSYNC_USER_ID", "default"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE", "logs/mailsync.log"),
            log_format=os.getenv("LOG_FORMAT", "text").lower(),
        )

    def find_account(self, account_id: str) -> Optional[EmailAccountConfig]:
        for account in self.email_accounts:
            if account.account_id == account_id:
                return account
        return None

    @staticmethod
    def _get_bool(key: str, default: bool = False) -> bool:
        """Convert environment variable to boolean"""
        value = os.getenv(key, str(default)).lower()
        return value in ('true', '1', 'yes', 'on')

    @staticmethod
    def _get_int(key: str, default: int) -> int:
        """Convert environment variable to int, falling back on bad values"""
        value = os.getenv(key)
        if value is None or not value.strip():
            return default
        try:
            return int(value)
        except ValueError:
            return default

    def validate(self) -> bool:
        """
        Validate configuration

        Returns:
            True if configuration is valid

        Raises:
            ValueError: If configuration is invalid
        """
        if not self.email_accounts:
            raise ValueError("No email accounts configured. Enable at least one account.")

        for account in self.email_accounts:
            if not account.email:
                raise ValueError(f"Missing email address for {account.provider} account")
            if account.provider == "exchange":
                # Rejected per account at sync time
                continue
            if not account.app_password and not account.access_token:
                raise ValueError(f"Missing credentials for {account.provider} account")

        if self.sync.batch_size <= 0:
            raise ValueError("SYNC_BATCH_SIZE must be a positive integer")

        if self.sync.max_concurrent_accounts <= 0:
            raise ValueError("MAX_CONCURRENT_ACCOUNTS must be a positive integer")

        if self.system.log_format not in ("text", "json"):
            raise ValueError("LOG_FORMAT must be 'text' or 'json'")

        return True
