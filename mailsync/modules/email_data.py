"""
Email Data Model
Accounts, fetched messages, normalized entities and sync results
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class EmailProvider(Enum):
    """Mail provider tag of an account"""
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    IMAP = "imap"
    EXCHANGE = "exchange"


class EmailFolder(Enum):
    """Folder an entity was synced from"""
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    ARCHIVE = "archive"


class SyncStatus(Enum):
    """Outcome of a sync run"""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ACCOUNTS_CONFIGURED = "no_accounts_configured"
    CANCELLED = "cancelled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EmailAccount:
    """
    A mailbox belonging to a user

    Gmail and Outlook use fixed endpoints, so imap_server/imap_port only
    matter for generic IMAP accounts (which must carry a server).
    """
    email_address: str
    provider: EmailProvider
    user_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    imap_server: str = ""
    imap_port: int = 0
    use_ssl: bool = True
    is_active: bool = True
    is_primary: bool = False
    credential_ref: str = ""
    initial_sync_days: int = 0
    sync_attachments: bool = True
    max_attachment_size_mb: int = 0
    last_synced_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    emails_synced_total: int = 0
    attachments_synced_total: int = 0

    def mark_synced(
        self,
        new_emails: int,
        attachments_stored: int,
        synced_through: Optional[datetime],
    ) -> None:
        """Record a successful sync"""
        self.emails_synced_total += new_emails
        self.attachments_synced_total += attachments_stored
        if synced_through is not None:
            self.last_synced_at = synced_through
        self.last_sync_error = None

    def mark_sync_failed(self, error: str) -> None:
        """Record a failed sync without moving the resume point"""
        self.last_sync_error = error


@dataclass
class RawAttachment:
    """Attachment payload as fetched from the server"""
    filename: Optional[str]
    content_type: str
    data: bytes
    content_id: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class BodyPart:
    """A decoded text part of a message"""
    content_type: str
    text: str


@dataclass
class RawMessage:
    """
    Protocol-level message

    Ephemeral: lives for one fetch-and-convert cycle and is never persisted.
    Missing headers are None rather than empty strings so the mapper can
    apply its defaulting rules.
    """
    uid: str
    message_id: Optional[str] = None
    subject: Optional[str] = None
    from_address: Optional[str] = None
    from_name: Optional[str] = None
    to: List[str] = field(default_factory=list)
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    date: Optional[datetime] = None
    body_parts: List[BodyPart] = field(default_factory=list)
    attachments: List[RawAttachment] = field(default_factory=list)
    in_reply_to: Optional[str] = None
    references: List[str] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class EmailAttachment:
    """Attachment metadata linked to a stored blob"""
    file_name: str
    content_type: str
    size: int
    storage_path: str
    content_hash: str
    content_id: Optional[str] = None


@dataclass
class EmailMessage:
    """
    Normalized message entity

    (account_id, message_id) is unique; the sync checks for it before insert.
    """
    message_id: str
    subject: str
    from_address: str
    from_name: str
    to_recipients: List[str]
    sent_at: datetime
    received_at: datetime
    body_text: str
    user_id: str
    account_id: str
    folder: EmailFolder
    body_html: Optional[str] = None
    cc_recipients: List[str] = field(default_factory=list)
    bcc_recipients: List[str] = field(default_factory=list)
    conversation_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    attachments: List[EmailAttachment] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def add_attachment(self, attachment: EmailAttachment) -> None:
        self.attachments.append(attachment)

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)


@dataclass(frozen=True)
class AttachmentStoreResult:
    """Outcome of storing an attachment payload"""
    storage_path: str
    content_hash: str
    is_new: bool


@dataclass(frozen=True)
class AttachmentBlob:
    """A resident blob in the attachment store"""
    content_hash: str
    storage_path: str
    size: int


@dataclass
class EmailSyncSettings:
    """User-level sync window and folder selection"""
    history_months: int = 6
    download_attachments: bool = True
    include_sent_folder: bool = True
    include_drafts_folder: bool = False
    include_archive_folder: bool = False


@dataclass
class SyncProgress:
    """Snapshot passed to progress listeners"""
    accounts_processed: int
    messages_synced: int
    account_email: str = ""
    total_found: int = 0
    message: str = ""


@dataclass
class AccountSyncResult:
    """Outcome of syncing one account"""
    account_email: str
    success: bool = False
    new_emails: int = 0
    emails_checked: int = 0
    attachments_stored: int = 0
    folders_processed: int = 0
    error: Optional[str] = None
    latest_received_at: Optional[datetime] = None


@dataclass
class SyncResult:
    """
    Outcome of one orchestration run

    FAILED always carries at least one error; NO_ACCOUNTS_CONFIGURED always
    has zero accounts processed and zero emails synced.
    """
    user_id: str
    status: SyncStatus = SyncStatus.NOT_STARTED
    emails_synced: int = 0
    total_emails_found: int = 0
    accounts_processed: int = 0
    errors: List[str] = field(default_factory=list)
    account_results: List[AccountSyncResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status is SyncStatus.COMPLETED

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()
