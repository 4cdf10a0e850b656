"""
Repository Module
Collaborator contracts used by the sync orchestrator, with in-memory and
SQLite-backed implementations

The orchestrator depends only on the Protocol classes. The in-memory
implementations are used by tests and by callers embedding the pipeline;
the SQLite ones (sqlite-utils) back the command-line tool so re-running a
sync in a new process stays idempotent.
"""

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

import sqlite_utils

from .email_data import EmailAccount, EmailFolder, EmailMessage
from .imap_connection import Credentials
from ..utils.config import Config
from ..utils.errors import ConfigurationError, EmailSyncError
from ..utils.sanitization import redact_email


class AccountRepository(Protocol):
    async def get_accounts_for_user(self, user_id: str) -> List[EmailAccount]: ...

    async def update(self, account: EmailAccount) -> None: ...


class MessageRepository(Protocol):
    async def exists_by_message_id(self, account_id: str, message_id: str) -> bool: ...

    async def add(self, message: EmailMessage) -> None: ...

    async def update(self, message: EmailMessage) -> None: ...

    async def count(self, account_id: Optional[str] = None) -> int: ...


class UnitOfWork(Protocol):
    async def commit(self) -> None: ...


class CredentialProvider(Protocol):
    async def get_credentials(self, account: EmailAccount) -> Credentials: ...


# ----------------------------------------------------------------------
# In-memory implementations
# ----------------------------------------------------------------------

class InMemoryAccountRepository:
    """Accounts held in a list; only active accounts are returned"""

    def __init__(self, accounts: Optional[Iterable[EmailAccount]] = None):
        self.accounts: List[EmailAccount] = list(accounts or [])
        self.updates: List[str] = []

    async def get_accounts_for_user(self, user_id: str) -> List[EmailAccount]:
        return [a for a in self.accounts if a.user_id == user_id and a.is_active]

    async def update(self, account: EmailAccount) -> None:
        self.updates.append(account.id)


class InMemoryMessageRepository:
    """Messages keyed by (account_id, message_id)"""

    def __init__(self):
        self.messages: Dict[Tuple[str, str], EmailMessage] = {}

    async def exists_by_message_id(self, account_id: str, message_id: str) -> bool:
        return (account_id, message_id) in self.messages

    async def add(self, message: EmailMessage) -> None:
        key = (message.account_id, message.message_id)
        if key in self.messages:
            raise ValueError(f"Message {message.message_id} already exists for account {message.account_id}")
        self.messages[key] = message

    async def update(self, message: EmailMessage) -> None:
        key = (message.account_id, message.message_id)
        if key not in self.messages:
            raise KeyError(message.message_id)
        self.messages[key] = message

    async def count(self, account_id: Optional[str] = None) -> int:
        if account_id is None:
            return len(self.messages)
        return sum(1 for acc, _ in self.messages if acc == account_id)


class InMemoryUnitOfWork:
    """Counts commits; in-memory repositories write through immediately"""

    def __init__(self):
        self.commit_count = 0

    async def commit(self) -> None:
        self.commit_count += 1


# ----------------------------------------------------------------------
# SQLite implementations
# ----------------------------------------------------------------------

class _DeferredCommitConnection:
    """
    Wraps a sqlite3 connection so that sqlite-utils' own `with conn:` blocks
    neither commit nor roll back; the unit of work decides instead
    """

    def __init__(self, conn):
        self._conn = conn

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def __getattr__(self, name):
        return getattr(self._conn, name)


class SqliteUnitOfWork:
    """
    Buffers writes registered by the SQLite repositories and applies them
    in one transaction on commit()

    Either every pending write lands or none does. A failed commit runs the
    undo callbacks registered alongside the writes so in-memory bookkeeping
    matches the database again.
    """

    def __init__(self, db_path: str):
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db = sqlite_utils.Database(str(path))
        self._pending: List[Tuple[Callable[[], None], Optional[Callable[[], None]]]] = []
        self.logger = logging.getLogger("SqliteUnitOfWork")

    def register(
        self,
        operation: Callable[[], None],
        undo: Optional[Callable[[], None]] = None,
    ) -> None:
        self._pending.append((operation, undo))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def commit(self) -> None:
        """
        Apply all pending writes atomically

        Raises:
            EmailSyncError: The database rejected a write; nothing was saved
        """
        if not self._pending:
            return
        pending, self._pending = self._pending, []
        conn = self.db.conn
        self.db.conn = _DeferredCommitConnection(conn)
        try:
            if not conn.in_transaction:
                conn.execute("BEGIN")
            for operation, _ in pending:
                operation()
            conn.commit()
        except BaseException as exc:
            conn.rollback()
            for _, undo in pending:
                if undo is not None:
                    undo()
            self.logger.error(f"Rolled back {len(pending)} pending write(s): {exc}")
            if isinstance(exc, sqlite3.Error):
                raise EmailSyncError(
                    f"Failed to save synced messages: {exc}",
                    user_message="Could not save synced messages to the local database",
                ) from exc
            raise
        finally:
            self.db.conn = conn
        self.logger.debug(f"Committed {len(pending)} pending write(s)")


class SqliteMessageRepository:
    """Messages and attachment metadata stored with sqlite-utils"""

    MESSAGES = "messages"
    ATTACHMENTS = "attachments"

    def __init__(self, unit_of_work: SqliteUnitOfWork):
        self.uow = unit_of_work
        self.db = unit_of_work.db
        self._pending_keys: set = set()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.db[self.MESSAGES].create(
            {
                "id": str,
                "account_id": str,
                "user_id": str,
                "message_id": str,
                "subject": str,
                "from_address": str,
                "from_name": str,
                "to_recipients": str,
                "cc_recipients": str,
                "bcc_recipients": str,
                "sent_at": str,
                "received_at": str,
                "body_text": str,
                "body_html": str,
                "folder": str,
                "conversation_id": str,
                "in_reply_to": str,
            },
            pk="id",
            if_not_exists=True,
        )
        self.db[self.MESSAGES].create_index(
            ["account_id", "message_id"], unique=True, if_not_exists=True
        )
        self.db[self.ATTACHMENTS].create(
            {
                "message_pk": str,
                "file_name": str,
                "content_type": str,
                "size": int,
                "storage_path": str,
                "content_hash": str,
                "content_id": str,
            },
            pk=("message_pk", "content_hash", "file_name"),
            if_not_exists=True,
        )

    async def exists_by_message_id(self, account_id: str, message_id: str) -> bool:
        if (account_id, message_id) in self._pending_keys:
            return True
        return self.db[self.MESSAGES].count_where(
            "account_id = ? and message_id = ?", [account_id, message_id]
        ) > 0

    async def add(self, message: EmailMessage) -> None:
        key = (message.account_id, message.message_id)
        self._pending_keys.add(key)
        row = _message_row(message)
        attachments = [_attachment_row(message.id, a) for a in message.attachments]

        def write() -> None:
            self.db[self.MESSAGES].insert(row, pk="id")
            if attachments:
                self.db[self.ATTACHMENTS].upsert_all(
                    attachments, pk=("message_pk", "content_hash", "file_name")
                )
            self._pending_keys.discard(key)

        self.uow.register(write, undo=lambda: self._pending_keys.discard(key))

    async def update(self, message: EmailMessage) -> None:
        row = _message_row(message)
        self.uow.register(lambda: self.db[self.MESSAGES].upsert(row, pk="id"))

    async def count(self, account_id: Optional[str] = None) -> int:
        table = self.db[self.MESSAGES]
        if account_id is None:
            return table.count
        return table.count_where("account_id = ?", [account_id])


class SqliteAccountRepository:
    """
    Accounts come from configuration; their sync state (last synced
    timestamp, last error, totals) is persisted in SQLite
    """

    STATE = "account_state"

    def __init__(self, unit_of_work: SqliteUnitOfWork, accounts: Iterable[EmailAccount]):
        self.uow = unit_of_work
        self.db = unit_of_work.db
        self.accounts = list(accounts)
        self.db[self.STATE].create(
            {
                "account_id": str,
                "last_synced_at": str,
                "last_sync_error": str,
                "emails_synced_total": int,
                "attachments_synced_total": int,
            },
            pk="account_id",
            if_not_exists=True,
        )

    async def get_accounts_for_user(self, user_id: str) -> List[EmailAccount]:
        accounts = [a for a in self.accounts if a.user_id == user_id and a.is_active]
        table = self.db[self.STATE]
        for account in accounts:
            rows = list(table.rows_where("account_id = ?", [account.id]))
            if not rows:
                continue
            state = rows[0]
            if state.get("last_synced_at"):
                account.last_synced_at = datetime.fromisoformat(state["last_synced_at"])
            account.last_sync_error = state.get("last_sync_error")
            account.emails_synced_total = state.get("emails_synced_total") or 0
            account.attachments_synced_total = state.get("attachments_synced_total") or 0
        return accounts

    async def update(self, account: EmailAccount) -> None:
        row = {
            "account_id": account.id,
            "last_synced_at": account.last_synced_at.isoformat() if account.last_synced_at else None,
            "last_sync_error": account.last_sync_error,
            "emails_synced_total": account.emails_synced_total,
            "attachments_synced_total": account.attachments_synced_total,
        }
        self.uow.register(lambda: self.db[self.STATE].upsert(row, pk="account_id"))


def _message_row(message: EmailMessage) -> Dict:
    return {
        "id": message.id,
        "account_id": message.account_id,
        "user_id": message.user_id,
        "message_id": message.message_id,
        "subject": message.subject,
        "from_address": message.from_address,
        "from_name": message.from_name,
        "to_recipients": json.dumps(message.to_recipients),
        "cc_recipients": json.dumps(message.cc_recipients),
        "bcc_recipients": json.dumps(message.bcc_recipients),
        "sent_at": message.sent_at.isoformat(),
        "received_at": message.received_at.isoformat(),
        "body_text": message.body_text,
        "body_html": message.body_html,
        "folder": message.folder.value if isinstance(message.folder, EmailFolder) else str(message.folder),
        "conversation_id": message.conversation_id,
        "in_reply_to": message.in_reply_to,
    }


def _attachment_row(message_pk: str, attachment) -> Dict:
    return {
        "message_pk": message_pk,
        "file_name": attachment.file_name,
        "content_type": attachment.content_type,
        "size": attachment.size,
        "storage_path": attachment.storage_path,
        "content_hash": attachment.content_hash,
        "content_id": attachment.content_id,
    }


# ----------------------------------------------------------------------
# Credentials
# ----------------------------------------------------------------------

class ConfigCredentialProvider:
    """Reads app passwords / access tokens from the loaded configuration"""

    def __init__(self, config: Config):
        self.config = config

    async def get_credentials(self, account: EmailAccount) -> Credentials:
        account_config = self.config.find_account(account.credential_ref or account.id)
        if account_config is None:
            raise ConfigurationError(
                f"No credentials configured for {redact_email(account.email_address)}"
            )
        if not account_config.app_password and not account_config.access_token:
            raise ConfigurationError(
                f"Password or access token is required for {redact_email(account.email_address)}"
            )
        return Credentials(
            username=account.email_address,
            password=account_config.app_password,
            access_token=account_config.access_token,
        )


class StaticCredentialProvider:
    """Credentials supplied up front, keyed by account id"""

    def __init__(self, credentials: Dict[str, Credentials]):
        self.credentials = credentials

    async def get_credentials(self, account: EmailAccount) -> Credentials:
        try:
            return self.credentials[account.id]
        except KeyError:
            raise ConfigurationError(
                f"No credentials configured for {redact_email(account.email_address)}"
            ) from None
