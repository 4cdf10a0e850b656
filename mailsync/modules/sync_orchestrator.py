"""
Sync Orchestrator Module
Drives a historical/incremental sync of one user's mail accounts

For each account: resolve connection settings, open a session through the
mail-connectivity retry policy, walk the selected folders in batches, skip
messages whose Message-ID is already stored, map and persist the rest with
their attachments, then record the account's sync state and commit.

MAINTENANCE WISDOM: Only a failure to enumerate accounts fails the run.
Everything below that (bad configuration, exhausted connect retries, a
message that cannot be fetched, parsed or stored) becomes an entry in
SyncResult.errors and processing moves on.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from .attachment_store import AttachmentStore
from .email_data import (
    AccountSyncResult,
    EmailAccount,
    EmailAttachment,
    EmailFolder,
    EmailMessage,
    EmailSyncSettings,
    RawMessage,
    SyncProgress,
    SyncResult,
    SyncStatus,
    utcnow,
)
from .email_parser import EmailParser
from .imap_connection import (
    IMAPConnector,
    IMAPSession,
    find_folder_by_flag,
    resolve_connection_settings,
    resolve_transport_security,
)
from .message_mapper import to_entity
from .repositories import (
    AccountRepository,
    CredentialProvider,
    MessageRepository,
    UnitOfWork,
)
from ..utils.cancellation import CancellationToken
from ..utils.errors import ConfigurationError, ProviderNotSupportedError
from ..utils.metrics import SyncMetrics
from ..utils.resilience import create_mail_connectivity_policy, create_standard_policy
from ..utils.sanitization import redact_email, sanitize_for_logging


ProgressCallback = Callable[[int, int], None]
ProgressListener = Callable[[SyncProgress], None]

DEFAULT_BATCH_SIZE = 25
FULL_HISTORY_DAYS = 365 * 10
DAYS_PER_MONTH = 30
RESUME_OVERLAP = timedelta(minutes=5)

# (folder, special-use flags tried in order)
OPTIONAL_FOLDERS = (
    (EmailFolder.SENT, "include_sent_folder", ("\\Sent",)),
    (EmailFolder.DRAFTS, "include_drafts_folder", ("\\Drafts",)),
    (EmailFolder.ARCHIVE, "include_archive_folder", ("\\Archive", "\\All")),
)


def compute_sync_since(
    account: EmailAccount,
    settings: EmailSyncSettings,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Start of the window to search for an account

    The baseline is the account's initial_sync_days when set, else
    history_months (<= 0 meaning ten years). An account that has synced
    before resumes from last_synced_at minus a small overlap when that is
    later than the baseline. The result is never in the future.
    """
    now = now or utcnow()
    if account.initial_sync_days > 0:
        since = now - timedelta(days=account.initial_sync_days)
    elif settings.history_months <= 0:
        since = now - timedelta(days=FULL_HISTORY_DAYS)
    else:
        since = now - timedelta(days=DAYS_PER_MONTH * settings.history_months)

    last_synced = account.last_synced_at
    if last_synced is not None:
        if last_synced.tzinfo is None:
            last_synced = last_synced.replace(tzinfo=timezone.utc)
        resume = last_synced - RESUME_OVERLAP
        if resume > since:
            since = resume

    return min(since, now)


@dataclass
class _SyncRun:
    """Mutable state of one sync() invocation"""
    result: SyncResult
    settings: EmailSyncSettings
    progress: Optional[ProgressCallback]
    token: Optional[CancellationToken]
    interrupted: bool = False

    def cancellation_requested(self) -> bool:
        if self.token is not None and self.token.cancelled:
            self.interrupted = True
        return self.interrupted


class SyncOrchestrator:
    """Synchronizes every active account of a user"""

    def __init__(
        self,
        account_repository: AccountRepository,
        message_repository: MessageRepository,
        unit_of_work: UnitOfWork,
        attachment_store: AttachmentStore,
        connector: IMAPConnector,
        credential_provider: CredentialProvider,
        parser: Optional[EmailParser] = None,
        metrics: Optional[SyncMetrics] = None,
        progress_listener: Optional[ProgressListener] = None,
        connectivity_retries: int = 3,
        connectivity_base_delay: float = 1.0,
        fetch_retries: int = 3,
        fetch_base_delay: float = 0.25,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_concurrent_accounts: int = 1,
        connection_timeout: int = 30,
    ):
        """
        Initialize the orchestrator

        Args:
            account_repository: Source of accounts; receives sync state updates
            message_repository: Destination of new messages
            unit_of_work: Commit boundary, invoked after each account
            attachment_store: Content-addressable blob store
            connector: Opens authenticated sessions
            credential_provider: Supplies login secrets per account
            parser: RFC 822 parser (default limits when omitted)
            metrics: Metrics collector (a new one when omitted)
            progress_listener: Optional receiver of SyncProgress snapshots
            connectivity_retries: Retries for connect/login
            connectivity_base_delay: Base of the connect backoff (seconds)
            fetch_retries: Retries for folder/search/fetch calls
            fetch_base_delay: Base of the fetch backoff (seconds)
            batch_size: Messages processed between cancellation checks
            max_concurrent_accounts: Accounts synced at the same time
            connection_timeout: Socket timeout in seconds

        Raises:
            ValueError: If batch_size or max_concurrent_accounts is not positive
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if max_concurrent_accounts <= 0:
            raise ValueError(
                f"max_concurrent_accounts must be positive, got {max_concurrent_accounts}"
            )

        self.account_repository = account_repository
        self.message_repository = message_repository
        self.unit_of_work = unit_of_work
        self.attachment_store = attachment_store
        self.connector = connector
        self.credential_provider = credential_provider
        self.parser = parser or EmailParser()
        self.metrics = metrics or SyncMetrics()
        self.progress_listener = progress_listener
        self.batch_size = batch_size
        self.max_concurrent_accounts = max_concurrent_accounts
        self.connection_timeout = connection_timeout
        self.logger = logging.getLogger("SyncOrchestrator")

        self.connect_policy = create_mail_connectivity_policy(
            self.logger,
            "IMAP connect",
            connectivity_retries,
            connectivity_base_delay,
            on_retry=self._on_retry,
        )
        self.fetch_policy = create_standard_policy(
            self.logger,
            "IMAP fetch",
            fetch_retries,
            fetch_base_delay,
            on_retry=self._on_retry,
        )

    def _on_retry(self, attempt: int, exc: BaseException) -> None:
        self.metrics.retries += 1

    async def sync(
        self,
        user_id: str,
        settings: Optional[EmailSyncSettings] = None,
        progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> SyncResult:
        """
        Sync all active accounts of a user

        Args:
            user_id: Owner of the accounts
            settings: Window and folder selection (defaults when omitted)
            progress: Optional callback (accounts_processed, messages_synced)
            token: Optional cancellation token, checked before each account
                and each message batch

        Returns:
            SyncResult. Only an exception raised while enumerating accounts
            produces FAILED; per-account problems are listed in errors.
        """
        run = _SyncRun(
            result=SyncResult(user_id=user_id, status=SyncStatus.IN_PROGRESS),
            settings=settings or EmailSyncSettings(),
            progress=progress,
            token=token,
        )
        result = run.result

        try:
            accounts = await self.account_repository.get_accounts_for_user(user_id)
        except Exception as exc:
            self.logger.error(f"Failed to enumerate accounts: {exc}", exc_info=True)
            self.metrics.record_error("enumerate")
            result.status = SyncStatus.FAILED
            result.errors.append(str(exc) or type(exc).__name__)
            result.finished_at = utcnow()
            return result

        if not accounts:
            self.logger.warning("No email accounts configured for this user")
            result.status = SyncStatus.NO_ACCOUNTS_CONFIGURED
            result.finished_at = utcnow()
            return result

        self.logger.info(f"Starting sync of {len(accounts)} account(s)")
        semaphore = asyncio.Semaphore(self.max_concurrent_accounts)

        async def guarded(account: EmailAccount) -> None:
            async with semaphore:
                if run.cancellation_requested():
                    return
                await self._sync_account(run, account)

        outcomes = await asyncio.gather(
            *(guarded(account) for account in accounts), return_exceptions=True
        )
        for account, outcome in zip(accounts, outcomes):
            if not isinstance(outcome, BaseException):
                continue
            if not isinstance(outcome, Exception):
                raise outcome
            self.logger.error(
                f"Unexpected failure syncing {redact_email(account.email_address)}: {outcome}",
                exc_info=outcome,
            )
            self.metrics.record_error("account")
            result.errors.append(f"{account.email_address}: {str(outcome) or type(outcome).__name__}")

        result.status = SyncStatus.CANCELLED if run.interrupted else SyncStatus.COMPLETED
        result.finished_at = utcnow()
        self.logger.info(
            f"Sync {result.status.value}: {result.emails_synced} new email(s) "
            f"from {result.accounts_processed} account(s), {len(result.errors)} error(s)"
        )
        return result

    async def _sync_account(self, run: _SyncRun, account: EmailAccount) -> None:
        started = time.monotonic()
        window_end = utcnow()
        safe_email = redact_email(account.email_address)
        outcome = AccountSyncResult(account_email=account.email_address)
        message_failures = 0

        try:
            host, port = resolve_connection_settings(account)
            transport = resolve_transport_security(account)
            credentials = await self.credential_provider.get_credentials(account)
        except (ConfigurationError, ProviderNotSupportedError) as exc:
            self.logger.error(f"Cannot sync {safe_email}: {exc}")
            self._record_account_error(run, account, outcome, str(exc), "config")
            await self._finish_account(run, account, outcome, window_end, started, 0)
            return
        except Exception as exc:
            self.logger.error(f"Failed to obtain credentials for {safe_email}: {exc}", exc_info=True)
            self._record_account_error(
                run, account, outcome, str(exc) or type(exc).__name__, "credentials"
            )
            await self._finish_account(run, account, outcome, window_end, started, 0)
            return

        try:
            session = await self.connect_policy.execute(
                lambda: self.connector.open_session(
                    host, port, transport, credentials, self.connection_timeout
                ),
                run.token,
            )
        except Exception as exc:
            if run.cancellation_requested():
                self.logger.info(f"Connection to {safe_email} abandoned after cancellation")
            else:
                self.logger.error(f"Failed to connect to {safe_email}: {exc}")
                self._record_account_error(run, account, outcome, str(exc), "connect")
            await self._finish_account(run, account, outcome, window_end, started, 0)
            return

        try:
            since = compute_sync_since(account, run.settings, window_end)
            self.logger.info(f"Syncing {safe_email} since {since:%Y-%m-%d %H:%M}")
            for folder, folder_name in await self._resolve_folders(run, session):
                if run.cancellation_requested():
                    break
                try:
                    message_failures += await self._sync_folder(
                        run, account, session, folder, folder_name, since, outcome
                    )
                    outcome.folders_processed += 1
                except Exception as exc:
                    if run.cancellation_requested():
                        break
                    self.logger.error(
                        f"Folder {sanitize_for_logging(folder_name)} failed for {safe_email}: {exc}"
                    )
                    self._record_account_error(
                        run, account, outcome, f"{folder_name}: {exc}", "folder"
                    )
        except Exception as exc:
            if not run.cancellation_requested():
                self.logger.error(f"Listing folders failed for {safe_email}: {exc}")
                self._record_account_error(run, account, outcome, str(exc), "folder")
        finally:
            await session.close()

        await self._finish_account(run, account, outcome, window_end, started, message_failures)

    async def _resolve_folders(
        self, run: _SyncRun, session: IMAPSession
    ) -> List[Tuple[EmailFolder, str]]:
        folders = [(EmailFolder.INBOX, "INBOX")]
        wanted = [
            (folder, flags)
            for folder, setting, flags in OPTIONAL_FOLDERS
            if getattr(run.settings, setting)
        ]
        if not wanted:
            return folders

        listing = await self.fetch_policy.execute(session.list_folders, run.token)
        for folder, flags in wanted:
            name = find_folder_by_flag(listing, flags)
            if name is None:
                self.logger.debug(f"Server exposes no {folder.value} folder")
                continue
            folders.append((folder, name))
        return folders

    async def _sync_folder(
        self,
        run: _SyncRun,
        account: EmailAccount,
        session: IMAPSession,
        folder: EmailFolder,
        folder_name: str,
        since: datetime,
        outcome: AccountSyncResult,
    ) -> int:
        """Sync one folder; returns the number of messages that failed"""
        await self.fetch_policy.execute(lambda: session.select_folder(folder_name), run.token)
        uids = await self.fetch_policy.execute(lambda: session.search_since(since), run.token)

        outcome.emails_checked += len(uids)
        run.result.total_emails_found += len(uids)
        self.logger.info(
            f"Found {len(uids)} message(s) in {sanitize_for_logging(folder_name)} "
            f"for {redact_email(account.email_address)}"
        )

        failures = 0
        for start in range(0, len(uids), self.batch_size):
            if run.cancellation_requested():
                break
            batch = uids[start:start + self.batch_size]
            for uid in batch:
                if not await self._sync_message(run, account, session, folder, uid, outcome):
                    failures += 1
            self._report_progress(run, account, f"{folder.value}: {start + len(batch)}/{len(uids)}")
        return failures

    async def _sync_message(
        self,
        run: _SyncRun,
        account: EmailAccount,
        session: IMAPSession,
        folder: EmailFolder,
        uid: str,
        outcome: AccountSyncResult,
    ) -> bool:
        """
        Fetch, de-duplicate and persist one message

        Returns:
            False if the message failed and was skipped
        """
        try:
            raw_bytes = await self.fetch_policy.execute(
                lambda: session.fetch_message(uid), run.token
            )
            if raw_bytes is None:
                self.metrics.record_message_skipped()
                return True

            raw = self.parser.parse(uid, raw_bytes)
            message_id = (raw.message_id or "").strip()
            if message_id and await self.message_repository.exists_by_message_id(
                account.id, message_id
            ):
                self.metrics.record_message_skipped()
                return True

            entity = to_entity(raw, account, folder)
            await self._store_attachments(run, account, raw, entity, outcome)
            await self.message_repository.add(entity)
        except Exception as exc:
            if run.cancellation_requested():
                self.logger.info(f"Message UID {sanitize_for_logging(uid)} abandoned after cancellation")
                return False
            self.logger.error(
                f"Skipping message UID {sanitize_for_logging(uid)} for "
                f"{redact_email(account.email_address)}: {exc}"
            )
            self.metrics.record_error("message")
            run.result.errors.append(f"{account.email_address}: message {uid}: {exc}")
            return False

        outcome.new_emails += 1
        run.result.emails_synced += 1
        self.metrics.record_message_synced()
        if outcome.latest_received_at is None or entity.received_at > outcome.latest_received_at:
            outcome.latest_received_at = entity.received_at
        return True

    async def _store_attachments(
        self,
        run: _SyncRun,
        account: EmailAccount,
        raw: RawMessage,
        entity: EmailMessage,
        outcome: AccountSyncResult,
    ) -> None:
        if not raw.attachments:
            return
        if not (run.settings.download_attachments and account.sync_attachments):
            return

        size_limit = account.max_attachment_size_mb * 1024 * 1024
        for attachment in raw.attachments:
            if attachment.size == 0:
                continue
            if size_limit and attachment.size > size_limit:
                self.logger.info(
                    f"Attachment {sanitize_for_logging(attachment.filename or '')} "
                    f"exceeds {account.max_attachment_size_mb} MB, not stored"
                )
                continue

            stored = await self.attachment_store.store(
                attachment.filename or "",
                attachment.content_type,
                attachment.data,
            )
            self.metrics.record_attachment(stored.is_new)
            if stored.is_new:
                outcome.attachments_stored += 1
            entity.add_attachment(EmailAttachment(
                file_name=attachment.filename or "attachment",
                content_type=attachment.content_type,
                size=attachment.size,
                storage_path=stored.storage_path,
                content_hash=stored.content_hash,
                content_id=attachment.content_id,
            ))

    async def _finish_account(
        self,
        run: _SyncRun,
        account: EmailAccount,
        outcome: AccountSyncResult,
        window_end: datetime,
        started: float,
        message_failures: int,
    ) -> None:
        # The resume point only moves when every message in the window made it
        if outcome.error is not None:
            account.mark_sync_failed(outcome.error)
        else:
            complete = not run.interrupted and message_failures == 0
            account.mark_synced(
                outcome.new_emails,
                outcome.attachments_stored,
                window_end if complete else None,
            )
            if message_failures:
                account.last_sync_error = f"{message_failures} message(s) failed to sync"
            outcome.success = complete

        try:
            await self.account_repository.update(account)
            await self.unit_of_work.commit()
        except Exception as exc:
            self.logger.error(
                f"Failed to save sync results for {redact_email(account.email_address)}: {exc}"
            )
            self.metrics.record_error("commit")
            run.result.errors.append(f"{account.email_address}: {exc}")
            outcome.success = False
            if outcome.error is None:
                outcome.error = str(exc)

        run.result.accounts_processed += 1
        run.result.account_results.append(outcome)
        self.metrics.record_account_duration(time.monotonic() - started)
        self._report_progress(run, account, "account finished")

    def _record_account_error(
        self,
        run: _SyncRun,
        account: EmailAccount,
        outcome: AccountSyncResult,
        message: str,
        error_type: str,
    ) -> None:
        self.metrics.record_error(error_type)
        run.result.errors.append(f"{account.email_address}: {message}")
        if outcome.error is None:
            outcome.error = message

    def _report_progress(self, run: _SyncRun, account: EmailAccount, message: str) -> None:
        result = run.result
        if run.progress is not None:
            try:
                run.progress(result.accounts_processed, result.emails_synced)
            except Exception as exc:
                self.logger.warning(f"Progress callback raised: {exc}")
        if self.progress_listener is not None:
            try:
                self.progress_listener(SyncProgress(
                    accounts_processed=result.accounts_processed,
                    messages_synced=result.emails_synced,
                    account_email=account.email_address,
                    total_found=result.total_emails_found,
                    message=message,
                ))
            except Exception as exc:
                self.logger.warning(f"Progress listener raised: {exc}")

