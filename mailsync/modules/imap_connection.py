"""
IMAP Connection Module
Resolves per-provider connection settings and opens authenticated sessions

PATTERN RECOGNITION: This follows the Adapter pattern - it wraps Python's
imaplib to provide an async, higher-level interface. Blocking imaplib calls
run in the default executor so the event loop stays free.

MAINTENANCE WISDOM: Nothing in this module retries. Callers wrap
open_session() and fetches in a RetryPolicy. What this module does own is
the translation of imaplib/ssl/socket exceptions into MailFault values with
a FaultKind, so the resilience layer never sees protocol-library types.
"""

import asyncio
import imaplib
import logging
import re
import socket
import ssl
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from .email_data import EmailAccount, EmailProvider
from ..utils.errors import (
    ConfigurationError,
    EmailAuthError,
    FaultKind,
    MailFault,
    ProviderNotSupportedError,
)
from ..utils.sanitization import redact_email, sanitize_for_logging
from ..utils.security_validators import (
    DEFAULT_MAX_EMAIL_SIZE,
    create_secure_ssl_context,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SECURE_PORT = 993
PLAIN_IMAP_PORT = 143

LIST_RESPONSE_PATTERN = re.compile(rb'\((?P<flags>[^)]*)\)\s+(?P<delim>"[^"]*"|NIL)\s+(?P<name>.+)')
SIZE_PATTERN = re.compile(rb"RFC822\.SIZE\s+(\d+)")


class TransportSecurity(Enum):
    """How the session negotiates encryption"""
    SSL_ON_CONNECT = "ssl_on_connect"
    STARTTLS = "starttls"
    NONE = "none"


@dataclass(frozen=True)
class Credentials:
    """Secrets used to log in; one of password or access_token is set"""
    username: str
    password: str = ""
    access_token: str = ""

    @property
    def uses_oauth(self) -> bool:
        return bool(self.access_token)


# ----------------------------------------------------------------------
# Provider lookup table
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class FixedEndpoint:
    """Well-known provider: host/port are hard-coded, account fields ignored"""
    host: str
    port: int

    def resolve(self, account: EmailAccount) -> Tuple[str, int]:
        return self.host, self.port

    def transport(self, account: EmailAccount) -> TransportSecurity:
        return TransportSecurity.SSL_ON_CONNECT


@dataclass(frozen=True)
class AccountEndpoint:
    """Generic IMAP: host/port come from the account itself"""
    default_port: int = DEFAULT_SECURE_PORT

    def resolve(self, account: EmailAccount) -> Tuple[str, int]:
        host = (account.imap_server or "").strip()
        if not host:
            raise ConfigurationError(
                f"IMAP server is not configured for {redact_email(account.email_address)}"
            )
        port = account.imap_port if account.imap_port and account.imap_port > 0 else self.default_port
        return host, port

    def transport(self, account: EmailAccount) -> TransportSecurity:
        if not account.use_ssl:
            return TransportSecurity.NONE
        # The plain IMAP port upgrades in-band
        if account.imap_port == PLAIN_IMAP_PORT:
            return TransportSecurity.STARTTLS
        return TransportSecurity.SSL_ON_CONNECT


@dataclass(frozen=True)
class UnsupportedEndpoint:
    """Provider that needs a protocol this pipeline does not implement"""
    reason: str

    def resolve(self, account: EmailAccount) -> Tuple[str, int]:
        raise ProviderNotSupportedError(self.reason)

    def transport(self, account: EmailAccount) -> TransportSecurity:
        return TransportSecurity.SSL_ON_CONNECT


PROVIDER_ENDPOINTS: Dict[EmailProvider, object] = {
    EmailProvider.GMAIL: FixedEndpoint("imap.gmail.com", 993),
    EmailProvider.OUTLOOK: FixedEndpoint("outlook.office365.com", 993),
    EmailProvider.IMAP: AccountEndpoint(),
    EmailProvider.EXCHANGE: UnsupportedEndpoint("Exchange provider not yet implemented"),
}


def resolve_connection_settings(account: EmailAccount) -> Tuple[str, int]:
    """
    Resolve the IMAP host and port for an account

    Raises:
        ConfigurationError: Generic IMAP account without a server
        ProviderNotSupportedError: Provider has no IMAP endpoint here
    """
    endpoint = PROVIDER_ENDPOINTS.get(account.provider)
    if endpoint is None:
        raise ProviderNotSupportedError(f"Provider {account.provider} not supported")
    return endpoint.resolve(account)


def resolve_transport_security(account: EmailAccount) -> TransportSecurity:
    """Pure mapping of account state to a transport mode; never raises"""
    endpoint = PROVIDER_ENDPOINTS.get(account.provider)
    if endpoint is None:
        return TransportSecurity.SSL_ON_CONNECT
    return endpoint.transport(account)


# ----------------------------------------------------------------------
# Fault translation
# ----------------------------------------------------------------------

def find_folder_by_flag(
    listing: List[Tuple[str, List[str]]], flags: Tuple[str, ...]
) -> Optional[str]:
    """
    Pick a folder from a LIST result by RFC 6154 special-use flag

    Flags are tried in order, so ("\\Archive", "\\All") prefers a real
    archive folder over All Mail. Matching is case-insensitive.
    """
    for flag in flags:
        wanted = flag.lower()
        for name, folder_flags in listing:
            if any(f.lower() == wanted for f in folder_flags):
                return name
    return None


def translate_fault(exc: Exception, operation: str) -> Exception:
    """
    Map a protocol-library exception onto the pipeline's error types

    imaplib.IMAP4.abort is a connection drop (transient); other
    imaplib.IMAP4.error values are protocol refusals (fatal).
    """
    if isinstance(exc, MailFault):
        return exc
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return MailFault(f"{operation} timed out: {exc}", FaultKind.TIMEOUT)
    if isinstance(exc, ssl.SSLCertVerificationError):
        return MailFault(f"{operation} failed certificate verification: {exc}", FaultKind.FATAL)
    if isinstance(exc, imaplib.IMAP4.abort):
        return MailFault(f"{operation} aborted: {exc}", FaultKind.TRANSIENT_IO)
    if isinstance(exc, imaplib.IMAP4.error):
        return MailFault(f"{operation} rejected by server: {exc}", FaultKind.FATAL)
    if isinstance(exc, OSError):
        return MailFault(f"{operation} I/O failure: {exc}", FaultKind.TRANSIENT_IO)
    return exc


def _check_status(status: str, data, operation: str) -> None:
    if status != "OK":
        detail = data[0].decode(errors="replace") if data and isinstance(data[0], bytes) else data
        raise MailFault(f"{operation} returned {status}: {detail}", FaultKind.FATAL)


# ----------------------------------------------------------------------
# Session
# ----------------------------------------------------------------------

class IMAPSession:
    """
    Authenticated IMAP session

    All methods are coroutines; the underlying imaplib object is only ever
    touched from one executor call at a time.
    """

    def __init__(
        self,
        connection: imaplib.IMAP4,
        host: str,
        max_email_size: int = DEFAULT_MAX_EMAIL_SIZE,
    ):
        self.connection = connection
        self.host = host
        self.max_email_size = max_email_size
        self.selected_folder: Optional[str] = None
        self.logger = logging.getLogger(f"IMAPSession.{host}")
        self._lock = asyncio.Lock()

    async def _call(self, operation: str, func: Callable[..., T], *args) -> T:
        loop = asyncio.get_running_loop()
        async with self._lock:
            try:
                return await loop.run_in_executor(None, partial(func, *args))
            except Exception as exc:
                translated = translate_fault(exc, operation)
                if translated is exc:
                    raise
                raise translated from exc

    async def list_folders(self) -> List[Tuple[str, List[str]]]:
        """
        List mailbox folders

        Returns:
            List of (folder name, flags) tuples, e.g. ("Sent", ["\\HasNoChildren", "\\Sent"])
        """
        status, data = await self._call("LIST", self.connection.list)
        _check_status(status, data, "LIST")

        folders = []
        for item in data or []:
            if not isinstance(item, bytes):
                continue
            match = LIST_RESPONSE_PATTERN.match(item)
            if not match:
                continue
            flags = match.group("flags").decode(errors="replace").split()
            name = match.group("name").decode(errors="replace").strip()
            if name.startswith('"') and name.endswith('"'):
                name = name[1:-1]
            folders.append((name, flags))
        return folders

    async def select_folder(self, folder: str) -> int:
        """
        Select a folder read-only

        Returns:
            Number of messages in the folder
        """
        mailbox = folder if folder.upper() == "INBOX" else f'"{folder}"'
        status, data = await self._call("SELECT", self.connection.select, mailbox, True)
        _check_status(status, data, f"SELECT {sanitize_for_logging(folder)}")
        self.selected_folder = folder
        try:
            return int(data[0])
        except (TypeError, ValueError, IndexError):
            return 0

    async def search_since(self, since: datetime) -> List[str]:
        """
        UIDs of messages delivered on or after the given date

        IMAP SINCE has day granularity, so callers still see messages from
        earlier in that day; the message-id check keeps this idempotent.
        """
        criterion = since.strftime("%d-%b-%Y")
        status, data = await self._call(
            "UID SEARCH", self.connection.uid, "SEARCH", None, "SINCE", criterion
        )
        _check_status(status, data, "UID SEARCH")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    async def fetch_message(self, uid: str) -> Optional[bytes]:
        """
        Fetch the full RFC822 bytes of one message

        SECURITY STORY: The size is checked first (RFC822.SIZE) so an
        oversized message is never downloaded.

        Returns:
            Raw bytes, or None if the message is oversized or vanished
        """
        size = await self._fetch_size(uid)
        if size is not None and size > self.max_email_size:
            self.logger.warning(
                f"Skipping oversized message UID {sanitize_for_logging(uid)} "
                f"({size} bytes > {self.max_email_size})"
            )
            return None

        status, data = await self._call(
            "UID FETCH", self.connection.uid, "FETCH", uid, "(RFC822)"
        )
        _check_status(status, data, "UID FETCH")
        for item in data or []:
            if isinstance(item, tuple) and len(item) >= 2 and isinstance(item[1], bytes):
                return item[1]
        return None

    async def _fetch_size(self, uid: str) -> Optional[int]:
        status, data = await self._call(
            "UID FETCH SIZE", self.connection.uid, "FETCH", uid, "(RFC822.SIZE)"
        )
        if status != "OK":
            return None
        for item in data or []:
            info = item[0] if isinstance(item, tuple) else item
            if isinstance(info, bytes):
                match = SIZE_PATTERN.search(info)
                if match:
                    return int(match.group(1))
        return None

    async def close(self) -> None:
        """Log out; failures are logged, never raised"""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.connection.logout)
            self.logger.info("Disconnected from IMAP server")
        except Exception:
            self.logger.debug("Connection was already closed or logout failed")


class IMAPConnector:
    """Opens IMAP sessions; performs no retrying"""

    def __init__(
        self,
        verify_ssl: bool = True,
        max_email_size: int = DEFAULT_MAX_EMAIL_SIZE,
        unverified_hosts: Iterable[str] = (),
    ):
        """
        Args:
            verify_ssl: Verify server certificates
            max_email_size: Messages larger than this are not downloaded
            unverified_hosts: Hosts whose certificates are not verified even
                when verify_ssl is set (self-signed local bridges)
        """
        self.verify_ssl = verify_ssl
        self.unverified_hosts = frozenset(h.lower() for h in unverified_hosts)
        self.max_email_size = max_email_size
        self.logger = logging.getLogger("IMAPConnector")

    async def open_session(
        self,
        host: str,
        port: int,
        transport: TransportSecurity,
        credentials: Credentials,
        timeout: int = 30,
    ) -> IMAPSession:
        """
        Connect and authenticate

        Raises:
            MailFault: Translated network/protocol failure
            EmailAuthError: Server rejected the credentials
        """
        loop = asyncio.get_running_loop()
        self.logger.info(
            f"Connecting to {sanitize_for_logging(host)}:{port} ({transport.value}) "
            f"as {redact_email(credentials.username)}"
        )
        try:
            connection = await loop.run_in_executor(
                None, partial(self._connect, host, port, transport, timeout)
            )
        except Exception as exc:
            translated = translate_fault(exc, "CONNECT")
            if translated is exc:
                raise
            raise translated from exc

        try:
            await loop.run_in_executor(None, partial(self._login, connection, credentials))
        except Exception as exc:
            await loop.run_in_executor(None, partial(_safe_shutdown, connection))
            if isinstance(exc, imaplib.IMAP4.error) and not isinstance(exc, imaplib.IMAP4.abort):
                raise EmailAuthError(
                    f"Login failed for {redact_email(credentials.username)}: {exc}"
                ) from exc
            translated = translate_fault(exc, "LOGIN")
            if translated is exc:
                raise
            raise translated from exc

        self.logger.info(f"Successfully connected to {redact_email(credentials.username)}")
        return IMAPSession(connection, host, self.max_email_size)

    def _connect(
        self,
        host: str,
        port: int,
        transport: TransportSecurity,
        timeout: int,
    ) -> imaplib.IMAP4:
        verify = self.verify_ssl and host.lower() not in self.unverified_hosts
        if transport is TransportSecurity.SSL_ON_CONNECT:
            context = create_secure_ssl_context(verify)
            return imaplib.IMAP4_SSL(host, port, ssl_context=context, timeout=timeout)

        connection = imaplib.IMAP4(host, port, timeout=timeout)
        if transport is TransportSecurity.STARTTLS:
            connection.starttls(ssl_context=create_secure_ssl_context(verify))
        else:
            self.logger.warning(
                f"Connection to {sanitize_for_logging(host)} is unencrypted"
            )
        return connection

    @staticmethod
    def _login(connection: imaplib.IMAP4, credentials: Credentials) -> None:
        if credentials.uses_oauth:
            auth_string = f"user={credentials.username}\x01auth=Bearer {credentials.access_token}\x01\x01"
            connection.authenticate("XOAUTH2", lambda _: auth_string.encode())
        else:
            connection.login(credentials.username, credentials.password)


def _safe_shutdown(connection: imaplib.IMAP4) -> None:
    try:
        connection.shutdown()
    except Exception:
        logger.debug("Socket shutdown after failed login raised", exc_info=True)

