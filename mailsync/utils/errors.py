"""
Error Types Module
Exception hierarchy shared by the sync pipeline

PATTERN RECOGNITION: Every error carries a machine-readable error_code and a
user_message that is safe to show in a UI, separate from the technical
message that goes to the logs.
"""

from enum import Enum
from typing import Optional


class FaultKind(Enum):
    """Normalized fault categories produced at the protocol boundary"""
    TRANSIENT_IO = "transient_io"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    FATAL = "fatal"


class MailSyncError(Exception):
    """Base exception for mail synchronization"""

    def __init__(
        self,
        message: str,
        error_code: str = "EMAIL_ERROR",
        user_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.user_message = user_message or message


class ConfigurationError(MailSyncError):
    """Account or application configuration prevents a connection"""

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(
            message,
            "EMAIL_CONFIG_INVALID",
            user_message or "The email account is not configured correctly.",
        )


class ProviderNotSupportedError(MailSyncError):
    """The account's provider needs a protocol this pipeline does not speak"""

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(
            message,
            "EMAIL_PROVIDER_UNSUPPORTED",
            user_message or "This email provider is not supported yet.",
        )


class EmailAuthError(MailSyncError):
    """The mail server rejected the supplied credentials"""

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(
            message,
            "EMAIL_AUTH_FAILED",
            user_message or "Failed to authenticate with the email provider.",
        )


class EmailSyncError(MailSyncError):
    """Synchronization of an account could not complete"""

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(
            message,
            "EMAIL_SYNC_FAILED",
            user_message or "Email synchronization failed. The system will retry shortly.",
        )


class MailFault(MailSyncError):
    """
    A protocol-level failure translated into a FaultKind

    The resilience layer only looks at ``kind``; the original protocol
    exception stays available as ``__cause__``.
    """

    def __init__(self, message: str, kind: FaultKind):
        super().__init__(message, f"EMAIL_FAULT_{kind.name}")
        self.kind = kind


class OperationCancelledError(MailSyncError):
    """Raised when a cancellation token has been triggered"""

    def __init__(self, message: str = "Operation was cancelled"):
        super().__init__(message, "OPERATION_CANCELLED")
