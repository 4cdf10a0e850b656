"""
Security Validators Module
Centralizes limits and validation helpers for data that arrives from remote
mail servers

SECURITY STORY: Everything fetched over IMAP is untrusted:
- MAX_SUBJECT_LENGTH: caps subject lines stored in the message repository
- MAX_MIME_PARTS: bounds MIME walking (CWE-674: Uncontrolled Recursion)
- DEFAULT_MAX_EMAIL_SIZE: bounds a single RFC822 download
- Attachment filenames never become paths; only a sanitized extension is kept
"""

import logging
import re
import ssl
from pathlib import Path

MAX_SUBJECT_LENGTH = 1024
MAX_MIME_PARTS = 100

# Fallback maximum email size (500MB) when no attachment limit is configured
DEFAULT_MAX_EMAIL_SIZE = 500 * 1024 * 1024

# Whitelist of filename characters (CWE-22)
FILENAME_SANITIZE_PATTERN = re.compile(r"[^\w\s\-_\.]")
FILENAME_COLLAPSE_DOTS_PATTERN = re.compile(r"\.{2,}")
EXTENSION_PATTERN = re.compile(r"^\.[A-Za-z0-9]{1,16}$")

GENERIC_EXTENSION = ".bin"

WINDOWS_RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9"
}

logger = logging.getLogger(__name__)


def sanitize_filename(filename: str) -> str:
    """
    Sanitize filename to prevent path traversal attacks (CWE-22)

    Args:
        filename: Original filename from email attachment

    Returns:
        Sanitized filename safe for filesystem operations

    Example:
        >>> sanitize_filename("../../etc/passwd")
        'passwd'
        >>> sanitize_filename("normal_file.txt")
        'normal_file.txt'
    """
    if not filename:
        return "unnamed_attachment"

    # Strip path components before character filtering
    filename = filename.split("/")[-1].split("\\")[-1]

    sanitized = FILENAME_SANITIZE_PATTERN.sub("", filename)
    sanitized = FILENAME_COLLAPSE_DOTS_PATTERN.sub(".", sanitized)
    sanitized = sanitized.strip(". ")

    if not sanitized:
        return "unnamed_attachment"

    base_name = sanitized.split('.')[0].strip().upper()
    if base_name in WINDOWS_RESERVED_NAMES:
        sanitized = "_" + sanitized

    return sanitized[:255]


def safe_extension(filename: str) -> str:
    """
    Extension to use for a stored blob

    Returns the lowercased extension of the sanitized display name, or
    GENERIC_EXTENSION when the name has none (or an implausible one).

    Example:
        >>> safe_extension("Report.PDF")
        '.pdf'
        >>> safe_extension("README")
        '.bin'
    """
    if not filename or not filename.strip():
        return GENERIC_EXTENSION

    suffix = Path(sanitize_filename(filename)).suffix
    if not EXTENSION_PATTERN.match(suffix):
        return GENERIC_EXTENSION
    return suffix.lower()


def is_within_directory(path: Path, directory: Path) -> bool:
    """True when path resolves to a location inside directory"""
    try:
        path.resolve().relative_to(directory.resolve())
        return True
    except ValueError:
        return False


def create_secure_ssl_context(verify: bool = True) -> ssl.SSLContext:
    """
    Create a secure SSL context with modern TLS settings

    SECURITY STORY: Enforces TLS 1.2+ and hostname checking. Passing
    verify=False disables certificate validation and should only be used
    against test servers with self-signed certificates.

    Returns:
        Configured SSL context
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    context.load_default_certs()

    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        logger.warning("SSL verification disabled - use only for testing!")

    logger.debug("Created secure SSL context with TLS 1.2+ enforcement")
    return context


def validate_subject_length(subject: str) -> str:
    """
    Truncate a subject line to MAX_SUBJECT_LENGTH

    Args:
        subject: Email subject line

    Returns:
        Truncated subject line if it exceeds MAX_SUBJECT_LENGTH
    """
    if len(subject) > MAX_SUBJECT_LENGTH:
        logger.warning(f"Subject exceeds {MAX_SUBJECT_LENGTH} chars, truncating")
        return subject[:MAX_SUBJECT_LENGTH]
    return subject


def calculate_max_email_size(max_total_attachment_bytes: int) -> int:
    """
    Calculate maximum RFC822 size to download

    The 5MB overhead accounts for headers and body.

    Args:
        max_total_attachment_bytes: Maximum total attachment size (0 = unlimited)

    Returns:
        Maximum email size in bytes
    """
    if max_total_attachment_bytes > 0:
        return max_total_attachment_bytes + (5 * 1024 * 1024)
    return DEFAULT_MAX_EMAIL_SIZE
