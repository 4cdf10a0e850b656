"""
Email Parser Module
Handles parsing of raw RFC822 bytes into RawMessage objects

PATTERN RECOGNITION: This follows the Parser pattern - it takes unstructured
data (raw email bytes) and transforms it into a structured object. Absent
headers stay None so MessageMapper can apply its defaulting rules.

SECURITY STORY: Message bytes come from a remote server. We bound the number
of MIME parts walked, the size of decoded bodies and the length of the
subject, and attachment filenames are sanitized before they go anywhere.
"""

import email
import logging
import re
from typing import List, Optional, Tuple
from email.message import Message
from email.header import decode_header, make_header
from email.utils import getaddresses, parsedate_to_datetime
from datetime import datetime, timezone

from .email_data import BodyPart, RawAttachment, RawMessage
from ..utils.sanitization import sanitize_for_logging
from ..utils.security_validators import (
    MAX_MIME_PARTS,
    sanitize_filename,
    validate_subject_length,
)


logger = logging.getLogger(__name__)

MESSAGE_ID_PATTERN = re.compile(r"<[^<>\s]+>")


class EmailParser:
    """
    Parses raw email bytes into RawMessage objects

    MAINTENANCE WISDOM: Keep parsing logic separate from I/O (IMAP connection).
    You can parse test emails without needing an IMAP server.
    """

    def __init__(
        self,
        max_body_size: int = 1024 * 1024,  # 1MB default
        max_attachment_count: int = 50,
    ):
        """
        Initialize email parser

        Args:
            max_body_size: Maximum size for each decoded body part
            max_attachment_count: Maximum number of attachments kept per email
        """
        self.max_body_size = max_body_size
        self.max_attachment_count = max_attachment_count
        self.logger = logging.getLogger("EmailParser")

    def parse(self, uid: str, raw_email: bytes) -> RawMessage:
        """
        Parse raw email into a RawMessage

        Args:
            uid: IMAP UID of the message
            raw_email: Raw email bytes from IMAP server

        Returns:
            RawMessage

        Raises:
            ValueError: If raw_email is empty
        """
        if not raw_email:
            raise ValueError(f"Message {uid} has no content")

        msg = email.message_from_bytes(raw_email)
        safe_uid = sanitize_for_logging(uid)

        from_name, from_address = self._first_address(msg.get("From"))
        body_parts, attachments = self._extract_content(msg, safe_uid)

        return RawMessage(
            uid=uid,
            message_id=self._extract_message_id(msg.get("Message-ID")),
            subject=self._extract_subject(msg),
            from_address=from_address,
            from_name=from_name,
            to=self._addresses(msg.get_all("To", [])),
            cc=self._addresses(msg.get_all("Cc", [])),
            bcc=self._addresses(msg.get_all("Bcc", [])),
            date=self._extract_date(msg),
            body_parts=body_parts,
            attachments=attachments,
            in_reply_to=self._extract_message_id(msg.get("In-Reply-To")),
            references=MESSAGE_ID_PATTERN.findall(str(msg.get("References", ""))),
            headers={
                key.lower(): self._decode_header_value(value)
                for key, value in msg.items()
                if key.lower() in ("thread-index", "list-id", "x-mailer")
            },
        )

    def _extract_subject(self, msg: Message) -> Optional[str]:
        """Decoded subject, or None when the header is absent"""
        raw = msg.get("Subject")
        if raw is None:
            return None
        return validate_subject_length(self._decode_header_value(raw))

    @staticmethod
    def _extract_message_id(value) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @staticmethod
    def _extract_date(msg: Message) -> Optional[datetime]:
        """
        Parse the Date header into an aware UTC datetime

        Returns:
            Parsed datetime, or None if missing or unparseable
        """
        date_str = msg.get("Date")
        if not date_str:
            return None
        try:
            parsed = parsedate_to_datetime(str(date_str))
        except (TypeError, ValueError, IndexError):
            return None
        if parsed is None:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    def _extract_content(
        self,
        msg: Message,
        safe_uid: str
    ) -> Tuple[List[BodyPart], List[RawAttachment]]:
        """
        Collect text parts and attachments

        SECURITY STORY: Walking stops after MAX_MIME_PARTS parts (MIME bombs).
        """
        body_parts: List[BodyPart] = []
        attachments: List[RawAttachment] = []

        part_count = 0
        for part in msg.walk():
            part_count += 1
            if part_count > MAX_MIME_PARTS:
                self.logger.warning(
                    f"Email {safe_uid} exceeds max MIME parts ({MAX_MIME_PARTS}). "
                    f"Truncating remaining parts."
                )
                break

            if part.is_multipart():
                continue

            content_type = part.get_content_type()
            disposition = str(part.get("Content-Disposition", "")).lower()
            filename = part.get_filename()

            if "attachment" in disposition or (filename and not content_type.startswith("text/")):
                attachment = self._extract_attachment(part, filename, attachments, safe_uid)
                if attachment:
                    attachments.append(attachment)
            elif content_type in ("text/plain", "text/html"):
                text = self._decode_part_payload(part)
                if len(text) > self.max_body_size:
                    self.logger.warning(
                        f"Body part truncated to {self.max_body_size} chars for email {safe_uid}"
                    )
                    text = text[:self.max_body_size]
                body_parts.append(BodyPart(content_type=content_type, text=text))

        return body_parts, attachments

    def _extract_attachment(
        self,
        part: Message,
        raw_filename: Optional[str],
        attachments: List[RawAttachment],
        safe_uid: str
    ) -> Optional[RawAttachment]:
        """
        Extract attachment bytes from a MIME part

        Returns:
            RawAttachment, or None if the part is empty or over the count limit
        """
        if len(attachments) >= self.max_attachment_count:
            self.logger.warning(
                f"Max attachment count ({self.max_attachment_count}) reached "
                f"for email {safe_uid}. Skipping remaining attachments."
            )
            return None

        payload = part.get_payload(decode=True) or b""
        if not payload:
            return None

        filename = None
        if raw_filename:
            filename = sanitize_filename(self._decode_header_value(raw_filename))

        content_id = part.get("Content-ID")
        return RawAttachment(
            filename=filename,
            content_type=part.get_content_type() or "application/octet-stream",
            data=payload,
            content_id=str(content_id).strip("<> ") if content_id else None,
        )

    @staticmethod
    def _decode_header_value(value) -> str:
        """
        Decode RFC 2047 encoded header value, falling back to the raw text
        """
        if not value:
            return ""
        try:
            return str(make_header(decode_header(str(value))))
        except Exception:
            return str(value)

    @classmethod
    def _first_address(cls, header_value) -> Tuple[Optional[str], Optional[str]]:
        """(display name, address) of the first mailbox in a header"""
        if not header_value:
            return None, None
        for name, address in getaddresses([str(header_value)]):
            if address:
                return (cls._decode_header_value(name) or None), address
        return None, None

    @staticmethod
    def _addresses(header_values: List[str]) -> List[str]:
        """Bare addresses from one or more address headers"""
        return [
            address
            for _, address in getaddresses([str(v) for v in header_values])
            if address
        ]

    @staticmethod
    def _decode_part_payload(part: Message) -> str:
        payload = part.get_payload(decode=True)
        if not payload:
            return ""
        return EmailParser._decode_bytes(payload, part.get_content_charset())

    @staticmethod
    def _decode_bytes(data: bytes, charset: Optional[str]) -> str:
        """
        Decode bytes to string with charset fallback

        'replace' error handling keeps malformed input parseable.
        """
        encoding = charset or "utf-8"
        try:
            return data.decode(encoding, errors="replace")
        except LookupError:
            return data.decode("utf-8", errors="replace")


def parse_raw_message(uid: str, raw_email: bytes) -> RawMessage:
    """Parse with default limits"""
    return EmailParser().parse(uid, raw_email)
