"""
Message Mapper Module
Converts a RawMessage into the EmailMessage entity

Pure functions: nothing here touches storage or the network.
"""

import uuid
from typing import Optional

from .email_data import (
    EmailAccount,
    EmailFolder,
    EmailMessage,
    RawMessage,
    utcnow,
)


def to_entity(raw: RawMessage, account: EmailAccount, folder: EmailFolder) -> EmailMessage:
    """
    Map a fetched message onto an EmailMessage

    Defaulting rules (each applied independently):
    - missing subject -> ""
    - missing sender -> the account's own address
    - empty message id -> a generated unique id
    - missing To -> the account's own address
    - missing date -> now (UTC)

    Args:
        raw: Parsed protocol-level message
        account: Owning account
        folder: Folder the message was synced from

    Returns:
        New EmailMessage (attachments are added by the caller once stored)
    """
    message_id = (raw.message_id or "").strip() or uuid.uuid4().hex
    from_address = raw.from_address or account.email_address
    sent_at = raw.date or utcnow()

    return EmailMessage(
        message_id=message_id,
        subject=raw.subject if raw.subject is not None else "",
        from_address=from_address,
        from_name=raw.from_name or from_address,
        to_recipients=list(raw.to) if raw.to else [account.email_address],
        sent_at=sent_at,
        received_at=sent_at,
        body_text=extract_text_body(raw) or "",
        body_html=extract_html_body(raw),
        user_id=account.user_id,
        account_id=account.id,
        folder=folder,
        cc_recipients=list(raw.cc),
        bcc_recipients=list(raw.bcc),
        conversation_id=conversation_id(raw, message_id),
        in_reply_to=raw.in_reply_to,
    )


def extract_text_body(raw: RawMessage) -> Optional[str]:
    """First text/plain part, or None"""
    for part in raw.body_parts:
        if part.content_type == "text/plain":
            return part.text
    return None


def extract_html_body(raw: RawMessage) -> Optional[str]:
    """First text/html part, or None"""
    for part in raw.body_parts:
        if part.content_type == "text/html":
            return part.text
    return None


def conversation_id(raw: RawMessage, message_id: str) -> str:
    """Thread-Index header, else the thread root from References, else the message id"""
    thread_index = raw.headers.get("thread-index")
    if thread_index:
        return thread_index
    if raw.references:
        return raw.references[0]
    return message_id
