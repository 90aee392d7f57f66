"""
Email parsing utilities.

Turns raw RFC 822 headers and bodies fetched from a mailbox into the
summaries and details the triage pipeline works with.
"""

import logging
import re
from email import policy
from email.header import decode_header, make_header
from email.parser import BytesParser
from email.utils import parseaddr, parsedate_to_datetime
from typing import Dict, Optional

from domain.models import MessageDetail, MessageSummary

logger = logging.getLogger(__name__)

PREVIEW_MAX_CHARS = 500

_HTML_TAG_RE = re.compile(r'<[^>]+>')
_WHITESPACE_RE = re.compile(r'\s+')


def decode_header_value(value: Optional[str]) -> str:
    """Decode an RFC 2047 encoded header into plain text."""
    if not value:
        return ''
    try:
        return str(make_header(decode_header(str(value)))).strip()
    except Exception as e:
        logger.warning(f"Failed to decode header value: {e}")
        return str(value).strip()


def extract_sender_email(sender_header: str) -> str:
    """
    Extract the bare address from a From header.

    Example:
        >>> extract_sender_email('"Deals" <promo@spam.example>')
        'promo@spam.example'
    """
    _name, address = parseaddr(sender_header or '')
    return address.strip().lower()


def truncate_body(body: Optional[str], max_chars: int = PREVIEW_MAX_CHARS) -> str:
    """Strip HTML tags, collapse whitespace and cap the length."""
    if not body:
        return ''
    text = _HTML_TAG_RE.sub(' ', body)
    text = _WHITESPACE_RE.sub(' ', text).strip()
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + '...'


def parse_header_summary(message_id: str, header_bytes: bytes) -> MessageSummary:
    """
    Build a MessageSummary from raw header bytes.

    Args:
        message_id: Mailbox identifier for the message (e.g. IMAP UID)
        header_bytes: Raw header block

    Returns:
        MessageSummary: Sender, subject and received date
    """
    msg = BytesParser(policy=policy.default).parsebytes(header_bytes, headersonly=True)
    sender = decode_header_value(msg.get('From'))

    received_at = None
    raw_date = msg.get('Date')
    if raw_date:
        try:
            received_at = parsedate_to_datetime(str(raw_date))
        except (TypeError, ValueError):
            logger.warning(f"Unparsable Date header on message {message_id}: {raw_date}")

    return MessageSummary(
        message_id=message_id,
        sender_email=extract_sender_email(sender),
        subject=decode_header_value(msg.get('Subject')),
        received_at=received_at,
    )


def extract_email_body(email_content: bytes) -> Dict[str, str]:
    """
    Parse a raw email (MIME format) and extract the text and HTML bodies.

    Args:
        email_content: Raw email bytes

    Returns:
        Dictionary with text_body and html_body (empty strings when absent)
    """
    msg = BytesParser(policy=policy.default).parsebytes(email_content)

    result = {
        'text_body': '',
        'html_body': '',
    }

    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if part.is_multipart():
            continue
        if 'attachment' in str(part.get('Content-Disposition', '')):
            continue

        content_type = part.get_content_type()
        key = None
        if content_type == 'text/plain' and not result['text_body']:
            key = 'text_body'
        elif content_type == 'text/html' and not result['html_body']:
            key = 'html_body'
        if key is None:
            continue

        try:
            # get_content() handles quoted-printable, base64, etc automatically
            result[key] = part.get_content()
        except Exception as e:
            logger.warning(f"Failed to decode {content_type} body with get_content(): {e}")
            payload = part.get_payload(decode=True)
            if payload:
                result[key] = payload.decode('utf-8', errors='ignore')

    return result


def parse_message_detail(message_id: str, raw_message: bytes) -> MessageDetail:
    """Build a MessageDetail (summary plus bodies) from a full raw message."""
    summary = parse_header_summary(message_id, raw_message)
    bodies = extract_email_body(raw_message)
    summary.body_preview = truncate_body(bodies['text_body'] or bodies['html_body'])
    return MessageDetail(
        summary=summary,
        text_body=bodies['text_body'],
        html_body=bodies['html_body'],
    )
