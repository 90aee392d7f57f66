"""
IMAP/SMTP implementation of the Mailbox interface.

Message IDs are IMAP UIDs of the folder the message was listed from (the
inbox for ``list_unseen``). Moves use the MOVE extension and fall back to
COPY + STORE \\Deleted + EXPUNGE on servers without it.

Usage:
    from integrations.imap_mailbox import ImapMailbox
    from services.config import ImapSettings

    mailbox = ImapMailbox(ImapSettings.from_env())
    summaries = mailbox.list_unseen(10)
"""

import imaplib
import logging
import re
import smtplib
import ssl
from email.message import EmailMessage
from typing import Callable, Iterable, List, Optional, Tuple

from domain.models import MessageDetail, MessageSummary
from services import email as email_service
from services.config import ImapSettings
from .mailbox import Mailbox, MailboxError

logger = logging.getLogger(__name__)

HEADER_FETCH = '(BODY.PEEK[HEADER.FIELDS (FROM SUBJECT DATE MESSAGE-ID)])'
FULL_FETCH = '(BODY.PEEK[])'


def quote_mailbox_name(folder_name: str) -> str:
    escaped = folder_name.replace('\\', '\\\\').replace('"', r'\"')
    return f'"{escaped}"'


def decode_imap_response(data: object) -> str:
    if not isinstance(data, list):
        return ''
    parts: List[str] = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, bytes):
            parts.append(item.decode('utf-8', errors='replace'))
        else:
            parts.append(str(item))
    return ' | '.join(parts).strip()


def parse_uid_search_data(data: object) -> List[str]:
    if not isinstance(data, list) or not data or not data[0]:
        return []
    raw = data[0]
    if isinstance(raw, bytes):
        return [uid.decode('ascii', errors='ignore') for uid in raw.split()]
    if isinstance(raw, str):
        return [uid for uid in raw.split() if uid]
    return []


def parse_fetch_payload(fetch_data: Iterable[object]) -> Optional[bytes]:
    """Return the literal payload from a UID FETCH response."""
    for part in fetch_data:
        if isinstance(part, tuple) and len(part) >= 2 and isinstance(part[1], bytes):
            return part[1]
    return None


def _sanitize_search_term(term: str) -> str:
    return re.sub(r'["\\\r\n]', '', term).strip()


class ImapMailbox(Mailbox):
    """
    Mailbox backed by an IMAP server (plus SMTP for sending).

    Args:
        settings: Host and credentials
        inbox_folder: Folder scanned by list_unseen and moved from by move_to_folder
        connect: Factory returning a logged-out IMAP connection (injectable for tests)
        smtp_connect: Factory returning an SMTP connection (injectable for tests)
    """

    def __init__(
        self,
        settings: ImapSettings,
        inbox_folder: str = 'INBOX',
        connect: Optional[Callable[[], imaplib.IMAP4]] = None,
        smtp_connect: Optional[Callable[[], smtplib.SMTP]] = None
    ):
        self.settings = settings
        self.inbox_folder = inbox_folder
        self._connect = connect or self._default_connect
        self._smtp_connect = smtp_connect or self._default_smtp_connect
        self._imap: Optional[imaplib.IMAP4] = None
        self._selected: Optional[str] = None

    def _default_connect(self) -> imaplib.IMAP4:
        context = ssl.create_default_context()
        return imaplib.IMAP4_SSL(self.settings.host, self.settings.port, ssl_context=context)

    def _default_smtp_connect(self) -> smtplib.SMTP:
        host = self.settings.smtp_host or self.settings.host
        context = ssl.create_default_context()
        return smtplib.SMTP_SSL(host, self.settings.smtp_port, context=context, timeout=30)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _connection(self) -> imaplib.IMAP4:
        if self._imap is None:
            try:
                imap = self._connect()
                imap.login(self.settings.username, self.settings.password)
            except (imaplib.IMAP4.error, OSError) as e:
                raise MailboxError(f"IMAP login failed for {self.settings.username}: {e}") from e
            logger.info(f"Connected to IMAP server {self.settings.host} as {self.settings.username}")
            self._imap = imap
            self._selected = None
        return self._imap

    def _select(self, folder: str) -> imaplib.IMAP4:
        imap = self._connection()
        if self._selected != folder:
            status, data = imap.select(quote_mailbox_name(folder), readonly=False)
            if status != 'OK':
                detail = decode_imap_response(data) or 'select failed'
                raise MailboxError(f"Cannot open folder {folder}: {detail}")
            self._selected = folder
        return imap

    def close(self) -> None:
        if self._imap is None:
            return
        try:
            self._imap.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.warning(f"IMAP logout failed: {e}")
        finally:
            self._imap = None
            self._selected = None

    def __enter__(self) -> 'ImapMailbox':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Mailbox operations
    # ------------------------------------------------------------------

    def _search_uids(self, imap: imaplib.IMAP4, *criteria: str) -> List[str]:
        status, data = imap.uid('SEARCH', None, *criteria)
        if status != 'OK':
            raise MailboxError(f"UID SEARCH {' '.join(criteria)} failed: {decode_imap_response(data)}")
        return parse_uid_search_data(data)

    def _fetch_summaries(self, imap: imaplib.IMAP4, uids: List[str]) -> List[MessageSummary]:
        summaries = []
        for uid in uids:
            status, fetch_data = imap.uid('FETCH', uid, HEADER_FETCH)
            if status != 'OK' or fetch_data is None:
                logger.warning(f"Header fetch failed for UID {uid}: {decode_imap_response(fetch_data)}")
                continue
            headers = parse_fetch_payload(fetch_data)
            if not headers:
                continue
            summaries.append(email_service.parse_header_summary(uid, headers))
        return summaries

    def list_unseen(self, max_results: int) -> List[MessageSummary]:
        imap = self._select(self.inbox_folder)
        uids = self._search_uids(imap, 'UNSEEN')
        # Highest UIDs are the newest messages
        newest = sorted(uids, key=int, reverse=True)[:max_results]
        logger.info(f"Found {len(uids)} unseen message(s), fetching {len(newest)}")
        return self._fetch_summaries(imap, newest)

    def read(self, message_id: str) -> MessageDetail:
        imap = self._select(self.inbox_folder)
        status, fetch_data = imap.uid('FETCH', message_id, FULL_FETCH)
        raw = parse_fetch_payload(fetch_data or []) if status == 'OK' else None
        if raw is None:
            raise MailboxError(f"Message not found: {message_id}")
        return email_service.parse_message_detail(message_id, raw)

    def _move_uid(self, imap: imaplib.IMAP4, uid: str, target_folder: str) -> Tuple[bool, str]:
        target_mailbox = quote_mailbox_name(target_folder)

        move_status, move_data = imap.uid('MOVE', uid, target_mailbox)
        if move_status == 'OK':
            return True, f"moved to {target_folder}"

        copy_status, copy_data = imap.uid('COPY', uid, target_mailbox)
        if copy_status != 'OK':
            detail = decode_imap_response(copy_data) or decode_imap_response(move_data) or 'copy failed'
            return False, detail

        ok, detail = self._expunge_uid(imap, uid)
        if not ok:
            return False, detail
        return True, f"copied+expunged to {target_folder}"

    def _expunge_uid(self, imap: imaplib.IMAP4, uid: str) -> Tuple[bool, str]:
        store_status, store_data = imap.uid('STORE', uid, '+FLAGS.SILENT', r'(\Deleted)')
        if store_status != 'OK':
            return False, decode_imap_response(store_data) or 'store-delete flag failed'

        expunge_status, expunge_data = imap.expunge()
        if expunge_status != 'OK':
            return False, decode_imap_response(expunge_data) or 'expunge failed'
        return True, 'deleted'

    def move_to_folder(self, message_id: str, folder: str) -> None:
        try:
            imap = self._select(self.inbox_folder)
            ok, detail = self._move_uid(imap, message_id, folder)
        except (imaplib.IMAP4.error, OSError) as e:
            self.close()
            raise MailboxError(f"Move of {message_id} to {folder} failed: {e}") from e
        if not ok:
            raise MailboxError(f"Move of {message_id} to {folder} failed: {detail}")
        logger.info(f"Message {message_id}: {detail}")

    def delete(self, message_id: str, folder: Optional[str] = None) -> None:
        try:
            imap = self._select(folder or self.inbox_folder)
            ok, detail = self._expunge_uid(imap, message_id)
        except (imaplib.IMAP4.error, OSError) as e:
            self.close()
            raise MailboxError(f"Delete of {message_id} failed: {e}") from e
        if not ok:
            raise MailboxError(f"Delete of {message_id} failed: {detail}")
        logger.info(f"Message {message_id} deleted from {folder or self.inbox_folder}")

    def search(self, query: str, max_results: int, folder: Optional[str] = None) -> List[MessageSummary]:
        term = _sanitize_search_term(query)
        if not term:
            return []
        imap = self._select(folder or self.inbox_folder)
        uids = self._search_uids(imap, 'FROM', f'"{term}"')
        return self._fetch_summaries(imap, sorted(uids, key=int, reverse=True)[:max_results])

    def send(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message['From'] = self.settings.username
        message['To'] = to
        message['Subject'] = subject
        message.set_content(body)

        try:
            with self._smtp_connect() as smtp:
                smtp.login(self.settings.username, self.settings.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise MailboxError(f"Failed to send message to {to}: {e}") from e
        logger.info(f"Sent message to {to}: {subject}")
