"""IMAP mailbox source."""

from __future__ import annotations

import hashlib
import imaplib
import logging
from datetime import UTC, datetime
from email import message_from_bytes
from email.header import decode_header
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, cast

from bill_extraction.models import RawEmail

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import date
    from email.message import Message

    from bill_extraction.config import ImapConfig

logger = logging.getLogger(__name__)


class ImapMailbox:
    """Fetch emails received since a date from an IMAP mailbox."""

    def __init__(self, config: ImapConfig) -> None:
        self.config = config

    def fetch_since(self, since: date, seen_ids: set[str]) -> Iterator[RawEmail]:
        """Connect to IMAP and yield messages since ``since`` not in ``seen_ids``.

        Messages are deduplicated by Message-ID within one fetch as well.
        """
        conn: imaplib.IMAP4_SSL | None = None
        seen = set(seen_ids)
        try:
            conn = self._connect()
            for msg_id in self._search_since(conn, since):
                raw = self._fetch_message(conn, msg_id)
                if raw is None:
                    continue

                msg = message_from_bytes(raw)
                email_id = message_id_for(msg)
                if email_id in seen:
                    logger.debug("Skipping already-seen message %s", email_id)
                    continue
                seen.add(email_id)

                try:
                    yield email_from_message(msg, email_id)
                except Exception:
                    logger.warning("Failed to parse message %s", email_id, exc_info=True)
        finally:
            if conn is not None:
                try:
                    conn.logout()
                except Exception:
                    logger.debug("Error during IMAP logout", exc_info=True)

    def _connect(self) -> imaplib.IMAP4_SSL:
        conn = imaplib.IMAP4_SSL(self.config.host, self.config.port)
        conn.login(self.config.username, self.config.password)
        return conn

    def _search_since(self, conn: imaplib.IMAP4_SSL, since: date) -> list[bytes]:
        """Select the folder and return sequence numbers received since ``since``."""
        conn.select(self.config.folder, readonly=True)
        _status, data = conn.search(None, "SINCE", since.strftime("%d-%b-%Y"))
        raw = data[0]
        if not raw:
            return []
        return cast("list[bytes]", raw.split())

    def _fetch_message(self, conn: imaplib.IMAP4_SSL, msg_id: bytes) -> bytes | None:
        _status, data = conn.fetch(msg_id.decode(), "(RFC822)")
        if not data or data[0] is None:
            return None
        part = data[0]
        if isinstance(part, tuple):
            return part[1]
        return None


def parse_message(raw: bytes) -> RawEmail:
    """Parse RFC 822 bytes, such as a saved ``.eml`` file, into a RawEmail."""
    msg = message_from_bytes(raw)
    return email_from_message(msg, message_id_for(msg))


def email_from_message(msg: Message, email_id: str) -> RawEmail:
    subject = decode_header_value(msg.get("Subject", ""))
    sender = decode_header_value(msg.get("From", ""))

    date_str = msg.get("Date")
    email_date = parsedate_to_datetime(date_str) if date_str else None

    html_body, text_body = _extract_bodies(msg)
    return RawEmail(
        id=email_id,
        sender=sender,
        subject=subject,
        date=email_date or datetime.now(tz=UTC),
        body_plain=text_body,
        body_html=html_body,
    )


def message_id_for(msg: Message) -> str:
    """Return the Message-ID, or a hash of subject, date and sender."""
    message_id = msg.get("Message-ID")
    if message_id:
        return message_id.strip()

    key = f"{msg.get('Subject', '')}|{msg.get('Date', '')}|{msg.get('From', '')}"
    return hashlib.sha256(key.encode()).hexdigest()


def decode_header_value(value: str | None) -> str:
    """Decode an RFC 2047 encoded header value."""
    if not value:
        return ""
    decoded_parts: list[str] = []
    for data, charset in decode_header(value):
        if isinstance(data, bytes):
            decoded_parts.append(data.decode(charset or "utf-8", errors="replace"))
        else:
            decoded_parts.append(data)
    return "".join(decoded_parts)


def _extract_bodies(msg: Message) -> tuple[str | None, str | None]:
    """Walk the MIME tree and return the first HTML and plain-text bodies."""
    html_body: str | None = None
    text_body: str | None = None

    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if part.get_content_maintype() == "multipart":
            continue
        disposition = str(part.get("Content-Disposition", "")).lower()
        if part.get_filename() or "attachment" in disposition:
            continue

        raw_payload = part.get_payload(decode=True)
        if raw_payload is None:
            continue
        payload = cast("bytes", raw_payload)
        charset = part.get_content_charset() or "utf-8"
        content_type = part.get_content_type()

        if content_type == "text/html" and html_body is None:
            html_body = payload.decode(charset, errors="replace")
        elif content_type == "text/plain" and text_body is None:
            text_body = payload.decode(charset, errors="replace")

    return html_body, text_body
