"""Tests for bill_extraction.adapters.imap."""

from __future__ import annotations

import hashlib
from datetime import date
from email import message_from_bytes
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest

from bill_extraction.adapters.base import MailboxSource
from bill_extraction.adapters.imap import (
    ImapMailbox,
    decode_header_value,
    message_id_for,
    parse_message,
)

if TYPE_CHECKING:
    from bill_extraction.config import ImapConfig


def _make_simple_email(
    *,
    subject: str = "Your bill is ready",
    sender: str = "billing@example.com",
    date_header: str = "Tue, 20 Jan 2026 10:30:00 +0000",
    message_id: str | None = "<test-1@example.com>",
    body: str = "Amount due: $42.00",
    html: bool = False,
) -> bytes:
    subtype = "html" if html else "plain"
    msg = MIMEText(body, subtype)
    msg["Subject"] = subject
    msg["From"] = sender
    msg["Date"] = date_header
    if message_id:
        msg["Message-ID"] = message_id
    return msg.as_bytes()


def _make_multipart_email(
    *,
    text_body: str | None = "Plain text body",
    html_body: str | None = None,
    attachment: tuple[str, bytes] | None = None,
) -> bytes:
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Statement"
    msg["From"] = "billing@example.com"
    msg["Date"] = "Tue, 20 Jan 2026 10:30:00 +0000"
    msg["Message-ID"] = "<multi@example.com>"

    alt = MIMEMultipart("alternative")
    if text_body:
        alt.attach(MIMEText(text_body, "plain"))
    if html_body:
        alt.attach(MIMEText(html_body, "html"))
    msg.attach(alt)

    if attachment:
        filename, data = attachment
        part = MIMEApplication(data, "pdf")
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)
    return msg.as_bytes()


class TestMessageIdFor:
    """Tests for message_id_for."""

    def test_uses_message_id_header(self) -> None:
        msg = message_from_bytes(_make_simple_email(message_id="  <unique-123@mail.com> "))
        assert message_id_for(msg) == "<unique-123@mail.com>"

    def test_fallback_hash_when_no_message_id(self) -> None:
        msg = message_from_bytes(_make_simple_email(message_id=None))
        result = message_id_for(msg)

        expected_key = f"{msg['Subject']}|{msg['Date']}|{msg['From']}"
        assert result == hashlib.sha256(expected_key.encode()).hexdigest()


class TestDecodeHeaderValue:
    """Tests for decode_header_value."""

    def test_simple_ascii(self) -> None:
        assert decode_header_value("Hello World") == "Hello World"

    def test_rfc2047_encoded(self) -> None:
        assert decode_header_value("=?utf-8?B?SMOpbGzDqA==?=") == "Héllè"

    def test_none_returns_empty(self) -> None:
        assert decode_header_value(None) == ""


class TestParseMessage:
    """Tests for parse_message."""

    def test_plain_text_email(self) -> None:
        email = parse_message(_make_simple_email())

        assert email.id == "<test-1@example.com>"
        assert email.subject == "Your bill is ready"
        assert email.sender == "billing@example.com"
        assert email.body_plain == "Amount due: $42.00"
        assert email.body_html is None
        assert email.received_date == date(2026, 1, 20)

    def test_html_only_email(self) -> None:
        email = parse_message(_make_simple_email(body="<p>Pay now</p>", html=True))
        assert email.body_html == "<p>Pay now</p>"
        assert email.body_plain is None

    def test_multipart_keeps_both_bodies(self) -> None:
        email = parse_message(
            _make_multipart_email(text_body="Plain version", html_body="<p>HTML version</p>")
        )
        assert email.body_plain == "Plain version"
        assert email.body_html == "<p>HTML version</p>"

    def test_attachments_are_not_bodies(self) -> None:
        email = parse_message(
            _make_multipart_email(text_body="Body", attachment=("bill.pdf", b"%PDF-1.4"))
        )
        assert email.body_plain == "Body"


class TestFetchSince:
    """Tests for ImapMailbox.fetch_since."""

    def _mock_imap_connection(self, messages: dict[bytes, bytes]) -> MagicMock:
        conn = MagicMock()
        conn.select.return_value = ("OK", [b"1"])
        msg_ids = b" ".join(messages.keys()) if messages else b""
        conn.search.return_value = ("OK", [msg_ids])

        def fake_fetch(msg_id: str, _fmt: str) -> tuple[str, list[object]]:
            data = messages.get(msg_id.encode())
            if data is None:
                return ("OK", [None])
            return ("OK", [(b"1 (RFC822 {100})", data)])

        conn.fetch.side_effect = fake_fetch
        return conn

    def test_is_a_mailbox_source(self, imap_config: ImapConfig) -> None:
        assert isinstance(ImapMailbox(imap_config), MailboxSource)

    @patch("bill_extraction.adapters.imap.imaplib.IMAP4_SSL")
    def test_searches_since_date(self, mock_ssl: MagicMock, imap_config: ImapConfig) -> None:
        conn = self._mock_imap_connection({})
        mock_ssl.return_value = conn

        list(ImapMailbox(imap_config).fetch_since(date(2026, 1, 5), set()))

        mock_ssl.assert_called_once_with("imap.example.com", 993)
        conn.login.assert_called_once_with("test@example.com", "secret")
        conn.select.assert_called_once_with("INBOX", readonly=True)
        conn.search.assert_called_once_with(None, "SINCE", "05-Jan-2026")

    @patch("bill_extraction.adapters.imap.imaplib.IMAP4_SSL")
    def test_skips_seen_and_duplicate_messages(
        self, mock_ssl: MagicMock, imap_config: ImapConfig
    ) -> None:
        first = _make_simple_email(message_id="<msg-1@example.com>")
        second = _make_simple_email(message_id="<msg-2@example.com>")
        mock_ssl.return_value = self._mock_imap_connection(
            {b"1": first, b"2": second, b"3": second}
        )

        results = list(
            ImapMailbox(imap_config).fetch_since(date(2026, 1, 1), {"<msg-1@example.com>"})
        )

        assert [r.id for r in results] == ["<msg-2@example.com>"]

    @patch("bill_extraction.adapters.imap.imaplib.IMAP4_SSL")
    def test_logout_called_on_error(
        self, mock_ssl: MagicMock, imap_config: ImapConfig
    ) -> None:
        conn = MagicMock()
        conn.select.side_effect = Exception("Connection lost")
        mock_ssl.return_value = conn

        with pytest.raises(Exception, match="Connection lost"):
            list(ImapMailbox(imap_config).fetch_since(date(2026, 1, 1), set()))

        conn.logout.assert_called_once()
