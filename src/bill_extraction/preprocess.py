"""Email body preprocessing: HTML to text, footer removal, truncation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from bs4 import BeautifulSoup, Comment

from bill_extraction.config import ExtractionSettings

if TYPE_CHECKING:
    from bill_extraction.models import RawEmail

_BLOCK_TAGS = [
    "p",
    "div",
    "tr",
    "li",
    "ul",
    "ol",
    "table",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "hr",
    "section",
    "article",
    "header",
    "footer",
    "blockquote",
]

_FOOTER_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^this (?:email|message|communication) (?:is|was) (?:intended|sent|confidential)",
        r"^if you (?:have )?received this (?:email|message) in error",
        r"^please do not reply to this (?:email|message)",
        r"^this is an automated (?:message|email|notification)",
        r"^unsubscribe|^manage (?:your )?preferences|^email preferences",
        r"^to stop receiving these emails",
        r"^you are receiving this (?:email|message) because",
        r"^copyright \d{4}|^©\s*\d{4}|^\(c\)\s*\d{4}",
        r"^all rights reserved",
        r"^privacy policy|^terms (?:of|and) (?:use|service)",
        r"^(?:regards|sincerely|thanks|best|cheers),?$",
        r"^(?:thank you|many thanks),?$",
        r"^--\s*$",
        r"^_{3,}$",
        r"^-{3,}$",
        r"^\d{1,5}\s+[a-z]+\s+(?:street|st|avenue|ave|road|rd|drive|dr|lane|ln)\b",
        r"^(?:phone|tel|fax|mobile|cell):\s*[\d\-()+]",
        r"^(?:follow us|connect with us|find us on)",
        r"^(?:facebook|twitter|instagram|linkedin|youtube)\b",
    )
]

_FOOTER_KEYWORDS = (
    "unsubscribe",
    "opt-out",
    "opt out",
    "email preferences",
    "manage subscriptions",
    "privacy policy",
    "terms of service",
    "terms of use",
    "confidential",
    "intended recipient",
    "unauthorized use",
    "privileged",
    "copyright ©",
    "all rights reserved",
)


@dataclass(frozen=True)
class PreprocessedEmail:
    """Cleaned email body.

    ``text`` is the full cleaned body used for candidate extraction.
    ``prompt_text`` keeps only its beginning, bounded for the AI call.
    """

    text: str
    prompt_text: str
    truncated_html: str | None
    original_length: int


def preprocess(
    email: RawEmail, settings: ExtractionSettings | None = None
) -> PreprocessedEmail:
    """Convert a raw email body into cleaned text. Pure function."""
    settings = settings or ExtractionSettings()

    text = email.body_plain or ""
    if not text.strip() and email.body_html:
        text = html_to_text(email.body_html)
    elif email.body_html and len(text) < 200:
        # Very short plain parts are often "view this email in a browser" stubs
        html_text = html_to_text(email.body_html)
        if len(html_text) > len(text) * 1.5:
            text = html_text

    original_length = len(text)
    cleaned = remove_footers(text.replace("\r\n", "\n"))
    cleaned = re.sub(r"[ \t]{2,}", "  ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()

    truncated_html = None
    if email.body_html:
        truncated_html = email.body_html[: settings.max_html_chars]

    return PreprocessedEmail(
        text=cleaned,
        prompt_text=cleaned[: settings.max_body_chars],
        truncated_html=truncated_html,
        original_length=original_length,
    )


def html_to_text(html: str) -> str:
    """Convert HTML to text, keeping table rows on one line each."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "style", "head", "noscript", "title"]):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    for br in soup.find_all("br"):
        br.replace_with("\n")
    for cell in soup.find_all(["td", "th"]):
        cell.append("  ")
    for block in soup.find_all(_BLOCK_TAGS):
        block.insert_before("\n")
        block.append("\n")

    text = soup.get_text().replace("\xa0", " ")
    lines = [" ".join(line.split()) for line in text.split("\n")]
    text = "\n".join(lines)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def remove_footers(text: str) -> str:
    """Drop signature, footer and legal boilerplate from the end of ``text``.

    A footer starts at the first line matching a footer marker, or, past 60%
    of the email, where the remaining text holds three or more footer
    keywords. If that cut would remove more than 60% of the lines, the first
    75% are kept instead.
    """
    lines = text.split("\n")
    total = len(lines)
    footer_start: int | None = None

    for i, raw_line in enumerate(lines):
        line = raw_line.strip()
        if any(pattern.search(line) for pattern in _FOOTER_PATTERNS):
            footer_start = i
            break
        if len(line) > 10 and i > total * 0.6:
            remaining = " ".join(lines[i:]).lower()
            hits = sum(1 for keyword in _FOOTER_KEYWORDS if keyword in remaining)
            if hits >= 3:
                footer_start = i
                break

    if footer_start is None:
        return text.strip()
    if 0 < footer_start < total * 0.4:
        return "\n".join(lines[: int(total * 0.75)]).strip()
    if footer_start == 0:
        return text.strip()
    return "\n".join(lines[:footer_start]).strip()


def extract_context(text: str, position: int, window: int = 80) -> str:
    """Return about ``window`` characters of ``text`` centered on ``position``."""
    half = window // 2
    start = max(0, position - half)
    end = min(len(text), position + half)
    context = text[start:end]
    if start > 0:
        context = "..." + context
    if end < len(text):
        context = context + "..."
    return " ".join(context.split())
