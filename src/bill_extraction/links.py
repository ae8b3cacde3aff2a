"""Payment-link candidate extraction from HTML email bodies."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from email.utils import parseaddr
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from bill_extraction.config import ExtractionSettings
from bill_extraction.models import PaymentLinkCandidate
from bill_extraction.rules import DEFAULT_RULES, ExtractionRules

if TYPE_CHECKING:
    from bs4 import Tag

logger = logging.getLogger(__name__)

CONTEXT_CHARS = 80


@dataclass(frozen=True)
class LinkExtraction:
    candidates: list[PaymentLinkCandidate] = field(default_factory=list)
    skip_reason: str | None = None


def extract_payment_link_candidates(
    html: str | None,
    *,
    rules: ExtractionRules = DEFAULT_RULES,
    settings: ExtractionSettings | None = None,
) -> LinkExtraction:
    """Find anchors that look like payment links, best first.

    Non-http(s) links, duplicate URLs, junk links (unsubscribe, social,
    "view in browser") and URL shorteners are dropped before scoring.
    """
    settings = settings or ExtractionSettings()
    if not html or not html.strip():
        return LinkExtraction(skip_reason="No HTML body provided")

    soup = BeautifulSoup(html, "html.parser")
    candidates: list[PaymentLinkCandidate] = []
    seen: set[str] = set()
    position = 0

    for anchor in soup.find_all("a", href=True):
        url = str(anchor["href"]).strip()
        lowered = url.lower()
        if not lowered.startswith(("http://", "https://")):
            continue
        if lowered in seen:
            continue
        seen.add(lowered)

        anchor_text = " ".join(anchor.get_text(" ").split()) or str(anchor.get("title", ""))
        if _is_junk(anchor_text, url, rules):
            continue
        if is_shortener(url, rules=rules):
            logger.debug("Dropping shortened link %s", url)
            continue
        if settings.require_https_links and not lowered.startswith("https://"):
            continue

        score = calculate_link_score(anchor_text, rules=rules)
        if score < settings.min_link_score:
            continue
        domain = extract_domain(url)
        if not domain:
            continue

        candidates.append(
            PaymentLinkCandidate(
                url=url,
                anchor_text=anchor_text,
                domain=domain,
                score=score,
                position=position,
                context=_link_context(anchor, anchor_text),
            )
        )
        position += 1

    candidates.sort(key=lambda c: (-c.score, c.position))
    candidates = candidates[: settings.max_link_candidates]
    if not candidates:
        return LinkExtraction(skip_reason="No payment link candidates found")
    return LinkExtraction(candidates=candidates)


def calculate_link_score(anchor_text: str, *, rules: ExtractionRules = DEFAULT_RULES) -> int:
    return int(
        sum(
            weighted.score
            for weighted in rules.payment_link_keywords
            if weighted.pattern.search(anchor_text)
        )
    )


def extract_domain(url: str) -> str | None:
    """Return the lowercase hostname of ``url``, or None if it has none."""
    try:
        hostname = urlsplit(url.strip()).hostname
    except ValueError:
        return None
    return hostname.lower() if hostname else None


def extract_domain_from_email(sender: str) -> str:
    """Return the domain of a ``Name <user@domain>`` address, or ``""``."""
    _, address = parseaddr(sender)
    if "@" not in address:
        return ""
    return address.rpartition("@")[2].strip().lower()


def is_shortener(url: str, *, rules: ExtractionRules = DEFAULT_RULES) -> bool:
    domain = extract_domain(url)
    if not domain:
        return False
    return any(
        domain == shortener or domain.endswith("." + shortener)
        for shortener in rules.url_shorteners
    )


def _is_junk(anchor_text: str, url: str, rules: ExtractionRules) -> bool:
    return any(
        pattern.search(anchor_text) or pattern.search(url)
        for pattern in rules.payment_link_junk_patterns
    )


def _link_context(anchor: Tag, anchor_text: str) -> str:
    parent = anchor.parent
    context = " ".join(parent.get_text(" ").split()) if parent else ""
    if len(context) < 20 and parent is not None and parent.parent is not None:
        context = " ".join(parent.parent.get_text(" ").split())
    if len(context) <= CONTEXT_CHARS:
        return context
    index = context.find(anchor_text) if anchor_text else -1
    if index < 0:
        return context[:CONTEXT_CHARS]
    start = max(0, index - 30)
    end = min(len(context), index + len(anchor_text) + 30)
    return context[start:end]
