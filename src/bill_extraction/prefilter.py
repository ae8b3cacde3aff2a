"""Cheap sender and subject gate run before any extraction work."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from email.utils import parseaddr
from typing import TYPE_CHECKING

from bill_extraction.config import ExtractionSettings
from bill_extraction.rules import DEFAULT_RULES, ExtractionRules

if TYPE_CHECKING:
    from collections.abc import Iterable

    from bill_extraction.models import RawEmail

logger = logging.getLogger(__name__)


@dataclass
class PreFilterResult:
    passed: list[RawEmail] = field(default_factory=list)
    filtered_count: int = 0


def pre_filter_emails(
    emails: Iterable[RawEmail],
    *,
    rules: ExtractionRules = DEFAULT_RULES,
    settings: ExtractionSettings | None = None,
) -> PreFilterResult:
    """Split emails into those worth extracting and a filtered count.

    Checked in order: calendar notifications are dropped, known biller
    domains pass, bill subject keywords pass, promotional subjects are
    dropped. Anything left passes when ``prefilter_pass_unmatched`` is set.
    """
    settings = settings or ExtractionSettings()
    result = PreFilterResult()

    for email in emails:
        sender = email.sender.lower()
        subject = email.subject.lower()

        if any(calendar in sender for calendar in rules.calendar_senders):
            result.filtered_count += 1
            continue
        if is_known_biller_domain(email.sender, rules=rules):
            result.passed.append(email)
            continue
        if any(keyword in subject for keyword in rules.bill_subject_keywords):
            result.passed.append(email)
            continue
        if any(keyword in subject for keyword in rules.promotional_filter_keywords):
            result.filtered_count += 1
            continue
        if settings.prefilter_pass_unmatched:
            result.passed.append(email)
        else:
            result.filtered_count += 1

    logger.info(
        "Pre-filter: %d passed, %d filtered", len(result.passed), result.filtered_count
    )
    return result


def is_known_biller_domain(
    sender: str, *, rules: ExtractionRules = DEFAULT_RULES
) -> bool:
    """True when the sender's domain, or a parent domain, is a known biller."""
    _, address = parseaddr(sender)
    if "@" not in address:
        return False
    domain = address.rpartition("@")[2].strip().lower()
    if domain in rules.known_biller_domains:
        return True
    return any(domain.endswith("." + known) for known in rules.known_biller_domains)
