"""Deterministic candidate extraction with keyword scoring.

Finds amount, due-date and vendor-name candidates in preprocessed email text
and runs the cheap skip filter that gates the AI call.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from email.utils import parseaddr

from bill_extraction.config import ExtractionSettings
from bill_extraction.dates import as_date, parse_date
from bill_extraction.models import (
    AmountCandidate,
    BillCategory,
    CandidateSet,
    DateCandidate,
    NameCandidate,
    RecurrenceInterval,
)
from bill_extraction.preprocess import extract_context
from bill_extraction.rules import DEFAULT_RULES, ExtractionRules

logger = logging.getLogger(__name__)

_PATTERN_RANK = {"total": 0, "general": 1, "minimum": 2}

_MINIMUM_LABEL = re.compile(r"minimum|\bmin\.?\s*(?:payment|due|amount)", re.IGNORECASE)
_TOTAL_LABEL = re.compile(
    r"(?:new|total|statement|current)\s*balance|amount\s*due|total\s*due|balance\s*due"
    r"|\btotal\b",
    re.IGNORECASE,
)
_RANGE_AFTER = re.compile(
    r"^\s*(?:-|–|to|through)\s*(?:\d{1,2}[/\-]\d{1,2}|[a-z]{3,9}\.?\s+\d{1,2})",
    re.IGNORECASE,
)
_RANGE_BEFORE = re.compile(
    r"(?:\d{1,2}[/\-]\d{1,2}(?:[/\-]\d{2,4})?|[a-z]{3,9}\.?\s+\d{1,2}(?:,?\s*\d{4})?)"
    r"\s*(?:-|–|to|through)\s*$",
    re.IGNORECASE,
)
_NAME_NOISE = re.compile(
    r"\b(?:billing|noreply|no-reply|donotreply|notifications?|alerts?|support|team)\b",
    re.IGNORECASE,
)
_GENERIC_DOMAIN_LABELS = frozenset(
    {"noreply", "billing", "notification", "notifications", "email", "mail", "info", "alerts"}
)
_FREE_MAIL_DOMAINS = frozenset(
    {"gmail", "googlemail", "yahoo", "hotmail", "outlook", "live", "aol", "proton", "protonmail"}
)
_SUBJECT_STOPWORDS = frozenset(
    {
        "your",
        "the",
        "new",
        "re",
        "fwd",
        "fw",
        "important",
        "reminder",
        "action",
        "required",
        "statement",
        "bill",
        "payment",
        "invoice",
        "account",
        "due",
    }
)


@dataclass(frozen=True)
class SkipCheck:
    should_skip: bool
    reason: str | None = None


@dataclass(frozen=True)
class KeywordScore:
    score: float
    matched: list[str] = field(default_factory=list)


def extract_candidates(
    text: str,
    subject: str,
    sender: str,
    *,
    reference: date | datetime | None = None,
    rules: ExtractionRules = DEFAULT_RULES,
    settings: ExtractionSettings | None = None,
) -> CandidateSet:
    """Run the skip filter, then extract amount, date and name candidates."""
    settings = settings or ExtractionSettings()

    skip = check_if_should_skip(subject, text, rules=rules)
    if skip.should_skip:
        logger.debug("Skipping %r: %s", subject[:60], skip.reason)
        return CandidateSet(should_skip=True, skip_reason=skip.reason)

    keywords = calculate_keyword_score(subject, text, rules=rules)
    if keywords.score < settings.min_keyword_score:
        reason = (
            f"Keyword score {keywords.score:.2f} below threshold "
            f"{settings.min_keyword_score}"
        )
        logger.debug("Skipping %r: %s", subject[:60], reason)
        return CandidateSet(
            keyword_score=keywords.score, should_skip=True, skip_reason=reason
        )

    full_text = f"{subject}\n{text}"
    amounts = extract_amount_candidates(full_text, rules=rules, settings=settings)
    dates = extract_date_candidates(full_text, reference, rules=rules)
    names = extract_name_candidates(sender, subject, text, rules=rules)
    category = names[0].category if names else None

    logger.debug(
        "Candidates for %r: score=%.2f amounts=%d dates=%d names=%d",
        subject[:60],
        keywords.score,
        len(amounts),
        len(dates),
        len(names),
    )
    return CandidateSet(
        amounts=amounts,
        dates=dates,
        names=names,
        keyword_score=keywords.score,
        recurrence=detect_recurrence(full_text, category, rules=rules),
    )


def check_if_should_skip(
    subject: str, body: str, *, rules: ExtractionRules = DEFAULT_RULES
) -> SkipCheck:
    """Decide whether an email is a confirmation or promotion.

    Skip keywords (payment confirmations, cancellations) always win, even
    over bill keywords. Promotional signals only skip when no bill signal is
    present.
    """
    subject_lower = " ".join(subject.lower().split())
    body_lower = " ".join(body.lower().split())
    combined = f"{subject_lower} {body_lower}"

    for keyword in rules.skip_keywords:
        if keyword in combined:
            return SkipCheck(True, f'Contains skip keyword: "{keyword}"')

    if has_bill_signals(combined, rules=rules):
        return SkipCheck(False)

    promo_count = sum(1 for keyword in rules.promotional_keywords if keyword in combined)
    if promo_count >= 2:
        return SkipCheck(
            True, f"Promotional-heavy ({promo_count} keywords) and no bill signals"
        )

    for indicator in rules.strong_promo_subject_indicators:
        if indicator in subject_lower:
            return SkipCheck(True, f'Promotional subject contains: "{indicator}"')

    return SkipCheck(False)


def has_bill_signals(text: str, *, rules: ExtractionRules = DEFAULT_RULES) -> bool:
    lowered = text.lower()
    return any(signal in lowered for signal in rules.bill_signals)


def calculate_keyword_score(
    subject: str, body: str, *, rules: ExtractionRules = DEFAULT_RULES
) -> KeywordScore:
    """Score bill likelihood from tiered keyword hits, capped at 1.0.

    High keywords add 0.3 each (max 0.6), medium 0.15 (max 0.3) and low
    0.05 (max 0.15).
    """
    text = f"{subject} {body}".lower()
    matched: list[str] = []
    score = 0.0
    for keywords, weight, cap in (
        (rules.bill_keywords_high, 0.3, 0.6),
        (rules.bill_keywords_medium, 0.15, 0.3),
        (rules.bill_keywords_low, 0.05, 0.15),
    ):
        tier = 0.0
        for keyword in keywords:
            if tier >= cap:
                break
            if keyword in text:
                matched.append(keyword)
                tier += weight
        score += min(tier, cap)
    return KeywordScore(score=round(min(score, 1.0), 4), matched=matched)


def extract_amount_candidates(
    text: str,
    *,
    rules: ExtractionRules = DEFAULT_RULES,
    settings: ExtractionSettings | None = None,
) -> list[AmountCandidate]:
    """Extract dollar amounts, best first.

    Minimum-payment amounts are dropped unless nothing else was found.
    Ordering: labeled totals before general amounts, amounts with cents
    before integral ones, then context keyword score, then the larger value.
    """
    settings = settings or ExtractionSettings()
    by_value: dict[Decimal, AmountCandidate] = {}

    for kind, patterns in (
        ("total", rules.total_amount_patterns),
        ("minimum", rules.minimum_amount_patterns),
        ("general", rules.general_amount_patterns),
    ):
        for pattern in patterns:
            for match in pattern.finditer(text):
                candidate = _amount_from_match(text, match, kind, rules, settings)
                if candidate is None:
                    continue
                existing = by_value.get(candidate.value)
                if existing is None or _amount_sort_key(candidate) < _amount_sort_key(existing):
                    by_value[candidate.value] = candidate

    pool = [c for c in by_value.values() if not c.is_minimum]
    if not pool:
        pool = list(by_value.values())
    return sorted(pool, key=_amount_sort_key)


def _amount_from_match(
    text: str,
    match: re.Match[str],
    kind: str,
    rules: ExtractionRules,
    settings: ExtractionSettings,
) -> AmountCandidate | None:
    digits = match.group(1).replace(",", "").rstrip(".")
    if not digits or not any(ch.isdigit() for ch in digits):
        return None
    # Part of a date such as 02/14/2026
    if re.match(r"[/\-]\d", text[match.end(1) : match.end(1) + 2]):
        return None
    if match.start(1) > 0 and text[match.start(1) - 1] in "/-":
        return None
    try:
        value = Decimal(digits)
    except InvalidOperation:
        return None
    has_decimals = "." in digits
    value = value.quantize(Decimal("0.01"))
    if not _is_plausible_amount(value, has_decimals, settings):
        return None

    position = match.start(1)
    prefix = text[max(0, position - 50) : position]
    label = _nearest_label(prefix)
    pattern_type = label or kind
    scoring_context = text[max(0, position - 50) : position + 20]
    score = sum(
        weighted.score
        for weighted in rules.amount_keyword_scores
        if weighted.pattern.search(scoring_context)
    )
    return AmountCandidate(
        value=value,
        score=score,
        context=extract_context(text, position),
        pattern_type=pattern_type,  # type: ignore[arg-type]
        position=position,
        has_decimals=has_decimals,
        near_dollar_sign="$" in prefix[-3:],
    )


def _nearest_label(prefix: str) -> str | None:
    # Only the text since the previous number or line belongs to this amount.
    segment = re.split(r"[\n\d]", prefix)[-1]
    if _MINIMUM_LABEL.search(segment):
        return "minimum"
    if _TOTAL_LABEL.search(segment):
        return "total"
    return None


def _is_plausible_amount(
    value: Decimal, has_decimals: bool, settings: ExtractionSettings
) -> bool:
    if value < Decimal(str(settings.min_bill_amount)):
        return False
    if value > Decimal(str(settings.max_bill_amount)):
        return False
    if not has_decimals and value > Decimal(str(settings.suspicious_no_decimals_above)):
        return False
    # Zip-code shaped: 10001, 20001
    return not (value > 1000 and value == value.to_integral_value() and value % 100 == 1)


def _amount_sort_key(candidate: AmountCandidate) -> tuple[int, int, float, Decimal]:
    return (
        _PATTERN_RANK[candidate.pattern_type],
        0 if candidate.has_decimals else 1,
        -candidate.score,
        -candidate.value,
    )


def extract_date_candidates(
    text: str,
    reference: date | datetime | None = None,
    *,
    rules: ExtractionRules = DEFAULT_RULES,
) -> list[DateCandidate]:
    """Extract due-date candidates normalized to YYYY-MM-DD.

    Ordered by pattern priority, then future dates before past ones, then
    distance from ``reference`` (the email receipt date).
    """
    ref = as_date(reference)
    seen: dict[str, DateCandidate] = {}

    for date_pattern in rules.date_patterns:
        for match in date_pattern.pattern.finditer(text):
            raw = match.group(1)
            if date_pattern.relative_days:
                value = ref + timedelta(days=int(raw))
                explicit_year = False
            else:
                if _is_part_of_range(text, match.start(1), match.end(1)):
                    continue
                parsed = parse_date(raw, ref)
                if parsed is None:
                    continue
                value = parsed.value
                explicit_year = parsed.explicit_year

            iso = value.isoformat()
            if iso in seen:
                continue
            context = extract_context(text, match.start())
            seen[iso] = DateCandidate(
                value=iso,
                score=sum(
                    weighted.score
                    for weighted in rules.date_keyword_scores
                    if weighted.pattern.search(context)
                ),
                context=context,
                priority=date_pattern.priority,
                raw=raw,
                position=match.start(1),
                explicit_year=explicit_year,
                is_relative=date_pattern.relative_days,
            )

    def sort_key(candidate: DateCandidate) -> tuple[int, int, int]:
        value = date.fromisoformat(candidate.value)
        return (
            candidate.priority,
            0 if value >= ref else 1,
            abs((value - ref).days),
        )

    return sorted(seen.values(), key=sort_key)


def _is_part_of_range(text: str, start: int, end: int) -> bool:
    """True if the date is one end of a billing period like ``11/20 - 12/19``."""
    after = text[end : end + 25]
    before = text[max(0, start - 25) : start]
    return bool(_RANGE_AFTER.match(after) or _RANGE_BEFORE.search(before))


def extract_name_candidates(
    sender: str,
    subject: str,
    body: str,
    *,
    rules: ExtractionRules = DEFAULT_RULES,
) -> list[NameCandidate]:
    """Extract vendor-name candidates, best first.

    A curated sender pattern match is refined into a product name when the
    subject or body names one; the refined category comes from the same
    match. Otherwise the sender domain, display name and subject are tried.
    """
    candidates: list[NameCandidate] = []
    base_name: str | None = None
    base_category: BillCategory | None = None

    for sender_pattern in rules.sender_patterns:
        if sender_pattern.pattern.search(sender) or sender_pattern.pattern.search(subject):
            base_category = sender_pattern.category
            if sender_pattern.name:
                base_name = sender_pattern.name
                candidates.append(
                    NameCandidate(base_name, "sender_pattern", 0.8, base_category)
                )
            break

    if base_name:
        full_text = f"{subject} {body}"
        for refinement in rules.product_refinements:
            if refinement.base_name == base_name and refinement.pattern.search(full_text):
                candidates.insert(
                    0,
                    NameCandidate(
                        refinement.refined_name,
                        "product_refinement",
                        0.9,
                        refinement.category or base_category,
                    ),
                )
                break

    display_name, address = parseaddr(sender)
    domain_name = _name_from_address(address)
    if domain_name and not _has_name(candidates, domain_name):
        candidates.append(NameCandidate(domain_name, "domain", 0.5, base_category))

    cleaned_display = " ".join(_NAME_NOISE.sub(" ", display_name.strip('"')).split())
    if len(cleaned_display) > 1 and not _has_name(candidates, cleaned_display):
        candidates.append(
            NameCandidate(cleaned_display, "display_name", 0.6, base_category)
        )

    if not candidates:
        word = _first_subject_word(subject)
        if word:
            candidates.append(NameCandidate(word, "subject", 0.3, base_category))

    return candidates


def _name_from_address(address: str) -> str | None:
    if "@" not in address:
        return None
    local, _, domain = address.lower().rpartition("@")
    labels = [label for label in domain.split(".") if label]
    if len(labels) < 2:
        return None
    label = labels[-2]
    if label in _FREE_MAIL_DOMAINS:
        local_name = re.split(r"[._+\-]", local)[0]
        if len(local_name) > 2 and local_name not in _GENERIC_DOMAIN_LABELS:
            return local_name.capitalize()
        return None
    if len(label) <= 2 or label in _GENERIC_DOMAIN_LABELS:
        return None
    return label.capitalize()


def _first_subject_word(subject: str) -> str | None:
    for word in re.findall(r"[A-Za-z][A-Za-z&'+]+", subject):
        if len(word) > 2 and word.lower() not in _SUBJECT_STOPWORDS:
            return word
    return None


def _has_name(candidates: list[NameCandidate], name: str) -> bool:
    lowered = name.lower()
    return any(c.value.lower() == lowered for c in candidates)


def detect_recurrence(
    text: str,
    category: BillCategory | None = None,
    *,
    rules: ExtractionRules = DEFAULT_RULES,
) -> RecurrenceInterval | None:
    """Infer a billing interval from wording, else from the category."""
    for pattern, interval in rules.recurrence_keywords:
        if pattern.search(text):
            return RecurrenceInterval(interval)
    if category is not None and category in rules.monthly_categories:
        return RecurrenceInterval.MONTHLY
    return None
