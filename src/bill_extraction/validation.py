"""Validation, confidence reconciliation and routing for AI extractions."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from rapidfuzz.distance import Levenshtein
from slugify import slugify

from bill_extraction.config import ExtractionSettings
from bill_extraction.dates import as_date
from bill_extraction.models import BillClassification, CandidateSet, Decision, Route
from bill_extraction.rules import DEFAULT_RULES, ExtractionRules

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from bill_extraction.models import ExistingBill

logger = logging.getLogger(__name__)

_AMOUNT_TOLERANCE = Decimal("0.01")
_VENDOR_NOISE_WORDS = frozenset(
    {
        "the",
        "inc",
        "llc",
        "ltd",
        "co",
        "corp",
        "corporation",
        "company",
        "bill",
        "billing",
        "payments",
        "payment",
        "services",
        "statement",
    }
)


@dataclass(frozen=True)
class DuplicateMatch:
    bill_id: str
    reason: str


@dataclass
class ValidationResult:
    """Outcome of reconciling one AI classification with its candidates."""

    final_confidence: float
    route: Route
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    is_duplicate: bool = False
    duplicate_of: str | None = None
    duplicate_reason: str | None = None
    vendor_key: str | None = None
    account_last4: str | None = None


def validate_extraction(
    ai: BillClassification,
    candidates: CandidateSet,
    existing_bills: Sequence[ExistingBill] = (),
    *,
    vendor_name: str | None = None,
    account_text: str = "",
    reference_date: date | datetime | None = None,
    settings: ExtractionSettings | None = None,
    rules: ExtractionRules = DEFAULT_RULES,
) -> ValidationResult:
    """Validate an AI classification and assign its route.

    ``vendor_name`` overrides the AI name (the pipeline passes the refined
    product name). ``account_text`` is searched for trailing account digits
    when the AI gave no account hint. Amount and date plausibility are
    judged against ``reference_date``, the email receipt date.
    """
    settings = settings or ExtractionSettings()
    reference = as_date(reference_date)
    name = vendor_name or ai.vendor_name
    due_date = date.fromisoformat(ai.due_date) if ai.due_date else None
    warnings: list[str] = []
    errors: list[str] = []
    confidence = ai.confidence

    if ai.decision != Decision.NOT_BILL:
        _check_amount(ai.amount_due, settings, warnings, errors)
        _check_due_date(due_date, reference, settings, warnings, errors)

        top_amount = candidates.top_amount
        if ai.amount_due is not None and top_amount is not None:
            if abs(top_amount.value - ai.amount_due) <= _AMOUNT_TOLERANCE:
                confidence += settings.agreement_bonus
            else:
                confidence -= settings.mismatch_penalty
                warnings.append(
                    f"AI amount ${ai.amount_due} differs from extracted ${top_amount.value}"
                )

        top_date = candidates.top_date
        if ai.due_date is not None and top_date is not None:
            if top_date.value == ai.due_date:
                confidence += settings.agreement_bonus
            else:
                confidence -= settings.mismatch_penalty
                warnings.append(
                    f"AI due date {ai.due_date} differs from extracted {top_date.value}"
                )

        if ai.amount_due is None and ai.due_date is None:
            confidence -= settings.missing_fields_penalty
        if candidates.keyword_score >= settings.strong_keyword_score:
            confidence += settings.keyword_signal_bonus

    confidence = round(min(1.0, max(0.0, confidence)), 4)

    vendor_key = normalize_vendor_key(name, rules=rules) if name else None
    if vendor_key is None and ai.vendor_key:
        vendor_key = normalize_vendor_key(ai.vendor_key, rules=rules)
    account_last4 = extract_account_last4(ai.account_hint or "", rules=rules)
    if account_last4 is None:
        account_last4 = extract_account_last4(account_text, rules=rules)

    duplicate = None
    if ai.decision != Decision.NOT_BILL:
        duplicate = find_duplicate(
            existing_bills,
            vendor_key=vendor_key,
            name=name,
            amount=ai.amount_due,
            due_date=due_date,
            account_last4=account_last4,
            settings=settings,
            rules=rules,
        )
        if duplicate is not None:
            warnings.append(duplicate.reason)

    route = determine_route(
        ai.decision,
        confidence,
        has_errors=bool(errors),
        has_warnings=bool(warnings),
        is_duplicate=duplicate is not None,
        has_required_fields=bool(name) and due_date is not None,
        settings=settings,
    )
    return ValidationResult(
        final_confidence=confidence,
        route=route,
        warnings=warnings,
        errors=errors,
        is_duplicate=duplicate is not None,
        duplicate_of=duplicate.bill_id if duplicate else None,
        duplicate_reason=duplicate.reason if duplicate else None,
        vendor_key=vendor_key,
        account_last4=account_last4,
    )


def determine_route(
    decision: Decision,
    confidence: float,
    *,
    has_errors: bool = False,
    has_warnings: bool = False,
    is_duplicate: bool = False,
    has_required_fields: bool = True,
    settings: ExtractionSettings | None = None,
) -> Route:
    """Map a decision and its evidence to a terminal route.

    A BILL is never rejected; it auto-accepts only when every check is clean.
    """
    settings = settings or ExtractionSettings()
    if decision == Decision.NOT_BILL:
        return Route.REJECT
    if decision == Decision.UNCERTAIN:
        if confidence < settings.reject_threshold:
            return Route.REJECT
        return Route.NEEDS_REVIEW
    if (
        confidence >= settings.auto_accept_threshold
        and not has_errors
        and not has_warnings
        and not is_duplicate
        and has_required_fields
    ):
        return Route.AUTO_ACCEPT
    return Route.NEEDS_REVIEW


def normalize_vendor_key(
    name: str | None, *, rules: ExtractionRules = DEFAULT_RULES
) -> str | None:
    """Reduce a vendor or product name to a company-level key.

    "Chase Ink Business" -> "chase", "Amex Platinum" -> "amex". Unknown
    vendors are slugified with corporate and billing noise words removed.
    """
    if not name or not name.strip():
        return None
    lowered = name.lower()
    for alias, key in rules.base_company_aliases:
        if re.search(rf"\b{re.escape(alias)}\b", lowered):
            return key
    words = [w for w in re.findall(r"[a-z0-9&+]+", lowered) if w not in _VENDOR_NOISE_WORDS]
    slug = str(slugify(" ".join(words), max_length=50))
    return slug or None


def extract_account_last4(
    text: str, *, rules: ExtractionRules = DEFAULT_RULES
) -> str | None:
    """Find trailing account digits such as "(...1234)" or "ending in 1234"."""
    if not text:
        return None
    for pattern in rules.account_last4_patterns:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def find_duplicate(
    existing_bills: Iterable[ExistingBill],
    *,
    vendor_key: str | None,
    name: str | None = None,
    amount: Decimal | None = None,
    due_date: date | None = None,
    account_last4: str | None = None,
    settings: ExtractionSettings | None = None,
    rules: ExtractionRules = DEFAULT_RULES,
) -> DuplicateMatch | None:
    """Return the first existing bill this extraction duplicates.

    Same vendor (key equality, or a close name when both names are long
    enough) plus the same amount, due date or trailing account digits.
    """
    settings = settings or ExtractionSettings()
    if not vendor_key and not name:
        return None

    for bill in existing_bills:
        bill_key = bill.vendor_key or normalize_vendor_key(bill.name, rules=rules)
        same_vendor = bool(vendor_key) and vendor_key == bill_key
        if not same_vendor and not _names_close(name, bill.name, settings):
            continue

        if amount is not None and bill.amount is not None:
            if abs(amount - bill.amount) <= _AMOUNT_TOLERANCE:
                return DuplicateMatch(
                    bill.id, f'Similar to "{bill.name}" with same amount (${bill.amount})'
                )
        if due_date is not None and bill.due_date == due_date:
            return DuplicateMatch(
                bill.id, f'Similar to "{bill.name}" with same due date ({bill.due_date})'
            )
        if account_last4 and bill.account_last4 == account_last4:
            return DuplicateMatch(
                bill.id, f'Similar to "{bill.name}" with same account ending {account_last4}'
            )
    return None


def _names_close(a: str | None, b: str | None, settings: ExtractionSettings) -> bool:
    if not a or not b:
        return False
    left = re.sub(r"[^a-z0-9]", "", a.lower())
    right = re.sub(r"[^a-z0-9]", "", b.lower())
    minimum = settings.duplicate_name_min_length
    if len(left) < minimum or len(right) < minimum:
        return False
    return Levenshtein.distance(left, right) <= settings.duplicate_name_distance


def _check_amount(
    amount: Decimal | None,
    settings: ExtractionSettings,
    warnings: list[str],
    errors: list[str],
) -> None:
    if amount is None:
        return
    if amount < Decimal(str(settings.min_bill_amount)):
        errors.append(f"Amount ${amount} is below minimum (${settings.min_bill_amount})")
        return
    if amount > Decimal(str(settings.max_bill_amount)):
        errors.append(f"Amount ${amount} exceeds maximum (${settings.max_bill_amount})")
        return
    if amount > 1000 and amount == amount.to_integral_value():
        warnings.append(f"Amount ${amount} is a round number, verify it")
    if amount > Decimal(str(settings.suspicious_no_decimals_above)):
        warnings.append(f"Amount ${amount} is unusually high, verify it")


def _check_due_date(
    due_date: date | None,
    reference: date,
    settings: ExtractionSettings,
    warnings: list[str],
    errors: list[str],
) -> None:
    if due_date is None:
        return
    diff = (due_date - reference).days
    if diff > settings.max_future_days:
        errors.append(
            f"Due date {due_date} is more than {settings.max_future_days} days in the future"
        )
    elif diff < -settings.max_past_days:
        errors.append(
            f"Due date {due_date} is more than {settings.max_past_days} days in the past"
        )
    elif diff < 0:
        warnings.append(f"Due date {due_date} is in the past ({-diff} days ago)")
