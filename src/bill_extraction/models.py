"""Domain and extraction models for bill extraction."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from email.utils import parseaddr
from enum import StrEnum
from typing import Any, Literal
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from bill_extraction.dates import normalize_due_date
from bill_extraction.lifecycle import ExtractionStatus

EVIDENCE_MAX_CHARS = 80

_CENT = Decimal("0.01")


class Decision(StrEnum):
    BILL = "BILL"
    NOT_BILL = "NOT_BILL"
    UNCERTAIN = "UNCERTAIN"


class Route(StrEnum):
    AUTO_ACCEPT = "auto_accept"
    NEEDS_REVIEW = "needs_review"
    REJECT = "reject"


class BillCategory(StrEnum):
    UTILITIES = "utilities"
    SUBSCRIPTION = "subscription"
    RENT = "rent"
    HOUSING = "housing"
    INSURANCE = "insurance"
    PHONE = "phone"
    INTERNET = "internet"
    CREDIT_CARD = "credit_card"
    LOAN = "loan"
    OTHER = "other"


class BillType(StrEnum):
    CREDIT_CARD = "credit_card"
    UTILITY = "utility"
    SUBSCRIPTION = "subscription"
    RENT = "rent"
    INSURANCE = "insurance"
    PHONE = "phone"
    INTERNET = "internet"
    LOAN = "loan"
    INVOICE = "invoice"
    AUTOPAY = "autopay"
    OTHER = "other"


class PaymentStatus(StrEnum):
    DUE = "DUE"
    SCHEDULED = "SCHEDULED"
    PAID = "PAID"
    UNKNOWN = "UNKNOWN"


class RecurrenceInterval(StrEnum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


def normalize_confidence(value: Any) -> float:
    """Coerce a model-supplied confidence into [0, 1].

    Values above 1 are treated as a 0-100 scale. Anything that is not a
    finite number normalizes to 0.0.
    """
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    if number > 1.0:
        number = number / 100.0
    return min(1.0, max(0.0, number))


def parse_amount(value: Any) -> Decimal | None:
    """Parse ``1204.33``, ``"$1,204.33"`` or ``None`` into a 2dp Decimal.

    Raises ``ValueError`` for strings that are not amounts.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        msg = f"Not an amount: {value!r}"
        raise ValueError(msg)
    if isinstance(value, float) and not math.isfinite(value):
        msg = f"Not an amount: {value!r}"
        raise ValueError(msg)
    text = str(value).strip().replace(",", "").replace("$", "").strip()
    try:
        amount = Decimal(text)
    except InvalidOperation:
        msg = f"Not an amount: {value!r}"
        raise ValueError(msg) from None
    if not amount.is_finite():
        msg = f"Not an amount: {value!r}"
        raise ValueError(msg)
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RawEmail:
    """Raw email as delivered by a mailbox source. Never mutated."""

    id: str
    sender: str
    subject: str
    date: datetime
    body_plain: str | None = None
    body_html: str | None = None

    @property
    def sender_name(self) -> str:
        name, address = parseaddr(self.sender)
        return name.strip().strip('"') or address.split("@")[0]

    @property
    def sender_email(self) -> str:
        _, address = parseaddr(self.sender)
        return address.strip().lower()

    @property
    def received_date(self) -> date:
        return self.date.date()


@dataclass(frozen=True)
class AmountCandidate:
    """A dollar amount found in the email text."""

    value: Decimal
    score: float
    context: str
    pattern_type: Literal["total", "general", "minimum"]
    position: int = 0
    has_decimals: bool = True
    near_dollar_sign: bool = True

    @property
    def is_minimum(self) -> bool:
        return self.pattern_type == "minimum"


@dataclass(frozen=True)
class DateCandidate:
    """A date found in the email text, normalized to YYYY-MM-DD."""

    value: str
    score: float
    context: str
    priority: int
    raw: str = ""
    position: int = 0
    explicit_year: bool = False
    is_relative: bool = False


@dataclass(frozen=True)
class NameCandidate:
    """A vendor name with the category that came from the same match."""

    value: str
    source: Literal["sender_pattern", "product_refinement", "domain", "display_name", "subject"]
    confidence: float
    category: BillCategory | None = None


@dataclass(frozen=True)
class PaymentLinkCandidate:
    """An anchor from the email HTML that may be a payment link."""

    url: str
    anchor_text: str
    domain: str
    score: int
    position: int
    context: str = ""


@dataclass
class CandidateSet:
    """Deterministic extraction output for one email."""

    amounts: list[AmountCandidate] = field(default_factory=list)
    dates: list[DateCandidate] = field(default_factory=list)
    names: list[NameCandidate] = field(default_factory=list)
    keyword_score: float = 0.0
    recurrence: RecurrenceInterval | None = None
    should_skip: bool = False
    skip_reason: str | None = None

    @property
    def top_amount(self) -> AmountCandidate | None:
        return self.amounts[0] if self.amounts else None

    @property
    def top_date(self) -> DateCandidate | None:
        return self.dates[0] if self.dates else None

    @property
    def top_name(self) -> NameCandidate | None:
        return self.names[0] if self.names else None


class EvidenceSnippet(BaseModel):
    """Short text fragment that supports a BILL or NOT_BILL signal."""

    signal: Literal["bill", "not_bill"]
    text: str
    source: Literal["ai", "deterministic"]

    @field_validator("text", mode="before")
    @classmethod
    def _truncate(cls, value: Any) -> str:
        return _truncate_evidence(value)


class ClassificationEvidence(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    bill_signals: list[str] = Field(default_factory=list)
    not_bill_signals: list[str] = Field(default_factory=list)

    @field_validator("bill_signals", "not_bill_signals", mode="before")
    @classmethod
    def _coerce_signals(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [_truncate_evidence(item) for item in value if str(item).strip()]


class BillClassification(BaseModel):
    """Validated AI classification of one email.

    Field aliases match the camelCase JSON the model is asked to return.
    Pass ``context={"reference_date": date}`` to ``model_validate`` so bare
    due dates roll relative to the email's receipt date.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    decision: Decision
    confidence: float = Field(ge=0.0, le=1.0)
    vendor_name: str | None = None
    vendor_key: str | None = None
    bill_type: BillType | None = None
    amount_due: Decimal | None = None
    due_date: str | None = None
    currency: str = "USD"
    account_hint: str | None = None
    payment_status: PaymentStatus = PaymentStatus.UNKNOWN
    payment_link: str | None = None
    is_recurring: bool | None = None
    recurrence_interval: RecurrenceInterval | None = None
    evidence: ClassificationEvidence = Field(default_factory=ClassificationEvidence)
    reason: str = ""

    @field_validator("decision", mode="before")
    @classmethod
    def _upper_decision(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalize_confidence(cls, value: Any) -> float:
        return normalize_confidence(value)

    @field_validator("vendor_name", "vendor_key", "account_hint", "payment_link", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("bill_type", mode="before")
    @classmethod
    def _coerce_bill_type(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        normalized = str(value).strip().lower().replace(" ", "_").replace("-", "_")
        if normalized in BillType._value2member_map_:
            return normalized
        return BillType.OTHER

    @field_validator("amount_due", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> Decimal | None:
        return parse_amount(value)

    @field_validator("due_date", mode="before")
    @classmethod
    def _normalize_due_date(cls, value: Any, info: ValidationInfo) -> str | None:
        if value is None or value == "":
            return None
        reference = (info.context or {}).get("reference_date")
        return normalize_due_date(str(value), reference)

    @field_validator("currency", mode="before")
    @classmethod
    def _default_currency(cls, value: Any) -> str:
        if not value or not isinstance(value, str):
            return "USD"
        return value.strip().upper()

    @field_validator("payment_status", mode="before")
    @classmethod
    def _coerce_payment_status(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return PaymentStatus.UNKNOWN
        normalized = value.strip().upper()
        if normalized in PaymentStatus._value2member_map_:
            return normalized
        return PaymentStatus.UNKNOWN

    @field_validator("recurrence_interval", mode="before")
    @classmethod
    def _coerce_interval(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower()
        aliases = {"annual": "yearly", "annually": "yearly", "bi-weekly": "biweekly"}
        normalized = aliases.get(normalized, normalized)
        if normalized in RecurrenceInterval._value2member_map_:
            return normalized
        return None

    @field_validator("reason", mode="before")
    @classmethod
    def _reason_text(cls, value: Any) -> str:
        return "" if value is None else str(value)


class ExistingBill(BaseModel):
    """A bill the user already tracks, used for duplicate detection."""

    id: str
    name: str
    amount: Decimal | None = None
    due_date: date | None = None
    vendor_key: str | None = None
    account_last4: str | None = None
    category: BillCategory | None = None


class BillExtraction(BaseModel):
    """Full extraction record as stored for one (user, email) pair."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str = "default"
    email_id: str
    email_subject: str | None = None
    email_sender: str | None = None
    email_date: datetime | None = None
    decision: Decision
    confidence: float = Field(ge=0.0, le=1.0)
    vendor_name: str | None = None
    vendor_key: str | None = None
    category: BillCategory | None = None
    amount_due: Decimal | None = None
    currency: str = "USD"
    due_date: date | None = None
    is_recurring: bool = False
    recurrence_interval: RecurrenceInterval | None = None
    payment_status: PaymentStatus = PaymentStatus.UNKNOWN
    account_hint: str | None = None
    account_last4: str | None = None
    payment_url: str | None = None
    payment_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    evidence: list[EvidenceSnippet] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    is_duplicate: bool = False
    duplicate_of: str | None = None
    duplicate_reason: str | None = None
    route: Route
    status: ExtractionStatus
    reason: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _bill_is_never_rejected(self) -> BillExtraction:
        if self.decision == Decision.BILL and self.route == Route.REJECT:
            msg = "A BILL decision cannot be routed to reject"
            raise ValueError(msg)
        return self


class ExtractedBill(BaseModel):
    """A bill created from an accepted extraction."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    extraction_id: UUID
    name: str
    amount: Decimal | None = None
    due_date: date | None = None
    category: BillCategory | None = None
    vendor_key: str | None = None
    account_last4: str | None = None
    is_recurring: bool = False
    recurrence_interval: RecurrenceInterval | None = None
    payment_url: str | None = None


def _truncate_evidence(value: Any) -> str:
    text = " ".join(str(value).split())
    if len(text) <= EVIDENCE_MAX_CHARS:
        return text
    return text[: EVIDENCE_MAX_CHARS - 3].rstrip() + "..."


_CATEGORY_BY_BILL_TYPE = {
    BillType.CREDIT_CARD: BillCategory.CREDIT_CARD,
    BillType.UTILITY: BillCategory.UTILITIES,
    BillType.SUBSCRIPTION: BillCategory.SUBSCRIPTION,
    BillType.RENT: BillCategory.RENT,
    BillType.INSURANCE: BillCategory.INSURANCE,
    BillType.PHONE: BillCategory.PHONE,
    BillType.INTERNET: BillCategory.INTERNET,
    BillType.LOAN: BillCategory.LOAN,
}


def category_for_bill_type(bill_type: BillType | None) -> BillCategory | None:
    """Map an AI ``billType`` onto a bill category (invoice/autopay -> other)."""
    if bill_type is None:
        return None
    return _CATEGORY_BY_BILL_TYPE.get(bill_type, BillCategory.OTHER)


def bill_type_for_category(category: BillCategory | None) -> BillType | None:
    if category is None:
        return None
    for bill_type, mapped in _CATEGORY_BY_BILL_TYPE.items():
        if mapped == category:
            return bill_type
    return BillType.OTHER
