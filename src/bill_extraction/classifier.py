"""AI bill classification using pydantic-ai.

The agent is asked for strict JSON, which is parsed and validated into a
``BillClassification`` here. Callers receive a ``ClassifySuccess`` or a
``ClassifyFailure``; the raw model text never leaves this module.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from pydantic import ValidationError
from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError

from bill_extraction.config import (
    ExtractionSettings,
    get_anthropic_api_key,
    get_llm_model,
)
from bill_extraction.errors import AIResponseParseError
from bill_extraction.models import (
    BillClassification,
    CandidateSet,
    ClassificationEvidence,
    Decision,
    PaymentStatus,
    bill_type_for_category,
)

if TYPE_CHECKING:
    from datetime import date

    from bill_extraction.models import PaymentLinkCandidate

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You classify emails for a personal bill tracker and extract bill details.

Decide one of:
- BILL: the email asks the user to pay, or tells them a payment is coming up. \
This includes invoices, statements, payment reminders, autopay scheduled \
notices and "your bill is ready" emails from utilities, even without an amount.
- NOT_BILL: payment confirmations or receipts for payments already made, \
order or shipping updates, marketing and promotions, security alerts, \
sign-in or verification codes, password resets, app authorizations and \
product announcements.
- UNCERTAIN: the email may be a bill but the evidence is weak or conflicting.

Extraction rules:
- For credit cards use the New Balance or Statement Balance, not the \
minimum payment.
- Prefer a future due date over dates in the past.
- For autopay notices the scheduled payment date is the due date.
- Use null for anything the email does not state. Never guess.

Respond with one JSON object and nothing else: no prose, no code fences.\
"""

_RESPONSE_SCHEMA = """\
{
  "decision": "BILL" | "NOT_BILL" | "UNCERTAIN",
  "confidence": number between 0 and 1,
  "vendorName": string | null,
  "vendorKey": string | null,
  "billType": "credit_card" | "utility" | "subscription" | "rent" | "insurance" \
| "phone" | "internet" | "loan" | "invoice" | "autopay" | "other" | null,
  "amountDue": number | null,
  "dueDate": "YYYY-MM-DD" | null,
  "currency": "USD",
  "accountHint": string | null,
  "paymentStatus": "DUE" | "SCHEDULED" | "PAID" | "UNKNOWN",
  "paymentLink": string | null,
  "isRecurring": boolean | null,
  "recurrenceInterval": "weekly" | "biweekly" | "monthly" | "yearly" | null,
  "evidence": {"billSignals": [string], "notBillSignals": [string]},
  "reason": string
}"""

_PROMPT_RULES = """\
Rules:
- A clear payment confirmation ("thank you for your payment", "payment \
received") is NOT_BILL with paymentStatus PAID.
- vendorKey is the lowercase company name without product line, e.g. \
"chase" for "Chase Ink Business".
- accountHint is only the last digits shown, e.g. "1234".
- Quote evidence briefly, at most 80 characters per signal.
- The candidates below were found by pattern matching and may be wrong."""

MAX_CANDIDATES_IN_PROMPT = 5


@dataclass(frozen=True)
class ClassificationRequest:
    """Everything the classifier is allowed to see for one email."""

    from_name: str
    from_email: str
    subject: str
    received_date: date
    body_text: str
    candidates: CandidateSet = field(default_factory=CandidateSet)
    links: list[PaymentLinkCandidate] = field(default_factory=list)


@dataclass(frozen=True)
class ClassifySuccess:
    classification: BillClassification
    attempts: int = 1
    ok: Literal[True] = True


@dataclass(frozen=True)
class ClassifyFailure:
    kind: Literal["parse_error", "upstream_error", "timeout"]
    message: str
    raw_text: str | None = None
    attempts: int = 1
    ok: Literal[False] = False


ClassifyOutcome = ClassifySuccess | ClassifyFailure


def create_classifier_agent(
    settings: ExtractionSettings | None = None,
) -> Agent[None, str]:
    """Create a pydantic-ai Agent that answers with raw JSON text."""
    # Ensure API key is available (fail fast)
    get_anthropic_api_key()
    settings = settings or ExtractionSettings()

    model_name = get_llm_model()
    return Agent(
        f"anthropic:{model_name}",
        output_type=str,
        system_prompt=SYSTEM_PROMPT,
        model_settings={
            "temperature": 0.0,
            "max_tokens": 900,
            "timeout": settings.ai_timeout_seconds,
        },
    )


def build_user_prompt(request: ClassificationRequest) -> str:
    """Build the user prompt from the email and its candidates."""
    candidates = request.candidates
    amounts = [
        f"${c.value} ({c.pattern_type}): {c.context}"
        for c in candidates.amounts[:MAX_CANDIDATES_IN_PROMPT]
    ]
    dates = [
        f"{c.value} ({c.raw or 'relative'}): {c.context}"
        for c in candidates.dates[:MAX_CANDIDATES_IN_PROMPT]
    ]
    links = [
        f"{c.anchor_text} -> {c.url}" for c in request.links[:MAX_CANDIDATES_IN_PROMPT]
    ]

    parts = [
        "Classify this email and respond with JSON matching this schema:",
        _RESPONSE_SCHEMA,
        "",
        _PROMPT_RULES,
        "",
        f"FROM_NAME: {request.from_name}",
        f"FROM_EMAIL: {request.from_email}",
        f"SUBJECT: {request.subject}",
        f"DATE_RECEIVED: {request.received_date.isoformat()}",
        "",
        "BODY_TEXT:",
        request.body_text or "(no body content)",
        "",
        "AMOUNT_CANDIDATES:",
        *(amounts or ["(none)"]),
        "",
        "DATE_CANDIDATES:",
        *(dates or ["(none)"]),
        "",
        "LINK_CANDIDATES:",
        *(links or ["(none)"]),
    ]
    return "\n".join(parts)


def parse_classification(
    text: str, *, reference_date: date | None = None
) -> BillClassification:
    """Parse model output as strict JSON into a validated classification.

    Raises ``AIResponseParseError`` for non-JSON text, a non-object payload
    or a payload that fails schema validation.
    """
    try:
        data: Any = json.loads(text.strip())
    except json.JSONDecodeError as exc:
        msg = f"AI response is not valid JSON: {exc.msg}"
        raise AIResponseParseError(msg, raw_text=text) from exc
    if not isinstance(data, dict):
        msg = f"AI response must be a JSON object, got {type(data).__name__}"
        raise AIResponseParseError(msg, raw_text=text)

    try:
        return BillClassification.model_validate(
            data, context={"reference_date": reference_date}
        )
    except ValidationError as exc:
        msg = f"AI response failed validation: {exc.error_count()} error(s)"
        raise AIResponseParseError(msg, raw_text=text) from exc


class AgentClassifier:
    """Classify emails with a pydantic-ai agent.

    Accepts an optional agent for dependency injection in tests. Timeouts
    and transport errors are retried up to ``ai_max_retries`` times; rate
    limits (HTTP 429) and parse errors are not.
    """

    def __init__(
        self,
        agent: Agent[None, str] | None = None,
        *,
        settings: ExtractionSettings | None = None,
    ) -> None:
        self.settings = settings or ExtractionSettings()
        self._agent = agent

    @property
    def agent(self) -> Agent[None, str]:
        if self._agent is None:
            self._agent = create_classifier_agent(self.settings)
        return self._agent

    async def classify(self, request: ClassificationRequest) -> ClassifyOutcome:
        prompt = build_user_prompt(request)
        max_attempts = 1 + max(0, self.settings.ai_max_retries)
        failure = ClassifyFailure("upstream_error", "AI was not called", attempts=0)

        for attempt in range(1, max_attempts + 1):
            try:
                result: Any = await asyncio.wait_for(
                    self.agent.run(prompt), timeout=self.settings.ai_timeout_seconds
                )
            except TimeoutError:
                failure = ClassifyFailure(
                    "timeout",
                    f"AI call timed out after {self.settings.ai_timeout_seconds}s",
                    attempts=attempt,
                )
                continue
            except ModelHTTPError as exc:
                failure = ClassifyFailure("upstream_error", str(exc), attempts=attempt)
                if exc.status_code == 429:
                    logger.warning("AI rate limited, not retrying: %s", exc)
                    return failure
                continue
            except Exception as exc:
                failure = ClassifyFailure("upstream_error", str(exc), attempts=attempt)
                continue

            raw_text = str(result.output)
            try:
                classification = parse_classification(
                    raw_text, reference_date=request.received_date
                )
            except AIResponseParseError as exc:
                return ClassifyFailure(
                    "parse_error", str(exc), raw_text=exc.raw_text, attempts=attempt
                )
            return ClassifySuccess(classification, attempts=attempt)

        return failure


class HeuristicClassifier:
    """Decide from deterministic candidates alone, without an AI call.

    Used for offline runs. Strong keyword evidence with an amount or a due
    date is a BILL; moderate evidence is UNCERTAIN.
    """

    bill_score = 0.3

    async def classify(self, request: ClassificationRequest) -> ClassifyOutcome:
        candidates = request.candidates
        amount = candidates.top_amount
        due = candidates.top_date
        name = candidates.top_name
        text = f"{request.subject}\n{request.body_text}".lower()

        if "thank you for your payment" in text or "payment received" in text:
            decision = Decision.NOT_BILL
            confidence = 0.8
            status = PaymentStatus.PAID
        elif candidates.keyword_score >= self.bill_score and (amount or due):
            decision = Decision.BILL
            confidence = 0.55 + 0.1 * bool(amount) + 0.1 * bool(due)
            status = PaymentStatus.DUE
        else:
            decision = Decision.UNCERTAIN
            confidence = 0.5
            status = PaymentStatus.UNKNOWN

        signals = [c.context for c in (amount, due) if c is not None and c.context]
        classification = BillClassification(
            decision=decision,
            confidence=round(confidence, 4),
            vendor_name=name.value if name else None,
            bill_type=bill_type_for_category(name.category) if name else None,
            amount_due=amount.value if amount else None,
            due_date=due.value if due else None,
            payment_status=status,
            is_recurring=candidates.recurrence is not None,
            recurrence_interval=candidates.recurrence,
            evidence=ClassificationEvidence(bill_signals=signals),
            reason="Heuristic classification from extracted candidates",
        )
        return ClassifySuccess(classification, attempts=0)
