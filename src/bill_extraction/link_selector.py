"""Pick the best payment link from extracted candidates."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from pydantic_ai import Agent

from bill_extraction.config import (
    ExtractionSettings,
    get_anthropic_api_key,
    get_llm_model,
)
from bill_extraction.models import normalize_confidence

if TYPE_CHECKING:
    from collections.abc import Sequence

    from bill_extraction.models import PaymentLinkCandidate

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You choose the payment link in a bill email. You are given numbered link \
candidates that were extracted from the email.

Only ever select one of the numbered candidates; never invent or edit a URL. \
Prefer, in order: a direct "pay now" link, a "view and pay" bill link, an \
autopay or payment setup link, and finally a plain account sign-in link. \
If no candidate is a reasonable way to pay this bill, select null.

Respond with one JSON object and nothing else:
{"selectedIndex": number (1-based) | null, "confidence": number between 0 and 1, \
"evidence": string, "reasoning": string}\
"""

SHORTCUT_CONFIDENCE = 0.85
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class LinkSelectionResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    selected_index: int | None = None
    confidence: float = 0.0
    evidence: str = ""
    reasoning: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalize_confidence(cls, value: Any) -> float:
        return normalize_confidence(value)

    @field_validator("evidence", "reasoning", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return "" if value is None else str(value)


@dataclass(frozen=True)
class LinkSelection:
    url: str | None
    confidence: float = 0.0
    evidence: str = ""
    reasoning: str = ""
    index: int | None = None
    source: Literal["ai", "shortcut", "top_candidate", "none"] = "none"


def build_link_prompt(
    candidates: Sequence[PaymentLinkCandidate],
    *,
    vendor_name: str | None,
    sender_domain: str,
    subject: str,
) -> str:
    lines = [
        "BILL CONTEXT:",
        f"Vendor: {vendor_name or 'unknown'}",
        f"Sender Domain: {sender_domain or 'unknown'}",
        f"Email Subject: {subject}",
        "",
        "PAYMENT LINK CANDIDATES:",
    ]
    for number, candidate in enumerate(candidates, start=1):
        lines.extend(
            [
                f"{number}. URL: {candidate.url}",
                f"   Anchor Text: {candidate.anchor_text}",
                f"   Domain: {candidate.domain}",
                f"   Score: {candidate.score}",
                f"   Context: {candidate.context}",
            ]
        )
    return "\n".join(lines)


def parse_link_selection(text: str) -> LinkSelectionResponse | None:
    """Parse the selector's JSON reply, tolerating a code fence around it."""
    cleaned = _FENCE.sub("", text.strip())
    try:
        data = json.loads(cleaned)
        return LinkSelectionResponse.model_validate(data)
    except (json.JSONDecodeError, ValidationError):
        logger.warning("Unparseable link selection response: %.200s", text)
        return None


def create_link_selector_agent(
    settings: ExtractionSettings | None = None,
) -> Agent[None, str]:
    get_anthropic_api_key()
    settings = settings or ExtractionSettings()
    return Agent(
        f"anthropic:{get_llm_model()}",
        output_type=str,
        system_prompt=SYSTEM_PROMPT,
        model_settings={
            "temperature": 0.0,
            "max_tokens": 512,
            "timeout": settings.ai_timeout_seconds,
        },
    )


class AgentLinkSelector:
    """Select a payment link with a pydantic-ai agent.

    A single candidate scoring at least ``single_link_shortcut_score`` is
    taken without an AI call. Indexes outside the candidate list are
    treated as no selection.
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
            self._agent = create_link_selector_agent(self.settings)
        return self._agent

    async def select(
        self,
        candidates: Sequence[PaymentLinkCandidate],
        *,
        vendor_name: str | None,
        sender_domain: str,
        subject: str,
    ) -> LinkSelection:
        if not candidates:
            return LinkSelection(None, reasoning="No payment link candidates")
        if (
            len(candidates) == 1
            and candidates[0].score >= self.settings.single_link_shortcut_score
        ):
            only = candidates[0]
            return LinkSelection(
                only.url,
                confidence=SHORTCUT_CONFIDENCE,
                evidence=only.anchor_text,
                reasoning="Single high-scoring candidate",
                index=1,
                source="shortcut",
            )

        prompt = build_link_prompt(
            candidates,
            vendor_name=vendor_name,
            sender_domain=sender_domain,
            subject=subject,
        )
        try:
            result: Any = await asyncio.wait_for(
                self.agent.run(prompt), timeout=self.settings.ai_timeout_seconds
            )
        except TimeoutError:
            logger.warning("Payment link selection timed out")
            return LinkSelection(None, reasoning="AI call timed out")
        except Exception as exc:
            logger.warning("Payment link selection failed: %s", exc)
            return LinkSelection(None, reasoning=f"AI error: {exc}")

        response = parse_link_selection(str(result.output))
        if response is None:
            return LinkSelection(None, reasoning="Failed to parse AI response")
        if response.selected_index is None:
            return LinkSelection(None, reasoning=response.reasoning, source="ai")
        if not 1 <= response.selected_index <= len(candidates):
            return LinkSelection(
                None, reasoning=f"Invalid selection index: {response.selected_index}"
            )

        chosen = candidates[response.selected_index - 1]
        return LinkSelection(
            chosen.url,
            confidence=response.confidence,
            evidence=response.evidence or chosen.anchor_text,
            reasoning=response.reasoning,
            index=response.selected_index,
            source="ai",
        )


class TopCandidateLinkSelector:
    """Offline selector: take the highest-scoring candidate."""

    def __init__(self, settings: ExtractionSettings | None = None) -> None:
        self.settings = settings or ExtractionSettings()

    async def select(
        self,
        candidates: Sequence[PaymentLinkCandidate],
        *,
        vendor_name: str | None,
        sender_domain: str,
        subject: str,
    ) -> LinkSelection:
        if not candidates:
            return LinkSelection(None, reasoning="No payment link candidates")
        best = candidates[0]
        strong = best.score >= self.settings.single_link_shortcut_score
        return LinkSelection(
            best.url,
            confidence=SHORTCUT_CONFIDENCE if strong else 0.7,
            evidence=best.anchor_text,
            reasoning="Highest scoring candidate",
            index=1,
            source="top_candidate",
        )
