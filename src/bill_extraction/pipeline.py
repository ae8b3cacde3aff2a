"""Pipeline orchestration: per-email extraction, batches, sync and review.

``ExtractionPipeline.process_email`` runs one email through preprocessing,
candidate extraction, classification, validation and payment-link selection.
Per-email failures are captured in the returned ``EmailResult`` and never
raised, so a batch always completes with full statistics.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Literal, Protocol

from bill_extraction.candidates import extract_candidates
from bill_extraction.classifier import ClassificationRequest, ClassifyFailure
from bill_extraction.config import ExtractionSettings
from bill_extraction.errors import BillExtractionError
from bill_extraction.lifecycle import ExtractionStatus, status_for_route, transition
from bill_extraction.link_validation import validate_payment_link
from bill_extraction.links import extract_domain_from_email, extract_payment_link_candidates
from bill_extraction.models import (
    BillExtraction,
    Decision,
    EvidenceSnippet,
    ExtractedBill,
    Route,
    category_for_bill_type,
)
from bill_extraction.prefilter import pre_filter_emails
from bill_extraction.preprocess import preprocess
from bill_extraction.rules import DEFAULT_RULES, ExtractionRules
from bill_extraction.validation import (
    find_duplicate,
    normalize_vendor_key,
    validate_extraction,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from decimal import Decimal
    from uuid import UUID

    from bill_extraction.adapters.base import MailboxSource
    from bill_extraction.classifier import ClassifyOutcome
    from bill_extraction.link_selector import LinkSelection
    from bill_extraction.models import (
        BillCategory,
        BillClassification,
        CandidateSet,
        PaymentLinkCandidate,
        RawEmail,
    )
    from bill_extraction.store import BillStore

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    async def classify(self, request: ClassificationRequest) -> ClassifyOutcome: ...


class LinkSelector(Protocol):
    async def select(
        self,
        candidates: Sequence[PaymentLinkCandidate],
        *,
        vendor_name: str | None,
        sender_domain: str,
        subject: str,
    ) -> LinkSelection: ...


@dataclass
class EmailResult:
    email_id: str
    outcome: Literal["extracted", "skipped", "already_processed", "error"]
    extraction: BillExtraction | None = None
    bill: ExtractedBill | None = None
    reason: str | None = None
    error: str | None = None

    @property
    def route(self) -> Route | None:
        return self.extraction.route if self.extraction else None


@dataclass
class BatchStats:
    """Aggregate counts for one batch of emails."""

    total: int = 0
    processed: int = 0
    skipped: int = 0
    already_processed: int = 0
    errors: int = 0
    auto_accepted: int = 0
    needs_review: int = 0
    rejected: int = 0
    bills_created: int = 0
    cancelled: bool = False
    results: list[EmailResult] = field(default_factory=list)

    def record(self, result: EmailResult) -> None:
        self.results.append(result)
        if result.outcome == "error":
            self.errors += 1
            return
        if result.outcome == "already_processed":
            self.already_processed += 1
            return
        self.processed += 1
        if result.outcome == "skipped":
            self.skipped += 1
            return
        if result.route == Route.AUTO_ACCEPT:
            self.auto_accepted += 1
        elif result.route == Route.NEEDS_REVIEW:
            self.needs_review += 1
        else:
            self.rejected += 1
        if result.bill is not None:
            self.bills_created += 1


@dataclass
class SyncReport:
    status: Literal["completed", "skipped"]
    emails_fetched: int = 0
    emails_filtered: int = 0
    stats: BatchStats | None = None


@dataclass(frozen=True)
class ReviewCorrections:
    """User edits applied when a review item is confirmed."""

    name: str | None = None
    amount: Decimal | None = None
    due_date: date | None = None
    category: BillCategory | None = None


class ExtractionPipeline:
    def __init__(
        self,
        store: BillStore,
        classifier: Classifier,
        link_selector: LinkSelector,
        *,
        settings: ExtractionSettings | None = None,
        rules: ExtractionRules = DEFAULT_RULES,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.link_selector = link_selector
        self.settings = settings or ExtractionSettings()
        self.rules = rules
        self._user_locks: dict[str, asyncio.Lock] = {}

    async def process_email(
        self, email: RawEmail, user_id: str = "default", *, force: bool = False
    ) -> EmailResult:
        """Run one email through the pipeline. Never raises."""
        try:
            return await self._process_email(email, user_id, force=force)
        except Exception as exc:
            logger.warning("Pipeline error for email %s", email.id, exc_info=True)
            return EmailResult(email.id, "error", error=str(exc) or type(exc).__name__)

    async def _process_email(
        self, email: RawEmail, user_id: str, *, force: bool
    ) -> EmailResult:
        if not force and await asyncio.to_thread(
            self.store.has_extraction, user_id, email.id
        ):
            return EmailResult(email.id, "already_processed", reason="Email already processed")

        prepared = preprocess(email, self.settings)
        candidates = extract_candidates(
            prepared.text,
            email.subject,
            email.sender,
            reference=email.date,
            rules=self.rules,
            settings=self.settings,
        )
        if candidates.should_skip:
            logger.debug("Email %s skipped: %s", email.id, candidates.skip_reason)
            return EmailResult(email.id, "skipped", reason=candidates.skip_reason)

        links = extract_payment_link_candidates(
            prepared.truncated_html, rules=self.rules, settings=self.settings
        ).candidates
        request = ClassificationRequest(
            from_name=email.sender_name,
            from_email=email.sender_email,
            subject=email.subject,
            received_date=email.received_date,
            body_text=prepared.prompt_text,
            candidates=candidates,
            links=links,
        )
        outcome = await self.classifier.classify(request)
        if isinstance(outcome, ClassifyFailure):
            logger.warning(
                "Classification failed for email %s (%s): %s",
                email.id,
                outcome.kind,
                outcome.message,
            )
            return EmailResult(
                email.id, "error", error=f"{outcome.kind}: {outcome.message}"
            )

        ai = outcome.classification
        vendor_name, category = self._resolve_vendor(ai, candidates)
        existing_bills = await asyncio.to_thread(self.store.existing_bills, user_id)
        validation = validate_extraction(
            ai,
            candidates,
            existing_bills,
            vendor_name=vendor_name,
            account_text=f"{email.subject}\n{prepared.text}",
            reference_date=email.date,
            settings=self.settings,
            rules=self.rules,
        )

        payment_url = None
        payment_confidence = 0.0
        if ai.decision != Decision.NOT_BILL and links:
            payment_url, payment_confidence = await self._select_payment_link(
                email, user_id, vendor_name, links
            )

        is_recurring = (
            ai.is_recurring if ai.is_recurring is not None else candidates.recurrence is not None
        )
        interval = (ai.recurrence_interval or candidates.recurrence) if is_recurring else None

        extraction = BillExtraction(
            user_id=user_id,
            email_id=email.id,
            email_subject=email.subject,
            email_sender=email.sender,
            email_date=email.date,
            decision=ai.decision,
            confidence=validation.final_confidence,
            vendor_name=vendor_name,
            vendor_key=validation.vendor_key,
            category=category,
            amount_due=ai.amount_due,
            currency=ai.currency,
            due_date=date.fromisoformat(ai.due_date) if ai.due_date else None,
            is_recurring=is_recurring,
            recurrence_interval=interval,
            payment_status=ai.payment_status,
            account_hint=ai.account_hint,
            account_last4=validation.account_last4,
            payment_url=payment_url,
            payment_confidence=payment_confidence,
            evidence=_evidence(ai, candidates),
            warnings=validation.warnings,
            errors=validation.errors,
            is_duplicate=validation.is_duplicate,
            duplicate_of=validation.duplicate_of,
            duplicate_reason=validation.duplicate_reason,
            route=validation.route,
            status=status_for_route(validation.route),
            reason=ai.reason,
        )
        async with self._user_lock(user_id):
            extraction = await self._recheck_duplicate(extraction)
            bill = None
            if extraction.route == Route.AUTO_ACCEPT:
                bill = self._build_bill(extraction)
            await asyncio.to_thread(self.store.save_extraction, extraction, bill)
        logger.info(
            "Email %s: %s (%.2f) -> %s",
            email.id,
            extraction.decision.value,
            extraction.confidence,
            extraction.route.value,
        )
        return EmailResult(email.id, "extracted", extraction=extraction, bill=bill)

    async def process_batch(
        self,
        emails: Sequence[RawEmail],
        user_id: str = "default",
        *,
        cancel: asyncio.Event | None = None,
        force: bool = False,
    ) -> BatchStats:
        """Process emails in windows of ``batch_concurrency`` concurrent calls.

        Windows are separated by ``batch_delay_seconds``. Once ``cancel`` is
        set no new window starts; the window in flight finishes and is
        recorded.
        """
        stats = BatchStats(total=len(emails))
        size = max(1, self.settings.batch_concurrency)

        for start in range(0, len(emails), size):
            if start > 0 and self.settings.batch_delay_seconds > 0:
                await asyncio.sleep(self.settings.batch_delay_seconds)
            if cancel is not None and cancel.is_set():
                logger.info("Batch cancelled after %d of %d emails", start, len(emails))
                stats.cancelled = True
                break
            window = emails[start : start + size]
            results = await asyncio.gather(
                *(self.process_email(email, user_id, force=force) for email in window)
            )
            for result in results:
                stats.record(result)

        logger.info(
            "Batch done: %d processed, %d auto-accepted, %d for review, %d errors",
            stats.processed,
            stats.auto_accepted,
            stats.needs_review,
            stats.errors,
        )
        return stats

    async def sync_mailbox(
        self,
        source: MailboxSource,
        user_id: str,
        since: date,
        *,
        cancel: asyncio.Event | None = None,
    ) -> SyncReport:
        """Fetch, pre-filter and process a user's mail under the sync lock."""
        with self.store.sync_lock(user_id) as acquired:
            if not acquired:
                logger.info("Sync already in progress for user %s, skipping", user_id)
                return SyncReport(status="skipped")

            emails = await asyncio.to_thread(lambda: list(source.fetch_since(since, set())))
            filtered = pre_filter_emails(emails, rules=self.rules, settings=self.settings)
            stats = await self.process_batch(filtered.passed, user_id, cancel=cancel)
            return SyncReport(
                status="completed",
                emails_fetched=len(emails),
                emails_filtered=filtered.filtered_count,
                stats=stats,
            )

    def get_review_queue(self, user_id: str, limit: int = 50) -> list[BillExtraction]:
        return self.store.list_review_queue(user_id, limit)

    def confirm_extraction(
        self,
        user_id: str,
        extraction_id: UUID,
        corrections: ReviewCorrections | None = None,
    ) -> ExtractedBill:
        """Accept a review item, applying any corrections, and create its bill.

        The status change and the bill are written together, and only if the
        item is still in the status read here.
        """
        extraction = self.store.get_extraction(user_id, extraction_id)
        status = transition(extraction.status, ExtractionStatus.ACCEPTED)

        updates: dict[str, object] = {"status": status}
        if corrections is not None:
            if corrections.name:
                updates["vendor_name"] = corrections.name
                updates["vendor_key"] = normalize_vendor_key(
                    corrections.name, rules=self.rules
                )
            if corrections.amount is not None:
                updates["amount_due"] = corrections.amount
            if corrections.due_date is not None:
                updates["due_date"] = corrections.due_date
            if corrections.category is not None:
                updates["category"] = corrections.category
        accepted = extraction.model_copy(update=updates)

        bill = self._build_bill(accepted)
        self.store.update_extraction(accepted, expected_status=extraction.status, bill=bill)
        return bill

    def reject_extraction(self, user_id: str, extraction_id: UUID) -> BillExtraction:
        extraction = self.store.get_extraction(user_id, extraction_id)
        status = transition(extraction.status, ExtractionStatus.REJECTED)
        rejected = extraction.model_copy(update={"status": status})
        self.store.update_extraction(rejected, expected_status=extraction.status)
        return rejected

    async def _select_payment_link(
        self,
        email: RawEmail,
        user_id: str,
        vendor_name: str | None,
        links: list[PaymentLinkCandidate],
    ) -> tuple[str | None, float]:
        sender_domain = extract_domain_from_email(email.sender)
        selection = await self.link_selector.select(
            links,
            vendor_name=vendor_name,
            sender_domain=sender_domain,
            subject=email.subject,
        )
        if selection.url is None:
            return None, 0.0

        check = validate_payment_link(
            selection.url,
            sender_domain,
            vendor_name,
            allowed_domains=await asyncio.to_thread(
                self.store.allowed_payment_domains, user_id, vendor_name
            ),
            rules=self.rules,
            settings=self.settings,
        )
        if not check.is_valid:
            logger.info(
                "Payment link for email %s rejected: %s", email.id, "; ".join(check.errors)
            )
            return None, 0.0
        return check.url, selection.confidence

    def _resolve_vendor(
        self, ai: BillClassification, candidates: CandidateSet
    ) -> tuple[str | None, BillCategory | None]:
        """Pick the vendor name and category that go together.

        A refined product name ("Chase Ink Business") wins when it belongs to
        the same company as the AI's vendor. The category comes from the
        name candidate for that company, else from the AI bill type.
        """
        name = ai.vendor_name
        ai_key = normalize_vendor_key(ai.vendor_name or ai.vendor_key, rules=self.rules)

        refined = next(
            (n for n in candidates.names if n.source == "product_refinement"), None
        )
        if refined is not None and (
            ai_key is None or ai_key == normalize_vendor_key(refined.value, rules=self.rules)
        ):
            return refined.value, refined.category or category_for_bill_type(ai.bill_type)

        if name is None and candidates.top_name is not None:
            name = candidates.top_name.value
        key = normalize_vendor_key(name, rules=self.rules)
        for candidate in candidates.names:
            if candidate.category is not None and (
                normalize_vendor_key(candidate.value, rules=self.rules) == key
            ):
                return name, candidate.category
        return name, category_for_bill_type(ai.bill_type)

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def _recheck_duplicate(self, extraction: BillExtraction) -> BillExtraction:
        """Catch a bill created by another email since validation ran.

        Call with the user's lock held.
        """
        if extraction.route != Route.AUTO_ACCEPT:
            return extraction
        existing = await asyncio.to_thread(self.store.existing_bills, extraction.user_id)
        duplicate = find_duplicate(
            existing,
            vendor_key=extraction.vendor_key,
            name=extraction.vendor_name,
            amount=extraction.amount_due,
            due_date=extraction.due_date,
            account_last4=extraction.account_last4,
            settings=self.settings,
            rules=self.rules,
        )
        if duplicate is None:
            return extraction
        logger.info(
            "Email %s duplicates bill %s, sending to review",
            extraction.email_id,
            duplicate.bill_id,
        )
        return extraction.model_copy(
            update={
                "route": Route.NEEDS_REVIEW,
                "status": status_for_route(Route.NEEDS_REVIEW),
                "is_duplicate": True,
                "duplicate_of": duplicate.bill_id,
                "duplicate_reason": duplicate.reason,
                "warnings": [*extraction.warnings, duplicate.reason],
            }
        )

    def _build_bill(self, extraction: BillExtraction) -> ExtractedBill:
        if not extraction.vendor_name or extraction.due_date is None:
            msg = "Cannot create bill: missing name or due date"
            raise BillExtractionError(msg)

        payment_url = None
        if extraction.payment_confidence >= self.settings.link_autofill_threshold:
            payment_url = extraction.payment_url
        return ExtractedBill(
            user_id=extraction.user_id,
            extraction_id=extraction.id,
            name=extraction.vendor_name,
            amount=extraction.amount_due,
            due_date=extraction.due_date,
            category=extraction.category,
            vendor_key=extraction.vendor_key,
            account_last4=extraction.account_last4,
            is_recurring=extraction.is_recurring,
            recurrence_interval=extraction.recurrence_interval,
            payment_url=payment_url,
        )


def _evidence(ai: BillClassification, candidates: CandidateSet) -> list[EvidenceSnippet]:
    snippets = [
        EvidenceSnippet(signal="bill", text=text, source="ai")
        for text in ai.evidence.bill_signals
    ]
    snippets.extend(
        EvidenceSnippet(signal="not_bill", text=text, source="ai")
        for text in ai.evidence.not_bill_signals
    )
    for candidate in (candidates.top_amount, candidates.top_date):
        if candidate is not None and candidate.context:
            snippets.append(
                EvidenceSnippet(signal="bill", text=candidate.context, source="deterministic")
            )
    return snippets
