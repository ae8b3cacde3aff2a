"""Tests for bill_extraction.pipeline."""

from __future__ import annotations

import asyncio
import json
import threading
from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from bill_extraction.classifier import (
    AgentClassifier,
    ClassificationRequest,
    ClassifyFailure,
    ClassifySuccess,
    HeuristicClassifier,
    parse_classification,
)
from bill_extraction.config import ExtractionSettings
from bill_extraction.errors import BillExtractionError, InvalidTransitionError
from bill_extraction.lifecycle import ExtractionStatus
from bill_extraction.link_selector import LinkSelection, TopCandidateLinkSelector
from bill_extraction.models import (
    BillCategory,
    Decision,
    ExistingBill,
    RawEmail,
    RecurrenceInterval,
    Route,
)
from bill_extraction.pipeline import ExtractionPipeline, ReviewCorrections
from bill_extraction.store import InMemoryBillStore

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from bill_extraction.models import BillExtraction, ExtractedBill, PaymentLinkCandidate

USER = "alice"
PAY_LINK_HTML = '<p>Your statement is ready. <a href="{url}">Pay Now</a></p>'


def _classifier(response: str) -> MagicMock:
    classifier = MagicMock()
    classifier.classify = AsyncMock(
        return_value=ClassifySuccess(parse_classification(response))
    )
    return classifier


def _pipeline(
    store: InMemoryBillStore, classifier: Any, settings: ExtractionSettings
) -> ExtractionPipeline:
    return ExtractionPipeline(
        store, classifier, TopCandidateLinkSelector(settings), settings=settings
    )


def _with_link(email: RawEmail, url: str) -> RawEmail:
    return replace(email, body_html=PAY_LINK_HTML.format(url=url))


def _duplicate_store() -> InMemoryBillStore:
    return InMemoryBillStore(
        existing={
            USER: [
                ExistingBill(
                    id="bill-1", name="Chase", vendor_key="chase", amount=Decimal("1204.33")
                )
            ]
        }
    )


class SlowLinkSelector:
    """Yields to the event loop before answering, like a real AI call."""

    async def select(
        self,
        candidates: Sequence[PaymentLinkCandidate],
        *,
        vendor_name: str | None,
        sender_domain: str,
        subject: str,
    ) -> LinkSelection:
        await asyncio.sleep(0.01)
        return LinkSelection(None)


class ThreadRecordingStore(InMemoryBillStore):
    """Records the thread each blocking store call ran on."""

    def __init__(self) -> None:
        super().__init__()
        self.threads: dict[str, int] = {}

    def has_extraction(self, user_id: str, email_id: str) -> bool:
        self.threads["has_extraction"] = threading.get_ident()
        return super().has_extraction(user_id, email_id)

    def existing_bills(self, user_id: str) -> list[ExistingBill]:
        self.threads["existing_bills"] = threading.get_ident()
        return super().existing_bills(user_id)

    def save_extraction(
        self, extraction: BillExtraction, bill: ExtractedBill | None = None
    ) -> None:
        self.threads["save_extraction"] = threading.get_ident()
        super().save_extraction(extraction, bill)


class FakeMailbox:
    def __init__(self, emails: list[RawEmail]) -> None:
        self.emails = emails
        self.calls: list[date] = []

    def fetch_since(self, since: date, seen_ids: set[str]) -> Iterator[RawEmail]:
        self.calls.append(since)
        yield from self.emails


class TestProcessEmail:
    @pytest.mark.asyncio
    async def test_chase_statement_auto_accepted(
        self,
        store: InMemoryBillStore,
        settings: ExtractionSettings,
        chase_email: RawEmail,
        chase_response: str,
    ) -> None:
        agent = MagicMock()
        agent.run = AsyncMock(return_value=MagicMock(output=chase_response))
        pipeline = _pipeline(store, AgentClassifier(agent, settings=settings), settings)

        result = await pipeline.process_email(chase_email, USER)

        assert result.outcome == "extracted"
        extraction = result.extraction
        assert extraction is not None
        assert extraction.decision == Decision.BILL
        assert extraction.route == Route.AUTO_ACCEPT
        assert extraction.status == ExtractionStatus.AUTO_ACCEPTED
        assert extraction.vendor_name == "Chase Ink Business"
        assert extraction.vendor_key == "chase"
        assert extraction.category == BillCategory.CREDIT_CARD
        assert extraction.amount_due == Decimal("1204.33")
        assert extraction.due_date == date(2026, 2, 14)
        assert extraction.recurrence_interval == RecurrenceInterval.MONTHLY
        assert any(e.source == "deterministic" for e in extraction.evidence)
        assert store.has_extraction(USER, chase_email.id)

        bill = result.bill
        assert bill is not None
        assert bill.name == "Chase Ink Business"
        assert bill.amount == Decimal("1204.33")
        assert bill.due_date == date(2026, 2, 14)
        assert store.created_bills == [bill]

        prompt: str = agent.run.call_args[0][0]
        assert "AMOUNT_CANDIDATES:\n$1204.33 (total)" in prompt

    @pytest.mark.asyncio
    async def test_promotion_skipped_without_ai(
        self,
        store: InMemoryBillStore,
        settings: ExtractionSettings,
        promo_email: RawEmail,
        chase_response: str,
    ) -> None:
        classifier = _classifier(chase_response)

        result = await _pipeline(store, classifier, settings).process_email(promo_email, USER)

        assert result.outcome == "skipped"
        assert result.reason is not None
        assert result.reason.startswith("Promotional-heavy")
        classifier.classify.assert_not_called()
        assert not store.has_extraction(USER, promo_email.id)

    @pytest.mark.asyncio
    async def test_not_bill_rejected(
        self,
        store: InMemoryBillStore,
        settings: ExtractionSettings,
        chase_email: RawEmail,
    ) -> None:
        response = json.dumps(
            {
                "decision": "NOT_BILL",
                "confidence": 0.92,
                "vendorName": "Chase",
                "paymentStatus": "PAID",
                "evidence": {"notBillSignals": ["Your payment posted"]},
                "reason": "Payment already made",
            }
        )
        result = await _pipeline(store, _classifier(response), settings).process_email(
            chase_email, USER
        )

        assert result.route == Route.REJECT
        assert result.extraction is not None
        assert result.extraction.status == ExtractionStatus.REJECTED
        assert result.bill is None
        assert store.created_bills == []

    @pytest.mark.asyncio
    async def test_duplicate_needs_review(
        self, settings: ExtractionSettings, chase_email: RawEmail, chase_response: str
    ) -> None:
        store = _duplicate_store()

        result = await _pipeline(store, _classifier(chase_response), settings).process_email(
            chase_email, USER
        )

        assert result.extraction is not None
        assert result.extraction.is_duplicate
        assert result.extraction.duplicate_of == "bill-1"
        assert result.route == Route.NEEDS_REVIEW
        assert store.created_bills == []

    @pytest.mark.asyncio
    async def test_already_processed(
        self,
        store: InMemoryBillStore,
        settings: ExtractionSettings,
        chase_email: RawEmail,
        chase_response: str,
    ) -> None:
        classifier = _classifier(chase_response)
        pipeline = _pipeline(store, classifier, settings)

        await pipeline.process_email(chase_email, USER)
        again = await pipeline.process_email(chase_email, USER)
        forced = await pipeline.process_email(chase_email, USER, force=True)

        assert again.outcome == "already_processed"
        assert forced.outcome == "extracted"
        assert classifier.classify.await_count == 2

    @pytest.mark.asyncio
    async def test_classifier_failure_is_an_error(
        self, store: InMemoryBillStore, settings: ExtractionSettings, chase_email: RawEmail
    ) -> None:
        classifier = MagicMock()
        classifier.classify = AsyncMock(
            return_value=ClassifyFailure("timeout", "AI call timed out after 30.0s", attempts=2)
        )

        result = await _pipeline(store, classifier, settings).process_email(chase_email, USER)

        assert result.outcome == "error"
        assert result.error == "timeout: AI call timed out after 30.0s"
        assert not store.has_extraction(USER, chase_email.id)

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_captured(
        self, store: InMemoryBillStore, settings: ExtractionSettings, chase_email: RawEmail
    ) -> None:
        classifier = MagicMock()
        classifier.classify = AsyncMock(side_effect=RuntimeError("boom"))

        result = await _pipeline(store, classifier, settings).process_email(chase_email, USER)

        assert result.outcome == "error"
        assert result.error == "boom"

    @pytest.mark.asyncio
    async def test_bill_failure_stores_nothing(
        self,
        store: InMemoryBillStore,
        settings: ExtractionSettings,
        chase_email: RawEmail,
        chase_response: str,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        pipeline = _pipeline(store, _classifier(chase_response), settings)
        monkeypatch.setattr(
            pipeline, "_build_bill", MagicMock(side_effect=BillExtractionError("bad bill"))
        )

        result = await pipeline.process_email(chase_email, USER)

        assert result.outcome == "error"
        assert not store.has_extraction(USER, chase_email.id)
        assert store.created_bills == []

    @pytest.mark.asyncio
    async def test_store_calls_run_off_the_event_loop(
        self,
        settings: ExtractionSettings,
        chase_email: RawEmail,
        chase_response: str,
    ) -> None:
        store = ThreadRecordingStore()

        await _pipeline(store, _classifier(chase_response), settings).process_email(
            chase_email, USER
        )

        assert set(store.threads) == {"has_extraction", "existing_bills", "save_extraction"}
        assert threading.get_ident() not in set(store.threads.values())


class TestPaymentLinks:
    @pytest.mark.asyncio
    async def test_validated_link_autofilled(
        self,
        store: InMemoryBillStore,
        settings: ExtractionSettings,
        chase_email: RawEmail,
        chase_response: str,
    ) -> None:
        email = _with_link(chase_email, "https://secure.chase.com/pay")

        result = await _pipeline(store, _classifier(chase_response), settings).process_email(
            email, USER
        )

        assert result.extraction is not None
        assert result.extraction.payment_url == "https://secure.chase.com/pay"
        assert result.extraction.payment_confidence == 0.85
        assert result.bill is not None
        assert result.bill.payment_url == "https://secure.chase.com/pay"

    @pytest.mark.asyncio
    async def test_low_confidence_link_not_copied_to_bill(
        self, store: InMemoryBillStore, chase_email: RawEmail, chase_response: str
    ) -> None:
        settings = ExtractionSettings(batch_delay_seconds=0.0, link_autofill_threshold=0.9)
        email = _with_link(chase_email, "https://secure.chase.com/pay")

        result = await _pipeline(store, _classifier(chase_response), settings).process_email(
            email, USER
        )

        assert result.extraction is not None
        assert result.extraction.payment_url == "https://secure.chase.com/pay"
        assert result.bill is not None
        assert result.bill.payment_url is None

    @pytest.mark.asyncio
    async def test_foreign_domain_link_dropped(
        self,
        store: InMemoryBillStore,
        settings: ExtractionSettings,
        chase_email: RawEmail,
        chase_response: str,
    ) -> None:
        email = _with_link(chase_email, "https://pay-portal.example.net/chase")

        result = await _pipeline(store, _classifier(chase_response), settings).process_email(
            email, USER
        )

        assert result.extraction is not None
        assert result.extraction.payment_url is None
        assert result.extraction.payment_confidence == 0.0
        assert result.route == Route.AUTO_ACCEPT

    @pytest.mark.asyncio
    async def test_vendor_rule_allows_link(
        self, settings: ExtractionSettings, chase_email: RawEmail, chase_response: str
    ) -> None:
        store = InMemoryBillStore(vendor_rules={"Chase": ["chasepay.example.net"]})
        email = _with_link(chase_email, "https://chasepay.example.net/pay")

        result = await _pipeline(store, _classifier(chase_response), settings).process_email(
            email, USER
        )

        assert result.extraction is not None
        assert result.extraction.payment_url == "https://chasepay.example.net/pay"


class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_errors_are_isolated(
        self,
        store: InMemoryBillStore,
        settings: ExtractionSettings,
        chase_email: RawEmail,
        promo_email: RawEmail,
        chase_response: str,
    ) -> None:
        failing = RawEmail(
            id="<acme-1@acme.example>",
            sender="Acme <billing@acme.example>",
            subject="Your Acme invoice",
            date=datetime(2026, 1, 20, tzinfo=UTC),
            body_plain="Amount due: $20.00. Due date: 02/01/2026.",
        )
        success = ClassifySuccess(parse_classification(chase_response))

        def classify(request: ClassificationRequest) -> ClassifySuccess:
            if request.subject == failing.subject:
                msg = "upstream exploded"
                raise RuntimeError(msg)
            return success

        classifier = MagicMock()
        classifier.classify = AsyncMock(side_effect=classify)

        stats = await _pipeline(store, classifier, settings).process_batch(
            [chase_email, promo_email, failing], USER
        )

        assert stats.total == 3
        assert stats.processed == 2
        assert stats.skipped == 1
        assert stats.errors == 1
        assert stats.auto_accepted == 1
        assert stats.bills_created == 1
        assert not stats.cancelled
        assert [r.outcome for r in stats.results] == ["extracted", "skipped", "error"]

    @pytest.mark.asyncio
    async def test_cancellation_stops_new_windows(
        self, store: InMemoryBillStore, chase_email: RawEmail, chase_response: str
    ) -> None:
        settings = ExtractionSettings(batch_concurrency=1, batch_delay_seconds=0.0)
        cancel = asyncio.Event()
        success = ClassifySuccess(parse_classification(chase_response))

        def classify(request: ClassificationRequest) -> ClassifySuccess:
            cancel.set()
            return success

        classifier = MagicMock()
        classifier.classify = AsyncMock(side_effect=classify)
        second = replace(chase_email, id="<chase-statement-2@chase.com>")

        stats = await _pipeline(store, classifier, settings).process_batch(
            [chase_email, second], USER, cancel=cancel
        )

        assert stats.cancelled
        assert stats.total == 2
        assert len(stats.results) == 1
        assert classifier.classify.await_count == 1

    @pytest.mark.asyncio
    async def test_delay_between_windows(
        self,
        store: InMemoryBillStore,
        chase_email: RawEmail,
        chase_response: str,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        sleep = AsyncMock()
        monkeypatch.setattr("bill_extraction.pipeline.asyncio.sleep", sleep)
        settings = ExtractionSettings(batch_concurrency=2, batch_delay_seconds=1.5)
        emails = [replace(chase_email, id=f"<chase-{i}@chase.com>") for i in range(5)]

        await _pipeline(store, _classifier(chase_response), settings).process_batch(
            emails, USER
        )

        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.5)

    @pytest.mark.asyncio
    async def test_same_bill_in_one_window_is_created_once(
        self,
        store: InMemoryBillStore,
        settings: ExtractionSettings,
        chase_email: RawEmail,
        chase_response: str,
    ) -> None:
        statement = _with_link(chase_email, "https://secure.chase.com/pay")
        reminder = replace(statement, id="<chase-reminder-1@chase.com>")

        stats = await ExtractionPipeline(
            store, _classifier(chase_response), SlowLinkSelector(), settings=settings
        ).process_batch([statement, reminder], USER)

        assert stats.bills_created == 1
        assert len(store.created_bills) == 1
        assert [r.route for r in stats.results] == [Route.AUTO_ACCEPT, Route.NEEDS_REVIEW]
        duplicate = stats.results[1].extraction
        assert duplicate is not None
        assert duplicate.is_duplicate
        assert duplicate.duplicate_of == str(store.created_bills[0].id)
        assert duplicate.status == ExtractionStatus.NEEDS_REVIEW


class TestSyncMailbox:
    @pytest.mark.asyncio
    async def test_fetch_filter_and_process(
        self,
        store: InMemoryBillStore,
        settings: ExtractionSettings,
        chase_email: RawEmail,
        promo_email: RawEmail,
        chase_response: str,
    ) -> None:
        mailbox = FakeMailbox([chase_email, promo_email])

        report = await _pipeline(store, _classifier(chase_response), settings).sync_mailbox(
            mailbox, USER, date(2026, 1, 18)
        )

        assert report.status == "completed"
        assert report.emails_fetched == 2
        assert report.emails_filtered == 1
        assert report.stats is not None
        assert report.stats.bills_created == 1
        assert mailbox.calls == [date(2026, 1, 18)]

    @pytest.mark.asyncio
    async def test_concurrent_sync_skipped(
        self,
        store: InMemoryBillStore,
        settings: ExtractionSettings,
        chase_email: RawEmail,
        chase_response: str,
    ) -> None:
        mailbox = FakeMailbox([chase_email])
        pipeline = _pipeline(store, _classifier(chase_response), settings)

        with store.sync_lock(USER):
            report = await pipeline.sync_mailbox(mailbox, USER, date(2026, 1, 18))

        assert report.status == "skipped"
        assert mailbox.calls == []


class TestReview:
    async def _review_item(
        self, settings: ExtractionSettings, chase_email: RawEmail, chase_response: str
    ) -> tuple[ExtractionPipeline, InMemoryBillStore, Any]:
        store = _duplicate_store()
        pipeline = _pipeline(store, _classifier(chase_response), settings)
        result = await pipeline.process_email(chase_email, USER)
        assert result.extraction is not None
        return pipeline, store, result.extraction

    @pytest.mark.asyncio
    async def test_review_queue(
        self, settings: ExtractionSettings, chase_email: RawEmail, chase_response: str
    ) -> None:
        pipeline, _, extraction = await self._review_item(settings, chase_email, chase_response)
        assert [e.id for e in pipeline.get_review_queue(USER)] == [extraction.id]
        assert pipeline.get_review_queue("bob") == []

    @pytest.mark.asyncio
    async def test_confirm_with_corrections(
        self, settings: ExtractionSettings, chase_email: RawEmail, chase_response: str
    ) -> None:
        pipeline, store, extraction = await self._review_item(
            settings, chase_email, chase_response
        )

        bill = pipeline.confirm_extraction(
            USER,
            extraction.id,
            ReviewCorrections(name="Amex Gold", amount=Decimal("1200.00")),
        )

        assert bill.name == "Amex Gold"
        assert bill.vendor_key == "amex"
        assert bill.amount == Decimal("1200.00")
        assert bill.due_date == date(2026, 2, 14)
        assert bill.extraction_id == extraction.id
        stored = store.get_extraction(USER, extraction.id)
        assert stored.status == ExtractionStatus.ACCEPTED
        assert stored.vendor_name == "Amex Gold"
        assert pipeline.get_review_queue(USER) == []

        with pytest.raises(InvalidTransitionError):
            pipeline.confirm_extraction(USER, extraction.id)

    @pytest.mark.asyncio
    async def test_reject(
        self, settings: ExtractionSettings, chase_email: RawEmail, chase_response: str
    ) -> None:
        pipeline, store, extraction = await self._review_item(
            settings, chase_email, chase_response
        )

        rejected = pipeline.reject_extraction(USER, extraction.id)

        assert rejected.status == ExtractionStatus.REJECTED
        assert store.get_extraction(USER, extraction.id).status == ExtractionStatus.REJECTED
        assert store.created_bills == []

    @pytest.mark.asyncio
    async def test_confirm_after_concurrent_reject_creates_no_bill(
        self,
        settings: ExtractionSettings,
        chase_email: RawEmail,
        chase_response: str,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        pipeline, store, extraction = await self._review_item(
            settings, chase_email, chase_response
        )
        stale = store.get_extraction(USER, extraction.id)
        pipeline.reject_extraction(USER, extraction.id)
        monkeypatch.setattr(store, "get_extraction", lambda user_id, extraction_id: stale)

        with pytest.raises(InvalidTransitionError, match="is rejected, expected needs_review"):
            pipeline.confirm_extraction(USER, extraction.id)

        assert store.created_bills == []
        assert store.list_review_queue(USER) == []

    @pytest.mark.asyncio
    async def test_confirm_requires_due_date(
        self, store: InMemoryBillStore, settings: ExtractionSettings, chase_email: RawEmail
    ) -> None:
        response = json.dumps(
            {"decision": "UNCERTAIN", "confidence": 0.9, "vendorName": "Chase"}
        )
        pipeline = _pipeline(store, _classifier(response), settings)
        result = await pipeline.process_email(chase_email, USER)
        assert result.extraction is not None
        assert result.route == Route.NEEDS_REVIEW

        with pytest.raises(BillExtractionError, match="missing name or due date"):
            pipeline.confirm_extraction(USER, result.extraction.id)

        bill = pipeline.confirm_extraction(
            USER, result.extraction.id, ReviewCorrections(due_date=date(2026, 2, 14))
        )
        assert bill.due_date == date(2026, 2, 14)


class TestOfflinePipeline:
    @pytest.mark.asyncio
    async def test_heuristic_classifier_end_to_end(
        self, store: InMemoryBillStore, settings: ExtractionSettings, chase_email: RawEmail
    ) -> None:
        pipeline = _pipeline(store, HeuristicClassifier(), settings)

        result = await pipeline.process_email(chase_email, USER)

        assert result.extraction is not None
        assert result.extraction.decision == Decision.BILL
        assert result.extraction.vendor_name == "Chase Ink Business"
        assert result.extraction.amount_due == Decimal("1204.33")
