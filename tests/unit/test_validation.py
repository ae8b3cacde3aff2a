"""Tests for bill_extraction.validation."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import pytest

from bill_extraction.candidates import extract_candidates
from bill_extraction.config import ExtractionSettings
from bill_extraction.models import (
    BillClassification,
    CandidateSet,
    Decision,
    ExistingBill,
    Route,
)
from bill_extraction.validation import (
    determine_route,
    extract_account_last4,
    find_duplicate,
    normalize_vendor_key,
    validate_extraction,
)

if TYPE_CHECKING:
    from bill_extraction.models import RawEmail

RECEIVED = date(2026, 1, 20)


def _classification(**overrides: Any) -> BillClassification:
    payload: dict[str, Any] = {
        "decision": "BILL",
        "confidence": 0.9,
        "vendorName": "Chase",
        "amountDue": 142.50,
        "dueDate": "2026-02-14",
    }
    payload.update(overrides)
    return BillClassification.model_validate(payload)


class TestValidateExtraction:
    def test_agreement_auto_accepts(
        self, chase_email: RawEmail, chase_classification: dict[str, Any]
    ) -> None:
        candidates = extract_candidates(
            chase_email.body_plain or "",
            chase_email.subject,
            chase_email.sender,
            reference=chase_email.date,
        )
        ai = BillClassification.model_validate(chase_classification)

        result = validate_extraction(ai, candidates, reference_date=RECEIVED)

        assert result.final_confidence == 1.0
        assert result.route == Route.AUTO_ACCEPT
        assert result.warnings == []
        assert result.vendor_key == "chase"

    def test_duplicate_goes_to_review(self) -> None:
        existing = [
            ExistingBill(
                id="bill-1", name="Chase Sapphire", vendor_key="chase", amount=Decimal("142.50")
            )
        ]
        result = validate_extraction(
            _classification(), CandidateSet(), existing, reference_date=RECEIVED
        )

        assert result.is_duplicate
        assert result.duplicate_of == "bill-1"
        assert result.route == Route.NEEDS_REVIEW
        assert result.final_confidence == 0.9

    def test_amount_mismatch_penalized(self, chase_email: RawEmail) -> None:
        candidates = extract_candidates(
            chase_email.body_plain or "",
            chase_email.subject,
            chase_email.sender,
            reference=chase_email.date,
        )
        result = validate_extraction(
            _classification(amountDue=40.00), candidates, reference_date=RECEIVED
        )

        assert any("differs from extracted $1204.33" in w for w in result.warnings)
        assert result.route == Route.NEEDS_REVIEW

    def test_missing_fields_penalty(self) -> None:
        result = validate_extraction(
            _classification(amountDue=None, dueDate=None),
            CandidateSet(),
            reference_date=RECEIVED,
        )
        assert result.final_confidence == pytest.approx(0.7)
        assert result.route == Route.NEEDS_REVIEW

    def test_out_of_range_amount_is_an_error(self) -> None:
        result = validate_extraction(
            _classification(amountDue=25000.00), CandidateSet(), reference_date=RECEIVED
        )
        assert result.errors == ["Amount $25000.00 exceeds maximum ($10000.0)"]
        assert result.route == Route.NEEDS_REVIEW

    def test_stale_due_date_is_an_error(self) -> None:
        result = validate_extraction(
            _classification(dueDate="2025-11-01"), CandidateSet(), reference_date=RECEIVED
        )
        assert any("days in the past" in e for e in result.errors)

    def test_not_bill_rejected(self) -> None:
        result = validate_extraction(
            _classification(decision="NOT_BILL", confidence=0.95),
            CandidateSet(),
            reference_date=RECEIVED,
        )
        assert result.route == Route.REJECT

    def test_vendor_name_override(self) -> None:
        result = validate_extraction(
            _classification(vendorName=None),
            CandidateSet(),
            vendor_name="Amex Platinum",
            reference_date=RECEIVED,
        )
        assert result.vendor_key == "amex"

    def test_account_digits_from_email_text(self) -> None:
        result = validate_extraction(
            _classification(),
            CandidateSet(),
            account_text="Your card ending in 4821 has a new statement",
            reference_date=RECEIVED,
        )
        assert result.account_last4 == "4821"


class TestFindDuplicate:
    def test_short_names_never_fuzzy_match(self) -> None:
        existing = [ExistingBill(id="b1", name="City", amount=Decimal("50.00"))]
        match = find_duplicate(
            existing, vendor_key="citi", name="Citi", amount=Decimal("50.00")
        )
        assert match is None

    def test_close_long_names_match(self) -> None:
        existing = [
            ExistingBill(id="b1", name="Xfinty Internet", due_date=date(2026, 2, 3))
        ]
        match = find_duplicate(
            existing,
            vendor_key="xfinity-internet",
            name="Xfinity Internet",
            due_date=date(2026, 2, 3),
        )
        assert match is not None
        assert match.reason == 'Similar to "Xfinty Internet" with same due date (2026-02-03)'

    def test_same_vendor_different_everything(self) -> None:
        existing = [
            ExistingBill(id="b1", name="Chase", amount=Decimal("10.00"), due_date=date(2026, 1, 1))
        ]
        match = find_duplicate(
            existing,
            vendor_key="chase",
            amount=Decimal("99.00"),
            due_date=date(2026, 2, 1),
        )
        assert match is None

    def test_account_digits(self) -> None:
        existing = [ExistingBill(id="b1", name="Chase", account_last4="1234")]
        match = find_duplicate(existing, vendor_key="chase", account_last4="1234")
        assert match is not None
        assert match.bill_id == "b1"


class TestDetermineRoute:
    @pytest.mark.parametrize(
        ("decision", "confidence", "expected"),
        [
            (Decision.NOT_BILL, 0.99, Route.REJECT),
            (Decision.UNCERTAIN, 0.5, Route.REJECT),
            (Decision.UNCERTAIN, 0.7, Route.NEEDS_REVIEW),
            (Decision.UNCERTAIN, 0.95, Route.NEEDS_REVIEW),
            (Decision.BILL, 0.1, Route.NEEDS_REVIEW),
            (Decision.BILL, 0.85, Route.AUTO_ACCEPT),
        ],
    )
    def test_routes(self, decision: Decision, confidence: float, expected: Route) -> None:
        assert determine_route(decision, confidence) == expected

    def test_bill_needs_every_check_clean(self) -> None:
        assert determine_route(Decision.BILL, 0.95, has_warnings=True) == Route.NEEDS_REVIEW
        assert determine_route(Decision.BILL, 0.95, is_duplicate=True) == Route.NEEDS_REVIEW
        assert determine_route(Decision.BILL, 0.95, has_required_fields=False) == Route.NEEDS_REVIEW

    def test_custom_thresholds(self) -> None:
        settings = ExtractionSettings(auto_accept_threshold=0.95, reject_threshold=0.4)
        assert determine_route(Decision.BILL, 0.9, settings=settings) == Route.NEEDS_REVIEW
        assert determine_route(Decision.UNCERTAIN, 0.5, settings=settings) == Route.NEEDS_REVIEW


class TestNormalizeVendorKey:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("Chase Ink Business", "chase"),
            ("Amex Platinum", "amex"),
            ("Bank of America", "bofa"),
            ("Citibank", "citi"),
            ("Acme Water Company, Inc.", "acme-water"),
            ("  ", None),
            (None, None),
        ],
    )
    def test_keys(self, name: str | None, expected: str | None) -> None:
        assert normalize_vendor_key(name) == expected


class TestExtractAccountLast4:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Visa (...1234)", "1234"),
            ("card ending in 9876", "9876"),
            ("Account ****5555", "5555"),
            ("no digits here", None),
        ],
    )
    def test_patterns(self, text: str, expected: str | None) -> None:
        assert extract_account_last4(text) == expected
