"""Bill store abstraction and in-memory implementation."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Protocol

from bill_extraction.errors import ExtractionNotFoundError, InvalidTransitionError
from bill_extraction.lifecycle import ExtractionStatus
from bill_extraction.models import ExistingBill
from bill_extraction.validation import normalize_vendor_key

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping
    from contextlib import AbstractContextManager
    from uuid import UUID

    from bill_extraction.models import BillExtraction, ExtractedBill


class BillStore(Protocol):
    """Protocol for extraction and bill persistence backends.

    Writes that create a bill take the extraction with them, so a stored
    extraction and its bill are never split by a failure. Status updates
    are conditional on the status the caller read.
    """

    def existing_bills(self, user_id: str) -> list[ExistingBill]: ...

    def allowed_payment_domains(
        self, user_id: str, vendor_name: str | None
    ) -> list[str]: ...

    def has_extraction(self, user_id: str, email_id: str) -> bool: ...

    def save_extraction(
        self, extraction: BillExtraction, bill: ExtractedBill | None = None
    ) -> None: ...

    def get_extraction(self, user_id: str, extraction_id: UUID) -> BillExtraction: ...

    def update_extraction(
        self,
        extraction: BillExtraction,
        *,
        expected_status: ExtractionStatus,
        bill: ExtractedBill | None = None,
    ) -> None: ...

    def list_review_queue(self, user_id: str, limit: int = 50) -> list[BillExtraction]: ...

    def sync_lock(self, user_id: str) -> AbstractContextManager[bool]: ...


class InMemoryBillStore:
    """Process-local BillStore, used by the CLI without a database and in tests.

    ``vendor_rules`` maps a vendor name to the payment domains allowed for it.
    Names are compared by vendor key, so "Chase Ink" finds rules for "Chase".
    Safe to call from worker threads.
    """

    def __init__(
        self,
        existing: Mapping[str, list[ExistingBill]] | None = None,
        vendor_rules: Mapping[str, list[str]] | None = None,
    ) -> None:
        self._bills: dict[str, list[ExistingBill]] = {
            user: list(bills) for user, bills in (existing or {}).items()
        }
        self._vendor_rules = {
            normalize_vendor_key(name) or name.lower(): list(domains)
            for name, domains in (vendor_rules or {}).items()
        }
        self._extractions: dict[UUID, BillExtraction] = {}
        self.created_bills: list[ExtractedBill] = []
        self._locks: set[str] = set()
        self._guard = threading.Lock()

    def existing_bills(self, user_id: str) -> list[ExistingBill]:
        with self._guard:
            return list(self._bills.get(user_id, []))

    def allowed_payment_domains(
        self, user_id: str, vendor_name: str | None
    ) -> list[str]:
        key = normalize_vendor_key(vendor_name)
        if key is None:
            return []
        return list(self._vendor_rules.get(key, []))

    def has_extraction(self, user_id: str, email_id: str) -> bool:
        with self._guard:
            return any(
                e.user_id == user_id and e.email_id == email_id
                for e in self._extractions.values()
            )

    def save_extraction(
        self, extraction: BillExtraction, bill: ExtractedBill | None = None
    ) -> None:
        with self._guard:
            self._extractions[extraction.id] = extraction
            if bill is not None:
                self._add_bill(bill)

    def get_extraction(self, user_id: str, extraction_id: UUID) -> BillExtraction:
        with self._guard:
            extraction = self._extractions.get(extraction_id)
        if extraction is None or extraction.user_id != user_id:
            msg = f"Extraction {extraction_id} not found"
            raise ExtractionNotFoundError(msg)
        return extraction

    def update_extraction(
        self,
        extraction: BillExtraction,
        *,
        expected_status: ExtractionStatus,
        bill: ExtractedBill | None = None,
    ) -> None:
        with self._guard:
            current = self._extractions.get(extraction.id)
            if current is None or current.user_id != extraction.user_id:
                msg = f"Extraction {extraction.id} not found"
                raise ExtractionNotFoundError(msg)
            if current.status != expected_status:
                msg = (
                    f"Extraction {extraction.id} is {current.status.value},"
                    f" expected {expected_status.value}"
                )
                raise InvalidTransitionError(msg)
            self._extractions[extraction.id] = extraction
            if bill is not None:
                self._add_bill(bill)

    def list_review_queue(self, user_id: str, limit: int = 50) -> list[BillExtraction]:
        with self._guard:
            queue = [
                e
                for e in self._extractions.values()
                if e.user_id == user_id and e.status == ExtractionStatus.NEEDS_REVIEW
            ]
        queue.sort(key=lambda e: e.created_at, reverse=True)
        return queue[:limit]

    def _add_bill(self, bill: ExtractedBill) -> None:
        self.created_bills.append(bill)
        self._bills.setdefault(bill.user_id, []).append(
            ExistingBill(
                id=str(bill.id),
                name=bill.name,
                amount=bill.amount,
                due_date=bill.due_date,
                vendor_key=bill.vendor_key,
                account_last4=bill.account_last4,
                category=bill.category,
            )
        )

    @contextmanager
    def sync_lock(self, user_id: str) -> Iterator[bool]:
        """Yield True if this caller holds the user's sync lock."""
        with self._guard:
            acquired = user_id not in self._locks
            if acquired:
                self._locks.add(user_id)
        try:
            yield acquired
        finally:
            if acquired:
                with self._guard:
                    self._locks.discard(user_id)
