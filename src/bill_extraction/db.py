"""Database connection helper and Postgres-backed bill store."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from bill_extraction.config import get_database_url
from bill_extraction.errors import ExtractionNotFoundError, InvalidTransitionError
from bill_extraction.lifecycle import ExtractionStatus
from bill_extraction.models import BillExtraction, ExistingBill
from bill_extraction.validation import normalize_vendor_key

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from uuid import UUID

    from bill_extraction.models import ExtractedBill

logger = logging.getLogger(__name__)

SCHEMA = """\
CREATE TABLE IF NOT EXISTS bills (
    id UUID PRIMARY KEY,
    user_id TEXT NOT NULL,
    extraction_id UUID,
    name TEXT NOT NULL,
    amount NUMERIC(12, 2),
    due_date DATE,
    category TEXT,
    vendor_key TEXT,
    account_last4 TEXT,
    is_recurring BOOLEAN NOT NULL DEFAULT FALSE,
    recurrence_interval TEXT,
    payment_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS bills_user_idx ON bills (user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS bill_extractions (
    id UUID PRIMARY KEY,
    user_id TEXT NOT NULL,
    email_id TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    payload JSONB NOT NULL,
    UNIQUE (user_id, email_id)
);
CREATE INDEX IF NOT EXISTS bill_extractions_status_idx
    ON bill_extractions (user_id, status, created_at DESC);

CREATE TABLE IF NOT EXISTS vendor_rules (
    user_id TEXT NOT NULL,
    vendor_key TEXT NOT NULL,
    allowed_domain TEXT NOT NULL,
    PRIMARY KEY (user_id, vendor_key, allowed_domain)
);
"""

EXISTING_BILLS_LIMIT = 100


def get_connection() -> psycopg.Connection[dict[str, Any]]:
    """Create and return a new database connection."""
    return psycopg.connect(get_database_url(), row_factory=dict_row)


class PostgresBillStore:
    """BillStore backed by Postgres.

    Extractions are stored as a JSONB payload next to the columns the review
    queue filters on. The sync lock is a session-level advisory lock keyed
    by ``hashtext(user_id)``.
    """

    def __init__(
        self, connect: Callable[[], psycopg.Connection[dict[str, Any]]] = get_connection
    ) -> None:
        self._connect = connect

    def create_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA)

    def existing_bills(self, user_id: str) -> list[ExistingBill]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id::text AS id, name, amount, due_date, vendor_key,"
                " account_last4, category FROM bills WHERE user_id = %s"
                " ORDER BY created_at DESC LIMIT %s",
                (user_id, EXISTING_BILLS_LIMIT),
            ).fetchall()
        return [ExistingBill.model_validate(row) for row in rows]

    def allowed_payment_domains(
        self, user_id: str, vendor_name: str | None
    ) -> list[str]:
        key = normalize_vendor_key(vendor_name)
        if key is None:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT allowed_domain FROM vendor_rules"
                " WHERE user_id = %s AND vendor_key = %s",
                (user_id, key),
            ).fetchall()
        return [str(row["allowed_domain"]) for row in rows]

    def has_extraction(self, user_id: str, email_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM bill_extractions"
                " WHERE user_id = %s AND email_id = %s",
                (user_id, email_id),
            ).fetchone()
        return row is not None

    def save_extraction(
        self, extraction: BillExtraction, bill: ExtractedBill | None = None
    ) -> None:
        """Insert the extraction and, if given, its bill in one transaction.

        Reprocessing an email replaces its earlier extraction row.
        """
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO bill_extractions"
                " (id, user_id, email_id, status, created_at, payload)"
                " VALUES (%s, %s, %s, %s, %s, %s)"
                " ON CONFLICT (user_id, email_id) DO UPDATE SET id = EXCLUDED.id,"
                " status = EXCLUDED.status, created_at = EXCLUDED.created_at,"
                " payload = EXCLUDED.payload",
                (
                    extraction.id,
                    extraction.user_id,
                    extraction.email_id,
                    extraction.status.value,
                    extraction.created_at,
                    Jsonb(extraction.model_dump(mode="json")),
                ),
            )
            if bill is not None:
                _insert_bill(conn, bill)

    def get_extraction(self, user_id: str, extraction_id: UUID) -> BillExtraction:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM bill_extractions WHERE id = %s AND user_id = %s",
                (extraction_id, user_id),
            ).fetchone()
        if row is None:
            msg = f"Extraction {extraction_id} not found"
            raise ExtractionNotFoundError(msg)
        return BillExtraction.model_validate(row["payload"])

    def update_extraction(
        self,
        extraction: BillExtraction,
        *,
        expected_status: ExtractionStatus,
        bill: ExtractedBill | None = None,
    ) -> None:
        """Move the extraction on from ``expected_status``, creating ``bill`` with it.

        The update only matches a row still in ``expected_status``, so of two
        racing confirm or reject calls exactly one wins. The loser gets
        ``InvalidTransitionError`` and its bill insert is rolled back.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE bill_extractions SET status = %s, payload = %s"
                " WHERE id = %s AND user_id = %s AND status = %s",
                (
                    extraction.status.value,
                    Jsonb(extraction.model_dump(mode="json")),
                    extraction.id,
                    extraction.user_id,
                    expected_status.value,
                ),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT status FROM bill_extractions WHERE id = %s AND user_id = %s",
                    (extraction.id, extraction.user_id),
                ).fetchone()
                if row is None:
                    msg = f"Extraction {extraction.id} not found"
                    raise ExtractionNotFoundError(msg)
                msg = (
                    f"Extraction {extraction.id} is {row['status']},"
                    f" expected {expected_status.value}"
                )
                raise InvalidTransitionError(msg)
            if bill is not None:
                _insert_bill(conn, bill)

    def list_review_queue(self, user_id: str, limit: int = 50) -> list[BillExtraction]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload FROM bill_extractions"
                " WHERE user_id = %s AND status = %s"
                " ORDER BY created_at DESC LIMIT %s",
                (user_id, ExtractionStatus.NEEDS_REVIEW.value, limit),
            ).fetchall()
        return [BillExtraction.model_validate(row["payload"]) for row in rows]

    @contextmanager
    def sync_lock(self, user_id: str) -> Iterator[bool]:
        """Hold ``pg_try_advisory_lock`` for the user; yield whether it was won."""
        conn = self._connect()
        try:
            conn.autocommit = True
            row = conn.execute(
                "SELECT pg_try_advisory_lock(hashtext(%s)) AS acquired", (user_id,)
            ).fetchone()
            acquired = bool(row and row["acquired"])
            try:
                yield acquired
            finally:
                if acquired:
                    conn.execute("SELECT pg_advisory_unlock(hashtext(%s))", (user_id,))
        finally:
            conn.close()


def _insert_bill(conn: psycopg.Connection[dict[str, Any]], bill: ExtractedBill) -> None:
    conn.execute(
        "INSERT INTO bills (id, user_id, extraction_id, name, amount, due_date,"
        " category, vendor_key, account_last4, is_recurring,"
        " recurrence_interval, payment_url)"
        " VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
        (
            bill.id,
            bill.user_id,
            bill.extraction_id,
            bill.name,
            bill.amount,
            bill.due_date,
            bill.category.value if bill.category else None,
            bill.vendor_key,
            bill.account_last4,
            bill.is_recurring,
            bill.recurrence_interval.value if bill.recurrence_interval else None,
            bill.payment_url,
        ),
    )
