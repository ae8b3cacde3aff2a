"""Shared test fixtures."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import pytest

from bill_extraction.config import ExtractionSettings, ImapConfig
from bill_extraction.models import RawEmail
from bill_extraction.store import InMemoryBillStore

CHASE_BODY = """\
Your Chase Ink Business Unlimited statement is ready.

Statement Balance: $1,204.33
Minimum Payment Due: $40.00
Due Date: 02/14/2026

Sign in to chase.com to view your statement and make a payment.
"""


@pytest.fixture
def imap_config() -> ImapConfig:
    """Provide a test IMAP configuration."""
    return ImapConfig(
        host="imap.example.com",
        username="test@example.com",
        password="secret",  # pragma: allowlist secret
        port=993,
        folder="INBOX",
    )


@pytest.fixture
def settings() -> ExtractionSettings:
    """Default settings without the inter-batch delay."""
    return ExtractionSettings(batch_delay_seconds=0.0)


@pytest.fixture
def store() -> InMemoryBillStore:
    return InMemoryBillStore()


@pytest.fixture
def chase_email() -> RawEmail:
    """A Chase Ink Business statement email received 2026-01-20."""
    return RawEmail(
        id="<chase-statement-1@chase.com>",
        sender="Chase <no.reply.alerts@chase.com>",
        subject="Your Chase Ink Business statement is ready",
        date=datetime(2026, 1, 20, 9, 15, 0, tzinfo=UTC),
        body_plain=CHASE_BODY,
    )


@pytest.fixture
def promo_email() -> RawEmail:
    return RawEmail(
        id="<promo-1@shop.example.com>",
        sender="Shop <deals@shop.example.com>",
        subject="20% off your next order!",
        date=datetime(2026, 1, 20, 9, 15, 0, tzinfo=UTC),
        body_plain="Shop our sale today. Use promo code SAVE20 at checkout.",
    )


@pytest.fixture
def chase_classification() -> dict[str, Any]:
    """The JSON object a model returns for ``chase_email``."""
    return {
        "decision": "BILL",
        "confidence": 0.9,
        "vendorName": "Chase Ink Business",
        "vendorKey": "chase",
        "billType": "credit_card",
        "amountDue": 1204.33,
        "dueDate": "2026-02-14",
        "currency": "USD",
        "accountHint": None,
        "paymentStatus": "DUE",
        "paymentLink": None,
        "isRecurring": True,
        "recurrenceInterval": "monthly",
        "evidence": {
            "billSignals": ["Statement Balance: $1,204.33", "Due Date: 02/14/2026"],
            "notBillSignals": [],
        },
        "reason": "Credit card statement with balance and due date",
    }


@pytest.fixture
def chase_response(chase_classification: dict[str, Any]) -> str:
    return json.dumps(chase_classification)
