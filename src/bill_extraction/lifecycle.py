"""Extraction status lifecycle.

An extraction is created ``pending`` and immediately routed to
``auto_accepted``, ``needs_review`` or ``rejected``. Only ``needs_review``
items move again, through a human review action, to ``accepted`` or
``rejected``. Every other move raises ``InvalidTransitionError``.
"""

from __future__ import annotations

from enum import StrEnum

from bill_extraction.errors import InvalidTransitionError


class ExtractionStatus(StrEnum):
    PENDING = "pending"
    AUTO_ACCEPTED = "auto_accepted"
    NEEDS_REVIEW = "needs_review"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


_TRANSITIONS: dict[ExtractionStatus, frozenset[ExtractionStatus]] = {
    ExtractionStatus.PENDING: frozenset(
        {
            ExtractionStatus.AUTO_ACCEPTED,
            ExtractionStatus.NEEDS_REVIEW,
            ExtractionStatus.REJECTED,
        }
    ),
    ExtractionStatus.NEEDS_REVIEW: frozenset(
        {ExtractionStatus.ACCEPTED, ExtractionStatus.REJECTED}
    ),
    ExtractionStatus.AUTO_ACCEPTED: frozenset(),
    ExtractionStatus.ACCEPTED: frozenset(),
    ExtractionStatus.REJECTED: frozenset(),
}

_ROUTE_STATUS = {
    "auto_accept": ExtractionStatus.AUTO_ACCEPTED,
    "needs_review": ExtractionStatus.NEEDS_REVIEW,
    "reject": ExtractionStatus.REJECTED,
}


def can_transition(current: ExtractionStatus, target: ExtractionStatus) -> bool:
    """Return True if ``current -> target`` is an allowed move."""
    return target in _TRANSITIONS[current]


def transition(current: ExtractionStatus, target: ExtractionStatus) -> ExtractionStatus:
    """Validate and perform a status change, returning the new status."""
    if not can_transition(current, target):
        msg = f"Cannot move extraction from {current.value} to {target.value}"
        raise InvalidTransitionError(msg)
    return target


def status_for_route(route: str) -> ExtractionStatus:
    """Map a terminal route to the status it produces from ``pending``."""
    try:
        target = _ROUTE_STATUS[str(route)]
    except KeyError:
        msg = f"Unknown route: {route!r}"
        raise ValueError(msg) from None
    return transition(ExtractionStatus.PENDING, target)
