"""Mailbox source protocol."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import date

    from bill_extraction.models import RawEmail


@runtime_checkable
class MailboxSource(Protocol):
    """Protocol for mailbox collaborators that deliver raw emails."""

    def fetch_since(self, since: date, seen_ids: set[str]) -> Iterator[RawEmail]: ...
