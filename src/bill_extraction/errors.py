"""Exception hierarchy for the extraction pipeline."""

from __future__ import annotations


class BillExtractionError(Exception):
    """Base class for pipeline errors."""


class AIResponseParseError(BillExtractionError):
    """The model returned text that is not valid JSON for the expected schema."""

    def __init__(self, message: str, raw_text: str | None = None) -> None:
        super().__init__(message)
        self.raw_text = raw_text


class InvalidTransitionError(BillExtractionError):
    """An extraction status change that the lifecycle does not allow."""


class ExtractionNotFoundError(BillExtractionError):
    """No extraction with the given id exists for the user."""
