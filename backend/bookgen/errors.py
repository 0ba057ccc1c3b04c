"""
BookGen V1.0 - Error Taxonomy
=============================
Exceptions raised by the generation core. ``AbortError`` and its subclasses
are never retried; everything else is fair game for the retry policy.
"""

from __future__ import annotations


class AbortError(Exception):
    """Explicit non-retryable signal. Messages always start with ``ABORT:``."""

    def __init__(self, message: str):
        if not message.startswith("ABORT"):
            message = f"ABORT: {message}"
        super().__init__(message)


class BudgetExceeded(AbortError):
    """A session crossed its call-count or token-count ceiling."""


class EmptyResponseError(Exception):
    """The text-generation service answered with no content."""


class InvalidStatusTransition(Exception):
    """A session status change would move the state machine backwards."""


class SessionStateError(Exception):
    """An operation was requested while the session is in the wrong status."""


class ContentNotFound(LookupError):
    """The requested subtopic (or its content) does not exist."""


class SpanNotFound(LookupError):
    """The selected passage could not be located in the subtopic body."""


class NoPreviousVersion(LookupError):
    """Undo was requested with an empty version stack."""

    def __init__(self, key: str):
        super().__init__(f"No previous version available for {key}")
        self.key = key


class InvalidEditRequest(ValueError):
    """Bad indices, too-short selection or unknown edit action."""


class ExportError(RuntimeError):
    """The export collaborator failed to produce a document."""
