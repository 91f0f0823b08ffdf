from __future__ import annotations

from typing import Optional

TIMEOUT_EXHAUSTED_MESSAGE = (
    "Timeout: models did not respond within the allotted time. Request cancelled automatically."
)
FAILURE_EXHAUSTED_MESSAGE = "No models responded."


class RelayError(Exception):
    """Base class for every error the relay raises on purpose."""


class ValidationError(RelayError):
    """
    Request rejected before any backend is contacted.
    `code` is machine-readable (e.g. MISSING_PROMPT, INVALID_ROUTE).
    """

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class BackendUnavailable(RelayError):
    """Connection refused, backend-side error, or a non-success status."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PlanExhausted(RelayError):
    """
    Every planned attempt ended without success.
    `timed_out` is True when at least one attempt was auto-cancelled by its timer.
    """

    def __init__(self, *, timed_out: bool) -> None:
        super().__init__(TIMEOUT_EXHAUSTED_MESSAGE if timed_out else FAILURE_EXHAUSTED_MESSAGE)
        self.timed_out = timed_out
