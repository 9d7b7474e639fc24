"""Exception hierarchy for the resilience layer.

Event handlers never let these escape to the host dispatcher; they are raised
by explicit calls (CLI, HTTP client) and caught at the component boundary.
"""

from __future__ import annotations


class ResilienceError(Exception):
    """Base class for all resilience errors."""


class TranscriptError(ResilienceError):
    """A stored message or part could not be read or written."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class ConversationAPIError(ResilienceError):
    """The host conversation API returned a failure."""

    def __init__(self, operation: str, status_code: int | None = None, detail: str = ""):
        message = f"{operation} failed"
        if status_code is not None:
            message += f" (HTTP {status_code})"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code
        self.detail = detail
