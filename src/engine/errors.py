"""Exceptions raised by the billing sync engine."""

from __future__ import annotations


class SyncEngineError(Exception):
    """Base exception for sync engine errors."""


class NotAuthenticatedError(SyncEngineError):
    """Raised when no signed-in principal is available."""


class PendingEditError(SyncEngineError, ValueError):
    """Raised when a pending-list edit is rejected before any state changes."""


class ForegroundActionError(SyncEngineError):
    """Raised when a user-initiated action fails; ``user_message`` is safe to display."""

    def __init__(self, user_message: str, *, error_code: str | None = None) -> None:
        super().__init__(user_message)
        self.user_message = user_message
        self.error_code = error_code


class StaleDataGuardViolation(SyncEngineError):
    """Raised internally when a pass finishes after a newer pass already rendered."""

    def __init__(self, sequence: int, rendered_sequence: int) -> None:
        super().__init__(
            f"Dropping pass {sequence}; pass {rendered_sequence} already rendered."
        )
        self.sequence = sequence
        self.rendered_sequence = rendered_sequence
