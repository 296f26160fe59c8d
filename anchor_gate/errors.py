"""
Error taxonomy for the gating core.

Degraded verification results (knowledge unavailable, per-question timeout)
are successful responses carrying a flag and never appear here.
"""

from typing import Optional


class GatingError(Exception):
    """Base for errors returned to the immediate caller of the gating core."""

    code = "gating_error"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code is not None:
            self.code = str(code)
        super().__init__(message)


class ValidationError(GatingError):
    """Malformed or incomplete request (zero questions, missing answer, ...)."""

    code = "validation_error"


class ConflictError(GatingError):
    """Attempt allocation collided with an IN_PROGRESS attempt or ran out of retries."""

    code = "conflict"


class NotFoundError(GatingError):
    """Referenced checkpoint or attempt does not exist or is soft-deleted."""

    code = "not_found"


class InvalidStateError(GatingError):
    """Transition requested on an already-terminal attempt."""

    code = "invalid_state"


ATTEMPT_IN_PROGRESS_MESSAGE = (
    "You already have an attempt in progress for this checkpoint. Resume it to continue."
)
