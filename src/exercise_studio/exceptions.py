"""Exception types raised by the exercise generation workflow.

Guard violations and access failures are raised synchronously to the caller
before any state is touched. Stage failures are recorded on the session
instead of propagating to whoever scheduled the stage.
"""

from __future__ import annotations

from typing import Any


class ExerciseStudioError(Exception):
    """Base class for all workflow errors."""

    code = "EXERCISE_STUDIO_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SessionNotFoundError(ExerciseStudioError, LookupError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' not found", details={"session_id": session_id})
        self.session_id = session_id


class InvalidSessionStateError(ExerciseStudioError, ValueError):
    """Raised when the session is not in the state the operation requires."""

    code = "INVALID_SESSION_STATE"


class AccessDeniedError(ExerciseStudioError, PermissionError):
    code = "ACCESS_DENIED"


class StagePreconditionError(ExerciseStudioError, RuntimeError):
    """A stage was asked to run without the session data it depends on."""

    code = "STAGE_PRECONDITION"


class StepStateError(ExerciseStudioError, ValueError):
    """Raised on an attempt to mutate a step that already finished."""

    code = "STEP_STATE"


class StructuredOutputError(ExerciseStudioError, RuntimeError):
    """The model answered, but its output could not be parsed into the requested schema.

    ``tokens_used`` carries the usage the provider reported for the call.
    """

    code = "STRUCTURED_OUTPUT"

    def __init__(self, message: str, *, tokens_used: int = 0) -> None:
        super().__init__(message, details={"tokens_used": tokens_used})
        self.tokens_used = tokens_used


__all__ = [
    "AccessDeniedError",
    "ExerciseStudioError",
    "InvalidSessionStateError",
    "SessionNotFoundError",
    "StagePreconditionError",
    "StepStateError",
    "StructuredOutputError",
]
