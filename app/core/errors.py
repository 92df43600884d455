"""
Error taxonomy for the incident lifecycle and trust engine.

Every error carries a stable machine-readable code, a human-readable message,
optional details and, where the caller can fix things, a suggested action.

Domain errors (validation, transition, duplicate vote, limit exceeded,
not found) are terminal and never retried. ConcurrencyConflictError and
InfrastructureError are retryable by the caller.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all errors raised by the engine."""

    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}
        self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        return payload


class ValidationError(EngineError):
    """Malformed or out-of-range input."""
    code = "VALIDATION_ERROR"


class TransitionError(EngineError):
    """Illegal status change, or the incident moved on before the write committed."""
    code = "INVALID_TRANSITION"


class DuplicateVoteError(EngineError):
    """The voter has already upvoted this incident."""
    code = "DUPLICATE_UPVOTE"


class LimitExceededError(EngineError):
    """Guest action quota exhausted."""
    code = "GUEST_ACTION_LIMIT_EXCEEDED"


class NotFoundError(EngineError):
    """Unknown incident, guest or upvote."""
    code = "NOT_FOUND"


class ConcurrencyConflictError(EngineError):
    """Conditional write kept losing to concurrent writers; safe to retry."""
    code = "CONCURRENCY_CONFLICT"
    retryable = True


class InfrastructureError(EngineError):
    """Store unavailable or timed out."""
    code = "DATABASE_ERROR"
    retryable = True


STALE_STATE = "STALE_STATE"
INCIDENT_NOT_FOUND = "INCIDENT_NOT_FOUND"
GUEST_NOT_FOUND = "GUEST_NOT_FOUND"
UPVOTE_NOT_FOUND = "UPVOTE_NOT_FOUND"
TOO_MANY_FILES = "TOO_MANY_FILES"
GUEST_BLOCKED = "GUEST_BLOCKED"

REGISTER_TO_CONTINUE = "Please register to continue."
