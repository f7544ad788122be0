"""
Error taxonomy for the protocol review engine.

Every failure carries a stable, enumerable reason code so that callers
can branch on ``error.code`` instead of parsing message text.

Codes:
- VALIDATION_ERROR: malformed or missing fields (never partially applied)
- INVALID_TRANSITION: illegal status move
- UNAUTHORIZED_AUTHOR: author is not permitted to decide in a collection
- DECISION_NOT_ALLOWED: protocol is not in a state that accepts decisions
- NOT_FOUND: entity absent (recoverable, distinct from transport errors)
- TRANSPORT_ERROR: connectivity or confirmation timeout (retryable)
- STALE_WRITE: optimistic staleness check failed
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class ReviewEngineError(Exception):
    """Base class for all engine errors."""

    code = "ENGINE_ERROR"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class FieldError:
    """A single failing field in a validation pass."""
    field: str
    reason: str


class ValidationError(ReviewEngineError):
    """Raised when a patch fails schema validation. Lists every failing field."""

    code = "VALIDATION_ERROR"

    def __init__(self, kind: str, fields: List[FieldError]):
        self.kind = kind
        self.fields = list(fields)
        summary = ", ".join(f"{f.field}: {f.reason}" for f in self.fields)
        super().__init__(f"{kind} validation failed: {summary}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["fields"] = [{"field": f.field, "reason": f.reason} for f in self.fields]
        return data


class InvalidTransition(ReviewEngineError):
    """Raised for a status move not present in the transition table."""

    code = "INVALID_TRANSITION"

    def __init__(self, current: Optional[str], target: str, actor_role: str, reason: Optional[str] = None):
        self.current = current
        self.target = target
        self.actor_role = actor_role
        message = f"{actor_role} cannot move protocol from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"current": self.current, "target": self.target, "actor_role": self.actor_role})
        return data


class UnauthorizedAuthor(ReviewEngineError):
    code = "UNAUTHORIZED_AUTHOR"


class DecisionNotAllowed(ReviewEngineError):
    code = "DECISION_NOT_ALLOWED"


class NotFoundError(ReviewEngineError, LookupError):
    """Entity absent. Callers surface this as a recoverable state."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} not found")


class TransportError(ReviewEngineError):
    """Connectivity failure or missing confirmation. Retried by the transport."""

    code = "TRANSPORT_ERROR"
    retryable = True


class StaleWriteError(ReviewEngineError):
    code = "STALE_WRITE"
