# errors.py
"""Domain error taxonomy for the matching and booking engine.

Every error carries a stable ``kind`` so callers (and the HTTP layer) can
branch on it. None of them are retryable: transient store contention is a
``sqlalchemy.exc.OperationalError`` and is handled by ``store.retry_on_contention``.
"""
from dataclasses import dataclass


class MatchingError(Exception):
    kind = "error"
    retryable = False

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        out = {"error": self.kind, "message": self.message}
        out.update(self.details)
        return out


class ValidationError(MatchingError):
    kind = "validation_error"


class NotFoundError(MatchingError):
    kind = "not_found"

    def __init__(self, entity, entity_id):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, id=entity_id)


class InvalidStateError(MatchingError):
    kind = "invalid_state"

    def __init__(self, message, current_state, **details):
        state = getattr(current_state, "value", current_state)
        super().__init__(message, current_state=state, **details)
        self.current_state = state


class ConflictError(MatchingError):
    """Another operation already won; shown to users as "no longer available"."""
    kind = "conflict"


class CapacityExceededError(MatchingError):
    kind = "capacity_exceeded"


class DependencyError(MatchingError):
    kind = "dependency_error"


@dataclass
class SecondaryFailure:
    """A failed follow-up step whose primary transition was kept."""
    step: str
    error: str
    kind: str = "error"

    @classmethod
    def from_exception(cls, step, exc):
        return cls(step=step, error=str(exc), kind=getattr(exc, "kind", type(exc).__name__))

    def to_dict(self):
        return {"step": self.step, "error": self.error, "kind": self.kind}
