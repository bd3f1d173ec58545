"""Typed errors raised by the ride engine.

Every error carries a stable ``kind`` and an HTTP status so the web layer can
render it without knowing which operation failed.
"""
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all engine failures."""

    kind = "error"
    status_code = 500

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail)
        self.detail = detail
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.kind, "detail": self.detail}
        body.update(self.extra)
        return body


class ValidationError(EngineError):
    """Malformed or out-of-range input."""

    kind = "validation"
    status_code = 400


class NotFound(EngineError):
    kind = "not_found"
    status_code = 404


class Forbidden(EngineError):
    """Actor is not a party to the entity or not allowed to act."""

    kind = "forbidden"
    status_code = 403


class Conflict(EngineError):
    """Actor already holds an active ride or negotiation."""

    kind = "conflict"
    status_code = 409


class InvalidTransition(EngineError):
    """Requested transition is not legal from the entity's current state."""

    kind = "invalid_transition"
    status_code = 400

    def __init__(self, current: str, attempted: str, detail: Optional[str] = None):
        detail = detail or f"cannot move from {current} to {attempted}"
        super().__init__(detail, current=current, attempted=attempted)
        self.current = current
        self.attempted = attempted


class Expired(EngineError):
    kind = "expired"
    status_code = 400


class InsufficientFunds(EngineError):
    kind = "insufficient_funds"
    status_code = 402
