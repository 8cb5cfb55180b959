# backend/atelier/engine/errors.py
"""
Typed failures raised by the commission engine.

Hierarchy:
    EngineError (base)
    ├── IllegalTransition     - command not valid from the current state (409)
    ├── SelectionInvalid      - malformed / out-of-policy option selection (422)
    ├── ValidationError       - missing or too-short required input (422)
    │   └── InvalidDecision   - arbitration decision outside the enum (422)
    ├── AuthorizationError    - actor is not a party to the entity (403)
    ├── StaleWriteError       - concurrent write on the same entity (409)
    ├── ConsistencyViolation  - broken invariant at creation time (422, loud)
    └── EntityNotFound        - unknown id (404)

Every error is raised to the immediate caller; the API layer renders
`kind`, `message` and `details` through one exception handler.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all engine failures."""

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class IllegalTransition(EngineError):
    """A command was attempted from a state that does not allow it."""

    status_code = 409

    def __init__(self, current: str, attempted: str, message: Optional[str] = None):
        super().__init__(
            message or f"cannot {attempted} from state '{current}'",
            {"from": current, "attempted": attempted},
        )
        self.current = current
        self.attempted = attempted


class SelectionInvalid(EngineError):
    """An option selection references unknown ids or breaks listing policy."""

    status_code = 422

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}", {"field": field})
        self.field = field
        self.reason = reason


class ValidationError(EngineError):
    """Required input is missing, too short or out of range."""

    status_code = 422

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}", {"field": field})
        self.field = field
        self.reason = reason


class InvalidDecision(ValidationError):
    def __init__(self, value: Any):
        super().__init__("decision", f"'{value}' is not one of favorClient, favorArtist")
        self.value = value


class AuthorizationError(EngineError):
    """The actor is not allowed to act on this entity."""

    status_code = 403


class StaleWriteError(EngineError):
    """
    Another command changed the entity first.

    The caller should reload the entity and retry against its latest state.
    """

    status_code = 409

    def __init__(self, entity: str, entity_id: Any = None, message: Optional[str] = None):
        super().__init__(
            message or f"{entity} {entity_id} was modified concurrently; reload and retry",
            {"entity": entity, "id": entity_id},
        )


class ConsistencyViolation(EngineError):
    """An invariant is broken; the entity must never be created."""

    status_code = 422


class EntityNotFound(EngineError):
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})
