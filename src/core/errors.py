# src/core/errors.py — v1
"""Engine error taxonomy.

NoMatch is deliberately absent: an event no rule applies to is a normal
outcome and is returned as a value (see core.models.NoMatch).
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all entitysynth errors."""


class InvalidRuleDefinition(EngineError):
    """A rule document failed validation at load time."""

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid rule definition in {source}: {reason}")


class InvalidGuid(EngineError):
    """A GUID token could not be decoded."""

    def __init__(self, token: str, reason: str) -> None:
        self.token = token
        self.reason = reason
        super().__init__(f"Invalid GUID {token!r}: {reason}")


class AmbiguousLookup(EngineError):
    """A lookup matched zero or several candidate entities."""

    def __init__(self, domain: str, entity_type: str, candidates: int) -> None:
        self.domain = domain
        self.entity_type = entity_type
        self.candidates = candidates
        super().__init__(
            f"Lookup for {domain}/{entity_type} matched {candidates} candidates"
        )


class StoreUnavailable(EngineError):
    """Transient failure of the entity/relationship store backend."""

    def __init__(self, backend: str, operation: str, cause: Exception | None = None) -> None:
        self.backend = backend
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Store '{backend}' unavailable during {operation}{detail}")
