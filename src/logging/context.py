# src/logging/context.py — v2
"""Contextual logging support — attach event_type, rule, guid, worker to log records.

Context variables are task-local under asyncio, so concurrent workers each
see their own values.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass
from typing import Any

_event_type: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "event_type", default=None
)
_rule: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "rule", default=None
)
_guid: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "guid", default=None
)
_worker: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "worker", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    event_type: str | None = None
    rule: str | None = None
    guid: str | None = None
    worker: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        event_type=_event_type.get(),
        rule=_rule.get(),
        guid=_guid.get(),
        worker=_worker.get(),
    )


def set_worker_context(worker: str) -> None:
    """Set worker identity (called once per worker task)."""
    _worker.set(worker)


def set_event_context(event_type: str | None) -> None:
    """Set per-event context and clear rule/guid left by the previous event."""
    _event_type.set(event_type)
    _rule.set(None)
    _guid.set(None)


def set_rule_context(rule: str | None, guid: str | None = None) -> None:
    """Set the rule (and resulting GUID, once known) being applied."""
    _rule.set(rule)
    _guid.set(guid)


def clear_context() -> None:
    """Reset all context variables."""
    _event_type.set(None)
    _rule.set(None)
    _guid.set(None)
    _worker.set(None)
