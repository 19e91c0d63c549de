# src/tracking/stats.py — v1
"""Engine outcome counters.

Every skip and failure path increments a counter so it can be monitored;
how the counters are exported is left to the embedding application.
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone

from pydantic import BaseModel


class StatsSnapshot(BaseModel):
    """Point-in-time copy of EngineStats."""

    taken_at: datetime
    events_processed: int = 0
    events_failed: int = 0
    entities_emitted: int = 0
    relationships_emitted: int = 0
    no_match: dict[str, int] = {}
    relationship_skips: dict[str, int] = {}
    store_errors: dict[str, int] = {}
    rule_set_loads: int = 0
    rule_set_rejections: int = 0
    sweeps: int = 0
    swept_items: int = 0

    @property
    def no_match_total(self) -> int:
        return sum(self.no_match.values())


@dataclass
class EngineStats:
    """Thread-safe counters shared by the engines, processor and sweeper."""

    events_processed: int = 0
    events_failed: int = 0
    entities_emitted: int = 0
    relationships_emitted: int = 0
    no_match: Counter[str] = field(default_factory=Counter)
    relationship_skips: Counter[str] = field(default_factory=Counter)
    store_errors: Counter[str] = field(default_factory=Counter)
    rule_set_loads: int = 0
    rule_set_rejections: int = 0
    sweeps: int = 0
    swept_items: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def incr(self, name: str, amount: int = 1) -> None:
        """Increment a scalar counter by attribute name."""
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def record_no_match(self, reason: str) -> None:
        with self._lock:
            self.no_match[reason] += 1

    def record_relationship_skip(self, reason: str) -> None:
        with self._lock:
            self.relationship_skips[reason] += 1

    def record_store_error(self, operation: str) -> None:
        with self._lock:
            self.store_errors[operation] += 1

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                taken_at=datetime.now(timezone.utc),
                events_processed=self.events_processed,
                events_failed=self.events_failed,
                entities_emitted=self.entities_emitted,
                relationships_emitted=self.relationships_emitted,
                no_match=dict(self.no_match),
                relationship_skips=dict(self.relationship_skips),
                store_errors=dict(self.store_errors),
                rule_set_loads=self.rule_set_loads,
                rule_set_rejections=self.rule_set_rejections,
                sweeps=self.sweeps,
                swept_items=self.swept_items,
            )
