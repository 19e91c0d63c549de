# src/rules/store.py — v1
"""Rule store — holds the active RuleSet snapshot and swaps it atomically.

Readers take ``current`` once per event and evaluate against that snapshot
only, so a reload can never expose a half-updated rule set. A rejected
load leaves the last-known-good snapshot in place.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from entitysynth.core.errors import InvalidRuleDefinition
from entitysynth.rules.loader import load_rule_set
from entitysynth.rules.models import RelationshipRule, RuleSet, SynthesisRule
from entitysynth.tracking.stats import EngineStats

logger = logging.getLogger(__name__)


class RuleStore:
    """Atomically swappable holder of an immutable RuleSet.

    Args:
        initial: Starting snapshot. Defaults to an empty rule set.
        stats: Shared counters for load/rejection accounting.
    """

    def __init__(
        self,
        initial: RuleSet | None = None,
        stats: EngineStats | None = None,
    ) -> None:
        self._current = initial or RuleSet.empty()
        self._stats = stats or EngineStats()

    @property
    def current(self) -> RuleSet:
        """The active snapshot. Single attribute read, never torn."""
        return self._current

    @property
    def version(self) -> str:
        return self._current.version

    def swap(self, rule_set: RuleSet) -> RuleSet:
        """Replace the active snapshot and return the previous one."""
        previous = self._current
        self._current = rule_set
        self._stats.incr("rule_set_loads")
        logger.info(
            "Rule set swapped: %s -> %s (%d rules)",
            previous.version, rule_set.version, rule_set.rule_count,
        )
        return previous

    def load(
        self,
        paths: Sequence[Path | str],
        include_builtin: bool = False,
        version: str | None = None,
    ) -> RuleSet:
        """Load, validate and adopt a new rule set.

        Raises:
            InvalidRuleDefinition: The new set is rejected; the current
                snapshot stays active.
        """
        try:
            rule_set = load_rule_set(paths, include_builtin=include_builtin, version=version)
        except InvalidRuleDefinition as exc:
            self._stats.incr("rule_set_rejections")
            logger.error(
                "Rejected rule set load, keeping version %s: %s",
                self._current.version, exc,
            )
            raise
        self.swap(rule_set)
        return rule_set

    def try_load(
        self,
        paths: Sequence[Path | str],
        include_builtin: bool = False,
        version: str | None = None,
    ) -> bool:
        """Non-raising variant of load(); True if the new set was adopted."""
        try:
            self.load(paths, include_builtin=include_builtin, version=version)
        except InvalidRuleDefinition:
            return False
        return True

    def synthesis_rules_for(self, event_type: str | None) -> tuple[SynthesisRule, ...]:
        return self._current.synthesis_rules_for(event_type)

    def relationship_rules_for(
        self, event_type: str | None
    ) -> tuple[RelationshipRule, ...]:
        return self._current.relationship_rules_for(event_type)
