# src/engine/synthesis.py — v2
"""Synthesis engine — derive entity deltas from telemetry events.

Pure computation: the engine reads the active rule snapshot and the event
and returns a delta. It never touches the store; applying the delta
(create vs merge) is the store's job.

Algorithm per event:
  1. Select candidate rules by the event-type discriminator
  2. First rule (priority order) whose conditions all hold is selected
  3. Resolve identifier and account, encode the GUID
  4. Resolve name (defaults to the identifier) and tags (fallback chains, TTL)
  5. Emit EntityDelta, or NoMatch when any step finds nothing
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from entitysynth.core.models import EntityDelta, Event, NoMatch, NoMatchReason, TagDelta
from entitysynth.core.values import event_time, to_attribute_string, utcnow
from entitysynth.engine.conditions import conditions_hold
from entitysynth.engine.guid import encode_guid
from entitysynth.engine.resolver import resolve_account, resolve_expression, resolve_fallback
from entitysynth.logging.context import set_rule_context
from entitysynth.rules.models import SynthesisRule
from entitysynth.rules.store import RuleStore
from entitysynth.rules.taxonomy import find_entity_type
from entitysynth.tracking.stats import EngineStats

logger = logging.getLogger(__name__)

DEFAULT_ENTITY_EXPIRATION_S = 8 * 86400


class SynthesisEngine:
    """Match events against synthesis rules and emit entity deltas.

    Args:
        rule_store: Source of the active rule snapshot.
        event_type_attribute: Attribute naming the event's source schema.
        timestamp_attribute: Attribute carrying the observation time.
        default_expiration_s: Entity expiration when neither the rule nor
            the taxonomy defines one.
        stats: Shared outcome counters.
        clock: Time source used when an event carries no timestamp.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        event_type_attribute: str = "eventType",
        timestamp_attribute: str = "timestamp",
        default_expiration_s: int = DEFAULT_ENTITY_EXPIRATION_S,
        stats: EngineStats | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._rules = rule_store
        self._event_type_attribute = event_type_attribute
        self._timestamp_attribute = timestamp_attribute
        self._default_expiration_s = default_expiration_s
        self._stats = stats or EngineStats()
        self._clock = clock

    def event_type_of(self, event: Event) -> str | None:
        return to_attribute_string(event.get(self._event_type_attribute))

    def observed_at(self, event: Event, observed_at: datetime | None = None) -> datetime:
        """Explicit time, else the event's timestamp, else now."""
        if observed_at is not None:
            return observed_at
        return event_time(event, self._timestamp_attribute) or self._clock()

    def synthesize(
        self, event: Event, observed_at: datetime | None = None
    ) -> EntityDelta | NoMatch:
        """Derive at most one entity from an event (first matching rule wins)."""
        event_type = self.event_type_of(event)
        candidates = self._rules.current.synthesis_rules_for(event_type)
        if not candidates:
            return self._no_match("no_rules", event_type)

        for rule in candidates:
            if conditions_hold(rule.conditions, event):
                outcome = self._apply(rule, event, event_type, self.observed_at(event, observed_at))
                if isinstance(outcome, EntityDelta):
                    self._stats.incr("entities_emitted")
                return outcome
        return self._no_match("no_condition_match", event_type)

    def synthesize_all(
        self, event: Event, observed_at: datetime | None = None
    ) -> list[EntityDelta]:
        """Derive one entity per (domain, type) the event describes.

        Within each entity type the first matching rule wins, exactly as in
        synthesize(); rules for other types are still considered.
        """
        event_type = self.event_type_of(event)
        candidates = self._rules.current.synthesis_rules_for(event_type)
        if not candidates:
            self._no_match("no_rules", event_type)
            return []

        when = self.observed_at(event, observed_at)
        selected: set[tuple[str, str]] = set()
        deltas: list[EntityDelta] = []
        for rule in candidates:
            if rule.entity_type_key in selected:
                continue
            if not conditions_hold(rule.conditions, event):
                continue
            selected.add(rule.entity_type_key)
            outcome = self._apply(rule, event, event_type, when)
            if isinstance(outcome, EntityDelta):
                deltas.append(outcome)

        if not selected:
            self._no_match("no_condition_match", event_type)
        self._stats.incr("entities_emitted", len(deltas))
        return deltas

    def _apply(
        self,
        rule: SynthesisRule,
        event: Event,
        event_type: str | None,
        observed_at: datetime,
    ) -> EntityDelta | NoMatch:
        set_rule_context(rule.name)

        identifier = resolve_expression(rule.identifier, event)
        if identifier is None:
            return self._no_match("missing_identifier", event_type, rule.name)

        account_id = resolve_account(rule.account, event)
        if account_id is None:
            return self._no_match("missing_account", event_type, rule.name)

        try:
            guid = encode_guid(account_id, rule.domain, rule.type, identifier)
        except ValueError as e:
            logger.warning("Rule %s produced an unusable identifier: %s", rule.name, e)
            return self._no_match("invalid_identifier", event_type, rule.name)
        set_rule_context(rule.name, guid)

        name = identifier
        if rule.name_expr is not None:
            resolved_name = resolve_expression(rule.name_expr, event)
            if resolved_name is None:
                logger.debug("Name expression unresolved, using identifier %r", identifier)
            else:
                name = resolved_name

        tags: dict[str, TagDelta] = {}
        for mapping in rule.tags:
            if mapping.target in tags:
                continue
            value = resolve_fallback(mapping.attribute_chain, event)
            if value is not None:
                tags[mapping.target] = TagDelta(value=value, ttl_s=mapping.ttl_s)

        return EntityDelta(
            guid=guid,
            account_id=account_id,
            domain=rule.domain,
            type=rule.type,
            identifier=identifier,
            name=name,
            tags=tags,
            observed_at=observed_at,
            expiration_s=self._expiration_for(rule),
            rule_name=rule.name,
        )

    def _expiration_for(self, rule: SynthesisRule) -> int:
        if rule.expiration_s is not None:
            return rule.expiration_s
        entry = find_entity_type(rule.domain, rule.type)
        if entry is not None:
            return entry.expiration_s
        return self._default_expiration_s

    def _no_match(
        self,
        reason: NoMatchReason,
        event_type: str | None,
        rule_name: str | None = None,
    ) -> NoMatch:
        self._stats.record_no_match(reason)
        logger.debug("No entity from %s event: %s (rule=%s)", event_type, reason, rule_name)
        return NoMatch(reason=reason, event_type=event_type, rule_name=rule_name)
