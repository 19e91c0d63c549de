# src/engine/relationships.py — v2
"""Relationship engine — derive directed relationships from telemetry events.

For every relationship rule whose origin and conditions match the event,
both endpoints are resolved to GUIDs:

  build    encode a GUID from event attributes (no store access)
  extract  read a GUID carried verbatim by the event
  lookup   find exactly one stored entity by field equality

A rule that cannot resolve both endpoints is skipped for this event and
the reason is counted; other rules still run. Relationships are only as
fresh as their last observation, so nothing is retried here.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Literal

from entitysynth.core.errors import AmbiguousLookup, InvalidGuid, StoreUnavailable
from entitysynth.core.models import Event, RelationshipDelta, RelationshipKey
from entitysynth.core.values import attribute_value, event_time, to_attribute_string, utcnow
from entitysynth.engine.conditions import conditions_hold
from entitysynth.engine.guid import decode_guid, encode_guid
from entitysynth.engine.resolver import resolve_account, resolve_expression
from entitysynth.logging.context import set_rule_context
from entitysynth.rules.models import (
    BuildGuid,
    Endpoint,
    ExtractGuid,
    LookupGuid,
    RelationshipRule,
)
from entitysynth.rules.store import RuleStore
from entitysynth.rules.taxonomy import find_relationship_type
from entitysynth.store.base_store import BaseEntityStore
from entitysynth.tracking.stats import EngineStats

logger = logging.getLogger(__name__)

AmbiguityPolicy = Literal["skip", "most_recent"]


class _Unresolved(Exception):
    """An endpoint could not be resolved; carries the skip reason."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class RelationshipEngine:
    """Match events against relationship rules and emit relationship deltas.

    Args:
        rule_store: Source of the active rule snapshot.
        store: Entity store used by lookup endpoints.
        structural_ttl_s: TTL for structural relationship types without a rule TTL.
        behavioral_ttl_s: TTL for behavioral relationship types without a rule TTL.
        lookup_ambiguity_policy: "skip" drops a rule whose lookup matches
            several entities; "most_recent" picks the latest-seen one.
        validate_extracted_guids: Decode extracted GUIDs before use.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        store: BaseEntityStore,
        event_type_attribute: str = "eventType",
        timestamp_attribute: str = "timestamp",
        structural_ttl_s: int = 24 * 3600,
        behavioral_ttl_s: int = 75 * 60,
        lookup_ambiguity_policy: AmbiguityPolicy = "skip",
        validate_extracted_guids: bool = True,
        stats: EngineStats | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._rules = rule_store
        self._store = store
        self._event_type_attribute = event_type_attribute
        self._timestamp_attribute = timestamp_attribute
        self._structural_ttl_s = structural_ttl_s
        self._behavioral_ttl_s = behavioral_ttl_s
        self._policy = lookup_ambiguity_policy
        self._validate_extracted = validate_extracted_guids
        self._stats = stats or EngineStats()
        self._clock = clock

    async def discover(
        self, event: Event, observed_at: datetime | None = None
    ) -> list[RelationshipDelta]:
        """Return one delta per matching rule whose endpoints both resolve."""
        event_type = to_attribute_string(event.get(self._event_type_attribute))
        candidates = self._rules.current.relationship_rules_for(event_type)
        if not candidates:
            return []

        when = observed_at or event_time(event, self._timestamp_attribute) or self._clock()
        seen: set[RelationshipKey] = set()
        deltas: list[RelationshipDelta] = []

        for rule in candidates:
            if not conditions_hold(rule.conditions, event):
                continue
            set_rule_context(rule.name)
            try:
                source = await self._resolve(rule.source, event, when)
                target = await self._resolve(rule.target, event, when)
            except _Unresolved as e:
                self._skip(rule, e.reason)
                continue

            if source == target:
                self._skip(rule, "self_loop")
                continue

            delta = RelationshipDelta(
                type=rule.type,
                source_guid=source,
                target_guid=target,
                observed_at=when,
                ttl_s=self.ttl_for(rule),
                rule_name=rule.name,
            )
            if delta.key in seen:
                continue
            seen.add(delta.key)
            deltas.append(delta)

        self._stats.incr("relationships_emitted", len(deltas))
        return deltas

    def ttl_for(self, rule: RelationshipRule) -> int:
        """Rule TTL, else the default for the relationship type's category."""
        if rule.ttl_s is not None:
            return rule.ttl_s
        entry = find_relationship_type(rule.type)
        if entry is not None and entry.category == "structural":
            return self._structural_ttl_s
        return self._behavioral_ttl_s

    # --- Endpoint resolution ---

    async def _resolve(self, endpoint: Endpoint, event: Event, when: datetime) -> str:
        if isinstance(endpoint, BuildGuid):
            return self._build(endpoint, event)
        if isinstance(endpoint, ExtractGuid):
            return self._extract(endpoint, event)
        if isinstance(endpoint, LookupGuid):
            return await self._lookup(endpoint, event, when)
        raise TypeError(f"Unknown endpoint kind: {type(endpoint).__name__}")

    def _build(self, endpoint: BuildGuid, event: Event) -> str:
        identifier = resolve_expression(endpoint.identifier, event)
        if identifier is None:
            raise _Unresolved("missing_identifier")
        account_id = resolve_account(endpoint.account, event)
        if account_id is None:
            raise _Unresolved("missing_account")
        try:
            return encode_guid(account_id, endpoint.domain, endpoint.type, identifier)
        except ValueError as e:
            logger.warning("Endpoint identifier unusable: %s", e)
            raise _Unresolved("invalid_identifier") from e

    def _extract(self, endpoint: ExtractGuid, event: Event) -> str:
        token = attribute_value(event, endpoint.attribute)
        if token is None:
            raise _Unresolved("missing_guid")
        if self._validate_extracted:
            try:
                decode_guid(token)
            except InvalidGuid as e:
                logger.warning("Extracted GUID rejected: %s", e.reason)
                raise _Unresolved("invalid_guid") from e
        return token

    async def _lookup(self, endpoint: LookupGuid, event: Event, when: datetime) -> str:
        predicates: dict[str, str] = {}
        for field in endpoint.fields:
            value = attribute_value(event, field.attribute)
            if value is None:
                raise _Unresolved("missing_lookup_attribute")
            predicates[field.field] = value

        try:
            if self._policy == "most_recent":
                matches = await self._store.find_entities(
                    endpoint.domain, endpoint.type, predicates, as_of=when
                )
                if not matches:
                    raise _Unresolved("lookup_not_found")
                if len(matches) > 1:
                    logger.info(
                        "Lookup for %s/%s matched %d entities, using most recent",
                        endpoint.domain, endpoint.type, len(matches),
                    )
                return max(matches, key=lambda e: (e.last_seen_at, e.guid)).guid

            entity = await self._store.lookup(
                endpoint.domain, endpoint.type, predicates, as_of=when
            )
        except AmbiguousLookup as e:
            logger.warning("%s; skipping rule", e)
            raise _Unresolved("lookup_ambiguous") from e
        except StoreUnavailable as e:
            self._stats.record_store_error("lookup")
            logger.warning("Lookup failed: %s", e)
            raise _Unresolved("store_unavailable") from e

        if entity is None:
            raise _Unresolved("lookup_not_found")
        return entity.guid

    def _skip(self, rule: RelationshipRule, reason: str) -> None:
        self._stats.record_relationship_skip(reason)
        logger.debug("Relationship rule %s skipped: %s", rule.name, reason)
