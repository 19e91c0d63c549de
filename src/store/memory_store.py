# src/store/memory_store.py — v2
"""In-process store (STORE_BACKEND=memory).

Single-process only; state is lost on exit. Used by tests, the CLI and
embedders that persist elsewhere.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from entitysynth.core.models import (
    Entity,
    EntityDelta,
    Relationship,
    RelationshipDelta,
    RelationshipKey,
    SweepStats,
)
from entitysynth.store.base_store import BaseEntityStore, Direction
from entitysynth.store.merge import (
    apply_entity_delta,
    apply_relationship_delta,
    matches_predicates,
    prune_expired_tags,
)

logger = logging.getLogger(__name__)

# Yield to the event loop every N items during a sweep.
_SWEEP_BATCH = 500


def _discard(index: dict[Any, set[Any]], key: Any, member: Any) -> None:
    """Remove member from an index set, dropping the set once empty."""
    members = index.get(key)
    if members is None:
        return
    members.discard(member)
    if not members:
        del index[key]


class MemoryEntityStore(BaseEntityStore):
    """Dict-backed store with a per-key asyncio.Lock."""

    backend_name = "memory"

    def __init__(self) -> None:
        self._entities: dict[str, Entity] = {}
        self._by_type: dict[tuple[str, str], set[str]] = defaultdict(set)
        self._relationships: dict[RelationshipKey, Relationship] = {}
        self._by_endpoint: dict[str, set[RelationshipKey]] = defaultdict(set)
        self._locks: dict[object, asyncio.Lock] = {}

    def _lock_for(self, key: object) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # --- Writes ---

    async def upsert_entity(self, delta: EntityDelta) -> str:
        async with self._lock_for(delta.guid):
            entity = apply_entity_delta(self._entities.get(delta.guid), delta)
            self._entities[delta.guid] = entity
            self._by_type[(entity.domain, entity.type)].add(entity.guid)
        return delta.guid

    async def upsert_relationship(self, delta: RelationshipDelta) -> Relationship:
        key = delta.key
        async with self._lock_for(key):
            rel = apply_relationship_delta(self._relationships.get(key), delta)
            self._relationships[key] = rel
            self._by_endpoint[rel.source_guid].add(key)
            self._by_endpoint[rel.target_guid].add(key)
        return rel

    # --- Reads ---

    async def get_entity(self, guid: str) -> Entity | None:
        return self._entities.get(guid)

    async def get_relationship(
        self, rel_type: str, source_guid: str, target_guid: str
    ) -> Relationship | None:
        return self._relationships.get((rel_type, source_guid, target_guid))

    async def relationships_of(
        self, guid: str, direction: Direction = "both"
    ) -> list[Relationship]:
        result: list[Relationship] = []
        for key in sorted(self._by_endpoint.get(guid, ())):
            rel = self._relationships.get(key)
            if rel is None:
                continue
            if direction == "out" and rel.source_guid != guid:
                continue
            if direction == "in" and rel.target_guid != guid:
                continue
            result.append(rel)
        return result

    async def find_entities(
        self,
        domain: str,
        entity_type: str,
        predicates: Mapping[str, str],
        as_of: datetime | None = None,
        limit: int | None = None,
    ) -> list[Entity]:
        found: list[Entity] = []
        for guid in sorted(self._by_type.get((domain, entity_type), ())):
            entity = self._entities.get(guid)
            if entity is None:
                continue
            if as_of is not None and entity.is_expired(as_of):
                continue
            if matches_predicates(entity, predicates, as_of):
                found.append(entity)
                if limit is not None and len(found) >= limit:
                    break
        return found

    async def entity_count(self) -> int:
        return len(self._entities)

    async def relationship_count(self) -> int:
        return len(self._relationships)

    # --- Expiry ---

    async def expire_older_than(self, now: datetime) -> SweepStats:
        stats = SweepStats()

        for i, guid in enumerate(list(self._entities)):
            if i and i % _SWEEP_BATCH == 0:
                await asyncio.sleep(0)
            async with self._lock_for(guid):
                entity = self._entities.get(guid)
                if entity is None:
                    continue
                if entity.is_expired(now):
                    del self._entities[guid]
                    _discard(self._by_type, (entity.domain, entity.type), guid)
                    stats.entities_removed += 1
                    self._locks.pop(guid, None)
                    continue
                pruned, removed = prune_expired_tags(entity, now)
                if removed:
                    self._entities[guid] = pruned
                    stats.tags_removed += removed

        for i, key in enumerate(list(self._relationships)):
            if i and i % _SWEEP_BATCH == 0:
                await asyncio.sleep(0)
            async with self._lock_for(key):
                rel = self._relationships.get(key)
                if rel is None or not rel.is_expired(now):
                    continue
                del self._relationships[key]
                _discard(self._by_endpoint, rel.source_guid, key)
                _discard(self._by_endpoint, rel.target_guid, key)
                stats.relationships_removed += 1
                self._locks.pop(key, None)

        if stats.total:
            logger.info(
                "Expired %d entities, %d relationships, %d tags",
                stats.entities_removed, stats.relationships_removed, stats.tags_removed,
            )
        return stats
