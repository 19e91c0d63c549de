# src/store/redis_store.py — v1
"""Redis-based store (STORE_BACKEND=redis).

Suitable for distributed/multi-instance deployments: every read-modify-write
is an optimistic WATCH/MULTI transaction on the record's key, so concurrent
writers on different hosts never lose an update.

Key layout (``{p}`` is the configured prefix):
  {p}entity:{guid}                 entity JSON
  {p}type:{domain}:{type}          set of GUIDs (lookup index)
  {p}rel:{type}|{source}|{target}  relationship JSON
  {p}rels:{guid}                   set of relationship ids touching the entity
  {p}expiry:entities|tags|relationships  sorted sets scored by expiry epoch

The redis client is blocking; calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, TypeVar

import redis

from entitysynth.core.errors import StoreUnavailable
from entitysynth.core.models import (
    Entity,
    EntityDelta,
    Relationship,
    RelationshipDelta,
    SweepStats,
)
from entitysynth.store.base_store import BaseEntityStore, Direction
from entitysynth.store.merge import (
    apply_entity_delta,
    apply_relationship_delta,
    matches_predicates,
    next_tag_expiry,
    prune_expired_tags,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# A transaction body returns (result, queued_writes).
TxnBody = Callable[[Any], tuple[Any, bool]]


def _ts(value: datetime) -> float:
    return value.timestamp()


class RedisEntityStore(BaseEntityStore):
    """Redis-backed store for distributed deployments."""

    backend_name = "redis"

    def __init__(
        self,
        redis_url: str | None = None,
        key_prefix: str = "entitysynth:",
        client: Any = None,
        max_watch_retries: int = 32,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url is required when no client is given")
            client = redis.Redis.from_url(redis_url, decode_responses=True)
        self._client = client
        self._prefix = key_prefix
        self._max_watch_retries = max_watch_retries

    # --- Keys ---

    def _entity_key(self, guid: str) -> str:
        return f"{self._prefix}entity:{guid}"

    def _type_key(self, domain: str, entity_type: str) -> str:
        return f"{self._prefix}type:{domain}:{entity_type}"

    def _rel_key(self, rel_id: str) -> str:
        return f"{self._prefix}rel:{rel_id}"

    def _endpoint_key(self, guid: str) -> str:
        return f"{self._prefix}rels:{guid}"

    @property
    def _entity_expiry(self) -> str:
        return f"{self._prefix}expiry:entities"

    @property
    def _tag_expiry(self) -> str:
        return f"{self._prefix}expiry:tags"

    @property
    def _rel_expiry(self) -> str:
        return f"{self._prefix}expiry:relationships"

    @staticmethod
    def _rel_id(rel_type: str, source_guid: str, target_guid: str) -> str:
        return f"{rel_type}|{source_guid}|{target_guid}"

    # --- Plumbing ---

    async def _run(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except redis.RedisError as e:
            raise StoreUnavailable(self.backend_name, operation, e) from e

    def _transact(self, key: str, body: TxnBody) -> Any:
        """Run ``body`` as a WATCH/MULTI transaction on ``key``, retrying on conflict."""
        with self._client.pipeline() as pipe:
            for _ in range(self._max_watch_retries):
                try:
                    pipe.watch(key)
                    result, queued = body(pipe)
                    if queued:
                        pipe.execute()
                    else:
                        pipe.reset()
                    return result
                except redis.WatchError:
                    logger.debug("Concurrent update on %s, retrying", key)
                    continue
        raise redis.WatchError(
            f"gave up on {key} after {self._max_watch_retries} conflicting updates"
        )

    def _queue_tag_expiry(self, pipe: Any, entity: Entity) -> None:
        tag_expiry = next_tag_expiry(entity)
        if tag_expiry is None:
            pipe.zrem(self._tag_expiry, entity.guid)
        else:
            pipe.zadd(self._tag_expiry, {entity.guid: _ts(tag_expiry)})

    # --- Writes ---

    def _upsert_entity_sync(self, delta: EntityDelta) -> str:
        key = self._entity_key(delta.guid)

        def body(pipe: Any) -> tuple[str, bool]:
            raw = pipe.get(key)
            existing = Entity.model_validate_json(raw) if raw else None
            entity = apply_entity_delta(existing, delta)
            pipe.multi()
            pipe.set(key, entity.model_dump_json())
            pipe.sadd(self._type_key(entity.domain, entity.type), entity.guid)
            pipe.zadd(self._entity_expiry, {entity.guid: _ts(entity.expires_at)})
            self._queue_tag_expiry(pipe, entity)
            return entity.guid, True

        return self._transact(key, body)

    async def upsert_entity(self, delta: EntityDelta) -> str:
        return await self._run("upsert_entity", self._upsert_entity_sync, delta)

    def _upsert_relationship_sync(self, delta: RelationshipDelta) -> Relationship:
        rel_id = self._rel_id(*delta.key)
        key = self._rel_key(rel_id)

        def body(pipe: Any) -> tuple[Relationship, bool]:
            raw = pipe.get(key)
            existing = Relationship.model_validate_json(raw) if raw else None
            rel = apply_relationship_delta(existing, delta)
            pipe.multi()
            pipe.set(key, rel.model_dump_json())
            pipe.zadd(self._rel_expiry, {rel_id: _ts(rel.expires_at)})
            pipe.sadd(self._endpoint_key(rel.source_guid), rel_id)
            pipe.sadd(self._endpoint_key(rel.target_guid), rel_id)
            return rel, True

        return self._transact(key, body)

    async def upsert_relationship(self, delta: RelationshipDelta) -> Relationship:
        return await self._run(
            "upsert_relationship", self._upsert_relationship_sync, delta
        )

    # --- Reads ---

    def _get_entity_sync(self, guid: str) -> Entity | None:
        raw = self._client.get(self._entity_key(guid))
        return Entity.model_validate_json(raw) if raw else None

    async def get_entity(self, guid: str) -> Entity | None:
        return await self._run("get_entity", self._get_entity_sync, guid)

    def _get_relationship_sync(self, rel_id: str) -> Relationship | None:
        raw = self._client.get(self._rel_key(rel_id))
        return Relationship.model_validate_json(raw) if raw else None

    async def get_relationship(
        self, rel_type: str, source_guid: str, target_guid: str
    ) -> Relationship | None:
        rel_id = self._rel_id(rel_type, source_guid, target_guid)
        return await self._run("get_relationship", self._get_relationship_sync, rel_id)

    def _relationships_of_sync(self, guid: str, direction: Direction) -> list[Relationship]:
        rel_ids = sorted(self._client.smembers(self._endpoint_key(guid)))
        if not rel_ids:
            return []
        result: list[Relationship] = []
        for raw in self._client.mget([self._rel_key(r) for r in rel_ids]):
            if not raw:
                continue
            rel = Relationship.model_validate_json(raw)
            if direction == "out" and rel.source_guid != guid:
                continue
            if direction == "in" and rel.target_guid != guid:
                continue
            result.append(rel)
        return result

    async def relationships_of(
        self, guid: str, direction: Direction = "both"
    ) -> list[Relationship]:
        return await self._run(
            "relationships_of", self._relationships_of_sync, guid, direction
        )

    def _find_entities_sync(
        self,
        domain: str,
        entity_type: str,
        predicates: Mapping[str, str],
        as_of: datetime | None,
        limit: int | None,
    ) -> list[Entity]:
        guids = sorted(self._client.smembers(self._type_key(domain, entity_type)))
        if not guids:
            return []
        found: list[Entity] = []
        for raw in self._client.mget([self._entity_key(g) for g in guids]):
            if not raw:
                continue
            entity = Entity.model_validate_json(raw)
            if as_of is not None and entity.is_expired(as_of):
                continue
            if matches_predicates(entity, predicates, as_of):
                found.append(entity)
                if limit is not None and len(found) >= limit:
                    break
        return found

    async def find_entities(
        self,
        domain: str,
        entity_type: str,
        predicates: Mapping[str, str],
        as_of: datetime | None = None,
        limit: int | None = None,
    ) -> list[Entity]:
        return await self._run(
            "find_entities",
            self._find_entities_sync,
            domain, entity_type, dict(predicates), as_of, limit,
        )

    async def entity_count(self) -> int:
        return await self._run("entity_count", self._client.zcard, self._entity_expiry)

    async def relationship_count(self) -> int:
        return await self._run("relationship_count", self._client.zcard, self._rel_expiry)

    # --- Expiry ---

    def _expire_entity(self, guid: str, now: datetime) -> bool:
        key = self._entity_key(guid)

        def body(pipe: Any) -> tuple[bool, bool]:
            raw = pipe.get(key)
            if raw is None:
                pipe.multi()
                pipe.zrem(self._entity_expiry, guid)
                pipe.zrem(self._tag_expiry, guid)
                return False, True
            entity = Entity.model_validate_json(raw)
            if not entity.is_expired(now):
                return False, False
            pipe.multi()
            pipe.delete(key)
            pipe.srem(self._type_key(entity.domain, entity.type), guid)
            pipe.zrem(self._entity_expiry, guid)
            pipe.zrem(self._tag_expiry, guid)
            return True, True

        return self._transact(key, body)

    def _prune_tags(self, guid: str, now: datetime) -> int:
        key = self._entity_key(guid)

        def body(pipe: Any) -> tuple[int, bool]:
            raw = pipe.get(key)
            if raw is None:
                pipe.multi()
                pipe.zrem(self._tag_expiry, guid)
                return 0, True
            entity, removed = prune_expired_tags(Entity.model_validate_json(raw), now)
            pipe.multi()
            if removed:
                pipe.set(key, entity.model_dump_json())
            self._queue_tag_expiry(pipe, entity)
            return removed, True

        return self._transact(key, body)

    def _expire_relationship(self, rel_id: str, now: datetime) -> bool:
        key = self._rel_key(rel_id)

        def body(pipe: Any) -> tuple[bool, bool]:
            raw = pipe.get(key)
            if raw is None:
                pipe.multi()
                pipe.zrem(self._rel_expiry, rel_id)
                return False, True
            rel = Relationship.model_validate_json(raw)
            if not rel.is_expired(now):
                return False, False
            pipe.multi()
            pipe.delete(key)
            pipe.zrem(self._rel_expiry, rel_id)
            pipe.srem(self._endpoint_key(rel.source_guid), rel_id)
            pipe.srem(self._endpoint_key(rel.target_guid), rel_id)
            return True, True

        return self._transact(key, body)

    def _expire_sync(self, now: datetime) -> SweepStats:
        bound = f"({_ts(now)}"
        stats = SweepStats()
        for guid in self._client.zrangebyscore(self._entity_expiry, "-inf", bound):
            if self._expire_entity(guid, now):
                stats.entities_removed += 1
        for guid in self._client.zrangebyscore(self._tag_expiry, "-inf", bound):
            stats.tags_removed += self._prune_tags(guid, now)
        for rel_id in self._client.zrangebyscore(self._rel_expiry, "-inf", bound):
            if self._expire_relationship(rel_id, now):
                stats.relationships_removed += 1
        return stats

    async def expire_older_than(self, now: datetime) -> SweepStats:
        stats = await self._run("expire_older_than", self._expire_sync, now)
        if stats.total:
            logger.info(
                "Expired %d entities, %d relationships, %d tags",
                stats.entities_removed, stats.relationships_removed, stats.tags_removed,
            )
        return stats

    async def close(self) -> None:
        """Close the Redis connection."""
        self._client.close()
