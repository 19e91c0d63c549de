# src/pipeline/processor.py — v2
"""Event processor — synthesis, store upserts and relationship discovery.

Per event:
  1. synthesize_all → one entity delta per entity type the event describes
  2. upsert every entity (so lookups below can already see them)
  3. discover relationships
  4. upsert every relationship

Store writes run as shielded tasks: cancelling a caller never abandons a
write halfway through its retry loop, and aclose() waits for them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from entitysynth.config.settings import Settings
from entitysynth.core.errors import StoreUnavailable
from entitysynth.core.models import EntityDelta, Event, RelationshipDelta
from entitysynth.core.values import utcnow
from entitysynth.engine.relationships import RelationshipEngine
from entitysynth.engine.synthesis import SynthesisEngine
from entitysynth.logging.context import set_event_context, set_worker_context
from entitysynth.rules.store import RuleStore
from entitysynth.store.base_store import BaseEntityStore
from entitysynth.store.retry import RetryConfig, with_store_retry
from entitysynth.tracking.stats import EngineStats

logger = logging.getLogger(__name__)

_STOP = object()


class ProcessResult(BaseModel):
    """What one event produced."""

    event_type: str | None = None
    observed_at: datetime
    entities: list[EntityDelta] = Field(default_factory=list)
    relationships: list[RelationshipDelta] = Field(default_factory=list)


class StreamSummary(BaseModel):
    """Totals for one process_stream() run."""

    events: int = 0
    failed: int = 0
    entities: int = 0
    relationships: int = 0


class EventProcessor:
    """Drive events through both engines into the store.

    Args:
        rule_store: Source of the active rule snapshot.
        store: Entity/relationship store.
        settings: Attribute names, TTL defaults, lookup policy, retry and
            concurrency settings. Defaults to Settings().
        stats: Shared outcome counters.
        clock: Time source for events without a timestamp.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        store: BaseEntityStore,
        settings: Settings | None = None,
        stats: EngineStats | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = settings or Settings()
        self._store = store
        self._stats = stats or EngineStats()
        self._concurrency = settings.worker_concurrency
        self._retry = RetryConfig(
            max_retries=settings.store_retry_max,
            base_delay_s=settings.store_retry_base_delay_s,
            backoff_factor=settings.store_retry_backoff,
        )
        self._synthesis = SynthesisEngine(
            rule_store,
            event_type_attribute=settings.event_type_attribute,
            timestamp_attribute=settings.timestamp_attribute,
            stats=self._stats,
            clock=clock,
        )
        self._relationships = RelationshipEngine(
            rule_store,
            store,
            event_type_attribute=settings.event_type_attribute,
            timestamp_attribute=settings.timestamp_attribute,
            structural_ttl_s=settings.relationship_ttl_structural_s,
            behavioral_ttl_s=settings.relationship_ttl_behavioral_s,
            lookup_ambiguity_policy=settings.lookup_ambiguity_policy,
            validate_extracted_guids=settings.validate_extracted_guids,
            stats=self._stats,
            clock=clock,
        )
        self._inflight: set[asyncio.Task[Any]] = set()

    @property
    def synthesis(self) -> SynthesisEngine:
        return self._synthesis

    @property
    def relationships(self) -> RelationshipEngine:
        return self._relationships

    @property
    def inflight_writes(self) -> int:
        return len(self._inflight)

    async def process(self, event: Event) -> ProcessResult:
        """Process one event end to end.

        Raises:
            StoreUnavailable: A write still failed after all retries.
        """
        event_type = self._synthesis.event_type_of(event)
        set_event_context(event_type)
        observed_at = self._synthesis.observed_at(event)

        entities = self._synthesis.synthesize_all(event, observed_at)
        for delta in entities:
            await self._write(self._store.upsert_entity, delta, "upsert_entity")

        relationships = await self._relationships.discover(event, observed_at)
        for rel in relationships:
            await self._write(self._store.upsert_relationship, rel, "upsert_relationship")

        self._stats.incr("events_processed")
        return ProcessResult(
            event_type=event_type,
            observed_at=observed_at,
            entities=entities,
            relationships=relationships,
        )

    async def process_stream(
        self,
        events: Iterable[Event] | AsyncIterable[Event],
        concurrency: int | None = None,
        on_result: Callable[[ProcessResult], Awaitable[None] | None] | None = None,
    ) -> StreamSummary:
        """Process events with a bounded pool of workers.

        A failing event is logged and counted; it never stops the stream.
        Results may complete out of order, which the store merge tolerates.
        """
        workers_n = concurrency or self._concurrency
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=workers_n * 2)
        summary = StreamSummary()

        async def worker(index: int) -> None:
            set_worker_context(f"worker-{index}")
            while True:
                item = await queue.get()
                try:
                    if item is _STOP:
                        return
                    await self._process_one(item, summary, on_result)
                finally:
                    queue.task_done()

        workers = [asyncio.create_task(worker(i)) for i in range(workers_n)]
        try:
            if isinstance(events, AsyncIterable):
                async for event in events:
                    await self._feed(queue, event, workers)
            else:
                for event in events:
                    await self._feed(queue, event, workers)
            for _ in workers:
                await self._feed(queue, _STOP, workers)
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        logger.info(
            "Stream done: %d events (%d failed), %d entities, %d relationships",
            summary.events, summary.failed, summary.entities, summary.relationships,
        )
        return summary

    async def aclose(self) -> None:
        """Wait for in-flight store writes to finish."""
        if self._inflight:
            logger.info("Draining %d in-flight store writes", len(self._inflight))
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    @staticmethod
    async def _feed(
        queue: asyncio.Queue[Any], item: Any, workers: list[asyncio.Task[None]]
    ) -> None:
        """Put an item on the queue without outliving the workers.

        Raises the first worker failure instead of blocking on a full queue
        that nobody drains any more.
        """
        if not queue.full():
            queue.put_nowait(item)
            return

        put = asyncio.ensure_future(queue.put(item))
        alive = {task for task in workers if not task.done()}
        try:
            while not put.done():
                if not alive:
                    raise RuntimeError("all stream workers exited")
                done, _ = await asyncio.wait(
                    {put, *alive}, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done - {put}:
                    alive.discard(task)
                    if not task.cancelled() and task.exception() is not None:
                        raise task.exception()
        finally:
            if not put.done():
                put.cancel()

    async def _process_one(
        self,
        event: Event,
        summary: StreamSummary,
        on_result: Callable[[ProcessResult], Awaitable[None] | None] | None,
    ) -> None:
        summary.events += 1
        try:
            result = await self.process(event)
            if on_result is not None:
                outcome = on_result(result)
                if asyncio.iscoroutine(outcome):
                    await outcome
        except Exception as e:
            summary.failed += 1
            self._stats.incr("events_failed")
            logger.error("Event processing failed: %s", e, exc_info=True)
            return

        summary.entities += len(result.entities)
        summary.relationships += len(result.relationships)

    async def _write(
        self, fn: Callable[..., Awaitable[Any]], delta: Any, operation: str
    ) -> Any:
        task = asyncio.create_task(
            with_store_retry(fn, delta, operation=operation, config=self._retry)
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        try:
            return await asyncio.shield(task)
        except StoreUnavailable:
            self._stats.record_store_error(operation)
            raise
