# src/pipeline/engine.py — v1
"""Engine facade — wires settings, rules, store, processor and sweeper.

Usage:
    async with Engine(load_settings()) as engine:
        await engine.process(event)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Awaitable, Callable, Iterable, Sequence
from datetime import datetime
from pathlib import Path

from entitysynth.config.settings import Settings
from entitysynth.core.models import Event
from entitysynth.core.values import utcnow
from entitysynth.pipeline.processor import EventProcessor, ProcessResult, StreamSummary
from entitysynth.pipeline.sweeper import ExpirySweeper
from entitysynth.rules.store import RuleStore
from entitysynth.store.base_store import BaseEntityStore
from entitysynth.store.store_factory import create_store
from entitysynth.tracking.stats import EngineStats, StatsSnapshot

logger = logging.getLogger(__name__)


class Engine:
    """Entity synthesis and relationship engine.

    Args:
        settings: Application settings. Defaults to Settings().
        rule_store: Pre-populated rule store. When omitted, rules are
            loaded from ``settings.rules_paths`` on start().
        store: Store backend. When omitted, created from settings.
        stats: Shared outcome counters.
        clock: Time source.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        rule_store: RuleStore | None = None,
        store: BaseEntityStore | None = None,
        stats: EngineStats | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings or Settings()
        self._stats = stats or EngineStats()
        self._load_rules_on_start = rule_store is None
        self._rule_store = rule_store or RuleStore(stats=self._stats)
        self._store = store or create_store(self._settings)
        self._processor = EventProcessor(
            self._rule_store, self._store, self._settings, self._stats, clock
        )
        self._sweeper = ExpirySweeper(
            self._store, self._settings.sweep_interval_s, self._stats, clock
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def rule_store(self) -> RuleStore:
        return self._rule_store

    @property
    def store(self) -> BaseEntityStore:
        return self._store

    @property
    def processor(self) -> EventProcessor:
        return self._processor

    @property
    def sweeper(self) -> ExpirySweeper:
        return self._sweeper

    def stats(self) -> StatsSnapshot:
        return self._stats.snapshot()

    async def start(self) -> None:
        """Load rules (unless a rule store was injected) and start the sweeper.

        Raises:
            InvalidRuleDefinition: The configured rules do not validate.
        """
        if self._load_rules_on_start:
            self.reload_rules()
        if self._settings.sweep_enabled:
            self._sweeper.start()
        logger.info(
            "Engine started: store=%s rules=%s (%d rules)",
            self._store.backend_name,
            self._rule_store.version,
            self._rule_store.current.rule_count,
        )

    async def close(self) -> None:
        await self._sweeper.stop()
        await self._processor.aclose()
        await self._store.close()

    async def __aenter__(self) -> Engine:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def reload_rules(self, paths: Sequence[Path | str] | None = None) -> None:
        """Load rules from ``paths`` (default: settings) and adopt them.

        Raises:
            InvalidRuleDefinition: The new set is rejected; the previous
                one stays active.
        """
        self._rule_store.load(
            self._settings.rules_paths_list if paths is None else paths,
            include_builtin=self._settings.rules_include_builtin,
        )

    async def process(self, event: Event) -> ProcessResult:
        return await self._processor.process(event)

    async def process_stream(
        self,
        events: Iterable[Event] | AsyncIterable[Event],
        concurrency: int | None = None,
        on_result: Callable[[ProcessResult], Awaitable[None] | None] | None = None,
    ) -> StreamSummary:
        return await self._processor.process_stream(events, concurrency, on_result)
