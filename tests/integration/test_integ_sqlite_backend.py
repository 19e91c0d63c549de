# tests/integration/test_integ_sqlite_backend.py — v1
"""End-to-end processing with the SQLite backend, including a restart."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import CLUSTER_DOC, T0, make_rule_set
from entitysynth.config.settings import Settings
from entitysynth.engine.guid import encode_guid
from entitysynth.pipeline.engine import Engine
from entitysynth.rules.store import RuleStore

CLUSTER_GUID = encode_guid(42, "INFRA", "MESSAGE_QUEUE_CLUSTER", "prod-kafka")
BROKER_GUID = encode_guid(42, "INFRA", "MESSAGE_QUEUE_BROKER", "prod-kafka:3")


class TestSqliteBackend:
    @pytest.mark.asyncio
    async def test_state_survives_restart(self, tmp_path, cluster_event, broker_event, clock):
        settings = Settings(
            _env_file=None,
            store_backend="sqlite",
            store_sqlite_path=tmp_path / "state.db",
            sweep_enabled=False,
        )
        rules = RuleStore(make_rule_set(CLUSTER_DOC))

        async with Engine(settings, rule_store=rules, clock=clock) as engine:
            summary = await engine.process_stream([cluster_event, broker_event], concurrency=2)
            assert summary.failed == 0

        clock.advance(600)
        async with Engine(settings, rule_store=rules, clock=clock) as engine:
            await engine.process(broker_event)
            store = engine.store
            assert store.backend_name == "sqlite"
            assert await store.entity_count() == 2
            rel = await store.get_relationship("CONTAINS", CLUSTER_GUID, BROKER_GUID)
            assert rel.created_at == T0
            assert rel.last_seen_at == T0 + timedelta(seconds=600)

            swept = await engine.sweeper.run_once(T0 + timedelta(days=30))
            assert swept.entities_removed == 2
            assert swept.relationships_removed == 1
