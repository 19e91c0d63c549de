# tests/conftest.py — v2
"""Shared test fixtures for all unit and integration tests.

Provides a small Kafka rule document, fixed observation times, rule stores
and an in-memory entity store. No external services.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from entitysynth.rules.loader import build_rule_set
from entitysynth.rules.models import RuleSet
from entitysynth.rules.store import RuleStore
from entitysynth.store.memory_store import MemoryEntityStore
from entitysynth.tracking.stats import EngineStats

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_rule_set(*documents: dict[str, Any], version: str | None = None) -> RuleSet:
    """Build a RuleSet from inline documents named doc0, doc1, ..."""
    return build_rule_set(
        [(f"doc{i}", doc) for i, doc in enumerate(documents)], version=version
    )


CLUSTER_DOC: dict[str, Any] = {
    "provider": "kafka",
    "synthesis": [
        {
            "name": "kafka-cluster",
            "eventTypes": ["KafkaClusterSample"],
            "domain": "INFRA",
            "type": "MESSAGE_QUEUE_CLUSTER",
            "identifier": "clusterName",
            "tags": {"clusterName": "kafka.cluster.name"},
        },
        {
            "name": "kafka-broker",
            "eventTypes": ["KafkaBrokerSample"],
            "domain": "INFRA",
            "type": "MESSAGE_QUEUE_BROKER",
            "identifier": "{{clusterName}}:{{broker.id}}",
            "tags": {
                "clusterName": "kafka.cluster.name",
                "broker.id": "kafka.broker.id",
            },
        },
    ],
    "relationships": [
        {
            "name": "cluster-contains-broker",
            "type": "CONTAINS",
            "origins": ["KafkaBrokerSample"],
            "source": {
                "buildGuid": {
                    "domain": "INFRA",
                    "type": "MESSAGE_QUEUE_CLUSTER",
                    "identifier": "clusterName",
                }
            },
            "target": {
                "buildGuid": {
                    "domain": "INFRA",
                    "type": "MESSAGE_QUEUE_BROKER",
                    "identifier": "{{clusterName}}:{{broker.id}}",
                }
            },
        }
    ],
}


# === FIXTURES: Time ===


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def clock():
    """Mutable clock: call clock() for now, clock.advance(seconds) to move."""

    class _Clock:
        def __init__(self) -> None:
            self.now = T0

        def __call__(self) -> datetime:
            return self.now

        def advance(self, seconds: float) -> datetime:
            self.now = self.now + timedelta(seconds=seconds)
            return self.now

    return _Clock()


# === FIXTURES: Rules and store ===


@pytest.fixture
def stats() -> EngineStats:
    return EngineStats()


@pytest.fixture
def cluster_rule_set() -> RuleSet:
    return make_rule_set(CLUSTER_DOC, version="test-v1")


@pytest.fixture
def rule_store(cluster_rule_set: RuleSet, stats: EngineStats) -> RuleStore:
    return RuleStore(cluster_rule_set, stats=stats)


@pytest.fixture
def memory_store() -> MemoryEntityStore:
    return MemoryEntityStore()


# === FIXTURES: Events ===


@pytest.fixture
def cluster_event() -> dict[str, Any]:
    return {
        "eventType": "KafkaClusterSample",
        "clusterName": "prod-kafka",
        "accountId": 42,
        "cluster.activeControllerCount": 1,
    }


@pytest.fixture
def broker_event() -> dict[str, Any]:
    return {
        "eventType": "KafkaBrokerSample",
        "clusterName": "prod-kafka",
        "broker.id": 3,
        "accountId": 42,
    }
