# tests/unit/engine/test_unit_synthesis.py — v2
"""Tests for engine/synthesis.py — event to entity delta."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0, make_rule_set
from entitysynth.core.models import EntityDelta, NoMatch
from entitysynth.engine.guid import encode_guid
from entitysynth.engine.synthesis import SynthesisEngine
from entitysynth.rules.store import RuleStore


def _engine(*docs, stats=None, clock=None):
    kwargs = {"stats": stats} if stats is not None else {}
    if clock is not None:
        kwargs["clock"] = clock
    return SynthesisEngine(RuleStore(make_rule_set(*docs)), **kwargs)


MSK_DOC = {
    "provider": "aws-msk",
    "synthesis": [
        {
            "name": "msk-cluster",
            "eventTypes": ["AwsMskClusterSample"],
            "domain": "INFRA",
            "type": "AWSMSKCLUSTER",
            "identifier": "{{accountId}}:{{awsRegion}}:{{clusterName}}",
            "nameExpression": "clusterName",
            "tags": {
                "provider.clusterName": {
                    "entityTagName": "kafka.cluster.name",
                    "fallbacks": ["clusterName", "displayName"],
                },
                "awsRegion": "aws.region",
            },
            "entityExpirationTime": "1d",
        }
    ],
}


class TestSynthesize:
    def test_cluster_event(self, rule_store, cluster_event, stats, t0):
        engine = SynthesisEngine(rule_store, stats=stats)
        delta = engine.synthesize(cluster_event, observed_at=t0)

        assert isinstance(delta, EntityDelta)
        assert delta.guid == encode_guid(42, "INFRA", "MESSAGE_QUEUE_CLUSTER", "prod-kafka")
        assert delta.name == "prod-kafka"
        assert delta.tags["kafka.cluster.name"].value == "prod-kafka"
        assert delta.observed_at == t0
        assert delta.expiration_s == 8 * 86400
        assert delta.rule_name == "kafka-cluster"
        assert stats.entities_emitted == 1

    def test_composite_identifier_and_fallback_tags(self):
        engine = _engine(MSK_DOC)
        delta = engine.synthesize({
            "eventType": "AwsMskClusterSample",
            "accountId": 1,
            "awsRegion": "us-east-1",
            "clusterName": "msk-prod",
        }, observed_at=T0)

        assert delta.identifier == "1:us-east-1:msk-prod"
        assert delta.name == "msk-prod"
        assert delta.tags["kafka.cluster.name"].value == "msk-prod"
        assert delta.tags["aws.region"].value == "us-east-1"
        assert delta.expiration_s == 86400
        assert delta.expires_at == T0 + timedelta(days=1)

    def test_fallback_chain_middle(self):
        doc = {"synthesis": [{
            "name": "r", "eventTypes": ["E"], "domain": "INFRA", "type": "HOST",
            "identifier": "h", "tags": {"A": {"entityTagName": "t", "fallbacks": ["B", "C"]}},
        }]}
        delta = _engine(doc).synthesize({"eventType": "E", "h": "x", "accountId": 1, "B": "b", "C": "c"})
        assert delta.tags["t"].value == "b"

    def test_unresolved_name_falls_back_to_identifier(self):
        doc = {"synthesis": [{
            "name": "r", "eventTypes": ["E"], "domain": "INFRA", "type": "HOST",
            "identifier": "h", "nameExpression": "displayName",
        }]}
        delta = _engine(doc).synthesize({"eventType": "E", "h": "host-1", "accountId": 1})
        assert delta.name == "host-1"

    def test_tag_ttl_carried(self):
        doc = {"synthesis": [{
            "name": "r", "eventTypes": ["E"], "domain": "INFRA", "type": "HOST",
            "identifier": "h", "tags": {"load": {"entityTagName": "load", "ttl": "5m"}},
        }]}
        delta = _engine(doc).synthesize({"eventType": "E", "h": "x", "accountId": 1, "load": 0.5})
        assert delta.tags["load"].ttl_s == 300

    def test_timestamp_from_event(self, rule_store, cluster_event):
        ts = int((T0 + timedelta(minutes=5)).timestamp() * 1000)
        delta = SynthesisEngine(rule_store).synthesize({**cluster_event, "timestamp": ts})
        assert delta.observed_at == T0 + timedelta(minutes=5)

    def test_clock_used_without_timestamp(self, rule_store, cluster_event, clock):
        clock.advance(30)
        delta = SynthesisEngine(rule_store, clock=clock).synthesize(cluster_event)
        assert delta.observed_at == T0 + timedelta(seconds=30)


class TestNoMatch:
    @pytest.mark.parametrize(
        "event, reason",
        [
            ({"eventType": "SomethingElse", "clusterName": "c", "accountId": 1}, "no_rules"),
            ({"eventType": "KafkaClusterSample", "accountId": 1}, "missing_identifier"),
            ({"eventType": "KafkaClusterSample", "clusterName": "c"}, "missing_account"),
            ({"eventType": "KafkaClusterSample", "clusterName": "", "accountId": 1}, "missing_identifier"),
            ({"eventType": "KafkaClusterSample", "clusterName": "\ud800", "accountId": 1}, "invalid_identifier"),
        ],
    )
    def test_reasons(self, rule_store, stats, event, reason):
        outcome = SynthesisEngine(rule_store, stats=stats).synthesize(event)
        assert isinstance(outcome, NoMatch)
        assert outcome.reason == reason
        assert stats.no_match[reason] == 1
        assert stats.entities_emitted == 0

    def test_conditions_fail(self):
        doc = {"synthesis": [{
            "name": "r", "eventTypes": ["E"], "domain": "INFRA", "type": "HOST",
            "identifier": "h", "conditions": [{"attribute": "env", "value": "prod"}],
        }]}
        outcome = _engine(doc).synthesize({"eventType": "E", "h": "x", "accountId": 1, "env": "dev"})
        assert outcome.reason == "no_condition_match"
        assert outcome.event_type == "E"


class TestPriority:
    DOC = {"synthesis": [
        {"name": "generic", "eventTypes": ["E"], "domain": "INFRA", "type": "HOST",
         "identifier": "h", "priority": 200},
        {"name": "specific", "eventTypes": ["E"], "domain": "INFRA", "type": "HOST",
         "identifier": "{{h}}-special", "priority": 10,
         "conditions": [{"attribute": "special", "present": True}]},
    ]}

    def test_lower_priority_value_wins(self):
        delta = _engine(self.DOC).synthesize({"eventType": "E", "h": "x", "accountId": 1, "special": 1})
        assert delta.rule_name == "specific"

    def test_falls_through_when_conditions_fail(self):
        delta = _engine(self.DOC).synthesize({"eventType": "E", "h": "x", "accountId": 1})
        assert delta.rule_name == "generic"

    def test_selected_rule_failing_does_not_try_next(self):
        # The specific rule's conditions hold but its identifier is missing.
        doc = {"synthesis": [
            {"name": "first", "eventTypes": ["E"], "domain": "INFRA", "type": "HOST", "identifier": "absent"},
            {"name": "second", "eventTypes": ["E"], "domain": "INFRA", "type": "HOST", "identifier": "h"},
        ]}
        outcome = _engine(doc).synthesize({"eventType": "E", "h": "x", "accountId": 1})
        assert isinstance(outcome, NoMatch)
        assert outcome.rule_name == "first"


class TestSynthesizeAll:
    def test_one_entity_per_type(self):
        doc = {"synthesis": [
            {"name": "cluster", "eventTypes": ["KafkaBrokerSample"], "domain": "INFRA",
             "type": "MESSAGE_QUEUE_CLUSTER", "identifier": "clusterName"},
            {"name": "broker", "eventTypes": ["KafkaBrokerSample"], "domain": "INFRA",
             "type": "MESSAGE_QUEUE_BROKER", "identifier": "{{clusterName}}:{{broker.id}}"},
            {"name": "broker-dup", "eventTypes": ["KafkaBrokerSample"], "domain": "INFRA",
             "type": "MESSAGE_QUEUE_BROKER", "identifier": "broker.id"},
        ]}
        deltas = _engine(doc).synthesize_all(
            {"eventType": "KafkaBrokerSample", "clusterName": "c", "broker.id": 1, "accountId": 1},
            observed_at=T0,
        )
        assert [d.rule_name for d in deltas] == ["cluster", "broker"]

    def test_nothing_matches(self, rule_store, stats):
        engine = SynthesisEngine(rule_store, stats=stats)
        assert engine.synthesize_all({"eventType": "Nope"}) == []
        assert stats.no_match["no_rules"] == 1
