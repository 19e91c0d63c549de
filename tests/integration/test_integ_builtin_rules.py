# tests/integration/test_integ_builtin_rules.py — v1
"""The packaged Kafka rule definitions against realistic samples."""

from __future__ import annotations

import pytest

from conftest import T0
from entitysynth.config.settings import Settings
from entitysynth.engine.guid import decode_guid, encode_guid
from entitysynth.pipeline.engine import Engine

SETTINGS = Settings(_env_file=None, sweep_enabled=False, rules_include_builtin=True)


class TestSelfManagedKafka:
    @pytest.mark.asyncio
    async def test_topology(self):
        async with Engine(SETTINGS) as engine:
            ts = T0.timestamp()
            await engine.process({
                "eventType": "KafkaClusterSample", "clusterName": "prod-kafka",
                "accountId": 42, "kafkaVersion": "3.6.0", "timestamp": ts,
            })
            broker = await engine.process({
                "eventType": "KafkaBrokerSample", "clusterName": "prod-kafka",
                "broker.id": 1, "accountId": 42, "hostname": "kafka-1", "timestamp": ts,
            })
            topic = await engine.process({
                "eventType": "KafkaTopicSample", "clusterName": "prod-kafka", "topic": "orders",
                "topic.partitionsCount": 12, "accountId": 42, "timestamp": ts,
            })
            store = engine.store

            cluster_guid = encode_guid(42, "INFRA", "MESSAGE_QUEUE_CLUSTER", "prod-kafka")
            cluster = await store.get_entity(cluster_guid)
            assert cluster.tag("kafka.version") == "3.6.0"

            # Broker samples synthesize the broker and refresh the cluster.
            assert {e.rule_name for e in broker.entities} == {"kafka-cluster-from-broker", "kafka-broker"}
            broker_guid = encode_guid(42, "INFRA", "MESSAGE_QUEUE_BROKER", "prod-kafka:1")
            assert (await store.get_entity(broker_guid)).name == "prod-kafka:broker-1"
            assert (await store.get_entity(broker_guid)).tag("kafka.broker.host") == "kafka-1"

            topic_guid = encode_guid(42, "INFRA", "MESSAGE_QUEUE_TOPIC", "prod-kafka:orders")
            assert [r.target_guid for r in topic.relationships] == [topic_guid]
            children = await store.relationships_of(cluster_guid, "out")
            assert {r.target_guid for r in children} == {broker_guid, topic_guid}
            assert (await store.get_entity(topic_guid)).tags["kafka.topic.partitions"].expires_at is not None

    @pytest.mark.asyncio
    async def test_application_produces_to_topic(self):
        app_guid = encode_guid(42, "APM", "APPLICATION", "checkout")
        async with Engine(SETTINGS) as engine:
            result = await engine.process({
                "eventType": "KafkaProducerSample", "clusterName": "prod-kafka",
                "clientID": "checkout-1", "topic": "orders", "entity.guid": app_guid,
                "accountId": 42,
            })
        types = {(r.type, decode_guid(r.source_guid).type) for r in result.relationships}
        assert ("PRODUCES_TO", "APPLICATION") in types
        assert ("PRODUCES_TO", "MESSAGE_QUEUE_PRODUCER") in types


class TestAwsMsk:
    @pytest.mark.asyncio
    async def test_cluster_and_broker(self):
        async with Engine(SETTINGS) as engine:
            cluster = await engine.process({
                "eventType": "AwsMskClusterSample", "provider.clusterName": "msk-prod",
                "provider.awsRegion": "us-east-1", "accountId": 7,
            })
            broker = await engine.process({
                "eventType": "AwsMskBrokerSample", "provider.clusterName": "msk-prod",
                "provider.awsRegion": "us-east-1", "provider.brokerId": "2", "accountId": 7,
            })
        assert decode_guid(cluster.entities[0].guid).identifier == "us-east-1:msk-prod"
        assert cluster.entities[0].tags["aws.region"].value == "us-east-1"
        assert broker.relationships[0].source_guid == cluster.entities[0].guid
        assert decode_guid(broker.relationships[0].target_guid).identifier == "us-east-1:msk-prod:2"


class TestConfluentCloud:
    @pytest.mark.asyncio
    async def test_cluster_name_falls_back_to_id(self):
        async with Engine(SETTINGS) as engine:
            result = await engine.process({
                "eventType": "ConfluentCloudClusterSample", "resource.kafka.id": "lkc-123", "accountId": 5,
            })
        entity = result.entities[0]
        assert entity.domain == "EXT"
        assert entity.name == "lkc-123"
        assert entity.tags["kafka.cluster.name"].value == "lkc-123"
