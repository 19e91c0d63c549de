# src/rules/taxonomy.py — v2
"""Entity type and relationship type taxonomy constants.

Rule definitions may only reference domains, entity types and relationship
types listed here; the loader rejects anything else.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

_DAY = 86400
_HOUR = 3600


class EntityTypeEntry(BaseModel):
    """A known (domain, type) pair and its default entity expiration."""

    model_config = ConfigDict(frozen=True)

    domain: str
    type: str
    expiration_s: int
    category: str


class RelationshipTypeEntry(BaseModel):
    """A known relationship type and its default TTL class."""

    model_config = ConfigDict(frozen=True)

    type: str
    category: Literal["structural", "behavioral"]
    description: str


DEFAULT_ENTITY_TYPES: list[EntityTypeEntry] = [
    # Messaging
    EntityTypeEntry(domain="INFRA", type="MESSAGE_QUEUE_CLUSTER", expiration_s=8 * _DAY, category="messaging"),
    EntityTypeEntry(domain="INFRA", type="MESSAGE_QUEUE_BROKER", expiration_s=8 * _DAY, category="messaging"),
    EntityTypeEntry(domain="INFRA", type="MESSAGE_QUEUE_TOPIC", expiration_s=8 * _DAY, category="messaging"),
    EntityTypeEntry(domain="INFRA", type="MESSAGE_QUEUE_PARTITION", expiration_s=1 * _DAY, category="messaging"),
    EntityTypeEntry(domain="INFRA", type="MESSAGE_QUEUE_CONSUMER_GROUP", expiration_s=2 * _DAY, category="messaging"),
    EntityTypeEntry(domain="INFRA", type="MESSAGE_QUEUE_PRODUCER", expiration_s=2 * _DAY, category="messaging"),
    EntityTypeEntry(domain="INFRA", type="MESSAGE_QUEUE_CONSUMER", expiration_s=2 * _DAY, category="messaging"),
    EntityTypeEntry(domain="INFRA", type="AWSMSKCLUSTER", expiration_s=8 * _DAY, category="messaging"),
    EntityTypeEntry(domain="INFRA", type="AWSMSKBROKER", expiration_s=8 * _DAY, category="messaging"),
    EntityTypeEntry(domain="INFRA", type="AWSMSKTOPIC", expiration_s=8 * _DAY, category="messaging"),
    # Infrastructure
    EntityTypeEntry(domain="INFRA", type="HOST", expiration_s=8 * _DAY, category="infrastructure"),
    EntityTypeEntry(domain="INFRA", type="CONTAINER", expiration_s=1 * _DAY, category="infrastructure"),
    EntityTypeEntry(domain="INFRA", type="KUBERNETES_POD", expiration_s=1 * _DAY, category="infrastructure"),
    # Applications
    EntityTypeEntry(domain="APM", type="APPLICATION", expiration_s=8 * _DAY, category="application"),
    EntityTypeEntry(domain="EXT", type="SERVICE", expiration_s=8 * _DAY, category="application"),
    EntityTypeEntry(domain="EXT", type="CONFLUENT_CLOUD_CLUSTER", expiration_s=8 * _DAY, category="messaging"),
    # Platform
    EntityTypeEntry(domain="NR1", type="WORKLOAD", expiration_s=30 * _DAY, category="platform"),
]

DEFAULT_RELATIONSHIP_TYPES: list[RelationshipTypeEntry] = [
    RelationshipTypeEntry(type="CONTAINS", category="structural", description="source groups target (cluster contains broker)"),
    RelationshipTypeEntry(type="HOSTS", category="structural", description="source runs target (host hosts broker)"),
    RelationshipTypeEntry(type="MANAGES", category="structural", description="source controls target's lifecycle"),
    RelationshipTypeEntry(type="IS", category="structural", description="source and target are the same component"),
    RelationshipTypeEntry(type="OPERATES_IN", category="structural", description="source runs within target's scope"),
    RelationshipTypeEntry(type="CONSUMES_FROM", category="behavioral", description="source reads messages from target"),
    RelationshipTypeEntry(type="PRODUCES_TO", category="behavioral", description="source writes messages to target"),
    RelationshipTypeEntry(type="CALLS", category="behavioral", description="source issues requests to target"),
    RelationshipTypeEntry(type="SERVES", category="behavioral", description="source answers requests for target"),
    RelationshipTypeEntry(type="CONNECTS_TO", category="behavioral", description="source holds a connection to target"),
]


def find_entity_type(domain: str, entity_type: str) -> EntityTypeEntry | None:
    """Find the taxonomy entry for (domain, type); None if unknown."""
    for entry in DEFAULT_ENTITY_TYPES:
        if entry.domain == domain and entry.type == entity_type:
            return entry
    return None


def find_relationship_type(relationship_type: str) -> RelationshipTypeEntry | None:
    """Find the taxonomy entry for a relationship type; None if unknown."""
    for entry in DEFAULT_RELATIONSHIP_TYPES:
        if entry.type == relationship_type:
            return entry
    return None
