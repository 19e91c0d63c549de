# src/core/models.py — v2
"""Shared Pydantic domain models used across modules.

No module redefines these types — all imports come from core.models.
Entity and relationship records are what the store persists; deltas are
what the synthesis and relationship engines emit.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field

# A telemetry event: flat mapping of attribute name to scalar value.
Scalar = Union[str, int, float, bool, None]
Event = Mapping[str, Scalar]

RelationshipKey = tuple[str, str, str]

NoMatchReason = Literal[
    "no_rules",
    "no_condition_match",
    "missing_identifier",
    "missing_account",
    "invalid_identifier",
]


# === ENTITY MODELS ===


class TagDelta(BaseModel):
    """A tag value produced by synthesis, with its optional own TTL."""

    model_config = ConfigDict(frozen=True)

    value: str
    ttl_s: int | None = None


class EntityDelta(BaseModel):
    """Create-or-update record for one entity, emitted per matching event."""

    model_config = ConfigDict(frozen=True)

    guid: str
    account_id: int
    domain: str
    type: str
    identifier: str
    name: str
    tags: dict[str, TagDelta] = Field(default_factory=dict)
    observed_at: datetime
    expiration_s: int
    rule_name: str

    @property
    def expires_at(self) -> datetime:
        return self.observed_at + timedelta(seconds=self.expiration_s)


class TagValue(BaseModel):
    """Stored tag value with the observation it came from."""

    value: str
    observed_at: datetime
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


class Entity(BaseModel):
    """Stored entity record."""

    guid: str
    account_id: int
    domain: str
    type: str
    identifier: str
    name: str
    name_observed_at: datetime
    tags: dict[str, TagValue] = Field(default_factory=dict)
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    expiration_s: int

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def tag(self, name: str) -> str | None:
        """Return a tag's value, or None if the entity does not carry it."""
        tag = self.tags.get(name)
        return tag.value if tag is not None else None


# === RELATIONSHIP MODELS ===


class RelationshipDelta(BaseModel):
    """A relationship observation, emitted by the relationship engine."""

    model_config = ConfigDict(frozen=True)

    type: str
    source_guid: str
    target_guid: str
    observed_at: datetime
    ttl_s: int
    rule_name: str

    @property
    def key(self) -> RelationshipKey:
        return (self.type, self.source_guid, self.target_guid)

    @property
    def expires_at(self) -> datetime:
        return self.observed_at + timedelta(seconds=self.ttl_s)


class Relationship(BaseModel):
    """Stored directed relationship, keyed by (type, source, target)."""

    type: str
    source_guid: str
    target_guid: str
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    rule_name: str

    @property
    def key(self) -> RelationshipKey:
        return (self.type, self.source_guid, self.target_guid)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


# === OUTCOMES ===


class NoMatch(BaseModel):
    """Synthesis outcome when no entity is derived from an event."""

    model_config = ConfigDict(frozen=True)

    reason: NoMatchReason
    event_type: str | None = None
    rule_name: str | None = None


class SweepStats(BaseModel):
    """Counts removed by one expiry sweep."""

    entities_removed: int = 0
    relationships_removed: int = 0
    tags_removed: int = 0

    @property
    def total(self) -> int:
        return self.entities_removed + self.relationships_removed + self.tags_removed
