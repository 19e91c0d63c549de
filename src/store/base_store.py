# src/store/base_store.py — v1
"""Abstract entity/relationship store interface.

Backends serialize read-modify-write per key and delegate the merge itself
to store.merge, so every backend converges to the same state for the same
set of deltas regardless of arrival order.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime
from typing import Literal

from entitysynth.core.errors import AmbiguousLookup
from entitysynth.core.models import (
    Entity,
    EntityDelta,
    Relationship,
    RelationshipDelta,
    SweepStats,
)

Direction = Literal["out", "in", "both"]


class BaseEntityStore(ABC):
    """Unified interface for entity/relationship storage backends."""

    backend_name: str = "base"

    @abstractmethod
    async def upsert_entity(self, delta: EntityDelta) -> str:
        """Create or merge an entity; returns its GUID."""

    @abstractmethod
    async def upsert_relationship(self, delta: RelationshipDelta) -> Relationship:
        """Create or refresh a relationship; returns the stored record."""

    @abstractmethod
    async def get_entity(self, guid: str) -> Entity | None:
        """Fetch an entity by GUID."""

    @abstractmethod
    async def get_relationship(
        self, rel_type: str, source_guid: str, target_guid: str
    ) -> Relationship | None:
        """Fetch a relationship by its (type, source, target) key."""

    @abstractmethod
    async def relationships_of(
        self, guid: str, direction: Direction = "both"
    ) -> list[Relationship]:
        """Relationships with the entity as source ("out"), target ("in") or either."""

    @abstractmethod
    async def find_entities(
        self,
        domain: str,
        entity_type: str,
        predicates: Mapping[str, str],
        as_of: datetime | None = None,
        limit: int | None = None,
    ) -> list[Entity]:
        """Entities of one type whose fields equal every predicate.

        With ``as_of``, entities (and tags) already expired at that time are
        excluded even if no sweep has removed them yet.
        """

    @abstractmethod
    async def expire_older_than(self, now: datetime) -> SweepStats:
        """Delete entities and relationships expired at ``now``; prune expired tags.

        The check is repeated at deletion time, so an item refreshed while
        the sweep runs survives.
        """

    @abstractmethod
    async def entity_count(self) -> int:
        """Number of stored entities."""

    @abstractmethod
    async def relationship_count(self) -> int:
        """Number of stored relationships."""

    async def lookup(
        self,
        domain: str,
        entity_type: str,
        predicates: Mapping[str, str],
        as_of: datetime | None = None,
    ) -> Entity | None:
        """Resolve predicates to at most one entity.

        Raises:
            AmbiguousLookup: If two or more entities match.
        """
        matches = await self.find_entities(
            domain, entity_type, predicates, as_of=as_of, limit=2
        )
        if len(matches) > 1:
            raise AmbiguousLookup(domain, entity_type, len(matches))
        return matches[0] if matches else None

    async def close(self) -> None:
        """Release backend resources."""
