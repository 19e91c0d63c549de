# src/store/merge.py — v1
"""Delta application rules shared by every store backend.

These functions are pure: backends load the current record, call them
under their own per-key serialization, and write the result back.

Convergence is last-write-wins by observation time, never by arrival
order: a late event can fill in tags nobody has reported more recently,
but it cannot overwrite a strictly newer value.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta

from entitysynth.core.models import (
    Entity,
    EntityDelta,
    Relationship,
    RelationshipDelta,
    TagDelta,
    TagValue,
)


def _tag_value(tag: TagDelta, observed_at: datetime) -> TagValue:
    expires_at = None
    if tag.ttl_s is not None:
        expires_at = observed_at + timedelta(seconds=tag.ttl_s)
    return TagValue(value=tag.value, observed_at=observed_at, expires_at=expires_at)


def apply_entity_delta(existing: Entity | None, delta: EntityDelta) -> Entity:
    """Create an entity from a delta or merge the delta into it.

    - Tags in the delta overwrite stored tags unless the stored value was
      observed strictly later.
    - Stored tags missing from the delta are kept unless their own TTL
      elapsed before this observation.
    - ``last_seen_at`` only moves forward; ``expires_at`` follows it.

    Applying the same delta twice yields the same entity.
    """
    observed = delta.observed_at

    if existing is None:
        return Entity(
            guid=delta.guid,
            account_id=delta.account_id,
            domain=delta.domain,
            type=delta.type,
            identifier=delta.identifier,
            name=delta.name,
            name_observed_at=observed,
            tags={name: _tag_value(tag, observed) for name, tag in delta.tags.items()},
            created_at=observed,
            last_seen_at=observed,
            expires_at=observed + timedelta(seconds=delta.expiration_s),
            expiration_s=delta.expiration_s,
        )

    tags = {
        name: tag for name, tag in existing.tags.items() if not tag.is_expired(observed)
    }
    for name, tag in delta.tags.items():
        current = tags.get(name)
        if current is not None and current.observed_at > observed:
            continue
        tags[name] = _tag_value(tag, observed)

    newer = observed >= existing.last_seen_at
    last_seen_at = observed if newer else existing.last_seen_at
    expiration_s = delta.expiration_s if newer else existing.expiration_s

    if observed >= existing.name_observed_at:
        name, name_observed_at = delta.name, observed
    else:
        name, name_observed_at = existing.name, existing.name_observed_at

    return existing.model_copy(
        update={
            "name": name,
            "name_observed_at": name_observed_at,
            "tags": tags,
            "created_at": min(existing.created_at, observed),
            "last_seen_at": last_seen_at,
            "expires_at": last_seen_at + timedelta(seconds=expiration_s),
            "expiration_s": expiration_s,
        }
    )


def apply_relationship_delta(
    existing: Relationship | None, delta: RelationshipDelta
) -> Relationship:
    """Create a relationship or refresh it on re-observation.

    A newer observation sets ``expires_at = observed_at + ttl``; an older
    one only extends ``created_at`` backwards.
    """
    observed = delta.observed_at
    if existing is None:
        return Relationship(
            type=delta.type,
            source_guid=delta.source_guid,
            target_guid=delta.target_guid,
            created_at=observed,
            last_seen_at=observed,
            expires_at=delta.expires_at,
            rule_name=delta.rule_name,
        )
    if observed >= existing.last_seen_at:
        return existing.model_copy(
            update={
                "created_at": min(existing.created_at, observed),
                "last_seen_at": observed,
                "expires_at": delta.expires_at,
                "rule_name": delta.rule_name,
            }
        )
    return existing.model_copy(update={"created_at": min(existing.created_at, observed)})


def prune_expired_tags(entity: Entity, now: datetime) -> tuple[Entity, int]:
    """Drop tags whose own TTL elapsed; returns (entity, removed count)."""
    kept = {name: tag for name, tag in entity.tags.items() if not tag.is_expired(now)}
    removed = len(entity.tags) - len(kept)
    if not removed:
        return entity, 0
    return entity.model_copy(update={"tags": kept}), removed


def next_tag_expiry(entity: Entity) -> datetime | None:
    """Earliest tag expiry on the entity, if any tag carries a TTL."""
    expiries = [t.expires_at for t in entity.tags.values() if t.expires_at is not None]
    return min(expiries) if expiries else None


def matches_predicates(
    entity: Entity, predicates: Mapping[str, str], as_of: datetime | None = None
) -> bool:
    """Field-equality match used by lookups.

    Fields: ``guid``, ``name``, ``identifier``, ``account_id`` (or
    ``accountId``); ``tags.<name>`` or any other key names a tag. Tags whose
    TTL elapsed at ``as_of`` count as absent.
    """
    for field, expected in predicates.items():
        if field == "guid":
            actual: str | None = entity.guid
        elif field == "name":
            actual = entity.name
        elif field == "identifier":
            actual = entity.identifier
        elif field in ("account_id", "accountId"):
            actual = str(entity.account_id)
        else:
            tag_name = field[len("tags."):] if field.startswith("tags.") else field
            tag = entity.tags.get(tag_name)
            if tag is None or (as_of is not None and tag.is_expired(as_of)):
                actual = None
            else:
                actual = tag.value
        if actual is None or actual != expected:
            return False
    return True
