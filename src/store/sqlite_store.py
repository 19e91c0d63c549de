# src/store/sqlite_store.py — v1
"""SQLite-based store (STORE_BACKEND=sqlite).

Uses stdlib sqlite3 — no external dependency. Every read-modify-write runs
inside ``BEGIN IMMEDIATE``, which serializes writers across connections
and processes sharing the same database file.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from entitysynth.core.errors import StoreUnavailable
from entitysynth.core.models import (
    Entity,
    EntityDelta,
    Relationship,
    RelationshipDelta,
    SweepStats,
)
from entitysynth.store.base_store import BaseEntityStore, Direction
from entitysynth.store.merge import (
    apply_entity_delta,
    apply_relationship_delta,
    matches_predicates,
    next_tag_expiry,
    prune_expired_tags,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
    guid TEXT PRIMARY KEY,
    domain TEXT NOT NULL,
    type TEXT NOT NULL,
    expires_at REAL NOT NULL,
    tag_expires_at REAL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(domain, type);
CREATE INDEX IF NOT EXISTS idx_entities_expiry ON entities(expires_at);
CREATE INDEX IF NOT EXISTS idx_entities_tag_expiry ON entities(tag_expires_at);

CREATE TABLE IF NOT EXISTS relationships (
    type TEXT NOT NULL,
    source_guid TEXT NOT NULL,
    target_guid TEXT NOT NULL,
    expires_at REAL NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (type, source_guid, target_guid)
);
CREATE INDEX IF NOT EXISTS idx_rel_source ON relationships(source_guid);
CREATE INDEX IF NOT EXISTS idx_rel_target ON relationships(target_guid);
CREATE INDEX IF NOT EXISTS idx_rel_expiry ON relationships(expires_at);
"""


def _ts(value: datetime) -> float:
    return value.timestamp()


class SqliteEntityStore(BaseEntityStore):
    """SQLite-backed store for single-host persistence."""

    backend_name = "sqlite"

    def __init__(self, db_path: Path | str, timeout_s: float = 5.0) -> None:
        target = str(db_path)
        if target != ":memory:":
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            target = str(path)
        self._conn = sqlite3.connect(
            target,
            timeout=timeout_s,
            isolation_level=None,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a block in an immediate (write-locked) transaction."""
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(self.backend_name, operation, e) from e
        try:
            yield self._conn
        except sqlite3.OperationalError as e:
            self._conn.execute("ROLLBACK")
            raise StoreUnavailable(self.backend_name, operation, e) from e
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")

    def _query(self, operation: str, sql: str, params: tuple = ()) -> list[tuple]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as e:
            raise StoreUnavailable(self.backend_name, operation, e) from e

    # --- Writes ---

    async def upsert_entity(self, delta: EntityDelta) -> str:
        with self._transaction("upsert_entity") as conn:
            row = conn.execute(
                "SELECT data FROM entities WHERE guid = ?", (delta.guid,)
            ).fetchone()
            existing = Entity.model_validate_json(row[0]) if row else None
            entity = apply_entity_delta(existing, delta)
            tag_expiry = next_tag_expiry(entity)
            conn.execute(
                """INSERT OR REPLACE INTO entities
                   (guid, domain, type, expires_at, tag_expires_at, data)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    entity.guid,
                    entity.domain,
                    entity.type,
                    _ts(entity.expires_at),
                    _ts(tag_expiry) if tag_expiry is not None else None,
                    entity.model_dump_json(),
                ),
            )
        return delta.guid

    async def upsert_relationship(self, delta: RelationshipDelta) -> Relationship:
        with self._transaction("upsert_relationship") as conn:
            row = conn.execute(
                """SELECT data FROM relationships
                   WHERE type = ? AND source_guid = ? AND target_guid = ?""",
                delta.key,
            ).fetchone()
            existing = Relationship.model_validate_json(row[0]) if row else None
            rel = apply_relationship_delta(existing, delta)
            conn.execute(
                """INSERT OR REPLACE INTO relationships
                   (type, source_guid, target_guid, expires_at, data)
                   VALUES (?, ?, ?, ?, ?)""",
                (*rel.key, _ts(rel.expires_at), rel.model_dump_json()),
            )
        return rel

    # --- Reads ---

    async def get_entity(self, guid: str) -> Entity | None:
        rows = self._query(
            "get_entity", "SELECT data FROM entities WHERE guid = ?", (guid,)
        )
        return Entity.model_validate_json(rows[0][0]) if rows else None

    async def get_relationship(
        self, rel_type: str, source_guid: str, target_guid: str
    ) -> Relationship | None:
        rows = self._query(
            "get_relationship",
            """SELECT data FROM relationships
               WHERE type = ? AND source_guid = ? AND target_guid = ?""",
            (rel_type, source_guid, target_guid),
        )
        return Relationship.model_validate_json(rows[0][0]) if rows else None

    async def relationships_of(
        self, guid: str, direction: Direction = "both"
    ) -> list[Relationship]:
        if direction == "out":
            where, params = "source_guid = ?", (guid,)
        elif direction == "in":
            where, params = "target_guid = ?", (guid,)
        else:
            where, params = "source_guid = ? OR target_guid = ?", (guid, guid)
        rows = self._query(
            "relationships_of",
            f"SELECT data FROM relationships WHERE {where} "  # noqa: S608
            "ORDER BY type, source_guid, target_guid",
            params,
        )
        return [Relationship.model_validate_json(r[0]) for r in rows]

    async def find_entities(
        self,
        domain: str,
        entity_type: str,
        predicates: Mapping[str, str],
        as_of: datetime | None = None,
        limit: int | None = None,
    ) -> list[Entity]:
        sql = "SELECT data FROM entities WHERE domain = ? AND type = ?"
        params: tuple = (domain, entity_type)
        if as_of is not None:
            sql += " AND expires_at >= ?"
            params += (_ts(as_of),)
        rows = self._query("find_entities", sql + " ORDER BY guid", params)

        found: list[Entity] = []
        for (data,) in rows:
            entity = Entity.model_validate_json(data)
            if matches_predicates(entity, predicates, as_of):
                found.append(entity)
                if limit is not None and len(found) >= limit:
                    break
        return found

    async def entity_count(self) -> int:
        return self._query("entity_count", "SELECT COUNT(*) FROM entities")[0][0]

    async def relationship_count(self) -> int:
        return self._query("relationship_count", "SELECT COUNT(*) FROM relationships")[0][0]

    # --- Expiry ---

    async def expire_older_than(self, now: datetime) -> SweepStats:
        cutoff = _ts(now)
        stats = SweepStats()
        with self._transaction("expire_older_than") as conn:
            stats.entities_removed = conn.execute(
                "DELETE FROM entities WHERE expires_at < ?", (cutoff,)
            ).rowcount
            stats.relationships_removed = conn.execute(
                "DELETE FROM relationships WHERE expires_at < ?", (cutoff,)
            ).rowcount

            rows = conn.execute(
                "SELECT data FROM entities WHERE tag_expires_at < ?", (cutoff,)
            ).fetchall()
            for (data,) in rows:
                entity, removed = prune_expired_tags(Entity.model_validate_json(data), now)
                tag_expiry = next_tag_expiry(entity)
                conn.execute(
                    "UPDATE entities SET data = ?, tag_expires_at = ? WHERE guid = ?",
                    (
                        entity.model_dump_json(),
                        _ts(tag_expiry) if tag_expiry is not None else None,
                        entity.guid,
                    ),
                )
                stats.tags_removed += removed

        if stats.total:
            logger.info(
                "Expired %d entities, %d relationships, %d tags",
                stats.entities_removed, stats.relationships_removed, stats.tags_removed,
            )
        return stats

    async def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
