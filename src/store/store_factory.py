# src/store/store_factory.py — v1
"""Factory for store backend instantiation."""

from __future__ import annotations

from entitysynth.config.settings import Settings
from entitysynth.store.base_store import BaseEntityStore


def create_store(settings: Settings | None = None) -> BaseEntityStore:
    """Instantiate the configured store backend.

    Args:
        settings: Application settings. Defaults to the memory backend.

    Returns:
        Configured BaseEntityStore implementation.
    """
    backend = "memory" if settings is None else settings.store_backend

    if backend == "memory":
        from entitysynth.store.memory_store import MemoryEntityStore
        return MemoryEntityStore()

    if backend == "sqlite":
        from entitysynth.store.sqlite_store import SqliteEntityStore
        return SqliteEntityStore(db_path=settings.store_sqlite_path)

    if backend == "redis":
        from entitysynth.store.redis_store import RedisEntityStore
        if not settings.store_redis_url:
            raise ValueError(
                "STORE_REDIS_URL must be set when STORE_BACKEND=redis"
            )
        return RedisEntityStore(
            redis_url=settings.store_redis_url,
            key_prefix=settings.store_key_prefix,
        )

    raise ValueError(f"Unsupported store backend: {backend!r}")
