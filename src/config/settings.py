# src/config/settings.py — v2
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for all deployment-specific settings. Environment
variables use the ``ENTITYSYNTH_`` prefix (e.g. ``ENTITYSYNTH_STORE_BACKEND``).
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_prefix="ENTITYSYNTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Rules ===
    rules_paths: str = ""
    rules_include_builtin: bool = True

    # === Event schema ===
    event_type_attribute: str = "eventType"
    timestamp_attribute: str = "timestamp"

    # === Relationship TTL defaults by category (seconds) ===
    relationship_ttl_structural_s: int = 24 * 3600
    relationship_ttl_behavioral_s: int = 75 * 60

    # === Relationship resolution ===
    lookup_ambiguity_policy: Literal["skip", "most_recent"] = "skip"
    validate_extracted_guids: bool = True

    # === Store ===
    store_backend: Literal["memory", "sqlite", "redis"] = "memory"
    store_sqlite_path: Path = Path("~/.entitysynth/store.db")
    store_redis_url: str = ""
    store_key_prefix: str = "entitysynth:"
    store_retry_max: int = 3
    store_retry_base_delay_s: float = 0.5
    store_retry_backoff: float = 2.0

    # === Processing ===
    worker_concurrency: int = 8
    sweep_enabled: bool = True
    sweep_interval_s: float = 60.0

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator(
        "relationship_ttl_structural_s",
        "relationship_ttl_behavioral_s",
    )
    @classmethod
    def validate_positive_duration(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("durations must be > 0 seconds")
        return v

    @field_validator("store_retry_max")
    @classmethod
    def validate_retry_max(cls, v: int) -> int:
        if v < 0:
            raise ValueError("store_retry_max must be >= 0")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if self.store_backend == "redis" and not self.store_redis_url:
            errors.append("STORE_BACKEND=redis requires STORE_REDIS_URL")

        if self.worker_concurrency < 1:
            errors.append("WORKER_CONCURRENCY must be >= 1")

        if self.sweep_interval_s <= 0:
            errors.append("SWEEP_INTERVAL_S must be > 0")

        if self.relationship_ttl_structural_s < self.relationship_ttl_behavioral_s:
            errors.append(
                "RELATIONSHIP_TTL_STRUCTURAL_S must be >= RELATIONSHIP_TTL_BEHAVIORAL_S"
            )

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def rules_paths_list(self) -> list[Path]:
        """Parse comma-separated rule file/directory paths."""
        return [Path(p.strip()) for p in self.rules_paths.split(",") if p.strip()]


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or embedding).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
