# tests/unit/config/test_settings.py — v2
"""Tests for config/settings.py — typed Settings and validation rules."""

from __future__ import annotations

from pathlib import Path

import pytest

from entitysynth.config.settings import ConfigurationError, Settings, load_settings


class TestSettingsDefaults:
    def test_default_store(self):
        s = Settings(_env_file=None)
        assert s.store_backend == "memory"
        assert s.store_key_prefix == "entitysynth:"

    def test_default_relationship_ttls(self):
        s = Settings(_env_file=None)
        assert s.relationship_ttl_structural_s == 86400
        assert s.relationship_ttl_behavioral_s == 4500

    def test_default_event_schema(self):
        s = Settings(_env_file=None)
        assert s.event_type_attribute == "eventType"
        assert s.timestamp_attribute == "timestamp"

    def test_default_rules(self):
        s = Settings(_env_file=None)
        assert s.rules_include_builtin is True
        assert s.rules_paths_list == []

    def test_default_lookup_policy(self):
        assert Settings(_env_file=None).lookup_ambiguity_policy == "skip"


class TestSettingsValidation:
    def test_redis_without_url(self):
        with pytest.raises(ConfigurationError, match="STORE_REDIS_URL"):
            Settings(_env_file=None, store_backend="redis")

    def test_zero_concurrency(self):
        with pytest.raises(ConfigurationError, match="WORKER_CONCURRENCY"):
            Settings(_env_file=None, worker_concurrency=0)

    def test_sweep_interval(self):
        with pytest.raises(ConfigurationError, match="SWEEP_INTERVAL_S"):
            Settings(_env_file=None, sweep_interval_s=0)

    def test_structural_shorter_than_behavioral(self):
        with pytest.raises(ConfigurationError, match="STRUCTURAL"):
            Settings(
                _env_file=None,
                relationship_ttl_structural_s=60,
                relationship_ttl_behavioral_s=120,
            )

    def test_non_positive_ttl(self):
        with pytest.raises(ValueError, match="durations"):
            Settings(_env_file=None, relationship_ttl_behavioral_s=0)

    def test_negative_retry_max(self):
        with pytest.raises(ValueError, match="store_retry_max"):
            Settings(_env_file=None, store_retry_max=-1)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            Settings(_env_file=None, store_backend="cassandra")


class TestSettingsSources:
    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("ENTITYSYNTH_STORE_BACKEND", "sqlite")
        monkeypatch.setenv("ENTITYSYNTH_WORKER_CONCURRENCY", "3")
        s = Settings(_env_file=None)
        assert s.store_backend == "sqlite"
        assert s.worker_concurrency == 3

    def test_env_file(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("ENTITYSYNTH_LOG_FORMAT=text\nENTITYSYNTH_SWEEP_ENABLED=false\n")
        s = Settings(_env_file=env)
        assert s.log_format == "text"
        assert s.sweep_enabled is False

    def test_rules_paths_list(self):
        s = Settings(_env_file=None, rules_paths="rules/a.yaml, rules/extra ,")
        assert s.rules_paths_list == [Path("rules/a.yaml"), Path("rules/extra")]

    def test_load_settings_overrides(self):
        s = load_settings(_env_file=None, sweep_enabled=False, worker_concurrency=2)
        assert s.sweep_enabled is False
        assert s.worker_concurrency == 2
