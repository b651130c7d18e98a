from __future__ import annotations

import pytest

from eventcore.common.base.base_config import SECRET_MASK
from eventcore.config.dlq_config import get_dlq_config
from eventcore.config.event_store_config import get_event_store_config, reset_event_store_config
from eventcore.config.pg_client_config import get_postgres_config
from eventcore.config.redis_config import get_redis_config
from eventcore.config.reliability_config import get_reliability_settings
from eventcore.config.snapshot_config import SnapshotConfig, get_snapshot_config, validate_snapshot_config


def test_settings_are_read_from_prefixed_env(monkeypatch):
    monkeypatch.setenv("EVENT_STORE_BACKEND", "postgres")
    monkeypatch.setenv("DLQ_RETENTION_DAYS", "7")
    monkeypatch.setenv("RELIABILITY_DEFAULT_CIRCUIT_BREAKER_THRESHOLD", "9")

    assert get_event_store_config().backend == "postgres"
    assert get_dlq_config().retention_days == 7
    assert get_reliability_settings().circuit_breaker("pg").failure_threshold == 9


def test_getters_are_cached_until_reset(monkeypatch):
    first = get_event_store_config()
    monkeypatch.setenv("EVENT_STORE_PAGE_SIZE", "50")

    assert get_event_store_config() is first
    reset_event_store_config()
    assert get_event_store_config().page_size == 50


def test_per_aggregate_snapshot_intervals_from_json_env(monkeypatch):
    monkeypatch.setenv("SNAPSHOT_AGGREGATE_EVENT_INTERVALS", '{"Order": 5}')

    config = get_snapshot_config()

    assert config.get_event_interval("Order") == 5
    assert config.get_event_interval("Invoice") == config.default_event_interval


def test_connection_urls_are_kept_secret(monkeypatch):
    monkeypatch.setenv("PG_DSN", "postgresql://app:hunter2@db:5432/events")
    monkeypatch.setenv("REDIS_URL", "redis://:hunter2@cache:6379/2")

    config = get_postgres_config()

    assert config.dsn.get_secret_value().endswith("@db:5432/events")
    assert "hunter2" not in repr(config)
    assert get_redis_config().url.get_secret_value().endswith("@cache:6379/2")
    assert "hunter2" not in repr(get_redis_config())


def test_effective_settings_mask_secrets_and_flatten_enums(monkeypatch):
    monkeypatch.setenv("PG_DSN", "postgresql://app:hunter2@db:5432/events")

    settings = get_postgres_config().effective_settings()

    assert settings["dsn"] == SECRET_MASK
    assert settings["max_size"] == 20
    assert get_redis_config().effective_settings()["url"] == SECRET_MASK
    assert SnapshotConfig(strategy="adaptive").effective_settings()["strategy"] == "adaptive"


@pytest.mark.parametrize("overrides", [
    {"default_event_interval": 0},
    {"time_interval_seconds": 0},
    {"compression_level": 12},
    {"tracked_aggregates_capacity": 0},
    {"batch_load_concurrency": 0},
])
def test_snapshot_config_validation(overrides):
    with pytest.raises(ValueError):
        validate_snapshot_config(SnapshotConfig(**overrides))
