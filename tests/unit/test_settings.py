"""
Unit tests for DispatchSettings.
"""

import pytest
from pydantic import ValidationError

from dispatch_core import (
    BreakerConfig,
    BufferConfig,
    DispatchSettings,
    IdempotencyConfig,
    InMemoryStore,
    PostgresStore,
)
from dispatch_core.settings import get_settings


def test_defaults_match_component_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)  # no stray .env
    s = DispatchSettings()
    assert s.breaker_config() == BreakerConfig()
    assert s.buffer_config() == BufferConfig()
    assert s.idempotency_config() == IdempotencyConfig()
    assert s.database_url is None


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DISPATCH_FAILURE_THRESHOLD", "3")
    monkeypatch.setenv("DISPATCH_RESET_TIMEOUT", "12.5")
    monkeypatch.setenv("DISPATCH_MAX_BATCH_SIZE", "50")
    monkeypatch.setenv("DISPATCH_MAX_PENDING_AGE", "90")
    monkeypatch.setenv("DISPATCH_OVERFLOW_STRATEGY", "error")

    s = DispatchSettings()
    assert s.breaker_config() == BreakerConfig(failure_threshold=3, reset_timeout=12.5)
    assert s.buffer_config().max_batch_size == 50
    assert s.idempotency_config().max_pending_age == 90
    assert s.overflow_strategy == "error"


def test_env_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("DISPATCH_WORKERS=8\nDISPATCH_DATABASE_URL=postgresql://x/y\n")
    s = DispatchSettings()
    assert s.workers == 8
    assert s.database_url == "postgresql://x/y"


def test_invalid_values_rejected(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DISPATCH_FAILURE_THRESHOLD", "0")
    with pytest.raises(ValidationError):
        DispatchSettings()


def test_get_settings_cached(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()


def test_batch_age_must_be_shorter_than_pending_age(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DISPATCH_MAX_BATCH_AGE", "600")
    monkeypatch.setenv("DISPATCH_MAX_PENDING_AGE", "300")
    with pytest.raises(ValidationError, match="max_batch_age"):
        DispatchSettings()


@pytest.mark.asyncio
async def test_persistence_store_follows_database_url(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    assert isinstance(DispatchSettings().persistence_store(), InMemoryStore)

    monkeypatch.setenv("DISPATCH_DATABASE_URL", "postgresql://u@localhost/dispatch")
    store = DispatchSettings().persistence_store()
    assert isinstance(store, PostgresStore)
    assert store.pool.conninfo == "postgresql://u@localhost/dispatch"
