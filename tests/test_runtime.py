import pytest

from bookingauth.config import reset_settings_cache
from bookingauth.service import runtime as runtime_module
from bookingauth.service.runtime import Runtime, _mask_url_password, get_runtime
from bookingauth.storage.memory_cache import MemoryCache


def test_get_runtime_returns_singleton():
    assert get_runtime() is get_runtime()


def test_runtime_refuses_to_start_without_redis(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
    monkeypatch.setenv("REDIS_URL", "")
    reset_settings_cache()

    with pytest.raises(RuntimeError, match="Redis is required"):
        Runtime()
    reset_settings_cache()


def test_dev_fallback_uses_memory_cache(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "true")
    monkeypatch.setenv("REDIS_URL", "")
    reset_settings_cache()

    runtime = Runtime()

    assert isinstance(runtime.cache, MemoryCache)
    assert runtime.auth.cache is runtime.cache
    assert runtime.auth.codec is runtime.codec
    assert runtime.auth.notifier is runtime.email
    reset_settings_cache()


def test_unreachable_redis_falls_back_in_test_mode(monkeypatch):
    class UnreachableCache(runtime_module.RedisCache):
        def verify_connection(self):
            raise ConnectionError("refused")

    monkeypatch.setattr(runtime_module, "RedisCache", UnreachableCache)
    monkeypatch.setenv("REDIS_URL", "redis://:hunter2@cache.internal:6379/0")
    reset_settings_cache()

    runtime = Runtime()

    assert isinstance(runtime.cache, MemoryCache)
    reset_settings_cache()


def test_mask_url_password():
    assert _mask_url_password("redis://:pw@localhost:6379/0") == "redis://:***@localhost:6379/0"
    assert (
        _mask_url_password("postgresql://app:pw@db:5432/booking")
        == "postgresql://app:***@db:5432/booking"
    )
    assert _mask_url_password("redis://localhost:6379") == "redis://localhost:6379"
    assert _mask_url_password(None) is None
