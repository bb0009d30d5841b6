import pytest
from pydantic import ValidationError

from tokenledger.config import (
    LedgerBackend,
    Settings,
    get_settings,
    reset_settings_cache,
)
from tokenledger.service.runtime import Runtime

SECRET = "x" * 48


def test_jwt_secret_required_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False, jwt_secret=None)


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_test_mode_generates_secret():
    settings = Settings(test_mode=True, jwt_secret=None)
    assert settings.jwt_secret and len(settings.jwt_secret) >= 32


def test_defaults():
    settings = Settings(jwt_secret=SECRET)
    assert settings.ledger_backend is LedgerBackend.POSTGRES
    assert settings.cookie_secure is True
    assert settings.cookie_samesite == "lax"
    assert settings.trust_proxy_headers is False
    assert settings.upstream_timeout_seconds == 5.0


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, cookie_samesite="none")
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, upstream_timeout_seconds=0)
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, ledger_backend="mongo")


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("LEDGER_BACKEND", "redis")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/2")
    monkeypatch.setenv("UPSTREAM_TIMEOUT_SECONDS", "1.5")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("COOKIE_SAMESITE", "Strict")

    settings = Settings.from_env()

    assert settings.jwt_secret == SECRET
    assert settings.ledger_backend is LedgerBackend.REDIS
    assert settings.redis_url == "redis://localhost:6379/2"
    assert settings.upstream_timeout_seconds == 1.5
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.cookie_samesite == "strict"


def test_get_settings_is_cached_until_reset(monkeypatch):
    first = get_settings()
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings() is not first


def test_memory_store_refused_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    reset_settings_cache()
    try:
        with pytest.raises(RuntimeError):
            Runtime()
    finally:
        reset_settings_cache()
