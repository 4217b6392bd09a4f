from __future__ import annotations

import pytest
from pydantic import ValidationError

from backfill.common.settings import B2_AUTHORIZE_URL, ProxySettings


@pytest.fixture
def proxy_env(monkeypatch):
    monkeypatch.setenv("BACKFILL_BUCKET_ID", "bucket-123")
    monkeypatch.setenv("BACKFILL_KEY_ID", "key-id")
    monkeypatch.setenv("BACKFILL_APP_KEY", "app-key")
    monkeypatch.setenv("BACKFILL_PRIMARY_URL", "https://f000.backblazeb2.test/file/media")
    monkeypatch.setenv("BACKFILL_BACKUP_URL", "https://backup.test")


def test_settings_load_from_environment(proxy_env):
    settings = ProxySettings(_env_file=None)

    assert settings.bucket_id == "bucket-123"
    assert settings.application_key.get_secret_value() == "app-key"
    assert settings.authorize_url == B2_AUTHORIZE_URL
    assert settings.session_cache_key == "b2"
    assert settings.session_ttl_seconds == 43200
    assert settings.edge_cache_ttl_seconds == 14400
    assert settings.redis_url is None
    assert settings.heal_enabled is True


def test_settings_overrides_from_environment(proxy_env, monkeypatch):
    monkeypatch.setenv("BACKFILL_HEAL_ENABLED", "false")
    monkeypatch.setenv("BACKFILL_REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("BACKFILL_CACHE_MAX_AGE", "60")

    settings = ProxySettings(_env_file=None)

    assert settings.heal_enabled is False
    assert str(settings.redis_url).startswith("redis://cache:6379")
    assert settings.cache_control_policy.startswith("public, max-age=60,")


def test_default_cache_control_policy(settings):
    assert settings.cache_control_policy == (
        "public, max-age=3600, stale-while-revalidate=3600, stale-if-error=86400"
    )


def test_application_key_is_not_rendered(settings):
    assert "app-key" not in repr(settings)


def test_base_urls_must_be_http(proxy_env, monkeypatch):
    monkeypatch.setenv("BACKFILL_BACKUP_URL", "ftp://backup.test")
    with pytest.raises(ValidationError):
        ProxySettings(_env_file=None)


def test_ttls_must_be_positive(proxy_env, monkeypatch):
    monkeypatch.setenv("BACKFILL_SESSION_TTL", "0")
    with pytest.raises(ValidationError):
        ProxySettings(_env_file=None)


def test_missing_credentials_fail_fast(monkeypatch):
    for name in ("BACKFILL_BUCKET_ID", "BACKFILL_KEY_ID", "BACKFILL_APP_KEY"):
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(ValidationError):
        ProxySettings(_env_file=None)


def test_log_level_is_normalised(proxy_env, monkeypatch):
    monkeypatch.setenv("BACKFILL_LOG_LEVEL", " debug ")
    assert ProxySettings(_env_file=None).log_level == "DEBUG"


def test_unknown_log_level_rejected(proxy_env, monkeypatch):
    monkeypatch.setenv("BACKFILL_LOG_LEVEL", "chatty")
    with pytest.raises(ValidationError):
        ProxySettings(_env_file=None)
