"""Application configuration for the backfill proxy."""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import Field, RedisDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


B2_AUTHORIZE_URL = "https://api.backblazeb2.com/b2api/v1/b2_authorize_account"


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class ProxySettings(BaseSettings):
    """Runtime settings for the read-through proxy and its heal path."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    bucket_id: str = env_field(..., "BACKFILL_BUCKET_ID")
    key_id: str = env_field(..., "BACKFILL_KEY_ID")
    application_key: SecretStr = env_field(..., "BACKFILL_APP_KEY")
    primary_base_url: str = env_field(..., "BACKFILL_PRIMARY_URL")
    secondary_base_url: str = env_field(..., "BACKFILL_BACKUP_URL")
    authorize_url: str = env_field(B2_AUTHORIZE_URL, "BACKFILL_AUTHORIZE_URL")
    upload_url_path: str = env_field("/b2api/v2/b2_get_upload_url", "BACKFILL_UPLOAD_URL_PATH")
    redis_url: Optional[RedisDsn] = env_field(None, "BACKFILL_REDIS_URL")
    session_cache_key: str = env_field("b2", "BACKFILL_SESSION_CACHE_KEY")
    session_ttl_seconds: int = env_field(12 * 3600, "BACKFILL_SESSION_TTL")
    edge_cache_ttl_seconds: int = env_field(14400, "BACKFILL_EDGE_CACHE_TTL")
    cache_max_age_seconds: int = env_field(3600, "BACKFILL_CACHE_MAX_AGE")
    cache_stale_while_revalidate_seconds: int = env_field(3600, "BACKFILL_CACHE_SWR")
    cache_stale_if_error_seconds: int = env_field(86400, "BACKFILL_CACHE_SIE")
    upstream_timeout_seconds: float = env_field(30.0, "BACKFILL_UPSTREAM_TIMEOUT")
    heal_enabled: bool = env_field(True, "BACKFILL_HEAL_ENABLED")
    heal_drain_timeout_seconds: float = env_field(10.0, "BACKFILL_HEAL_DRAIN_TIMEOUT")
    metrics_token: Optional[SecretStr] = env_field(None, "BACKFILL_METRICS_TOKEN")
    bind_host: str = env_field("0.0.0.0", "BACKFILL_HOST")
    port: int = env_field(8080, "BACKFILL_PORT")
    log_level: str = env_field("INFO", "BACKFILL_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "BACKFILL_OTEL_EXPORTER_ENDPOINT")
    otel_sampler_ratio: float = env_field(0.1, "BACKFILL_OTEL_SAMPLER_RATIO")

    @field_validator("primary_base_url", "secondary_base_url")
    @classmethod
    def _require_http_base(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("base URL must be an http(s) URL")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        value = value.strip().upper()
        if value not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level {value!r}")
        return value

    @field_validator("session_ttl_seconds", "edge_cache_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL must be positive")
        return value

    @property
    def cache_control_policy(self) -> str:
        return (
            f"public, max-age={self.cache_max_age_seconds}, "
            f"stale-while-revalidate={self.cache_stale_while_revalidate_seconds}, "
            f"stale-if-error={self.cache_stale_if_error_seconds}"
        )
