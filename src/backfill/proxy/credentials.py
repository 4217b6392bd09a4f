"""Cached session credentials for writing to the primary object store."""

from __future__ import annotations

import json
from typing import Optional, Type

import httpx
from opentelemetry import trace
from pydantic import BaseModel, ValidationError
import structlog

from ..common.errors import AuthFailure, HealError, ProtocolError, UploadUrlFailure
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import AuthorizeAccountResponse, Session, UploadUrlResponse
from ..common.settings import ProxySettings
from .session_store import SessionStore

LOGGER = structlog.get_logger("backfill.credentials")
TRACER = trace.get_tracer("backfill.credentials")

SESSION_CACHE_HITS = GLOBAL_REGISTRY.register(
    Counter("backfill_session_cache_hits_total", "Session lookups served from the cache store")
)
SESSION_CACHE_MISSES = GLOBAL_REGISTRY.register(
    Counter("backfill_session_cache_misses_total", "Session lookups that required a handshake")
)
HANDSHAKE_FAILURES = GLOBAL_REGISTRY.register(
    Counter("backfill_session_handshake_failures_total", "Failed authorization handshakes")
)


def _parse(response: httpx.Response, model: Type[BaseModel], what: str):
    try:
        return model.model_validate(response.json())
    except (ValidationError, json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"Malformed {what} response: {exc}", response.status_code) from exc


class CredentialCache:
    """Serves the cached session or refreshes it with a two-step handshake.

    Concurrent misses may each run the handshake; the last write wins.
    """

    def __init__(self, settings: ProxySettings, http_client: httpx.AsyncClient, store: SessionStore):
        self._settings = settings
        self._http = http_client
        self._store = store

    async def acquire(self) -> Session:
        with TRACER.start_as_current_span("backfill.session.acquire") as span:
            cached = await self.peek()
            if cached is not None:
                SESSION_CACHE_HITS.inc()
                span.set_attribute("backfill.session.cache_hit", True)
                LOGGER.debug("session_cache_hit")
                return cached
            SESSION_CACHE_MISSES.inc()
            span.set_attribute("backfill.session.cache_hit", False)
            LOGGER.info("session_cache_miss")
            return await self.refresh()

    async def peek(self) -> Optional[Session]:
        """Return the cached session without ever contacting the primary store."""
        raw = await self._store.get(self._settings.session_cache_key)
        if not raw:
            return None
        try:
            return Session.model_validate_json(raw)
        except ValidationError:
            LOGGER.warning("session_cache_corrupt", key=self._settings.session_cache_key)
            return None

    async def refresh(self) -> Session:
        """Run the handshake and overwrite the cached session."""
        try:
            session = await self._handshake()
        except HealError as exc:
            HANDSHAKE_FAILURES.inc()
            LOGGER.warning(
                "session_handshake_failed",
                step=type(exc).__name__,
                status=exc.status_code,
                detail=exc.detail,
            )
            raise
        await self._store.put(
            self._settings.session_cache_key,
            session.model_dump_json(),
            self._settings.session_ttl_seconds,
        )
        return session

    async def _handshake(self) -> Session:
        auth = await self._authorize_account()
        upload = await self._get_upload_url(auth)
        if not upload.upload_url:
            raise UploadUrlFailure("Primary store issued an empty upload URL", 200)
        return Session(
            auth_token=auth.authorization_token,
            api_base_url=auth.api_url,
            upload_url=upload.upload_url,
            upload_token=upload.authorization_token,
        )

    async def _authorize_account(self) -> AuthorizeAccountResponse:
        credentials = httpx.BasicAuth(self._settings.key_id, self._settings.application_key.get_secret_value())
        try:
            response = await self._http.get(self._settings.authorize_url, auth=credentials)
        except httpx.HTTPError as exc:
            raise AuthFailure(f"Account authorization request failed: {exc}") from exc
        if response.is_error:
            raise AuthFailure("Account authorization rejected", response.status_code)
        LOGGER.info("session_authorized")
        return _parse(response, AuthorizeAccountResponse, "authorize account")

    async def _get_upload_url(self, auth: AuthorizeAccountResponse) -> UploadUrlResponse:
        url = auth.api_url.rstrip("/") + self._settings.upload_url_path
        try:
            response = await self._http.post(
                url,
                headers={"Authorization": auth.authorization_token},
                json={"bucketId": self._settings.bucket_id},
            )
        except httpx.HTTPError as exc:
            raise UploadUrlFailure(f"Upload URL request failed: {exc}") from exc
        if response.is_error:
            raise UploadUrlFailure("Upload URL request rejected", response.status_code)
        LOGGER.info("session_upload_url_issued")
        return _parse(response, UploadUrlResponse, "get upload url")
