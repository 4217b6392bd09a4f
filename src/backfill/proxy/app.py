"""ASGI application serving objects from the primary store with backup fallback."""

from __future__ import annotations

import hmac
import time
import uuid
from contextlib import asynccontextmanager
from ipaddress import ip_address
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from redis.asyncio import from_url as redis_from_url
import structlog
from structlog.contextvars import bound_contextvars

from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import ProxySettings
from .credentials import CredentialCache
from .fetcher import FallbackFetcher, normalize_path
from .healer import HealScheduler, HealWriter
from .session_store import InMemorySessionStore, RedisSessionStore, SessionStore

LOGGER = structlog.get_logger("backfill.proxy")

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("backfill_requests_total", "Object requests handled"))
REQUEST_LATENCY = GLOBAL_REGISTRY.register(
    Histogram(
        "backfill_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
        description="Time to produce a response, excluding heal uploads",
    )
)


class ProxyState:
    def __init__(self, settings: ProxySettings, http_client: httpx.AsyncClient, store: SessionStore):
        self.settings = settings
        self.http = http_client
        self.store = store
        self.credentials = CredentialCache(settings, http_client, store)
        self.scheduler = HealScheduler(HealWriter(self.credentials, http_client))
        self.fetcher = FallbackFetcher(settings, http_client, self.scheduler)


def build_session_store(settings: ProxySettings) -> SessionStore:
    if settings.redis_url:
        return RedisSessionStore(redis_from_url(str(settings.redis_url), decode_responses=True))
    LOGGER.warning("session_store_in_memory", reason="BACKFILL_REDIS_URL not set")
    return InMemorySessionStore()


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy  # type: ignore[attr-defined]


def require_metrics_access(request: Request, state: ProxyState = Depends(get_state)) -> None:
    token = state.settings.metrics_token
    if token is not None:
        provided = request.headers.get("authorization", "")
        if not hmac.compare_digest(provided, f"Bearer {token.get_secret_value()}"):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return
    host = request.client.host if request.client else None
    try:
        loopback = host is not None and ip_address(host).is_loopback
    except ValueError:
        loopback = False
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")


def create_app(
    settings: Optional[ProxySettings] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    session_store: Optional[SessionStore] = None,
) -> FastAPI:
    settings = settings or ProxySettings()
    configure_logging("backfill.proxy", settings.log_level)
    configure_tracing(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(settings.upstream_timeout_seconds))
        store = session_store or build_session_store(settings)
        state = ProxyState(settings, client, store)
        app.state.proxy = state
        LOGGER.info(
            "proxy_started",
            primary=settings.primary_base_url,
            secondary=settings.secondary_base_url,
            heal_enabled=settings.heal_enabled,
        )
        try:
            yield
        finally:
            await state.scheduler.drain(timeout=settings.heal_drain_timeout_seconds)
            if http_client is None:
                await client.aclose()
            if session_store is None:
                await store.close()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        try:
            with bound_contextvars(request_id=request_id):
                response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY.observe(duration)
            LOGGER.exception(
                "http_request_error",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY.observe(duration)
        log_kwargs = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        response.headers.setdefault("x-request-id", request_id)
        return response

    @app.get("/healthz")
    async def health_check(state: ProxyState = Depends(get_state)) -> JSONResponse:
        """Liveness plus reachability of the session store."""
        store_ok = await state.store.ping()
        body = {
            "status": "healthy" if store_ok else "degraded",
            "checks": {"session_store": store_ok, "heals_in_flight": state.scheduler.pending},
        }
        return JSONResponse(body, headers={"cache-control": "no-store"})

    @app.get("/metrics", response_class=PlainTextResponse, dependencies=[Depends(require_metrics_access)])
    async def metrics_endpoint() -> PlainTextResponse:
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{object_path:path}", methods=PROXY_METHODS)
    async def serve_object(request: Request, state: ProxyState = Depends(get_state)) -> Response:
        REQUEST_COUNTER.inc()
        path = normalize_path(request.scope["path"])
        outcome = await state.fetcher.fetch(path, request.headers)
        return outcome.response

    return app
