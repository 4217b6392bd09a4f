"""Primary-then-backup fetch orchestration for a single object path."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional
from urllib.parse import quote

import httpx
from fastapi import Response, status
from fastapi.responses import StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask
import structlog

from ..common.errors import UpstreamFailure
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import ProxySettings
from .healer import HealScheduler, Payload

LOGGER = structlog.get_logger("backfill.fetcher")
TRACER = trace.get_tracer("backfill.fetcher")

PRIMARY = "primary"
SECONDARY = "secondary"

# Never forwarded in either direction.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)
REQUEST_ONLY_HEADERS = frozenset({"host", "content-length"})

PRIMARY_HITS = GLOBAL_REGISTRY.register(Counter("backfill_primary_hits_total", "Objects served by the primary store"))
SECONDARY_HITS = GLOBAL_REGISTRY.register(
    Counter("backfill_secondary_hits_total", "Objects served by the backup origin")
)
MISSES = GLOBAL_REGISTRY.register(Counter("backfill_misses_total", "Objects missing from both origins"))
UPSTREAM_ERRORS = GLOBAL_REGISTRY.register(
    Counter("backfill_upstream_errors_total", "Upstream fetches that failed at the transport level")
)


def normalize_path(raw_path: str) -> str:
    """Strip the leading separator; an empty result addresses the root key."""
    return raw_path[1:] if raw_path.startswith("/") else raw_path


def object_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{quote(path, safe='/')}"


def forwardable_request_headers(headers: Mapping[str, str]) -> dict[str, str]:
    dropped = HOP_BY_HOP_HEADERS | REQUEST_ONLY_HEADERS
    return {key: value for key, value in headers.items() if key.lower() not in dropped}


def forwardable_response_headers(headers: httpx.Headers) -> dict[str, str]:
    return {key: value for key, value in headers.items() if key.lower() not in HOP_BY_HOP_HEADERS}


def decorate(response: Response, policy: str) -> Response:
    """Apply the fixed cache-control policy regardless of which origin answered."""
    response.headers["cache-control"] = policy
    return response


@dataclass
class FetchOutcome:
    response: Response
    source: Optional[str]
    failures: list[UpstreamFailure] = field(default_factory=list)
    heal_scheduled: bool = False


class FallbackFetcher:
    """Serves a path from the primary store, falling back to the backup origin.

    A backup hit schedules a detached heal so the primary store holds the
    object on the next request.
    """

    def __init__(self, settings: ProxySettings, http_client: httpx.AsyncClient, scheduler: Optional[HealScheduler]):
        self._settings = settings
        self._http = http_client
        self._scheduler = scheduler

    def _edge_hints(self) -> dict[str, str]:
        """Advisory only: honoured by CDN-fronted origins, ignored by a plain origin."""
        return {"CDN-Cache-Control": f"max-age={self._settings.edge_cache_ttl_seconds}"}

    async def _open(
        self,
        source: str,
        base_url: str,
        path: str,
        headers: Mapping[str, str],
        overrides: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        forwarded = forwardable_request_headers(headers)
        forwarded.update(self._edge_hints())
        if overrides:
            replaced = {key.lower() for key in overrides}
            forwarded = {key: value for key, value in forwarded.items() if key.lower() not in replaced}
            forwarded.update(overrides)
        request = self._http.build_request("GET", object_url(base_url, path), headers=forwarded)
        with TRACER.start_as_current_span(f"backfill.fetch.{source}", attributes={"backfill.path": path}) as span:
            response = await self._http.send(request, stream=True)
            span.set_attribute("http.status_code", response.status_code)
        return response

    async def fetch(self, path: str, headers: Mapping[str, str]) -> FetchOutcome:
        failures: list[UpstreamFailure] = []
        policy = self._settings.cache_control_policy

        with TRACER.start_as_current_span("backfill.fetch", attributes={"backfill.path": path}) as span:
            try:
                primary = await self._open(PRIMARY, self._settings.primary_base_url, path, headers)
            except httpx.HTTPError as exc:
                UPSTREAM_ERRORS.inc()
                failures.append(UpstreamFailure(PRIMARY, None, str(exc)))
                LOGGER.warning("primary_fetch_error", path=path, error=str(exc))
            else:
                if primary.is_success:
                    PRIMARY_HITS.inc()
                    span.set_attribute("backfill.source", PRIMARY)
                    LOGGER.info("primary_hit", path=path, status=primary.status_code)
                    response = StreamingResponse(
                        primary.aiter_raw(),
                        status_code=primary.status_code,
                        headers=forwardable_response_headers(primary.headers),
                        background=BackgroundTask(primary.aclose),
                    )
                    return FetchOutcome(decorate(response, policy), PRIMARY)
                await primary.aclose()
                failures.append(UpstreamFailure(PRIMARY, primary.status_code, primary.reason_phrase))

            LOGGER.info("fallback_to_secondary", path=path, primary_status=failures[-1].status_code)
            try:
                # The body is both served and uploaded, so it must be the stored object itself.
                secondary = await self._open(
                    SECONDARY,
                    self._settings.secondary_base_url,
                    path,
                    headers,
                    overrides={"Accept-Encoding": "identity"},
                )
                try:
                    body = b"".join([chunk async for chunk in secondary.aiter_raw()])
                finally:
                    await secondary.aclose()
            except httpx.HTTPError as exc:
                UPSTREAM_ERRORS.inc()
                failures.append(UpstreamFailure(SECONDARY, None, str(exc)))
                LOGGER.error("secondary_fetch_error", path=path, error=str(exc))
                span.set_attribute("backfill.source", "none")
                bad_gateway = Response(content=b"Bad Gateway", status_code=status.HTTP_502_BAD_GATEWAY)
                return FetchOutcome(decorate(bad_gateway, policy), None, failures)

            response = Response(
                content=body,
                status_code=secondary.status_code,
                headers=forwardable_response_headers(secondary.headers),
            )
            decorate(response, policy)

            if not secondary.is_success:
                MISSES.inc()
                failures.append(UpstreamFailure(SECONDARY, secondary.status_code, secondary.reason_phrase))
                span.set_attribute("backfill.source", "none")
                LOGGER.info("miss_on_both", path=path, status=secondary.status_code)
                return FetchOutcome(response, None, failures)

            SECONDARY_HITS.inc()
            span.set_attribute("backfill.source", SECONDARY)
            LOGGER.info("secondary_hit", path=path, status=secondary.status_code, bytes=len(body))
            heal_scheduled = False
            if self._scheduler is not None and self._settings.heal_enabled:
                self._scheduler.schedule(Payload.from_source(body, secondary.headers), path)
                heal_scheduled = True
            return FetchOutcome(response, SECONDARY, failures, heal_scheduled)
