"""Copies objects found only on the backup origin into the primary store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import quote

import httpx
from opentelemetry import trace
import structlog

from ..common.errors import HealError, UploadFailure
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge
from ..common.observability import heal_context
from .credentials import CredentialCache
from .hashing import content_sha1

LOGGER = structlog.get_logger("backfill.healer")
TRACER = trace.get_tracer("backfill.healer")

# Lets the primary store infer the content type from the file name.
AUTO_CONTENT_TYPE = "b2/x-auto"

HEALS_SCHEDULED = GLOBAL_REGISTRY.register(Counter("backfill_heals_scheduled_total", "Heal uploads scheduled"))
HEALS_SUCCEEDED = GLOBAL_REGISTRY.register(Counter("backfill_heals_succeeded_total", "Heal uploads accepted"))
HEALS_FAILED = GLOBAL_REGISTRY.register(Counter("backfill_heals_failed_total", "Heal uploads that failed"))
HEALS_IN_FLIGHT = GLOBAL_REGISTRY.register(Gauge("backfill_heals_in_flight", "Heal uploads currently running"))


@dataclass(frozen=True)
class Payload:
    """A fully buffered object body plus the metadata needed to upload it."""

    body: bytes
    content_type: str
    content_length: str
    content_checksum: str
    content_encoding: Optional[str] = None

    @classmethod
    def from_source(cls, body: bytes, headers: Mapping[str, str]) -> "Payload":
        # The source length is copied verbatim; a truncated body makes the upload fail.
        content_length = headers.get("content-length") or str(len(body))
        return cls(
            body=body,
            content_type=headers.get("content-type") or AUTO_CONTENT_TYPE,
            content_length=content_length,
            content_checksum=content_sha1(body),
            content_encoding=headers.get("content-encoding"),
        )


@dataclass(frozen=True)
class HealResult:
    path: str
    ok: bool
    status_code: Optional[int] = None
    error: Optional[HealError] = None


class HealWriter:
    """Uploads a buffered payload using the cached session credentials."""

    def __init__(self, credentials: CredentialCache, http_client: httpx.AsyncClient):
        self._credentials = credentials
        self._http = http_client

    async def heal(self, payload: Payload, path: str) -> HealResult:
        with TRACER.start_as_current_span("backfill.heal", attributes={"backfill.path": path}) as span:
            try:
                status_code = await self._upload(payload, path)
            except HealError as exc:
                span.set_attribute("backfill.heal.ok", False)
                return HealResult(path=path, ok=False, status_code=exc.status_code, error=exc)
            span.set_attribute("backfill.heal.ok", True)
            span.set_attribute("backfill.bytes", len(payload.body))
            return HealResult(path=path, ok=True, status_code=status_code)

    async def _upload(self, payload: Payload, path: str) -> int:
        session = await self._credentials.acquire()
        headers = {
            "Authorization": session.upload_token,
            "X-Bz-File-Name": quote(path, safe="/"),
            "Content-Type": payload.content_type,
            "Content-Length": payload.content_length,
            "X-Bz-Content-Sha1": payload.content_checksum,
        }
        if payload.content_encoding:
            # Stored as file info; the primary store replays it as Content-Encoding on download.
            headers["X-Bz-Info-b2-content-encoding"] = payload.content_encoding
        try:
            response = await self._http.post(session.upload_url, headers=headers, content=payload.body)
        except httpx.HTTPError as exc:
            LOGGER.error("heal_upload_error", path=path, headers=_redact(headers), error=str(exc))
            raise UploadFailure(f"Upload request failed: {exc}") from exc
        if response.is_error:
            LOGGER.error(
                "heal_upload_rejected",
                path=path,
                status=response.status_code,
                headers=_redact(headers),
                body=response.text[:2000],
            )
            raise UploadFailure("Primary store rejected upload", response.status_code, response.text)
        return response.status_code


def _redact(headers: Mapping[str, str]) -> dict[str, str]:
    return {key: ("<redacted>" if key.lower() == "authorization" else value) for key, value in headers.items()}


class HealScheduler:
    """Runs heal uploads as detached tasks so responses never wait on them."""

    def __init__(self, writer: HealWriter):
        self._writer = writer
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, payload: Payload, path: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(payload, path), name=f"heal:{path}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        HEALS_SCHEDULED.inc()
        LOGGER.info("heal_scheduled", path=path, bytes=len(payload.body))
        return task

    async def _run(self, payload: Payload, path: str) -> Optional[HealResult]:
        HEALS_IN_FLIGHT.inc()
        with heal_context(path):
            try:
                result = await self._writer.heal(payload, path)
            except Exception:  # noqa: BLE001
                HEALS_FAILED.inc()
                LOGGER.exception("heal_crashed", path=path)
                return None
            finally:
                HEALS_IN_FLIGHT.dec()
            self._report(result)
        return result

    def _report(self, result: HealResult) -> None:
        path = result.path
        if result.ok:
            HEALS_SUCCEEDED.inc()
            LOGGER.info("heal_succeeded", path=path, status=result.status_code)
        else:
            HEALS_FAILED.inc()
            LOGGER.warning(
                "heal_failed",
                path=path,
                reason=type(result.error).__name__,
                status=result.status_code,
                detail=str(result.error),
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight heals, cancelling whatever outlives the timeout."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            LOGGER.warning("heal_drain_cancelled", cancelled=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
