from __future__ import annotations

import json
import logging

import structlog
from fastapi import FastAPI
from opentelemetry.sdk.trace import TracerProvider

from backfill.common import observability


def _last_event(caplog) -> dict:
    return json.loads(caplog.records[-1].message)


def test_configure_logging_emits_json(caplog, monkeypatch):
    monkeypatch.setattr(observability, "_stdlib_configured", False)

    observability.configure_logging("backfill.test", "INFO")
    logger = structlog.get_logger("backfill.test.logger")

    with caplog.at_level(logging.INFO):
        logger.info("heal_scheduled", path="images/logo.png")

    payload = _last_event(caplog)
    assert payload["message"] == "heal_scheduled"
    assert payload["path"] == "images/logo.png"
    assert payload["service"] == "backfill.test"
    assert payload["level"] == "info"
    assert "trace_id" not in payload


def test_log_lines_carry_active_trace_ids(caplog):
    observability.configure_logging("backfill.test", "INFO")
    logger = structlog.get_logger("backfill.test.traced")
    tracer = TracerProvider().get_tracer("backfill.test")

    with caplog.at_level(logging.INFO):
        with tracer.start_as_current_span("backfill.fetch") as span:
            logger.info("primary_hit", path="a.txt")

    payload = _last_event(caplog)
    context = span.get_span_context()
    assert payload["trace_id"] == format(context.trace_id, "032x")
    assert payload["span_id"] == format(context.span_id, "016x")


def test_heal_context_binds_and_unbinds(caplog):
    observability.configure_logging("backfill.test", "INFO")
    logger = structlog.get_logger("backfill.test.heal")

    with caplog.at_level(logging.INFO):
        with observability.heal_context("images/logo.png") as heal_id:
            logger.info("heal_succeeded")
        inside = _last_event(caplog)
        logger.info("heal_drain_cancelled")
        outside = _last_event(caplog)

    assert inside["heal_id"] == heal_id
    assert inside["heal_path"] == "images/logo.png"
    assert "heal_id" not in outside


def test_unknown_level_falls_back_to_info(monkeypatch):
    monkeypatch.setattr(observability, "_stdlib_configured", True)
    observability.configure_logging("backfill.test", "chatty")
    assert logging.getLogger().level == logging.INFO


def test_configure_tracing_uses_settings(monkeypatch, settings):
    monkeypatch.setattr(observability, "_tracing_configured", False)
    app = FastAPI()
    observability.configure_tracing(settings)
    observability.instrument_fastapi_app(app)
    assert observability._tracing_configured is True
    assert any(m.cls.__name__ == "OpenTelemetryMiddleware" for m in app.user_middleware)
