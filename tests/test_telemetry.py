from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from loadhunter.core.config import Settings
from loadhunter.core.telemetry import JsonLogFormatter, annotate_item_span, exporter_endpoint, parse_headers
from loadhunter.schemas.queue import QueueItem


class _FakeSpan:
    def __init__(self) -> None:
        self.attributes: dict[str, object] = {}

    def set_attribute(self, key: str, value: object) -> None:
        self.attributes[key] = value


def test_parse_headers() -> None:
    assert parse_headers(None) == {}
    assert parse_headers("authorization=Bearer abc, x-team = dispatch,broken,=orphan") == {
        "authorization": "Bearer abc",
        "x-team": "dispatch",
    }


def test_exporter_endpoint_prefers_settings_then_env(monkeypatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://collector:4318")

    assert exporter_endpoint(Settings(otel_exporter_otlp_endpoint="http://local:4318")) == "http://local:4318"
    assert exporter_endpoint(Settings()) == "http://collector:4318"

    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    assert exporter_endpoint(Settings()) is None


def test_settings_read_prefixed_environment(monkeypatch) -> None:
    monkeypatch.setenv("LH_WORKER_BATCH_SIZE", "10")
    monkeypatch.setenv("LH_WORKER_LOG_JSON", "true")

    settings = Settings()

    assert settings.batch_size == 10
    assert settings.log_json is True
    assert settings.concurrency_limit == 5


def test_json_formatter_includes_correlation_fields() -> None:
    record = logging.LogRecord("loadhunter.jobs", logging.WARNING, __file__, 1, "item failed id=%s", ("q-1",), None)
    record.worker_id = "worker-a"
    record.trace_id = "0" * 32

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["message"] == "item failed id=q-1"
    assert payload["level"] == "WARNING"
    assert payload["worker_id"] == "worker-a"
    assert payload["span_id"] is None


def test_item_span_attributes() -> None:
    span = _FakeSpan()
    item = QueueItem(
        id="q-1",
        message_id="m-1",
        tenant_id="tenant-1",
        status="processing",
        attempts=2,
        queued_at=datetime(2026, 1, 19, tzinfo=timezone.utc),
    )

    annotate_item_span(span, item)  # type: ignore[arg-type]

    assert span.attributes == {
        "loadhunter.queue.item_id": "q-1",
        "loadhunter.queue.message_id": "m-1",
        "loadhunter.queue.attempts": 2,
        "loadhunter.tenant_id": "tenant-1",
    }
