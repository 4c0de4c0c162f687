from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_INSTANCE_ID, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Span

from loadhunter.core.config import Settings
from loadhunter.schemas.queue import QueueItem

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s worker=%(worker_id)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "asyncpg")

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_CORRELATED_WORKER_ID: str | None = None
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, carrying the correlation fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "worker_id": getattr(record, "worker_id", None),
            "trace_id": getattr(record, "trace_id", None),
            "span_id": getattr(record, "span_id", None),
        }
        if record.exc_info:
            payload["error"] = str(record.exc_info[1])
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(settings: Settings) -> None:
    install_log_correlation(settings.worker_id)
    root = logging.getLogger()
    level = logging.getLevelName(settings.log_level.upper())
    root.setLevel(level if isinstance(level, int) else logging.INFO)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonLogFormatter() if settings.log_json else logging.Formatter(TEXT_FORMAT))
        root.addHandler(handler)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def install_log_correlation(worker_id: str) -> None:
    """Stamp every record with the worker id and the active trace/span ids."""
    global _CORRELATED_WORKER_ID
    if _CORRELATED_WORKER_ID == worker_id:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.worker_id = worker_id
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "0" * 32
        record.span_id = format(context.span_id, "016x") if context.is_valid else "0" * 16
        return record

    logging.setLogRecordFactory(record_factory)
    _CORRELATED_WORKER_ID = worker_id


def setup_tracing(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                SERVICE_INSTANCE_ID: settings.worker_id,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    # Storage, Mapbox and edge-function calls all go through httpx.
    _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_tracing(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def annotate_item_span(span: Span, item: QueueItem) -> None:
    span.set_attribute("loadhunter.queue.item_id", item.id)
    span.set_attribute("loadhunter.queue.message_id", item.message_id)
    span.set_attribute("loadhunter.queue.attempts", item.attempts)
    if item.tenant_id:
        span.set_attribute("loadhunter.tenant_id", item.tenant_id)


def exporter_endpoint(settings: Settings) -> str | None:
    return (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        or None
    )


def build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = exporter_endpoint(settings)
    if endpoint is None:
        logging.getLogger(__name__).info(
            "no OTLP endpoint configured; spans stay in-process for service=%s", settings.otel_service_name
        )
        return None
    headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``k1=v1,k2=v2`` as used by ``OTEL_EXPORTER_OTLP_HEADERS``."""
    if not raw:
        return {}
    parsed: dict[str, str] = {}
    for item in raw.split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            parsed[key.strip()] = value.strip()
    return parsed
