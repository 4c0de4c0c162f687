from __future__ import annotations

import asyncio
import logging
import signal
from datetime import timedelta

import httpx
import uvicorn

from loadhunter.api.main import create_app
from loadhunter.core.config import Settings, get_settings
from loadhunter.core.metrics import MetricsRegistry
from loadhunter.core.telemetry import configure_logging, setup_tracing, shutdown_tracing
from loadhunter.jobs.inbound import InboundProcessor
from loadhunter.jobs.orchestrator import Orchestrator
from loadhunter.services.cooldown import CooldownGate
from loadhunter.services.downstream import BackgroundDispatcher, BrokerCheckTrigger, NotificationClient
from loadhunter.services.geocoding import GeocodeCache, MapboxGeocoder
from loadhunter.services.matching import MatchingEngine
from loadhunter.services.repository import get_repository
from loadhunter.services.storage import StorageClient

logger = logging.getLogger(__name__)


def build_orchestrator(
    settings: Settings,
    repository: object,
    metrics: MetricsRegistry,
    dispatcher: BackgroundDispatcher,
    client: httpx.AsyncClient,
) -> Orchestrator:
    storage = StorageClient(
        settings.supabase_url,
        settings.supabase_service_key,
        timeout_seconds=settings.http_timeout_seconds,
        client=client,
    )
    geocoder = GeocodeCache(
        repository,
        MapboxGeocoder(
            settings.mapbox_base_url,
            settings.mapbox_token,
            timeout_seconds=settings.geocode_timeout_seconds,
            client=client,
        ),
        dispatcher=dispatcher,
        metrics=metrics,
        timeout_seconds=settings.geocode_timeout_seconds,
    )
    matcher = MatchingEngine(
        repository,
        CooldownGate(repository, default_cooldown_seconds=settings.default_cooldown_seconds),
        dispatcher=dispatcher,
        notifier=NotificationClient(
            settings.supabase_url,
            settings.supabase_service_key,
            timeout_seconds=settings.http_timeout_seconds,
            client=client,
        ),
        broker_check=BrokerCheckTrigger(
            settings.supabase_url,
            settings.supabase_service_key,
            timeout_seconds=settings.http_timeout_seconds,
            client=client,
        ),
        metrics=metrics,
        default_radius=settings.default_pickup_radius_miles,
        feature_key=settings.matching_feature_key,
    )
    processor = InboundProcessor(
        repository,
        storage,
        geocoder,
        matcher=matcher,
        dispatcher=dispatcher,
        default_bucket=settings.storage_default_bucket,
        step_timeout_seconds=settings.step_timeout_seconds,
        duplicate_window=timedelta(hours=settings.dedup_window_hours),
        update_window=timedelta(hours=settings.update_window_hours),
        body_text_max_chars=settings.body_text_max_chars,
        expiration_grace=timedelta(minutes=settings.expiration_grace_minutes),
        fullcircle_expiration_grace=timedelta(minutes=settings.fullcircle_expiration_grace_minutes),
    )
    return Orchestrator(
        repository,
        processor,
        metrics,
        batch_size=settings.batch_size,
        concurrency_limit=settings.concurrency_limit,
        poll_interval_seconds=settings.poll_interval_seconds,
        batch_pause_seconds=settings.batch_pause_seconds,
        error_backoff_seconds=settings.error_backoff_seconds,
        max_backoff_seconds=settings.max_backoff_seconds,
        stale_reset_interval_seconds=settings.stale_reset_interval_seconds,
        stale_threshold_seconds=settings.stale_threshold_seconds,
        metrics_report_interval_seconds=settings.metrics_report_interval_seconds,
        step_timeout_seconds=settings.step_timeout_seconds,
    )


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - non-unix event loops
            logger.warning("signal handlers unavailable; stop with Ctrl+C")
            return


async def run_worker() -> None:
    settings = get_settings()
    configure_logging(settings)
    telemetry_runtime = setup_tracing(settings)
    metrics = MetricsRegistry(window_seconds=settings.metrics_window_seconds)
    dispatcher = BackgroundDispatcher(metrics)
    metrics.bind_pending_tasks_probe(lambda: dispatcher.pending)
    repository = get_repository()
    client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    server: uvicorn.Server | None = None
    server_task: asyncio.Task[None] | None = None
    if settings.health_enabled:
        config = uvicorn.Config(
            create_app(metrics, repository),
            host=settings.health_host,
            port=settings.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        server_task = asyncio.create_task(server.serve(), name="health_server")
        # uvicorn captures SIGTERM/SIGINT while serving; its exit stops the worker too.
        server_task.add_done_callback(lambda _: stop_event.set())

    orchestrator = build_orchestrator(settings, repository, metrics, dispatcher, client)
    logger.info(
        "inbound worker started id=%s batch_size=%s concurrency=%s",
        settings.worker_id,
        settings.batch_size,
        settings.concurrency_limit,
    )
    try:
        await orchestrator.run(stop_event)
    finally:
        cancelled = await dispatcher.drain(settings.shutdown_drain_seconds)
        if cancelled:
            logger.warning("cancelled %s background task(s) at shutdown", cancelled)
        if server is not None and server_task is not None:
            server.should_exit = True
            await server_task
        await client.aclose()
        await repository.close()
        get_repository.cache_clear()
        shutdown_tracing(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
