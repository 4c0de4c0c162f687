from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from loadhunter.core.metrics import MetricsRegistry
from loadhunter.core.telemetry import annotate_item_span
from loadhunter.jobs.inbound import InboundProcessor, StepTimeoutError
from loadhunter.jobs.stale_sweep import sweep_due
from loadhunter.schemas.queue import QueueItem
from loadhunter.services.message import InvalidPayloadError
from loadhunter.services.repository import RepositoryError
from loadhunter.services.storage import StorageError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class BatchResult:
    claimed: int
    completed: int
    failed: int


def failure_kind(exc: BaseException) -> str:
    if isinstance(exc, InvalidPayloadError):
        return "invalid_payload"
    if isinstance(exc, StepTimeoutError):
        return "timeout"
    if isinstance(exc, StorageError):
        return "storage"
    if isinstance(exc, RepositoryError):
        return "repository"
    return "unexpected"


class Orchestrator:
    """Claims queue batches and runs them through the inbound pipeline."""

    def __init__(
        self,
        repository: Any,
        processor: InboundProcessor,
        metrics: MetricsRegistry,
        *,
        batch_size: int = 25,
        concurrency_limit: int = 5,
        poll_interval_seconds: float = 3.0,
        batch_pause_seconds: float = 0.5,
        error_backoff_seconds: float = 5.0,
        max_backoff_seconds: float = 30.0,
        stale_reset_interval_seconds: float = 60.0,
        stale_threshold_seconds: int = 300,
        metrics_report_interval_seconds: float = 60.0,
        step_timeout_seconds: float = 20.0,
    ) -> None:
        self.repository = repository
        self.processor = processor
        self.metrics = metrics
        self.batch_size = batch_size
        self.concurrency_limit = max(1, concurrency_limit)
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_pause_seconds = batch_pause_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.stale_reset_interval_seconds = stale_reset_interval_seconds
        self.stale_threshold_seconds = stale_threshold_seconds
        self.metrics_report_interval_seconds = metrics_report_interval_seconds
        self.step_timeout_seconds = step_timeout_seconds

    async def run_once(self) -> BatchResult:
        started = time.perf_counter()
        items = await asyncio.wait_for(
            self.repository.claim_inbound_batch(self.batch_size), timeout=self.step_timeout_seconds
        )
        if not items:
            return BatchResult(claimed=0, completed=0, failed=0)

        semaphore = asyncio.Semaphore(self.concurrency_limit)

        async def bounded(item: QueueItem) -> bool:
            async with semaphore:
                return await self._handle(item)

        outcomes = await asyncio.gather(*(bounded(item) for item in items))
        completed = sum(1 for ok in outcomes if ok)
        self.metrics.record_batch(len(items), time.perf_counter() - started)
        logger.info("batch finished claimed=%s completed=%s failed=%s", len(items), completed, len(items) - completed)
        return BatchResult(claimed=len(items), completed=completed, failed=len(items) - completed)

    async def sweep_stale(self) -> int:
        count = await asyncio.wait_for(
            self.repository.reset_stale(self.stale_threshold_seconds), timeout=self.step_timeout_seconds
        )
        if count:
            logger.warning("reset stale processing items: %s", count)
        self.metrics.record_stale_reset(count)
        return count

    async def run(self, stop_event: asyncio.Event) -> None:
        backoff = self.error_backoff_seconds
        last_sweep_at = 0.0
        last_report_at = time.monotonic()

        while not stop_event.is_set():
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    self.metrics.record_loop()
                    now = time.monotonic()
                    if sweep_due(last_sweep_at, now, self.stale_reset_interval_seconds):
                        await self.sweep_stale()
                        last_sweep_at = now

                    if now - last_report_at >= self.metrics_report_interval_seconds:
                        self._log_window_report()
                        last_report_at = now

                    batch = await self.run_once()
                backoff = self.error_backoff_seconds
                pause = self.batch_pause_seconds if batch.claimed else self.poll_interval_seconds
                await _sleep_until_stopped(stop_event, pause)
            except Exception as exc:
                sleep_for = min(backoff, self.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await _sleep_until_stopped(stop_event, sleep_for)
                backoff = min(sleep_for * (2.0 + random.uniform(0.0, 0.5)), self.max_backoff_seconds)
        logger.info("orchestrator stopped")

    async def _handle(self, item: QueueItem) -> bool:
        started = time.perf_counter()
        with tracer.start_as_current_span("worker.process_item") as span:
            annotate_item_span(span, item)
            try:
                result = await self.processor.process(item)
            except Exception as exc:
                kind = failure_kind(exc)
                span.record_exception(exc)
                self.metrics.record_item_failed(kind=kind)
                await self._fail(item, exc, kind)
                return False
        self.metrics.record_item_processed(time.perf_counter() - started, outcome=result.outcome)
        return True

    async def _fail(self, item: QueueItem, exc: Exception, kind: str) -> None:
        message = str(exc) or exc.__class__.__name__
        if kind == "unexpected":
            logger.exception("inbound item failed message_id=%s attempts=%s", item.message_id, item.attempts)
        else:
            logger.warning(
                "inbound item failed message_id=%s attempts=%s kind=%s error=%s",
                item.message_id,
                item.attempts,
                kind,
                message,
            )
        try:
            status = await asyncio.wait_for(
                self.repository.fail_item(item.id, message, item.attempts), timeout=self.step_timeout_seconds
            )
        except Exception as fail_exc:
            # The stale sweep returns the item to pending.
            logger.error("fail_item failed message_id=%s error=%s", item.message_id, fail_exc)
            return
        if status == "failed":
            logger.error("inbound item exhausted retries message_id=%s error=%s", item.message_id, message)

    def _log_window_report(self) -> None:
        report = self.metrics.window_report(reset=True)
        logger.info(
            "window report inbound_per_min=%.1f matches_per_min=%.1f drain_per_min=%.1f "
            "processing_p95_ms=%.1f matching_p95_ms=%.1f",
            report.inbound_per_min,
            report.matches_per_min,
            report.drain_per_min,
            report.inbound_processing.p95_ms,
            report.matching.p95_ms,
        )


async def _sleep_until_stopped(stop_event: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
