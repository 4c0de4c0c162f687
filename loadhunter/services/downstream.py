from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

import httpx

from loadhunter.core.metrics import MetricsRegistry
from loadhunter.schemas.hunts import MatchEvent
from loadhunter.schemas.loads import ParsedLoad

logger = logging.getLogger(__name__)

NOTIFICATION_FIELDS = (
    "origin_city",
    "origin_state",
    "destination_city",
    "destination_state",
    "posted_amount",
    "weight",
    "vehicle_type",
    "pickup_date",
    "delivery_date",
    "broker_name",
    "order_number",
)


class DownstreamError(Exception):
    """Raised when a downstream trigger is rejected."""


class BackgroundDispatcher:
    """Tracks fire-and-forget tasks so failures are logged and shutdown can drain them."""

    def __init__(self, metrics: MetricsRegistry | None = None) -> None:
        self.metrics = metrics
        self._tasks: set[asyncio.Task[Any]] = set()
        self.failures = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("background task cancelled name=%s", task.get_name())
            return
        exc = task.exception()
        if exc is None:
            return
        self.failures += 1
        logger.error("background task failed name=%s error=%s", task.get_name(), exc, exc_info=exc)
        if self.metrics is not None:
            self.metrics.record_background_failure(task.get_name())

    async def drain(self, timeout: float) -> int:
        """Wait up to ``timeout`` seconds for tracked tasks; cancel the rest.

        Returns the number of tasks that had to be cancelled.
        """
        if not self._tasks:
            return 0
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("background drain cancelled %s task(s)", len(pending))
        return len(pending)


class _FunctionsClient:
    def __init__(
        self,
        base_url: str,
        service_key: str | None,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Content-Type": "application/json"}
        if service_key:
            self.headers["Authorization"] = f"Bearer {service_key}"
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _post(self, function_name: str, payload: dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}/functions/v1/{function_name}"
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=self.headers)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(url, json=payload, headers=self.headers)


class NotificationClient(_FunctionsClient):
    async def send_match_notification(self, match: MatchEvent, load: ParsedLoad) -> dict[str, Any]:
        payload = {
            "tenant_id": match.tenant_id,
            "match_id": match.id,
            "load_email_id": match.load_email_id,
            "vehicle_id": match.vehicle_id,
            "distance_miles": match.distance_miles,
            "parsed_data": {name: _json_value(getattr(load, name)) for name in NOTIFICATION_FIELDS},
        }
        response = await self._post("send-match-notification", payload)
        if response.status_code >= 400:
            raise DownstreamError(f"match notification rejected: {response.status_code} {response.text[:200]}")
        body = response.json()
        logger.info(
            "match notification sent match_id=%s success=%s skipped=%s",
            match.id,
            body.get("success"),
            body.get("skipped"),
        )
        return body


class BrokerCheckTrigger(_FunctionsClient):
    async def trigger(
        self,
        *,
        tenant_id: str,
        load_email_id: str,
        match_id: str | None,
        load: ParsedLoad,
    ) -> dict[str, Any]:
        broker_name = load.broker_company or load.customer
        if not broker_name:
            logger.info("broker check skipped load_email_id=%s reason=no_broker_name", load_email_id)
            return {"skipped": True, "reason": "no_broker_name"}
        payload = {
            "tenant_id": tenant_id,
            "load_email_id": load_email_id,
            "match_id": match_id,
            "mc_number": load.mc_number,
            "broker_name": broker_name,
            "parsed_data": load.to_dict(),
        }
        response = await self._post("check-broker-credit", payload)
        if response.status_code == 404:
            return {"success": True, "approval_status": "not_found"}
        if response.status_code >= 400:
            raise DownstreamError(f"broker check rejected: {response.status_code} {response.text[:200]}")
        body = response.json()
        logger.info(
            "broker check triggered load_email_id=%s approval_status=%s",
            load_email_id,
            body.get("approval_status", "unchecked"),
        )
        return body


def _json_value(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value
