from __future__ import annotations

from datetime import datetime, timedelta, timezone

from loadhunter.schemas.queue import QueueItem


def is_stale(item: QueueItem, now: datetime | None = None, threshold_seconds: int = 300) -> bool:
    """A processing item is stale once it has been claimed for longer than the threshold."""
    now = now or datetime.now(timezone.utc)
    if item.status != "processing" or item.processing_started_at is None:
        return False
    return item.processing_started_at < now - timedelta(seconds=threshold_seconds)


def sweep_due(last_sweep_at: float, now: float, interval_seconds: float) -> bool:
    return now - last_sweep_at >= interval_seconds
