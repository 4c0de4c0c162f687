from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from loadhunter.jobs.stale_sweep import is_stale, sweep_due
from loadhunter.schemas.queue import QueueItem
from loadhunter.services.repository import RepositoryNotFoundError
from loadhunter.services.store import InMemoryRepository

T0 = datetime(2026, 1, 19, 12, 0, tzinfo=timezone.utc)


def _seeded(count: int, **kwargs) -> InMemoryRepository:
    repository = InMemoryRepository(**kwargs)
    # Enqueue newest first so the claim has to sort.
    for index in reversed(range(count)):
        repository.enqueue(f"m-{index:02d}", queued_at=T0 + timedelta(seconds=index))
    return repository


def test_concurrent_claims_never_overlap() -> None:
    repository = _seeded(40)

    async def scenario():
        return await asyncio.gather(repository.claim_inbound_batch(25), repository.claim_inbound_batch(25))

    first, second = asyncio.run(scenario())

    first_ids = {item.id for item in first}
    second_ids = {item.id for item in second}
    assert sorted([len(first), len(second)]) == [15, 25]
    assert not first_ids & second_ids
    assert len(first_ids | second_ids) == 40
    assert all(item.status == "processing" and item.attempts == 1 for item in first + second)


def test_claim_takes_oldest_first() -> None:
    repository = _seeded(5)

    batch = asyncio.run(repository.claim_inbound_batch(3))

    assert [item.message_id for item in batch] == ["m-00", "m-01", "m-02"]
    assert all(item.processing_started_at is not None for item in batch)


def test_zero_sized_claim_leaves_queue_pending() -> None:
    repository = _seeded(3)

    batch = asyncio.run(repository.claim_inbound_batch(0))

    assert batch == []
    assert all(item.status == "pending" and item.attempts == 0 for item in repository.queue.values())


def test_fail_item_retries_until_max_attempts() -> None:
    repository = _seeded(2, max_attempts=3)

    async def scenario():
        first, second = await repository.claim_inbound_batch(2)
        retry = await repository.fail_item(first.id, "boom", 1)
        final = await repository.fail_item(second.id, "boom", 3)
        return first, second, retry, final

    first, second, retry, final = asyncio.run(scenario())

    assert retry == "pending"
    assert final == "failed"
    assert repository.queue[first.id].last_error == "boom"
    assert repository.queue[first.id].processing_started_at is None
    assert repository.queue[second.id].status == "failed"


def test_complete_item_clears_error_and_missing_item_raises() -> None:
    repository = _seeded(1)

    async def scenario():
        (item,) = await repository.claim_inbound_batch(1)
        await repository.fail_item(item.id, "boom", 1)
        await repository.complete_item(item.id)
        with pytest.raises(RepositoryNotFoundError):
            await repository.complete_item("missing")
        return item

    item = asyncio.run(scenario())

    stored = repository.queue[item.id]
    assert stored.status == "completed"
    assert stored.last_error is None
    assert stored.processed_at is not None


def test_reset_stale_returns_only_expired_claims() -> None:
    clock = {"now": T0}
    repository = _seeded(2, now=lambda: clock["now"])

    async def scenario():
        (old,) = await repository.claim_inbound_batch(1)
        clock["now"] = T0 + timedelta(seconds=200)
        (recent,) = await repository.claim_inbound_batch(1)
        clock["now"] = T0 + timedelta(seconds=301)
        count = await repository.reset_stale(300)
        return old, recent, count

    old, recent, count = asyncio.run(scenario())

    assert count == 1
    assert repository.queue[old.id].status == "pending"
    assert repository.queue[old.id].attempts == 1
    assert repository.queue[recent.id].status == "processing"


def test_is_stale_and_sweep_due() -> None:
    item = QueueItem(
        id="q-1",
        message_id="m-1",
        tenant_id=None,
        status="processing",
        attempts=1,
        queued_at=T0,
        processing_started_at=T0,
    )

    assert is_stale(item, T0 + timedelta(seconds=301), 300) is True
    assert is_stale(item, T0 + timedelta(seconds=300), 300) is False
    item.status = "pending"
    assert is_stale(item, T0 + timedelta(hours=1), 300) is False
    assert sweep_due(0.0, 60.0, 60.0) is True
    assert sweep_due(10.0, 60.0, 60.0) is False


def test_blob_location_falls_back_to_default_bucket_and_url() -> None:
    item = QueueItem(
        id="q-1",
        message_id="m-1",
        tenant_id=None,
        status="pending",
        attempts=0,
        queued_at=T0,
        payload_url="inbound/m-1.json",
    )

    assert item.blob_location() == ("email-content", "inbound/m-1.json")
    assert item.blob_location("archive") == ("archive", "inbound/m-1.json")
