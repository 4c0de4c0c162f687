from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from loadhunter.jobs.stale_sweep import is_stale
from loadhunter.schemas.hunts import CooldownState, HuntPlan, MatchEvent
from loadhunter.schemas.loads import GeocodeCacheEntry, LoadRecord, LoadRef, ParsedLoad, ParserHint
from loadhunter.schemas.queue import QueueItem, QueueStatus
from loadhunter.services.cooldown import cooldown_allows
from loadhunter.services.repository import RepositoryError, RepositoryNotFoundError, RepositoryValidationError


class InMemoryRepository:
    """Process-local datastore with the same contract as ``PostgresRepository``.

    Backs local runs without a database and the test suite. A single
    ``asyncio.Lock`` serializes every state transition, which gives the claim
    the same no-overlap guarantee as ``for update skip locked``.
    """

    def __init__(self, *, max_attempts: int = 3, now: Callable[[], datetime] | None = None) -> None:
        self.max_attempts = max(1, max_attempts)
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()
        self._load_seq = 0

        self.queue: dict[str, QueueItem] = {}
        self.loads: dict[str, LoadRecord] = {}
        self.load_refs: dict[str, LoadRef] = {}
        self.load_content: dict[str, dict[str, Any]] = {}
        self.parser_hints: list[ParserHint] = []
        self.geocode_cache: dict[str, GeocodeCacheEntry] = {}
        self.hunts: dict[str, HuntPlan] = {}
        self.tenant_cooldowns: dict[str, int | None] = {}
        self.disabled_features: set[tuple[str, str]] = set()
        self.cooldowns: dict[tuple[str, str, str], CooldownState] = {}
        self.matches: list[MatchEvent] = []
        self.customers: dict[tuple[str, str], dict[str, Any]] = {}

        self.available = True
        self.gate_error: Exception | None = None
        self.load_content_error: Exception | None = None

    # Seeding helpers

    def enqueue(
        self,
        message_id: str,
        *,
        tenant_id: str | None = None,
        storage_path: str | None = None,
        storage_bucket: str | None = None,
        payload_url: str | None = None,
        queued_at: datetime | None = None,
    ) -> QueueItem:
        item = QueueItem(
            id=str(uuid4()),
            message_id=message_id,
            tenant_id=tenant_id,
            status="pending",
            attempts=0,
            queued_at=queued_at or self._now(),
            storage_bucket=storage_bucket,
            storage_path=storage_path if storage_path is not None else f"{message_id}.json",
            payload_url=payload_url,
        )
        self.queue[item.id] = item
        return item

    def add_hunt(self, hunt: HuntPlan) -> HuntPlan:
        self.hunts[hunt.id] = hunt
        return hunt

    # Queue

    async def ping(self) -> bool:
        return self.available

    async def close(self) -> None:
        return None

    async def claim_inbound_batch(self, limit: int) -> list[QueueItem]:
        async with self._lock:
            pending = sorted(
                (item for item in self.queue.values() if item.status == "pending"),
                key=lambda item: item.queued_at,
            )[: max(0, limit)]
            now = self._now()
            for item in pending:
                item.status = "processing"
                item.processing_started_at = now
                item.attempts += 1
            return [replace(item) for item in pending]

    async def complete_item(self, item_id: str) -> None:
        async with self._lock:
            item = self._queue_item(item_id)
            item.status = "completed"
            item.processed_at = self._now()
            item.processing_started_at = None
            item.last_error = None

    async def fail_item(self, item_id: str, error: str, attempts: int) -> QueueStatus:
        async with self._lock:
            item = self._queue_item(item_id)
            item.status = "failed" if attempts >= self.max_attempts else "pending"
            item.last_error = error
            item.processing_started_at = None
            return item.status

    async def reset_stale(self, threshold_seconds: int) -> int:
        async with self._lock:
            now = self._now()
            count = 0
            for item in self.queue.values():
                if is_stale(item, now, threshold_seconds):
                    item.status = "pending"
                    item.processing_started_at = None
                    count += 1
            return count

    # Load records

    async def load_record_exists(self, email_id: str) -> bool:
        return email_id in self.loads

    async def find_original_by_fingerprint(self, fingerprint: str, tenant_id: str, since: datetime) -> LoadRef | None:
        return self._oldest(
            lambda record: record.parsed_load_fingerprint == fingerprint and not record.is_duplicate,
            tenant_id,
            since,
        )

    async def find_update_parent(self, content_hash: str, tenant_id: str, since: datetime) -> LoadRef | None:
        return self._oldest(
            lambda record: record.content_hash == content_hash and not record.is_update,
            tenant_id,
            since,
        )

    async def upsert_load_content(
        self,
        *,
        fingerprint: str,
        canonical_payload: dict[str, Any],
        version: int,
        size_bytes: int,
        provider: str | None,
    ) -> None:
        if self.load_content_error is not None:
            raise self.load_content_error
        async with self._lock:
            existing = self.load_content.get(fingerprint)
            if existing is not None:
                existing["receipt_count"] += 1
                existing["last_seen_at"] = self._now()
                return
            self.load_content[fingerprint] = {
                "canonical_payload": canonical_payload,
                "fingerprint_version": version,
                "size_bytes": size_bytes,
                "provider": provider,
                "receipt_count": 1,
                "first_seen_at": self._now(),
                "last_seen_at": self._now(),
            }

    async def upsert_load_record(self, record: LoadRecord) -> LoadRef:
        async with self._lock:
            ref = self.load_refs.get(record.email_id)
            if ref is None:
                self._load_seq += 1
                ref = LoadRef(id=str(uuid4()), load_id=str(self._load_seq), received_at=record.received_at)
                self.load_refs[record.email_id] = ref
            self.loads[record.email_id] = record
            return ref

    async def list_parser_hints(self, email_source: str) -> list[ParserHint]:
        return [hint for hint in self.parser_hints if hint.email_source == email_source and hint.is_active]

    async def upsert_broker_customer(self, tenant_id: str, load: ParsedLoad) -> str:
        name = (load.broker_company or "").strip()
        if not name:
            raise RepositoryValidationError("broker_company is required")
        key = (tenant_id, name.lower())
        async with self._lock:
            existing = self.customers.get(key)
            if existing is not None:
                if existing.get("mc_number") or not load.mc_number:
                    return "unchanged"
                existing["mc_number"] = load.mc_number
                return "updated"
            self.customers[key] = {
                "name": name,
                "mc_number": load.mc_number,
                "contact_name": load.broker_name,
                "phone": load.broker_phone,
                "address": load.broker_address,
                "city": load.broker_city,
                "state": load.broker_state,
                "zip": load.broker_zip,
            }
            return "created"

    # Geocode cache

    async def get_geocode_cache(self, location_key: str) -> GeocodeCacheEntry | None:
        self._ensure_available()
        return self.geocode_cache.get(location_key)

    async def upsert_geocode_cache(self, entry: GeocodeCacheEntry) -> None:
        self._ensure_available()
        existing = self.geocode_cache.get(entry.location_key)
        if existing is not None:
            existing.latitude = entry.latitude
            existing.longitude = entry.longitude
            return
        self.geocode_cache[entry.location_key] = replace(entry)

    async def bump_geocode_hit(self, location_key: str) -> None:
        entry = self.geocode_cache.get(location_key)
        if entry is not None:
            entry.hit_count += 1

    # Matching

    async def is_feature_enabled(self, tenant_id: str, feature_key: str) -> bool:
        self._ensure_available()
        return (tenant_id, feature_key) not in self.disabled_features

    async def list_enabled_hunts(self, tenant_id: str) -> list[HuntPlan]:
        return [hunt for hunt in self.hunts.values() if hunt.enabled and hunt.tenant_id == tenant_id]

    async def get_tenant_cooldown_seconds(self, tenant_id: str) -> int | None:
        if self.gate_error is not None:
            raise self.gate_error
        return self.tenant_cooldowns.get(tenant_id)

    async def should_trigger_hunt_for_fingerprint(
        self,
        *,
        tenant_id: str,
        hunt_plan_id: str,
        fingerprint: str,
        received_at: datetime,
        cooldown_seconds: int,
        last_load_email_id: str | None,
    ) -> bool:
        if self.gate_error is not None:
            raise self.gate_error
        async with self._lock:
            key = (tenant_id, hunt_plan_id, fingerprint)
            state = self.cooldowns.get(key)
            if state is None:
                self.cooldowns[key] = CooldownState(
                    tenant_id=tenant_id,
                    hunt_plan_id=hunt_plan_id,
                    fingerprint=fingerprint,
                    last_received_at=received_at,
                    last_action_at=self._now(),
                    last_load_email_id=last_load_email_id,
                )
                return True
            if not cooldown_allows(received_at, state.last_received_at, cooldown_seconds):
                return False
            state.last_received_at = received_at
            state.last_action_at = self._now()
            state.action_count += 1
            state.last_load_email_id = last_load_email_id or state.last_load_email_id
            return True

    async def match_exists(self, load_email_id: str, hunt_plan_id: str) -> bool:
        return any(m.load_email_id == load_email_id and m.hunt_plan_id == hunt_plan_id for m in self.matches)

    async def insert_match(self, event: MatchEvent) -> MatchEvent:
        async with self._lock:
            stored = replace(event, id=event.id or str(uuid4()))
            self.matches.append(stored)
            return stored

    def _queue_item(self, item_id: str) -> QueueItem:
        item = self.queue.get(item_id)
        if item is None:
            raise RepositoryNotFoundError(f"queue item {item_id} not found")
        return item

    def _oldest(self, predicate: Callable[[LoadRecord], bool], tenant_id: str, since: datetime) -> LoadRef | None:
        candidates = [
            record
            for record in self.loads.values()
            if record.tenant_id == tenant_id and record.received_at >= since and predicate(record)
        ]
        if not candidates:
            return None
        oldest = min(candidates, key=lambda record: record.received_at)
        return self.load_refs[oldest.email_id]

    def _ensure_available(self) -> None:
        if not self.available:
            raise RepositoryError("datastore unavailable")
