from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal, TypeVar

from loadhunter.parsers.detect import detect_email_source, sender_address
from loadhunter.parsers.expiration import apply_expiration_policy
from loadhunter.parsers.pipeline import parse_email
from loadhunter.schemas.loads import LoadRecord, LoadRef, ParsedLoad
from loadhunter.schemas.queue import DEFAULT_STORAGE_BUCKET, QueueItem
from loadhunter.services.dedupe import (
    DEFAULT_DUPLICATE_WINDOW,
    DEFAULT_UPDATE_WINDOW,
    DedupDecision,
    classify,
    window_start,
)
from loadhunter.services.downstream import BackgroundDispatcher
from loadhunter.services.fingerprint import FingerprintResult, compute_fingerprint, content_hash, serialize_canonical
from loadhunter.services.geocoding import GeocodeCache, GeocodeResult
from loadhunter.services.matching import MatchingEngine
from loadhunter.services.message import EmailMessage, decode_message
from loadhunter.services.repository import RepositoryError
from loadhunter.services.storage import StorageClient, StorageNotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProcessOutcome = Literal["new", "duplicate", "update", "already_processed"]


class StepTimeoutError(Exception):
    """Raised when an external step exceeds its time budget; the item is retried."""


@dataclass(slots=True)
class ProcessResult:
    item_id: str
    message_id: str
    outcome: ProcessOutcome
    load: LoadRef | None = None
    source: str | None = None
    issues: list[str] = field(default_factory=list)
    matching_scheduled: bool = False


def collect_issues(load: ParsedLoad, *, source: str, geocode: GeocodeResult | None) -> list[str]:
    issues: list[str] = []
    if not load.broker_email and source != "fullcircle":
        issues.append("Missing broker email")
    if not load.origin_city:
        issues.append("Missing origin location")
    if not load.vehicle_type:
        issues.append("Missing vehicle type")
    if geocode is not None and not geocode.ok:
        issues.append(f"Geocoding failed: {geocode.error_code}")
    return issues


class InboundProcessor:
    """Turns one claimed queue item into a persisted, deduplicated load record."""

    def __init__(
        self,
        repository: Any,
        storage: StorageClient,
        geocoder: GeocodeCache,
        *,
        matcher: MatchingEngine | None = None,
        dispatcher: BackgroundDispatcher | None = None,
        default_bucket: str = DEFAULT_STORAGE_BUCKET,
        step_timeout_seconds: float = 20.0,
        duplicate_window: timedelta = DEFAULT_DUPLICATE_WINDOW,
        update_window: timedelta = DEFAULT_UPDATE_WINDOW,
        body_text_max_chars: int = 50000,
        expiration_grace: timedelta = timedelta(minutes=30),
        fullcircle_expiration_grace: timedelta = timedelta(minutes=40),
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.geocoder = geocoder
        self.matcher = matcher
        self.dispatcher = dispatcher
        self.default_bucket = default_bucket
        self.step_timeout_seconds = step_timeout_seconds
        self.duplicate_window = duplicate_window
        self.update_window = update_window
        self.body_text_max_chars = body_text_max_chars
        self.expiration_grace = expiration_grace
        self.fullcircle_expiration_grace = fullcircle_expiration_grace
        self._now = now or (lambda: datetime.now(timezone.utc))
        if matcher is not None and dispatcher is None:
            raise ValueError("matching requires a background dispatcher")

    async def process(self, item: QueueItem) -> ProcessResult:
        if await self._step("load_exists", self.repository.load_record_exists(item.message_id)):
            await self._step("complete_item", self.repository.complete_item(item.id))
            logger.info("inbound item already processed message_id=%s", item.message_id)
            return ProcessResult(item_id=item.id, message_id=item.message_id, outcome="already_processed")

        message = await self._fetch_message(item)
        source = detect_email_source(sender_address(message.sender), message.subject, message.body_text, message.body_html)
        hints = await self._step("list_parser_hints", self.repository.list_parser_hints(source))
        parsed = parse_email(
            sender=message.sender,
            subject=message.subject,
            body_text=message.body_text,
            body_html=message.body_html,
            hints=hints,
        )
        load = parsed.load
        if parsed.field_sources:
            hinted = [name for name, layer in parsed.field_sources.items() if layer == "hint"]
            if hinted:
                logger.info("parser hints filled fields=%s message_id=%s", ",".join(hinted), item.message_id)

        await self._backfill_cities(load)
        geocode = await self._geocode(load)
        issues = collect_issues(load, source=parsed.source, geocode=geocode)

        if parsed.source == "fullcircle" and load.broker_company and item.tenant_id:
            await self._upsert_customer(item.tenant_id, load)

        fingerprint = compute_fingerprint(load)
        loose_hash = content_hash(load)
        decision, load_content_fingerprint, missing_reason = await self._dedupe(
            item, message, fingerprint, loose_hash, parsed.source
        )

        grace = self.fullcircle_expiration_grace if parsed.source == "fullcircle" else self.expiration_grace
        apply_expiration_policy(load, now=self._now(), grace=grace)

        record = LoadRecord(
            email_id=item.message_id,
            tenant_id=item.tenant_id,
            received_at=message.received_at,
            email_source=parsed.source,
            parsed=load,
            subject=message.subject,
            from_email=message.from_email,
            from_name=message.from_name,
            body_text=message.body_text[: self.body_text_max_chars],
            thread_id=message.thread_id,
            raw_payload_url=item.payload_url,
            status=decision.status,
            has_issues=bool(issues),
            issue_notes="; ".join(issues) if issues else None,
            content_hash=loose_hash,
            parsed_load_fingerprint=fingerprint.fingerprint,
            is_duplicate=decision.is_duplicate,
            duplicate_of_id=decision.duplicate_of_id,
            is_update=decision.is_update,
            parent_email_id=decision.parent_email_id,
            dedup_eligible=fingerprint.dedup_eligible,
            dedup_eligible_reason=fingerprint.dedup_eligible_reason,
            dedup_canonical_payload=fingerprint.canonical_payload if decision.is_duplicate else None,
            load_content_fingerprint=load_content_fingerprint,
            fingerprint_missing_reason=missing_reason,
            geocoding_status=_geocoding_status(geocode),
            geocoding_error_code=geocode.error_code if geocode is not None else "missing_input",
        )
        ref = await self._step("upsert_load_record", self.repository.upsert_load_record(record))
        await self._step("complete_item", self.repository.complete_item(item.id))

        result = ProcessResult(
            item_id=item.id,
            message_id=item.message_id,
            outcome=decision.status,
            load=ref,
            source=parsed.source,
            issues=issues,
        )
        result.matching_scheduled = self._schedule_matching(ref, record)
        logger.info(
            "inbound item processed message_id=%s source=%s status=%s issues=%s",
            item.message_id,
            parsed.source,
            decision.status,
            len(issues),
        )
        return result

    async def _step(self, name: str, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        budget = timeout if timeout is not None else self.step_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=budget)
        except asyncio.TimeoutError as exc:
            raise StepTimeoutError(f"{name} timed out after {budget:.1f}s") from exc

    async def _fetch_message(self, item: QueueItem) -> EmailMessage:
        bucket, path = item.blob_location(self.default_bucket)
        if not path:
            raise StorageNotFoundError(f"No stored payload available for {item.message_id}: bucket={bucket} path=None")
        raw = await self._step("fetch_payload", self.storage.get(bucket, path))
        return decode_message(raw, now=self._now())

    async def _backfill_cities(self, load: ParsedLoad) -> None:
        if not load.origin_city and load.origin_zip:
            found = await self.geocoder.resolve_city_from_zip(load.origin_zip, load.origin_state)
            if found:
                load.origin_city, load.origin_state = found
        if not load.destination_city and load.destination_zip:
            found = await self.geocoder.resolve_city_from_zip(load.destination_zip, load.destination_state)
            if found:
                load.destination_city, load.destination_state = found

    async def _geocode(self, load: ParsedLoad) -> GeocodeResult | None:
        if not load.origin_city or not load.origin_state:
            return None
        result = await self.geocoder.resolve(load.origin_city, load.origin_state)
        if result.coordinates is not None:
            load.pickup_coordinates = result.coordinates
        return result

    async def _upsert_customer(self, tenant_id: str, load: ParsedLoad) -> None:
        try:
            outcome = await self._step("upsert_customer", self.repository.upsert_broker_customer(tenant_id, load))
        except RepositoryError as exc:
            logger.warning("customer upsert failed tenant=%s broker=%s error=%s", tenant_id, load.broker_company, exc)
            return
        if outcome != "unchanged":
            logger.info("customer %s broker=%s mc=%s", outcome, load.broker_company, load.mc_number)

    async def _dedupe(
        self,
        item: QueueItem,
        message: EmailMessage,
        fingerprint: FingerprintResult,
        loose_hash: str,
        source: str,
    ) -> tuple[DedupDecision, str | None, str | None]:
        original: LoadRef | None = None
        load_content_fingerprint: str | None = None
        missing_reason = fingerprint.missing_reason
        tenant_id = item.tenant_id

        if fingerprint.dedup_eligible and fingerprint.fingerprint and fingerprint.canonical_payload is not None:
            if tenant_id:
                original = await self._step(
                    "find_original",
                    self.repository.find_original_by_fingerprint(
                        fingerprint.fingerprint, tenant_id, window_start(message.received_at, self.duplicate_window)
                    ),
                )
            serialized = serialize_canonical(fingerprint.canonical_payload)
            try:
                await self._step(
                    "upsert_load_content",
                    self.repository.upsert_load_content(
                        fingerprint=fingerprint.fingerprint,
                        canonical_payload=fingerprint.canonical_payload,
                        version=fingerprint.version,
                        size_bytes=len(serialized.encode("utf-8")),
                        provider=source,
                    ),
                )
            except RepositoryError as exc:
                logger.warning("load content upsert failed fingerprint=%s error=%s", fingerprint.fingerprint[:12], exc)
                missing_reason = "load_content_upsert_failed"
            else:
                load_content_fingerprint = fingerprint.fingerprint
                missing_reason = None
        elif fingerprint.dedup_eligible_reason:
            logger.debug("dedup skipped message_id=%s reason=%s", item.message_id, fingerprint.dedup_eligible_reason)

        update_parent: LoadRef | None = None
        if tenant_id:
            update_parent = await self._step(
                "find_update_parent",
                self.repository.find_update_parent(
                    loose_hash, tenant_id, window_start(message.received_at, self.update_window)
                ),
            )

        decision = classify(original, update_parent)
        if decision.is_duplicate:
            logger.info("duplicate load message_id=%s original=%s", item.message_id, decision.duplicate_of_id)
        elif decision.is_update:
            logger.info("updated load message_id=%s parent=%s", item.message_id, decision.parent_email_id)
        return decision, load_content_fingerprint, missing_reason

    def _schedule_matching(self, ref: LoadRef, record: LoadRecord) -> bool:
        if self.matcher is None or self.dispatcher is None:
            return False
        load = record.parsed
        if load.pickup_coordinates is None or not load.vehicle_type:
            return False
        if not record.load_content_fingerprint or not record.tenant_id:
            logger.info(
                "matching not scheduled load_email_id=%s fingerprint=%s tenant=%s",
                ref.id,
                bool(record.load_content_fingerprint),
                record.tenant_id,
            )
            return False
        matching = self.matcher.match_load(
            load_email_id=ref.id,
            load_id=ref.load_id,
            load=load,
            tenant_id=record.tenant_id,
            fingerprint=record.load_content_fingerprint,
            received_at=record.received_at,
        )
        self.dispatcher.spawn(matching, name="hunt_matching")
        return True


def _geocoding_status(geocode: GeocodeResult | None) -> str:
    if geocode is None:
        return "pending"
    return "success" if geocode.ok else "failed"
