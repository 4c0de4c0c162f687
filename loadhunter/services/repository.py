from __future__ import annotations

import json
import logging
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from loadhunter.core.config import get_settings
from loadhunter.schemas.hunts import HuntPlan, MatchEvent
from loadhunter.schemas.loads import Coordinates, GeocodeCacheEntry, LoadRecord, LoadRef, ParsedLoad, ParserHint
from loadhunter.schemas.queue import QueueItem, QueueStatus

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


# Driver-level failures surfaced to callers as RepositoryError.
DATABASE_ERRORS = (pg_exc.PostgresError, pg_exc.InterfaceError, OSError)

QUEUE_STATUSES = {"pending", "processing", "completed", "failed"}
_QUEUE_COLUMNS = """
  id::text as id,
  gmail_message_id,
  tenant_id::text as tenant_id,
  status,
  attempts,
  queued_at,
  storage_bucket,
  storage_path,
  payload_url,
  processing_started_at,
  processed_at,
  last_error
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        *,
        command_timeout_seconds: float = 15.0,
        max_attempts: int = 3,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> bool:
        try:
            pool = await self._get_pool()
            return await pool.fetchval("select 1") == 1
        except (RepositoryError, *DATABASE_ERRORS) as exc:
            logger.warning("datastore ping failed: %s", exc)
            return False

    # Queue

    async def claim_inbound_batch(self, limit: int) -> list[QueueItem]:
        bounded_limit = max(0, min(limit, 500))
        if bounded_limit == 0:
            return []
        pool = await self._get_pool()
        try:
            rows = await self._claim_rows(pool, bounded_limit)
        except DATABASE_ERRORS as exc:
            raise RepositoryError(f"queue claim failed: {exc}") from exc
        items = [self._queue_row_to_item(row) for row in rows]
        items.sort(key=lambda item: item.queued_at)
        return items

    async def _claim_rows(self, pool: asyncpg.Pool, limit: int) -> list[asyncpg.Record]:
        async with pool.acquire() as conn:
            async with conn.transaction():
                return await conn.fetch(
                    f"""
                    with next_items as (
                      select id
                      from email_queue
                      where status = 'pending'
                      order by queued_at asc
                      limit $1
                      for update skip locked
                    )
                    update email_queue q
                    set
                      status = 'processing',
                      processing_started_at = now(),
                      attempts = q.attempts + 1
                    from next_items n
                    where q.id = n.id
                    returning {_QUEUE_COLUMNS}
                    """,
                    limit,
                )

    async def complete_item(self, item_id: str) -> None:
        pool = await self._get_pool()
        try:
            result = await pool.execute(
                """
                update email_queue
                set status = 'completed', processed_at = now(), processing_started_at = null, last_error = null
                where id = $1::uuid
                """,
                item_id,
            )
        except DATABASE_ERRORS as exc:
            raise RepositoryError(f"complete_item failed for {item_id}: {exc}") from exc
        if result.endswith(" 0"):
            raise RepositoryNotFoundError(f"queue item {item_id} not found")

    async def fail_item(self, item_id: str, error: str, attempts: int) -> QueueStatus:
        status: QueueStatus = "failed" if attempts >= self.max_attempts else "pending"
        pool = await self._get_pool()
        try:
            result = await pool.execute(
                """
                update email_queue
                set status = $2, last_error = $3, processing_started_at = null
                where id = $1::uuid
                """,
                item_id,
                status,
                error[:2000],
            )
        except DATABASE_ERRORS as exc:
            raise RepositoryError(f"fail_item failed for {item_id}: {exc}") from exc
        if result.endswith(" 0"):
            raise RepositoryNotFoundError(f"queue item {item_id} not found")
        return status

    async def reset_stale(self, threshold_seconds: int) -> int:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                update email_queue
                set status = 'pending', processing_started_at = null
                where status = 'processing'
                  and processing_started_at is not null
                  and processing_started_at < now() - ($1::int * interval '1 second')
                returning id::text as id
                """,
                max(1, threshold_seconds),
            )
        except DATABASE_ERRORS as exc:
            raise RepositoryError(f"stale reset failed: {exc}") from exc
        return len(rows)

    # Load records

    async def load_record_exists(self, email_id: str) -> bool:
        pool = await self._get_pool()
        found = await pool.fetchval("select exists(select 1 from load_emails where email_id = $1)", email_id)
        return bool(found)

    async def find_original_by_fingerprint(self, fingerprint: str, tenant_id: str, since: datetime) -> LoadRef | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id::text as id, load_id::text as load_id, received_at
            from load_emails
            where parsed_load_fingerprint = $1
              and tenant_id = $2::uuid
              and is_duplicate = false
              and received_at >= $3
            order by received_at asc
            limit 1
            """,
            fingerprint,
            tenant_id,
            since,
        )
        return self._load_ref(row)

    async def find_update_parent(self, content_hash: str, tenant_id: str, since: datetime) -> LoadRef | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id::text as id, load_id::text as load_id, received_at
            from load_emails
            where content_hash = $1
              and tenant_id = $2::uuid
              and is_update = false
              and received_at >= $3
            order by received_at asc
            limit 1
            """,
            content_hash,
            tenant_id,
            since,
        )
        return self._load_ref(row)

    async def upsert_load_content(
        self,
        *,
        fingerprint: str,
        canonical_payload: dict[str, Any],
        version: int,
        size_bytes: int,
        provider: str | None,
    ) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into load_content (
                  fingerprint,
                  canonical_payload,
                  fingerprint_version,
                  size_bytes,
                  provider,
                  first_seen_at,
                  last_seen_at,
                  receipt_count
                )
                values ($1, $2::jsonb, $3, $4, $5, now(), now(), 1)
                on conflict (fingerprint) do update
                set
                  last_seen_at = now(),
                  receipt_count = load_content.receipt_count + 1
                """,
                fingerprint,
                json.dumps(canonical_payload),
                version,
                size_bytes,
                provider,
            )
        except DATABASE_ERRORS as exc:
            raise RepositoryError(f"load content upsert failed: {exc}") from exc

    async def upsert_load_record(self, record: LoadRecord) -> LoadRef:
        pool = await self._get_pool()
        parsed = record.parsed
        try:
            row = await pool.fetchrow(
                """
                insert into load_emails (
                  email_id, thread_id, from_email, from_name, subject, body_text, body_html,
                  received_at, parsed_data, posted_at, expires_at, status, has_issues, issue_notes,
                  email_source, tenant_id, raw_payload_url, content_hash, parsed_load_fingerprint,
                  is_update, is_duplicate, duplicate_of_id, parent_email_id, dedup_eligible,
                  dedup_eligible_reason, dedup_canonical_payload, load_content_fingerprint,
                  fingerprint_missing_reason, ingestion_source, geocoding_status, geocoding_error_code
                )
                values (
                  $1, $2, $3, $4, $5, $6, null,
                  $7, $8::jsonb, $9, $10, $11, $12, $13,
                  $14, $15::uuid, $16, $17, $18,
                  $19, $20, $21::uuid, $22::uuid, $23,
                  $24, $25::jsonb, $26,
                  $27, $28, $29, $30
                )
                on conflict (email_id) do update
                set
                  parsed_data = excluded.parsed_data,
                  posted_at = excluded.posted_at,
                  expires_at = excluded.expires_at,
                  status = excluded.status,
                  has_issues = excluded.has_issues,
                  issue_notes = excluded.issue_notes,
                  content_hash = excluded.content_hash,
                  parsed_load_fingerprint = excluded.parsed_load_fingerprint,
                  is_update = excluded.is_update,
                  is_duplicate = excluded.is_duplicate,
                  duplicate_of_id = excluded.duplicate_of_id,
                  parent_email_id = excluded.parent_email_id,
                  dedup_eligible = excluded.dedup_eligible,
                  dedup_eligible_reason = excluded.dedup_eligible_reason,
                  dedup_canonical_payload = excluded.dedup_canonical_payload,
                  load_content_fingerprint = excluded.load_content_fingerprint,
                  fingerprint_missing_reason = excluded.fingerprint_missing_reason,
                  geocoding_status = excluded.geocoding_status,
                  geocoding_error_code = excluded.geocoding_error_code
                returning id::text as id, load_id::text as load_id, received_at
                """,
                record.email_id,
                record.thread_id,
                record.from_email,
                record.from_name,
                record.subject,
                record.body_text,
                record.received_at,
                json.dumps(parsed.to_dict()),
                parsed.posted_at,
                parsed.expires_at,
                record.status,
                record.has_issues,
                record.issue_notes,
                record.email_source,
                record.tenant_id,
                record.raw_payload_url,
                record.content_hash,
                record.parsed_load_fingerprint,
                record.is_update,
                record.is_duplicate,
                record.duplicate_of_id,
                record.parent_email_id,
                record.dedup_eligible,
                record.dedup_eligible_reason,
                json.dumps(record.dedup_canonical_payload) if record.dedup_canonical_payload is not None else None,
                record.load_content_fingerprint,
                record.fingerprint_missing_reason,
                record.ingestion_source,
                record.geocoding_status,
                record.geocoding_error_code,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"load record conflict for {record.email_id}") from exc
        except pg_exc.DataError as exc:
            raise RepositoryValidationError(f"invalid load record {record.email_id}: {exc}") from exc
        ref = self._load_ref(row)
        if ref is None:
            raise RepositoryError(f"load record upsert returned no row for {record.email_id}")
        return ref

    async def list_parser_hints(self, email_source: str) -> list[ParserHint]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select email_source, field_name, pattern, context_before, context_after, is_active
            from parser_hints
            where email_source = $1 and is_active = true
            order by created_at asc
            """,
            email_source,
        )
        return [
            ParserHint(
                email_source=row["email_source"],
                field_name=row["field_name"],
                pattern=row["pattern"],
                context_before=self._coerce_text(row["context_before"]),
                context_after=self._coerce_text(row["context_after"]),
                is_active=bool(row["is_active"]),
            )
            for row in rows
        ]

    async def upsert_broker_customer(self, tenant_id: str, load: ParsedLoad) -> str:
        """Create the broker as a tenant customer, or backfill its MC number.

        Returns ``created``, ``updated`` or ``unchanged``.
        """
        name = self._coerce_text(load.broker_company)
        if not name:
            raise RepositoryValidationError("broker_company is required")
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    """
                    select id::text as id, mc_number
                    from customers
                    where tenant_id = $1::uuid and lower(name) = lower($2)
                    limit 1
                    for update
                    """,
                    tenant_id,
                    name,
                )
                if existing is not None:
                    if existing["mc_number"] or not load.mc_number:
                        return "unchanged"
                    await conn.execute(
                        "update customers set mc_number = $2 where id = $1::uuid",
                        existing["id"],
                        load.mc_number,
                    )
                    return "updated"
                await conn.execute(
                    """
                    insert into customers (name, mc_number, contact_name, phone, address, city, state, zip, tenant_id)
                    values ($1, $2, $3, $4, $5, $6, $7, $8, $9::uuid)
                    """,
                    name,
                    load.mc_number,
                    load.broker_name,
                    load.broker_phone,
                    load.broker_address,
                    load.broker_city,
                    load.broker_state,
                    load.broker_zip,
                    tenant_id,
                )
                return "created"

    # Geocode cache

    async def get_geocode_cache(self, location_key: str) -> GeocodeCacheEntry | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select location_key, city, state, latitude, longitude, hit_count, month_created
                from geocode_cache
                where location_key = $1
                """,
                location_key,
            )
        except DATABASE_ERRORS as exc:
            raise RepositoryError(f"geocode cache read failed: {exc}") from exc
        if row is None:
            return None
        return GeocodeCacheEntry(
            location_key=row["location_key"],
            city=row["city"],
            state=row["state"],
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            hit_count=self._coerce_int(row["hit_count"]) or 1,
            month_created=self._coerce_text(row["month_created"]),
        )

    async def upsert_geocode_cache(self, entry: GeocodeCacheEntry) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into geocode_cache (location_key, city, state, latitude, longitude, hit_count, month_created)
                values ($1, $2, $3, $4, $5, 1, $6)
                on conflict (location_key) do update
                set latitude = excluded.latitude, longitude = excluded.longitude
                """,
                entry.location_key,
                entry.city,
                entry.state,
                entry.latitude,
                entry.longitude,
                entry.month_created,
            )
        except DATABASE_ERRORS as exc:
            raise RepositoryError(f"geocode cache write failed: {exc}") from exc

    async def bump_geocode_hit(self, location_key: str) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                "update geocode_cache set hit_count = coalesce(hit_count, 1) + 1 where location_key = $1",
                location_key,
            )
        except DATABASE_ERRORS as exc:
            raise RepositoryError(f"geocode hit bump failed: {exc}") from exc

    # Matching

    async def is_feature_enabled(self, tenant_id: str, feature_key: str) -> bool:
        pool = await self._get_pool()
        try:
            enabled = await pool.fetchval("select public.is_feature_enabled($1::uuid, $2)", tenant_id, feature_key)
        except DATABASE_ERRORS as exc:
            raise RepositoryError(f"feature lookup failed: {exc}") from exc
        # No explicit setting means the feature follows its platform default (on).
        return enabled is not False

    async def list_enabled_hunts(self, tenant_id: str) -> list[HuntPlan]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              tenant_id::text as tenant_id,
              enabled,
              vehicle_id::text as vehicle_id,
              hunt_coordinates,
              pickup_radius,
              vehicle_size,
              load_capacity,
              floor_load_id,
              cooldown_seconds_min
            from hunt_plans
            where enabled = true and tenant_id = $1::uuid
            """,
            tenant_id,
        )
        return [self._hunt_row_to_plan(row) for row in rows]

    async def get_tenant_cooldown_seconds(self, tenant_id: str) -> int | None:
        pool = await self._get_pool()
        try:
            value = await pool.fetchval("select cooldown_seconds_min from tenants where id = $1::uuid", tenant_id)
        except DATABASE_ERRORS as exc:
            raise RepositoryError(f"tenant cooldown lookup failed: {exc}") from exc
        return self._coerce_int(value)

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
        pool = await self._get_pool()
        try:
            allowed = await pool.fetchval(
                "select public.should_trigger_hunt_for_fingerprint($1::uuid, $2::uuid, $3, $4, $5, $6::uuid)",
                tenant_id,
                hunt_plan_id,
                fingerprint,
                received_at,
                cooldown_seconds,
                last_load_email_id,
            )
        except DATABASE_ERRORS as exc:
            raise RepositoryError(f"cooldown gate failed: {exc}") from exc
        return bool(allowed)

    async def match_exists(self, load_email_id: str, hunt_plan_id: str) -> bool:
        pool = await self._get_pool()
        found = await pool.fetchval(
            """
            select exists(
              select 1 from load_hunt_matches where load_email_id = $1::uuid and hunt_plan_id = $2::uuid
            )
            """,
            load_email_id,
            hunt_plan_id,
        )
        return bool(found)

    async def insert_match(self, event: MatchEvent) -> MatchEvent:
        pool = await self._get_pool()
        try:
            match_id = await pool.fetchval(
                """
                insert into load_hunt_matches (
                  load_email_id, hunt_plan_id, vehicle_id, distance_miles,
                  is_active, match_status, matched_at, tenant_id
                )
                values ($1::uuid, $2::uuid, $3::uuid, $4, $5, $6, $7, $8::uuid)
                returning id::text
                """,
                event.load_email_id,
                event.hunt_plan_id,
                event.vehicle_id,
                event.distance_miles,
                event.is_active,
                event.match_status,
                event.matched_at,
                event.tenant_id,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("match already exists") from exc
        except DATABASE_ERRORS as exc:
            raise RepositoryError(f"match insert failed: {exc}") from exc
        event.id = match_id
        return event

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LH_WORKER_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _queue_row_to_item(self, row: asyncpg.Record) -> QueueItem:
        status = row["status"] if row["status"] in QUEUE_STATUSES else "pending"
        return QueueItem(
            id=row["id"],
            message_id=row["gmail_message_id"],
            tenant_id=self._coerce_text(row["tenant_id"]),
            status=status,
            attempts=self._coerce_int(row["attempts"]) or 0,
            queued_at=row["queued_at"],
            storage_bucket=self._coerce_text(row["storage_bucket"]),
            storage_path=self._coerce_text(row["storage_path"]),
            payload_url=self._coerce_text(row["payload_url"]),
            processing_started_at=self._coerce_datetime(row["processing_started_at"]),
            processed_at=self._coerce_datetime(row["processed_at"]),
            last_error=self._coerce_text(row["last_error"]),
        )

    def _hunt_row_to_plan(self, row: asyncpg.Record) -> HuntPlan:
        coordinates = self._coerce_json_dict(row["hunt_coordinates"])
        lat = self._coerce_float(coordinates.get("lat"))
        lng = self._coerce_float(coordinates.get("lng"))
        return HuntPlan(
            id=row["id"],
            tenant_id=row["tenant_id"],
            enabled=bool(row["enabled"]),
            vehicle_id=self._coerce_text(row["vehicle_id"]),
            # Zero coordinates are treated as unset.
            hunt_coordinates=Coordinates(lat=lat, lng=lng) if lat and lng else None,
            pickup_radius=self._coerce_float(row["pickup_radius"]),
            vehicle_size=row["vehicle_size"],
            load_capacity=self._coerce_float(row["load_capacity"]),
            floor_load_id=self._coerce_text(row["floor_load_id"]),
            cooldown_seconds_min=self._coerce_int(row["cooldown_seconds_min"]),
        )

    @staticmethod
    def _load_ref(row: asyncpg.Record | None) -> LoadRef | None:
        if row is None:
            return None
        return LoadRef(id=row["id"], load_id=row["load_id"], received_at=row["received_at"])

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_float(value: Any) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_int(value: Any) -> int | None:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_datetime(value: Any) -> datetime | None:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            candidate = value.strip()
            if not candidate:
                return None
            try:
                return datetime.fromisoformat(candidate.replace("Z", "+00:00"))
            except ValueError:
                return None
        return None

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
        max_attempts=settings.max_attempts,
    )
