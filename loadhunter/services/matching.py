from __future__ import annotations

import json
import logging
import math
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from loadhunter.core.metrics import MetricsRegistry
from loadhunter.schemas.hunts import HuntPlan, MatchEvent
from loadhunter.schemas.loads import Coordinates, ParsedLoad
from loadhunter.services.cooldown import CooldownGate
from loadhunter.services.downstream import BackgroundDispatcher, BrokerCheckTrigger, NotificationClient
from loadhunter.services.repository import RepositoryError

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3959.0
DEFAULT_PICKUP_RADIUS_MILES = 200.0
MATCHING_FEATURE_KEY = "load_hunter_matching"
VEHICLE_FAMILIES = ("cargo", "sprinter", "straight")

_VEHICLE_TOKEN_RE = re.compile(r"[^a-z]")
_LEADING_NUMBER_RE = re.compile(r"^\s*-?(?:\d+\.?\d*|\.\d+)")
_INTEGER_ID_RE = re.compile(r"^-?\d+$")


@dataclass(slots=True)
class MatchSummary:
    evaluated: int = 0
    created: int = 0
    match_ids: list[str] = field(default_factory=list)
    skips: Counter[str] = field(default_factory=Counter)
    skipped_reason: str | None = None


def haversine_miles(a: Coordinates, b: Coordinates) -> float:
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = math.sin(d_lat / 2) ** 2 + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def within_radius(distance_miles: float, radius_miles: float) -> bool:
    return distance_miles <= radius_miles


def normalize_vehicle_token(value: str) -> str:
    return _VEHICLE_TOKEN_RE.sub("", value.lower())


def parse_vehicle_sizes(value: Any) -> list[str]:
    """Hunt vehicle sizes arrive as a list, a JSON-array string or a bare string."""
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    text = str(value)
    try:
        decoded = json.loads(text)
    except ValueError:
        return [text]
    if isinstance(decoded, list):
        return [str(item) for item in decoded if item is not None]
    return [text]


def vehicle_matches(load_vehicle_type: str | None, hunt_sizes: list[str]) -> bool:
    if not hunt_sizes or not load_vehicle_type:
        return True
    load_token = normalize_vehicle_token(load_vehicle_type)
    if not load_token:
        return True
    for size in hunt_sizes:
        hunt_token = normalize_vehicle_token(size)
        if load_token == hunt_token or hunt_token in load_token or load_token in hunt_token:
            return True
        if any(family in load_token and family in hunt_token for family in VEHICLE_FAMILIES):
            return True
    return False


def below_floor(load_id: str | None, floor_load_id: str | None) -> bool:
    if not floor_load_id or load_id is None:
        return False
    if _INTEGER_ID_RE.match(str(load_id)) and _INTEGER_ID_RE.match(str(floor_load_id)):
        return int(load_id) <= int(floor_load_id)
    return str(load_id) <= str(floor_load_id)


def _leading_number(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    match = _LEADING_NUMBER_RE.match(str(value))
    return float(match.group(0)) if match else None


def over_capacity(weight: Any, capacity: Any) -> bool:
    ceiling = _leading_number(capacity)
    if not ceiling:
        return False
    load_weight = _leading_number(weight) or 0.0
    return load_weight > 0 and load_weight > ceiling


def evaluate_hunt(
    hunt: HuntPlan,
    load: ParsedLoad,
    *,
    load_id: str | None,
    pickup: Coordinates,
    default_radius: float = DEFAULT_PICKUP_RADIUS_MILES,
) -> tuple[str | None, float | None]:
    """Apply the static hunt filters; returns ``(skip_reason, distance)``."""
    if below_floor(load_id, hunt.floor_load_id):
        return "below_floor", None
    if hunt.hunt_coordinates is None:
        return "missing_hunt_coordinates", None
    distance = haversine_miles(pickup, hunt.hunt_coordinates)
    radius = hunt.pickup_radius if hunt.pickup_radius is not None else default_radius
    if not within_radius(distance, radius):
        return "out_of_radius", distance
    if not vehicle_matches(load.vehicle_type, parse_vehicle_sizes(hunt.vehicle_size)):
        return "vehicle_mismatch", distance
    if over_capacity(load.weight, hunt.load_capacity):
        return "over_capacity", distance
    return None, distance


class MatchingEngine:
    def __init__(
        self,
        repository: Any,
        gate: CooldownGate,
        *,
        dispatcher: BackgroundDispatcher | None = None,
        notifier: NotificationClient | None = None,
        broker_check: BrokerCheckTrigger | None = None,
        metrics: MetricsRegistry | None = None,
        default_radius: float = DEFAULT_PICKUP_RADIUS_MILES,
        feature_key: str = MATCHING_FEATURE_KEY,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.gate = gate
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.broker_check = broker_check
        self.metrics = metrics
        self.default_radius = default_radius
        self.feature_key = feature_key
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def match_load(
        self,
        *,
        load_email_id: str,
        load_id: str | None,
        load: ParsedLoad,
        tenant_id: str | None,
        fingerprint: str | None,
        received_at: datetime | None,
    ) -> MatchSummary:
        started = time.perf_counter()
        summary = MatchSummary()
        try:
            await self._match(summary, load_email_id, load_id, load, tenant_id, fingerprint, received_at)
        finally:
            if self.metrics is not None:
                self.metrics.record_matching(time.perf_counter() - started, matches_created=summary.created)
        if summary.created:
            logger.info("matching created %s match(es) load_email_id=%s", summary.created, load_email_id)
        return summary

    async def _match(
        self,
        summary: MatchSummary,
        load_email_id: str,
        load_id: str | None,
        load: ParsedLoad,
        tenant_id: str | None,
        fingerprint: str | None,
        received_at: datetime | None,
    ) -> None:
        missing = [
            name
            for name, present in (
                ("pickup_coordinates", load.pickup_coordinates is not None),
                ("vehicle_type", bool(load.vehicle_type)),
                ("fingerprint", bool(fingerprint and fingerprint.strip())),
                ("received_at", received_at is not None),
                ("tenant_id", bool(tenant_id)),
            )
            if not present
        ]
        if missing or tenant_id is None or load.pickup_coordinates is None:
            summary.skipped_reason = "missing_" + "|".join(missing)
            logger.info("matching skipped load_email_id=%s missing=%s", load_email_id, "|".join(missing))
            return

        try:
            enabled = await self.repository.is_feature_enabled(tenant_id, self.feature_key)
        except RepositoryError as exc:
            logger.error("matching feature lookup failed tenant=%s error=%s", tenant_id, exc)
            summary.skipped_reason = "feature_lookup_failed"
            return
        if not enabled:
            logger.info("matching disabled tenant=%s", tenant_id)
            summary.skipped_reason = "feature_disabled"
            return

        hunts = await self.repository.list_enabled_hunts(tenant_id)
        for hunt in hunts:
            summary.evaluated += 1
            reason = await self._consider(
                hunt, load_email_id, load_id, load, load.pickup_coordinates, tenant_id, fingerprint, received_at, summary
            )
            decision = reason or "matched"
            if reason:
                summary.skips[reason] += 1
            if self.metrics is not None:
                self.metrics.record_match_decision(decision)

    async def _consider(
        self,
        hunt: HuntPlan,
        load_email_id: str,
        load_id: str | None,
        load: ParsedLoad,
        pickup: Coordinates,
        tenant_id: str,
        fingerprint: str | None,
        received_at: datetime | None,
        summary: MatchSummary,
    ) -> str | None:
        reason, distance = evaluate_hunt(
            hunt, load, load_id=load_id, pickup=pickup, default_radius=self.default_radius
        )
        if reason is not None or distance is None:
            return reason or "missing_distance"

        if hunt.tenant_id != tenant_id:
            logger.error("matching blocked cross-tenant match tenant=%s hunt_tenant=%s", tenant_id, hunt.tenant_id)
            return "tenant_mismatch"

        if await self.repository.match_exists(load_email_id, hunt.id):
            return "existing_match"

        decision = await self.gate.check(
            tenant_id=tenant_id,
            hunt=hunt,
            fingerprint=fingerprint,
            received_at=received_at,
            load_email_id=load_email_id,
        )
        if not decision.allowed:
            return decision.reason

        event = MatchEvent(
            load_email_id=load_email_id,
            hunt_plan_id=hunt.id,
            tenant_id=tenant_id,
            vehicle_id=hunt.vehicle_id,
            distance_miles=int(math.floor(distance + 0.5)),
            matched_at=self._now(),
        )
        try:
            inserted = await self.repository.insert_match(event)
        except RepositoryError as exc:
            logger.error("match insert failed load_email_id=%s hunt=%s error=%s", load_email_id, hunt.id, exc)
            return "insert_failed"

        summary.created += 1
        if inserted.id:
            summary.match_ids.append(inserted.id)
        self._dispatch_downstream(inserted, load)
        return None

    def _dispatch_downstream(self, match: MatchEvent, load: ParsedLoad) -> None:
        if self.dispatcher is None:
            return
        if self.notifier is not None:
            self.dispatcher.spawn(self.notifier.send_match_notification(match, load), name="match_notification")
        if self.broker_check is not None:
            self.dispatcher.spawn(
                self.broker_check.trigger(
                    tenant_id=match.tenant_id,
                    load_email_id=match.load_email_id,
                    match_id=match.id,
                    load=load,
                ),
                name="broker_check",
            )
