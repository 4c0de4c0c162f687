from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx

from loadhunter.schemas.hunts import HuntPlan
from loadhunter.schemas.loads import Coordinates, ParsedLoad
from loadhunter.services.cooldown import CooldownGate
from loadhunter.services.downstream import BackgroundDispatcher, BrokerCheckTrigger, NotificationClient
from loadhunter.services.matching import (
    MatchingEngine,
    below_floor,
    evaluate_hunt,
    haversine_miles,
    over_capacity,
    parse_vehicle_sizes,
    vehicle_matches,
)
from loadhunter.services.repository import RepositoryUnavailableError
from loadhunter.services.store import InMemoryRepository

TENANT = "tenant-1"
RECEIVED = datetime(2026, 1, 19, 12, 0, tzinfo=timezone.utc)
DALLAS = Coordinates(lat=32.7767, lng=-96.797)
FORT_WORTH = Coordinates(lat=32.7555, lng=-97.3308)


def _load(**overrides: object) -> ParsedLoad:
    values: dict[str, object] = {
        "origin_city": "Dallas",
        "origin_state": "TX",
        "vehicle_type": "SPRINTER",
        "weight": "1200",
        "broker_company": "Acme Logistics",
        "pickup_coordinates": DALLAS,
    }
    values.update(overrides)
    return ParsedLoad(**values)  # type: ignore[arg-type]


def _hunt(hunt_id: str = "hunt-1", **overrides: object) -> HuntPlan:
    values: dict[str, object] = {
        "id": hunt_id,
        "tenant_id": TENANT,
        "vehicle_id": "truck-7",
        "hunt_coordinates": FORT_WORTH,
        "pickup_radius": 100.0,
        "vehicle_size": '["Sprinter"]',
    }
    values.update(overrides)
    return HuntPlan(**values)  # type: ignore[arg-type]


def _engine(repository: InMemoryRepository, **kwargs) -> MatchingEngine:
    return MatchingEngine(repository, CooldownGate(repository), now=lambda: RECEIVED, **kwargs)


async def _match(engine: MatchingEngine, load: ParsedLoad, *, email: str = "email-1", fingerprint: str | None = "fp-1"):
    return await engine.match_load(
        load_email_id=email,
        load_id="10",
        load=load,
        tenant_id=TENANT,
        fingerprint=fingerprint,
        received_at=RECEIVED,
    )


def test_radius_boundary_is_inclusive() -> None:
    distance = haversine_miles(DALLAS, FORT_WORTH)

    at_edge = evaluate_hunt(_hunt(pickup_radius=distance), _load(), load_id="10", pickup=DALLAS)
    just_inside = evaluate_hunt(_hunt(pickup_radius=distance - 0.01), _load(), load_id="10", pickup=DALLAS)

    assert 15 < distance < 25
    assert at_edge == (None, distance)
    assert just_inside[0] == "out_of_radius"


def test_default_radius_applies_when_hunt_has_none() -> None:
    reason, _ = evaluate_hunt(_hunt(pickup_radius=None), _load(), load_id="10", pickup=DALLAS, default_radius=5.0)

    assert reason == "out_of_radius"


def test_vehicle_compatibility() -> None:
    assert parse_vehicle_sizes('["Sprinter", "Cargo Van"]') == ["Sprinter", "Cargo Van"]
    assert parse_vehicle_sizes("Large Straight") == ["Large Straight"]
    assert parse_vehicle_sizes(None) == []
    assert vehicle_matches("SPRINTER", []) is True
    assert vehicle_matches("SPRINTER VAN", ["Sprinter"]) is True
    assert vehicle_matches("LARGE STRAIGHT", ["small-straight"]) is True
    assert vehicle_matches("CARGO VAN", ["Sprinter"]) is False
    assert vehicle_matches("box-truck", ["BOX TRUCK"]) is True
    assert vehicle_matches("BOX TRUCK", ["box-truck"]) is True


def test_floor_and_capacity_filters() -> None:
    assert below_floor("9", "10") is True
    assert below_floor("10", "10") is True
    assert below_floor("11", "10") is False
    assert below_floor("11", None) is False
    assert over_capacity("900 lbs", "1000") is False
    assert over_capacity("3000", "2500 lbs") is True
    assert over_capacity("3000", None) is False
    assert over_capacity(None, 2500) is False

    reason, _ = evaluate_hunt(_hunt(floor_load_id="10"), _load(), load_id="9", pickup=DALLAS)
    assert reason == "below_floor"
    reason, _ = evaluate_hunt(_hunt(load_capacity=1000.0), _load(weight="2500"), load_id="10", pickup=DALLAS)
    assert reason == "over_capacity"


def test_match_created_and_downstream_triggered() -> None:
    captured: list[tuple[str, dict]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"success": True, "approval_status": "approved"})

    async def scenario():
        repository = InMemoryRepository()
        repository.add_hunt(_hunt())
        repository.add_hunt(_hunt("far", hunt_coordinates=Coordinates(lat=40.7128, lng=-74.006)))
        dispatcher = BackgroundDispatcher()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            engine = _engine(
                repository,
                dispatcher=dispatcher,
                notifier=NotificationClient("https://functions.test", "svc", client=client),
                broker_check=BrokerCheckTrigger("https://functions.test", "svc", client=client),
            )
            summary = await _match(engine, _load())
            await dispatcher.drain(1.0)
        return repository, summary, dispatcher

    repository, summary, dispatcher = asyncio.run(scenario())

    assert summary.evaluated == 2
    assert summary.created == 1
    assert summary.skips["out_of_radius"] == 1
    assert len(repository.matches) == 1
    match = repository.matches[0]
    assert match.hunt_plan_id == "hunt-1"
    assert match.vehicle_id == "truck-7"
    assert match.distance_miles == round(haversine_miles(DALLAS, FORT_WORTH))
    assert dispatcher.failures == 0
    paths = sorted(path for path, _ in captured)
    assert paths == ["/functions/v1/check-broker-credit", "/functions/v1/send-match-notification"]
    notification = next(body for path, body in captured if path.endswith("send-match-notification"))
    assert notification["match_id"] == match.id
    assert notification["parsed_data"]["vehicle_type"] == "SPRINTER"


def test_existing_match_is_not_duplicated() -> None:
    async def scenario():
        repository = InMemoryRepository()
        repository.add_hunt(_hunt())
        engine = _engine(repository)
        first = await _match(engine, _load())
        second = await _match(engine, _load())
        return repository, first, second

    repository, first, second = asyncio.run(scenario())

    assert first.created == 1
    assert second.created == 0
    assert second.skips["existing_match"] == 1
    assert len(repository.matches) == 1


def test_gate_error_suppresses_every_match() -> None:
    async def scenario():
        repository = InMemoryRepository()
        repository.gate_error = RepositoryUnavailableError("database down")
        repository.add_hunt(_hunt())
        repository.add_hunt(_hunt("hunt-2", cooldown_seconds_min=0))
        return repository, await _match(_engine(repository), _load())

    repository, summary = asyncio.run(scenario())

    assert summary.created == 0
    assert summary.skips["suppressed_gate_error"] == 2
    assert repository.matches == []


def test_matching_skips_without_feature_or_gate_inputs() -> None:
    async def scenario():
        repository = InMemoryRepository()
        repository.add_hunt(_hunt())
        engine = _engine(repository)
        no_fingerprint = await _match(engine, _load(), fingerprint=None)
        no_coordinates = await _match(engine, _load(pickup_coordinates=None))
        repository.disabled_features.add((TENANT, "load_hunter_matching"))
        disabled = await _match(engine, _load())
        repository.disabled_features.clear()
        repository.available = False
        lookup_failed = await _match(engine, _load())
        return repository, no_fingerprint, no_coordinates, disabled, lookup_failed

    repository, no_fingerprint, no_coordinates, disabled, lookup_failed = asyncio.run(scenario())

    assert no_fingerprint.skipped_reason == "missing_fingerprint"
    assert no_coordinates.skipped_reason == "missing_pickup_coordinates"
    assert disabled.skipped_reason == "feature_disabled"
    assert lookup_failed.skipped_reason == "feature_lookup_failed"
    assert repository.matches == []


def test_foreign_hunt_is_blocked_before_the_gate() -> None:
    class LeakyRepository(InMemoryRepository):
        async def list_enabled_hunts(self, tenant_id: str) -> list[HuntPlan]:
            return list(self.hunts.values())

    async def scenario():
        repository = LeakyRepository()
        repository.add_hunt(_hunt("hunt-foreign", tenant_id="tenant-2"))
        return repository, await _match(_engine(repository), _load())

    repository, summary = asyncio.run(scenario())

    assert summary.skips["tenant_mismatch"] == 1
    assert repository.matches == []
    assert repository.cooldowns == {}
