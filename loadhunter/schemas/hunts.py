from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from loadhunter.schemas.loads import Coordinates

GateReason = Literal[
    "allowed",
    "suppressed_cooldown",
    "suppressed_missing_gate_data",
    "suppressed_gate_error",
]


@dataclass(slots=True)
class HuntPlan:
    id: str
    tenant_id: str
    enabled: bool = True
    vehicle_id: str | None = None
    hunt_coordinates: Coordinates | None = None
    pickup_radius: float | None = None
    vehicle_size: Any = None
    load_capacity: float | None = None
    floor_load_id: str | None = None
    cooldown_seconds_min: int | None = None


@dataclass(slots=True)
class MatchEvent:
    load_email_id: str
    hunt_plan_id: str
    tenant_id: str
    vehicle_id: str | None
    distance_miles: int
    matched_at: datetime
    is_active: bool = True
    match_status: str = "active"
    id: str | None = None


@dataclass(slots=True)
class CooldownState:
    tenant_id: str
    hunt_plan_id: str
    fingerprint: str
    last_received_at: datetime | None
    last_action_at: datetime
    action_count: int = 1
    last_load_email_id: str | None = None


@dataclass(slots=True)
class GateDecision:
    allowed: bool
    reason: GateReason
    cooldown_seconds: int | None = None
    missing: tuple[str, ...] = ()
