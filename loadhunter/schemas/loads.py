from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Literal

EmailSource = Literal["sylectus", "fullcircle"]
LoadStatus = Literal["new", "duplicate", "update"]
GeocodingStatus = Literal["success", "failed", "pending"]


@dataclass(slots=True)
class Coordinates:
    lat: float
    lng: float

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(slots=True)
class Stop:
    sequence: int
    type: str
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    country: str | None = None
    date: str | None = None
    time: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "type": self.type,
            "city": self.city,
            "state": self.state,
            "zip": self.zip,
            "country": self.country,
            "date": self.date,
            "time": self.time,
        }


@dataclass(slots=True)
class ParsedLoad:
    broker_email: str | None = None
    broker_name: str | None = None
    broker_company: str | None = None
    broker_phone: str | None = None
    broker_fax: str | None = None
    broker_address: str | None = None
    broker_city: str | None = None
    broker_state: str | None = None
    broker_zip: str | None = None
    mc_number: str | None = None
    customer: str | None = None
    order_number: str | None = None
    order_number_secondary: str | None = None
    origin_city: str | None = None
    origin_state: str | None = None
    origin_zip: str | None = None
    destination_city: str | None = None
    destination_state: str | None = None
    destination_zip: str | None = None
    pickup_date: str | None = None
    pickup_time: str | None = None
    delivery_date: str | None = None
    delivery_time: str | None = None
    posted_amount: str | None = None
    rate: str | None = None
    miles: int | None = None
    loaded_miles: int | None = None
    vehicle_type: str | None = None
    load_type: str | None = None
    pieces: int | None = None
    weight: str | None = None
    length: str | None = None
    width: str | None = None
    height: str | None = None
    dimensions: str | None = None
    posted_datetime: str | None = None
    posted_at: datetime | None = None
    expires_datetime: str | None = None
    expires_at: datetime | None = None
    notes: str | None = None
    commodity: str | None = None
    special_instructions: str | None = None
    stops: list[Stop] = field(default_factory=list)
    stop_count: int | None = None
    has_multiple_stops: bool | None = None
    dock_level: bool | None = None
    hazmat: bool | None = None
    team_required: bool | None = None
    stackable: bool | None = None
    pickup_coordinates: Coordinates | None = None

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    def is_absent(self, name: str) -> bool:
        return is_absent_value(getattr(self, name))

    def populated_fields(self) -> list[str]:
        return [name for name in self.field_names() if not self.is_absent(name)]

    def merge_missing(self, other: ParsedLoad) -> list[str]:
        """Copy fields from ``other`` that are absent here; returns the names filled."""
        filled: list[str] = []
        for name in self.field_names():
            if not self.is_absent(name):
                continue
            incoming = getattr(other, name)
            if is_absent_value(incoming):
                continue
            setattr(self, name, incoming)
            filled.append(name)
        return filled

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for name in self.field_names():
            value = getattr(self, name)
            if is_absent_value(value):
                continue
            if isinstance(value, datetime):
                data[name] = value.isoformat()
            elif isinstance(value, Coordinates):
                data[name] = value.to_dict()
            elif name == "stops":
                data[name] = [stop.to_dict() for stop in value]
            else:
                data[name] = value
        return data


def is_absent_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


@dataclass(slots=True)
class ParserHint:
    email_source: str
    field_name: str
    pattern: str
    context_before: str | None = None
    context_after: str | None = None
    is_active: bool = True


@dataclass(slots=True)
class LoadRef:
    id: str
    load_id: str
    received_at: datetime


@dataclass(slots=True)
class LoadRecord:
    email_id: str
    tenant_id: str | None
    received_at: datetime
    email_source: EmailSource
    parsed: ParsedLoad
    subject: str
    from_email: str
    from_name: str
    body_text: str
    thread_id: str | None = None
    raw_payload_url: str | None = None
    status: LoadStatus = "new"
    has_issues: bool = False
    issue_notes: str | None = None
    content_hash: str | None = None
    parsed_load_fingerprint: str | None = None
    is_duplicate: bool = False
    duplicate_of_id: str | None = None
    is_update: bool = False
    parent_email_id: str | None = None
    dedup_eligible: bool = False
    dedup_eligible_reason: str | None = None
    dedup_canonical_payload: dict[str, Any] | None = None
    load_content_fingerprint: str | None = None
    fingerprint_missing_reason: str | None = None
    geocoding_status: GeocodingStatus = "pending"
    geocoding_error_code: str | None = None
    ingestion_source: str = "inbound-worker"


@dataclass(slots=True)
class GeocodeCacheEntry:
    location_key: str
    city: str
    state: str
    latitude: float
    longitude: float
    hit_count: int = 1
    month_created: str | None = None
