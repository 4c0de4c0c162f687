from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from loadhunter.parsers.timestamps import normalize_date
from loadhunter.schemas.loads import Coordinates, ParsedLoad, Stop

logger = logging.getLogger(__name__)

# Bump whenever canonicalization changes; stored next to every fingerprint.
FINGERPRINT_VERSION = 1

_TRAILING_DECIMAL_COMMA_RE = re.compile(r",(\d{2})$")
_NON_NUMERIC_RE = re.compile(r"[^0-9.-]")
_NON_INTEGER_RE = re.compile(r"[^0-9-]")
_LEADING_INT_RE = re.compile(r"^-?\d+")
_LEADING_FLOAT_RE = re.compile(r"^-?(?:\d+\.?\d*|\.\d+)")


@dataclass(slots=True)
class FingerprintResult:
    fingerprint: str | None
    canonical_payload: dict[str, Any] | None
    version: int
    dedup_eligible: bool
    dedup_eligible_reason: str | None
    missing_reason: str | None


def normalize_text(value: Any) -> str | None:
    if value is None:
        return None
    text = value.strip() if isinstance(value, str) else str(value).strip()
    return text or None


def normalize_lower(value: Any) -> str | None:
    text = normalize_text(value)
    return text.lower() if text else None


def normalize_upper(value: Any) -> str | None:
    text = normalize_text(value)
    return text.upper() if text else None


def round_half_up(value: float, places: int = 2) -> float:
    factor = 10**places
    return math.floor(value * factor + 0.5) / factor


def normalize_numeric(value: Any) -> float | int | None:
    """``2,850.00``, ``2850``, ``$2,850`` and ``2850,00`` all normalize to ``2850``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return _compact_number(round_half_up(float(value)))
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    text = _TRAILING_DECIMAL_COMMA_RE.sub(r".\1", text)
    text = _NON_NUMERIC_RE.sub("", text.replace(",", ""))
    match = _LEADING_FLOAT_RE.match(text)
    if match is None:
        return None
    return _compact_number(round_half_up(float(match.group(0))))


def normalize_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return math.floor(value)
    if isinstance(value, str):
        match = _LEADING_INT_RE.match(_NON_INTEGER_RE.sub("", value))
        return int(match.group(0)) if match else None
    return None


def normalize_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
        return None
    if isinstance(value, (int, float)):
        return value != 0
    return None


def normalize_stops(value: Any) -> list[dict[str, Any]] | None:
    if not isinstance(value, (list, tuple)) or not value:
        return None
    normalized: list[dict[str, Any]] = []
    for index, stop in enumerate(value):
        raw = stop.to_dict() if isinstance(stop, Stop) else stop if isinstance(stop, Mapping) else {}
        normalized.append(
            {
                "sequence": index,
                "city": normalize_text(raw.get("city")),
                "state": normalize_upper(raw.get("state")),
                "zip": normalize_text(raw.get("zip")),
                "type": normalize_lower(raw.get("type")),
                "date": normalize_date(raw.get("date")),
                "time": normalize_text(raw.get("time")),
            }
        )
    return normalized


def _compact_number(value: float) -> float | int:
    return int(value) if value.is_integer() else value


_CANONICAL_FIELDS: tuple[tuple[str, Callable[[Any], Any]], ...] = (
    ("broker_name", normalize_text),
    ("broker_company", normalize_text),
    ("broker_email", normalize_lower),
    ("broker_phone", normalize_text),
    ("broker_address", normalize_text),
    ("broker_city", normalize_text),
    ("broker_state", normalize_upper),
    ("broker_zip", normalize_text),
    ("broker_fax", normalize_text),
    ("mc_number", normalize_text),
    ("order_number", normalize_text),
    ("order_number_secondary", normalize_text),
    ("customer", normalize_text),
    ("origin_city", normalize_text),
    ("origin_state", normalize_upper),
    ("origin_zip", normalize_text),
    ("destination_city", normalize_text),
    ("destination_state", normalize_upper),
    ("destination_zip", normalize_text),
    ("miles", normalize_numeric),
    ("loaded_miles", normalize_numeric),
    ("weight", normalize_numeric),
    ("pieces", normalize_int),
    ("rate", normalize_numeric),
    ("posted_amount", normalize_numeric),
    ("pickup_date", normalize_date),
    ("pickup_time", normalize_text),
    ("delivery_date", normalize_date),
    ("delivery_time", normalize_text),
    ("expires_datetime", normalize_text),
    ("expires_at", normalize_text),
    ("vehicle_type", normalize_lower),
    ("load_type", normalize_lower),
    ("length", normalize_numeric),
    ("width", normalize_numeric),
    ("height", normalize_numeric),
    ("dimensions", normalize_text),
    ("hazmat", normalize_bool),
    ("team_required", normalize_bool),
    ("stackable", normalize_bool),
    ("dock_level", normalize_bool),
    ("stops", normalize_stops),
    ("stop_count", normalize_int),
    ("has_multiple_stops", normalize_bool),
    ("commodity", normalize_text),
    ("special_instructions", normalize_text),
    ("notes", normalize_text),
    ("broker", normalize_text),
    ("email", normalize_lower),
    ("customer_name", normalize_text),
)


def _as_mapping(load: ParsedLoad | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(load, Mapping):
        return load
    data: dict[str, Any] = {}
    for name in ParsedLoad.field_names():
        value = getattr(load, name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Coordinates):
            value = value.to_dict()
        data[name] = value
    return data


def canonicalize(load: ParsedLoad | Mapping[str, Any]) -> dict[str, Any]:
    """Project a load onto the fixed, normalized key set used for hashing.

    Every key is present; absent values are ``None``.
    """
    source = _as_mapping(load)
    payload: dict[str, Any] = {"fingerprint_version": FINGERPRINT_VERSION}
    for name, normalize in _CANONICAL_FIELDS:
        payload[name] = normalize(source.get(name))
    return payload


def is_dedup_eligible(payload: Mapping[str, Any]) -> tuple[bool, str | None]:
    if not (payload.get("origin_city") and payload.get("origin_state")):
        return False, "missing_origin_location"
    if not (payload.get("destination_city") and payload.get("destination_state")):
        return False, "missing_destination_location"
    if not (
        payload.get("broker_company")
        or payload.get("broker_name")
        or payload.get("broker_email")
        or payload.get("mc_number")
    ):
        return False, "missing_broker_identity"
    if not payload.get("pickup_date"):
        return False, "missing_pickup_date"
    return True, None


def serialize_canonical(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_fingerprint(load: ParsedLoad | Mapping[str, Any] | None) -> FingerprintResult:
    if load is None:
        logger.error("fingerprint skipped: parsed data missing")
        return FingerprintResult(None, None, FINGERPRINT_VERSION, False, None, "missing_parsed_data")

    try:
        payload = canonicalize(load)
        serialized = serialize_canonical(payload)
    except (TypeError, ValueError) as exc:
        logger.exception("fingerprint computation failed: %s", exc)
        return FingerprintResult(None, None, FINGERPRINT_VERSION, False, None, "exception_during_compute")

    eligible, reason = is_dedup_eligible(payload)
    return FingerprintResult(
        fingerprint=hashlib.sha256(serialized.encode("utf-8")).hexdigest(),
        canonical_payload=json.loads(serialized),
        version=FINGERPRINT_VERSION,
        dedup_eligible=eligible,
        dedup_eligible_reason=reason,
        missing_reason=None,
    )


def content_hash(load: ParsedLoad | Mapping[str, Any]) -> str:
    """Loose business-level hash used to spot re-posted (updated) loads."""
    source = _as_mapping(load)

    def part(name: str) -> str:
        value = source.get(name)
        return str(value).strip() if value is not None else ""

    core = "|".join(
        (
            part("origin_city").lower(),
            part("origin_state").upper(),
            part("destination_city").lower(),
            part("destination_state").upper(),
            part("pickup_date"),
            part("order_number"),
            part("vehicle_type").lower(),
        )
    )
    return "ch_" + hashlib.sha256(core.encode("utf-8")).hexdigest()[:16]
