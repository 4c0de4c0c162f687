from __future__ import annotations

import re
from datetime import datetime

from loadhunter.parsers.timestamps import (
    INSTRUCTION_TIME_PATTERN,
    TZ_PATTERN,
    normalize_date,
    parse_us_timestamp,
    strip_html,
)
from loadhunter.schemas.loads import ParsedLoad

_I = re.IGNORECASE

_SUBJECT_ROUTE_RE = re.compile(
    r"^(?:W/?\s*)?"
    r"((?:CARGO\s*)?VAN|(?:SMALL|LARGE)\s*STRAIGHT|SPRINTER|TRACTOR(?:\s*FLATBED)?|FLATBED|REEFER"
    r"|LIFT\s*GATE|LIFTGATE|(?:\d+['’]?\s*)?FOOT|BOX\s*TRUCK|HOT\s*SHOT)"
    r"\s+(?:from|-)\s+([^,]+),\s*([A-Z]{2})\s+to\s+([^,]+),\s*([A-Z]{2})",
    _I,
)
_LIFT_GATE_RE = re.compile(r"LIFT\s+GATE", _I)
_SUBJECT_BROKER_EMAIL_RE = re.compile(r"\(([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})\)")
_SUBJECT_MILES_RE = re.compile(r":\s*(\d+)\s*miles", _I)
_SUBJECT_WEIGHT_RE = re.compile(r"(\d+)\s*lbs", _I)
_SUBJECT_POSTED_BY_RE = re.compile(r"Posted by ([^(]+)\s*\(")

_ANY_EMAIL_RE = re.compile(r"[\w.-]+@[\w.-]+\.\w+")
_BID_ORDER_RE = re.compile(r"Bid on Order #(\d+)", _I)
_ORDER_RES = (
    re.compile(r"Order\s*#\s*(\d+)", _I),
    re.compile(r"Order\s*Number\s*:?\s*(\d+)", _I),
    re.compile(r"Order\s*:?\s*#?\s*(\d+)", _I),
)
_STRONG_LABEL_TEMPLATE = r"<strong>{label}:\s*</strong>\s*([^<\n]+)"
_PLAIN_LABEL_TEMPLATE = r"{label}:\s*([^\n,]+)"
_BROKER_LABELS = {
    "broker_name": r"Broker\s*Name",
    "broker_company": r"Broker\s*Company",
    "broker_phone": r"Broker\s*Phone",
}

# Loosely labelled fields, tried only when nothing stronger populated them.
_GENERIC_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("broker_name", re.compile(r"(?:Contact|Rep|Agent)[\s:]+([A-Za-z\s]+?)(?:\s|$)", _I)),
    ("broker_company", re.compile(r"(?:Company|Broker)[\s:]+([^\n,]+)", _I)),
    ("broker_phone", re.compile(r"(?:Phone|Tel|Ph)[\s:]+([0-9\s\-().]+)", _I)),
    ("origin_city", re.compile(r"(?:Origin|Pick\s*up|From)[\s:]+([A-Za-z\s]+),?\s*([A-Z]{2})", _I)),
    ("destination_city", re.compile(r"(?:Destination|Deliver|To)[\s:]+([A-Za-z\s]+),?\s*([A-Z]{2})", _I)),
    ("posted_amount", re.compile(r"Posted\s*Amount[\s:]*\$?([\d,]+(?:\.\d{2})?)", _I)),
    ("vehicle_type", re.compile(r"(?:Equipment|Vehicle|Truck|Required)[\s:]+([A-Za-z0-9\s]+)", _I)),
    ("load_type", re.compile(r"(?:Load\s*Type|Type)[\s:]+([A-Za-z\s]+)", _I)),
)

_ORIGIN_ZIP_RE = re.compile(r"Pick-Up[\s\S]*?(?:,\s*)?([A-Z]{2})\s+(\d{5})(?:\s|<|$)", _I)
_DEST_ZIP_RE = re.compile(r"Delivery[\s\S]*?(?:,\s*)?([A-Z]{2})\s+(\d{5})(?:\s|<|$)", _I)
_DATETIME_TEMPLATE = r"{label}[\s\S]*?(\d{{1,2}}/\d{{1,2}}/\d{{2,4}})\s+(\d{{1,2}}:\d{{2}})\s*(" + TZ_PATTERN + r")?"
_DATE_ONLY_TEMPLATE = r"{label}[\s\S]*?(\d{{1,2}}/\d{{1,2}}/\d{{2,4}})"
_INSTRUCTION_RE = re.compile(r"^\s*(" + INSTRUCTION_TIME_PATTERN + r")", _I)

KNOWN_VEHICLE_TYPES = (
    "CARGO VAN",
    "SPRINTER",
    "SMALL STRAIGHT",
    "LARGE STRAIGHT",
    "FLATBED",
    "TRACTOR",
    "LIFTGATE",
    "BOX TRUCK",
    "HOT SHOT",
    "VAN",
)

_PIECES_STRONG_RE = re.compile(r"<strong>Pieces?:\s*</strong>\s*(\d+)", _I)
_PIECES_PLAIN_RE = re.compile(r"Pieces?:\s*(\d+)", _I)
_WEIGHT_STRONG_RE = re.compile(r"<strong>Weight:\s*</strong>\s*([\d,]+)\s*(?:lbs?)?", _I)
_WEIGHT_PLAIN_RE = re.compile(r"Weight:\s*([\d,]+)\s*(?:lbs?)?", _I)
_DIMS_STRONG_RE = re.compile(r"<strong>Dimensions?:\s*</strong>\s*([^<\n]+)", _I)
_DIMS_PLAIN_RE = re.compile(r"Dimensions?:\s*([^\n]+)", _I)
_DIMS_VALUE_RE = re.compile(r"^(\d+L?\s*x\s*\d+W?\s*x\s*\d+H?|NO DIMENSIONS SPECIFIED|\d+x\d+x\d+)", _I)
_DIMS_TAIL_RE = re.compile(r"\s*(?:Stackable:|CSA|Notes:)", _I)
_TIMESTAMP_TEMPLATE = (
    r"{label}[:\s]*(?:<[^>]*>)*\s*(\d{{1,2}}/\d{{1,2}}/\d{{2,4}})\s+(\d{{1,2}}:\d{{2}})\s*(AM|PM)?\s*("
    + TZ_PATTERN
    + r")?"
)
_POSTED_RE = re.compile(_TIMESTAMP_TEMPLATE.format(label="Posted"), _I)
_EXPIRES_RE = re.compile(_TIMESTAMP_TEMPLATE.format(label="Expires?"), _I)
_NOTES_SECTION_RE = re.compile(r"<div[^>]*class=['\"]notes-section['\"][^>]*>([\s\S]*?)</div>", _I)
_P_TAG_RE = re.compile(r"<p[^>]*>(.*?)</p>", _I)
_TAG_RE = re.compile(r"<[^>]*>")
_NOTES_PLAIN_RE = re.compile(r"Notes?:\s*([^\n<]+)", _I)


def parse_subject_line(subject: str | None) -> ParsedLoad:
    """Extract route, equipment and broker hints from a Sylectus subject line."""
    load = ParsedLoad()
    if not subject:
        return load

    route = _SUBJECT_ROUTE_RE.search(subject)
    if route:
        vehicle = _LIFT_GATE_RE.sub("LIFTGATE", route.group(1).strip().upper())
        load.vehicle_type = vehicle
        load.origin_city = route.group(2).strip()
        load.origin_state = route.group(3).strip().upper()
        load.destination_city = route.group(4).strip()
        load.destination_state = route.group(5).strip().upper()

    broker_email = _SUBJECT_BROKER_EMAIL_RE.search(subject)
    if broker_email:
        load.broker_email = broker_email.group(1)

    miles = _SUBJECT_MILES_RE.search(subject)
    if miles:
        load.loaded_miles = int(miles.group(1))

    weight = _SUBJECT_WEIGHT_RE.search(subject)
    if weight:
        load.weight = weight.group(1)

    posted_by = _SUBJECT_POSTED_BY_RE.search(subject)
    if posted_by:
        _apply_posted_by(load, posted_by.group(1).strip())
    return load


def _apply_posted_by(load: ParsedLoad, raw: str) -> None:
    if raw.startswith("-"):
        remainder = raw[1:].strip()
        if remainder:
            load.customer = remainder
            load.broker_company = remainder
        return
    if " - " in raw:
        head, _, tail = raw.partition(" - ")
        head, tail = head.strip(), tail.split(" - ")[0].strip()
        load.customer = head or tail or None
        load.broker_company = tail or head or None
        return
    if raw:
        load.customer = raw
        load.broker_company = raw


def parse_sylectus_body(subject: str | None, body: str | None) -> ParsedLoad:
    """Extract load details from a Sylectus notification body (HTML or text)."""
    load = ParsedLoad()
    raw = body or ""
    clean = strip_html(raw)

    email_match = _ANY_EMAIL_RE.search(subject or "") or _ANY_EMAIL_RE.search(clean)
    if email_match:
        load.broker_email = email_match.group(0)

    load.order_number = _extract_order_number(raw)

    for field_name, label in _BROKER_LABELS.items():
        value = _labelled_value(raw, clean, label)
        if value:
            setattr(load, field_name, value)
    if load.broker_company:
        load.customer = load.broker_company

    _apply_generic_patterns(load, clean)
    _apply_zip_codes(load, raw)

    pickup_date, pickup_time = _extract_stop_datetime(clean, r"Pick-?Up")
    if pickup_date:
        load.pickup_date = pickup_date
        load.pickup_time = pickup_time
    delivery_date, delivery_time = _extract_stop_datetime(clean, r"Delivery")
    if delivery_date:
        load.delivery_date = delivery_date
        load.delivery_time = delivery_time

    upper_clean = clean.upper()
    for vehicle in KNOWN_VEHICLE_TYPES:
        if vehicle in upper_clean:
            load.vehicle_type = vehicle
            break

    pieces = _PIECES_STRONG_RE.search(raw) or _PIECES_PLAIN_RE.search(clean)
    if pieces:
        load.pieces = int(pieces.group(1))

    weight = _WEIGHT_STRONG_RE.search(raw) or _WEIGHT_PLAIN_RE.search(clean)
    if weight:
        load.weight = weight.group(1).replace(",", "")

    load.dimensions = _extract_dimensions(raw, clean)

    posted = _POSTED_RE.search(raw)
    if posted:
        load.posted_datetime, load.posted_at = _timestamp_fields(posted)
    expires = _EXPIRES_RE.search(raw)
    if expires:
        load.expires_datetime, load.expires_at = _timestamp_fields(expires)

    load.notes = _extract_notes(raw)
    return load


def _extract_order_number(raw: str) -> str | None:
    bid = _BID_ORDER_RE.search(raw)
    if bid:
        return bid.group(1)
    for pattern in _ORDER_RES:
        match = pattern.search(raw)
        if match:
            return match.group(1)
    return None


def _labelled_value(raw: str, clean: str, label: str) -> str | None:
    strong = re.search(_STRONG_LABEL_TEMPLATE.format(label=label), raw, _I)
    if strong:
        return strong.group(1).strip() or None
    plain = re.search(_PLAIN_LABEL_TEMPLATE.format(label=label), clean, _I)
    if plain:
        return plain.group(1).strip() or None
    return None


def _apply_generic_patterns(load: ParsedLoad, clean: str) -> None:
    for field_name, pattern in _GENERIC_PATTERNS:
        if not load.is_absent(field_name):
            continue
        match = pattern.search(clean)
        if not match:
            continue
        if field_name == "origin_city":
            load.origin_city = match.group(1).strip() or None
            load.origin_state = match.group(2).upper()
        elif field_name == "destination_city":
            load.destination_city = match.group(1).strip() or None
            load.destination_state = match.group(2).upper()
        else:
            setattr(load, field_name, match.group(1).strip() or None)


def _apply_zip_codes(load: ParsedLoad, raw: str) -> None:
    origin = _ORIGIN_ZIP_RE.search(raw)
    if origin:
        load.origin_zip = origin.group(2)
        if not load.origin_state:
            load.origin_state = origin.group(1).upper()
    destination = _DEST_ZIP_RE.search(raw)
    if destination:
        load.destination_zip = destination.group(2)
        if not load.destination_state:
            load.destination_state = destination.group(1).upper()


def _extract_stop_datetime(clean: str, label: str) -> tuple[str | None, str | None]:
    full = re.search(_DATETIME_TEMPLATE.format(label=label), clean, _I)
    if full:
        time_text = full.group(2) + (f" {full.group(3).upper()}" if full.group(3) else "")
        return normalize_date(full.group(1)) or full.group(1), time_text

    date_only = re.search(_DATE_ONLY_TEMPLATE.format(label=label), clean, _I)
    if not date_only:
        return None, None
    instruction = _INSTRUCTION_RE.match(clean[date_only.end():])
    time_text = instruction.group(1).strip() if instruction else None
    return normalize_date(date_only.group(1)) or date_only.group(1), time_text


def _extract_dimensions(raw: str, clean: str) -> str | None:
    strong = _DIMS_STRONG_RE.search(raw)
    candidate = strong.group(1).strip() if strong else None
    if not candidate:
        plain = _DIMS_PLAIN_RE.search(clean)
        candidate = plain.group(1).strip() if plain else None
    if not candidate:
        return None
    exact = _DIMS_VALUE_RE.match(candidate)
    if exact:
        return exact.group(1).strip()
    head = _DIMS_TAIL_RE.split(candidate, maxsplit=1)[0].strip()
    return head or candidate


def _timestamp_fields(match: re.Match[str]) -> tuple[str, datetime | None]:
    date_text, time_text = match.group(1), match.group(2)
    meridiem = match.group(3) or ""
    tz_abbreviation = (match.group(4) or "EST").upper()
    display = " ".join(part for part in (date_text, time_text, meridiem.upper(), tz_abbreviation) if part)
    return display, parse_us_timestamp(date_text, time_text, meridiem, tz_abbreviation)


def _extract_notes(raw: str) -> str | None:
    section = _NOTES_SECTION_RE.search(raw)
    if section:
        paragraphs = [_TAG_RE.sub("", tag).strip() for tag in _P_TAG_RE.findall(section.group(1))]
        joined = ", ".join(text for text in paragraphs if text)
        if joined:
            return joined
    plain = _NOTES_PLAIN_RE.search(raw)
    if plain:
        return plain.group(1).strip() or None
    return None
