from __future__ import annotations

import re

from loadhunter.parsers.timestamps import (
    INSTRUCTION_TIME_PATTERN,
    TZ_PATTERN,
    decode_entities,
    parse_iso_timestamp,
)
from loadhunter.schemas.loads import ParsedLoad, Stop

_I = re.IGNORECASE

_SUBJECT_ROUTE_RE = re.compile(r"from\s+([A-Za-z\s]+),\s*([A-Z]{2})\s+to\s+([A-Za-z\s]+),\s*([A-Z]{2})", _I)
_SUBJECT_VEHICLE_RE = re.compile(r"^([A-Za-z\s]+)\s+from\s+", _I)
_SUBJECT_STATES_RE = re.compile(r"Load Available:\s*([A-Z]{2})\s*-\s*([A-Z]{2})", _I)
_ORDER_RE = re.compile(r"ORDER\s*NUMBER:?\s*(\d+)(?:\s+or\s+(\d+))?", _I)

_CELL = r"<td[^>]*>"
_ROW_PREFIX = (
    _CELL + r"(\d+)</td>\s*" + _CELL + r"(Pick Up|Delivery)</td>\s*" + _CELL + r"([^<]+)</td>\s*"
    + _CELL + r"([A-Z]{2})</td>\s*" + _CELL + r"([A-Z0-9]*)</td>\s*" + _CELL + r"(USA|CAN)</td>\s*"
)
_HTML_STOP_STRICT_RE = re.compile(
    _ROW_PREFIX + _CELL + r"(\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2})\s*(" + TZ_PATTERN + r")?</td>", _I
)
_HTML_STOP_FLEXIBLE_RE = re.compile(_ROW_PREFIX + _CELL + r"([^<]+)</td>", _I)
_PLAIN_PREFIX = r"(\d+)\s+(Pick Up|Delivery)\s+([A-Za-z\s]+)\s+([A-Z]{2})\s+([A-Z0-9]*)\s+(USA|CAN)\s+"
_PLAIN_STOP_STRICT_RE = re.compile(
    _PLAIN_PREFIX + r"(\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2})\s+(" + TZ_PATTERN + r")", _I
)
_PLAIN_STOP_FLEXIBLE_RE = re.compile(
    _PLAIN_PREFIX + r"((?:\d{4}-\d{2}-\d{2}\s+)?(?:" + INSTRUCTION_TIME_PATTERN + r"))", _I
)
_STRICT_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}")
_INSTRUCTION_RE = re.compile(r"^(?:" + INSTRUCTION_TIME_PATTERN + r")", _I)
_DATE_WITH_INSTRUCTION_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})\s+(?:" + INSTRUCTION_TIME_PATTERN + r")", _I)
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CLOCK_RE = re.compile(r"^\d{2}:\d{2}$")

_POSTED_RE = re.compile(r"(?:Load posted|Posted)[:\s]*(\d{4}-\d{2}-\d{2})\s+(\d{2}:\d{2})\s+(" + TZ_PATTERN + r")", _I)
_EXPIRES_RE = re.compile(
    r"This posting expires:\s*(\d{4}-\d{2}-\d{2})\s+(\d{2}:\d{2})\s+(" + TZ_PATTERN + r")(?:\s*\(UTC([+-]\d{4})\))?",
    _I,
)
_TOTAL_PIECES_RE = re.compile(r"Total Pieces:?\s*(\d+)", _I)
_TOTAL_WEIGHT_RE = re.compile(r"Total Weight:?\s*([\d,]+)\s*(?:lbs?)?", _I)
_DISTANCE_RE = re.compile(r"Distance:\s*([\d,]+)\s*mi", _I)
_VEHICLE_CLASS_RE = re.compile(r"(?:Requested Vehicle Class|We call this vehicle class):\s*([^\n]+)", _I)
VEHICLE_CLASS_ALIASES = (
    ("SPRINTER VAN", "SPRINTER"),
    ("CARGO VAN", "CARGO VAN"),
    ("SMALL STRAIGHT TRUCK", "SMALL STRAIGHT"),
    ("LARGE STRAIGHT TRUCK", "LARGE STRAIGHT"),
)
_DOCK_LEVEL_RE = re.compile(r"Dock Level.*?:\s*(Yes|No)", _I)
_HAZMAT_RE = re.compile(r"Hazardous\??\s*:\s*(Yes|No)", _I)
_TEAM_RE = re.compile(r"Driver TEAM.*?:\s*(Yes|No)", _I)
_HTML_CONTACT_RE = re.compile(r"please contact:[\s\S]*?<br\s*/?>\s*([^<\n(]+)\s*\(MC#\s*(\d+)\)", _I)
_TEXT_CONTACT_RE = re.compile(r"please contact:\s*\n?\s*([^\n(]+)\s*\(MC#\s*(\d+)\)", _I)
_MC_RE = re.compile(r"\(MC#\s*(\d+)\)", _I)
_ADDRESS_RE = re.compile(r"\(MC#\s*\d+\)\s*\n([^\n]+)\s*\n([^\n]+),\s*([A-Z]{2})\s+(\d{5})", _I)
_POSTED_BY_RE = re.compile(r"Load posted by:\s*([^\n]+)", _I)
_PHONE_RE = re.compile(r"Phone:\s*\(?([\d\-()\s]+)", _I)
_FAX_RE = re.compile(r"Fax:\s*\(?([\d\-()\s]+)", _I)
_DIMENSIONS_TABLE_RE = re.compile(
    r"Stops\s+Pieces\s+Weight[\s\S]*?1 to 2\s+(\d+)\s+([\d,]+)\s*lbs?\s+(\d+)\s*in\s+(\d+)\s*in\s+(\d+)\s*in\s+(Yes|No)",
    _I,
)
_RED_P_RE = re.compile(r"<p[^>]*style\s*=\s*[\"'][^\"']*color\s*:\s*red[^\"']*[\"'][^>]*>([\s\S]*?)</p>", _I)
_RED_H4_RE = re.compile(r"<h4[^>]*style\s*=\s*[\"'][^\"']*color\s*:\s*red[^\"']*[\"'][^>]*>([\s\S]*?)</h4>", _I)
_TAG_RE = re.compile(r"<[^>]*>")
_NOTES_PREFIX_RE = re.compile(r"^Notes:\s*", _I)
_NOTES_FALLBACK_RE = re.compile(r"(?:Notes?|Special Instructions?):\s*([^\n<]+)", _I)
NOTE_BOILERPLATE = (
    "submit your bid via",
    "submitted bids must include",
    "location of your vehicle",
    "confirm all key requirements",
)


def parse_fullcircle_email(subject: str | None, body_text: str | None, body_html: str | None = None) -> ParsedLoad:
    """Extract a load, including its stop table, from a Full Circle TMS posting."""
    load = ParsedLoad()
    subject = subject or ""
    text = body_text or ""
    markup = body_html or ""

    route = _SUBJECT_ROUTE_RE.search(subject)
    if route:
        load.origin_city = route.group(1).strip()
        load.origin_state = route.group(2).upper()
        load.destination_city = route.group(3).strip()
        load.destination_state = route.group(4).upper()

    vehicle = _SUBJECT_VEHICLE_RE.search(subject)
    if vehicle:
        load.vehicle_type = vehicle.group(1).strip()

    order = _ORDER_RE.search(text)
    if order:
        load.order_number = order.group(1)
        load.order_number_secondary = order.group(2)

    stops = extract_stops(text)
    _apply_stops(load, stops)

    posted = _POSTED_RE.search(text)
    if posted:
        load.posted_datetime = f"{posted.group(1)} {posted.group(2)} {posted.group(3).upper()}"
        load.posted_at = parse_iso_timestamp(posted.group(1), posted.group(2), posted.group(3))
    expires = _EXPIRES_RE.search(text)
    if expires:
        load.expires_datetime = f"{expires.group(1)} {expires.group(2)} {expires.group(3).upper()}"
        load.expires_at = parse_iso_timestamp(expires.group(1), expires.group(2), expires.group(3))

    pieces = _TOTAL_PIECES_RE.search(text)
    if pieces:
        load.pieces = int(pieces.group(1))
    weight = _TOTAL_WEIGHT_RE.search(text)
    if weight:
        load.weight = weight.group(1).replace(",", "")
    distance = _DISTANCE_RE.search(text)
    if distance:
        load.loaded_miles = int(distance.group(1).replace(",", ""))

    vehicle_class = _VEHICLE_CLASS_RE.search(text)
    if vehicle_class:
        load.vehicle_type = vehicle_class.group(1).strip().upper()
    if load.vehicle_type:
        load.vehicle_type = normalize_vehicle_class(load.vehicle_type)

    load.dock_level = _yes_no(_DOCK_LEVEL_RE.search(text))
    load.hazmat = _yes_no(_HAZMAT_RE.search(text))
    load.team_required = _yes_no(_TEAM_RE.search(text))

    _apply_broker_contact(load, text, markup)

    dimensions = _DIMENSIONS_TABLE_RE.search(text)
    if dimensions:
        load.dimensions = f"{dimensions.group(3)}x{dimensions.group(4)}x{dimensions.group(5)}"
        load.stackable = dimensions.group(6).lower() == "yes"
        if load.pieces is None:
            load.pieces = int(dimensions.group(1))
        if not load.weight:
            load.weight = dimensions.group(2).replace(",", "")

    if not load.origin_state or not load.destination_state:
        states = _SUBJECT_STATES_RE.search(subject)
        if states:
            load.origin_state = load.origin_state or states.group(1).upper()
            load.destination_state = load.destination_state or states.group(2).upper()

    load.notes = extract_notes(markup or text)
    return load


def normalize_vehicle_class(value: str) -> str:
    upper = value.upper()
    for needle, canonical in VEHICLE_CLASS_ALIASES:
        if needle in upper:
            return canonical
    return value


def extract_stops(text: str) -> list[Stop]:
    stops = [_stop_from_match(m, m.group(7), (m.group(8) or "EST")) for m in _HTML_STOP_STRICT_RE.finditer(text)]
    if stops:
        return stops

    for match in _HTML_STOP_FLEXIBLE_RE.finditer(text):
        raw_when = match.group(7).strip()
        if (
            _STRICT_DATETIME_RE.match(raw_when)
            or _INSTRUCTION_RE.match(raw_when)
            or _DATE_WITH_INSTRUCTION_RE.match(raw_when)
        ):
            stops.append(_stop_from_match(match, raw_when, "EST"))
    if stops:
        return stops

    stops = [_stop_from_match(m, m.group(7), m.group(8)) for m in _PLAIN_STOP_STRICT_RE.finditer(text)]
    if stops:
        return stops

    return [_stop_from_match(m, m.group(7).strip(), "EST") for m in _PLAIN_STOP_FLEXIBLE_RE.finditer(text)]


def split_stop_datetime(raw_when: str, tz_abbreviation: str) -> tuple[str | None, str | None]:
    """Split a stop cell into an ISO date and a display time."""
    raw_when = raw_when.strip()
    if _INSTRUCTION_RE.match(raw_when):
        return None, raw_when
    parts = raw_when.split()
    if len(parts) >= 2 and _ISO_DATE_RE.match(parts[0]):
        if _CLOCK_RE.match(parts[1]):
            return parts[0], f"{parts[1]} {tz_abbreviation.upper()}"
        return parts[0], " ".join(parts[1:])
    date = parts[0] if parts and _ISO_DATE_RE.match(parts[0]) else None
    return date, None


def _stop_from_match(match: re.Match[str], raw_when: str, tz_abbreviation: str) -> Stop:
    date, time = split_stop_datetime(raw_when, tz_abbreviation)
    return Stop(
        sequence=int(match.group(1)),
        type=match.group(2).lower(),
        city=match.group(3).strip(),
        state=match.group(4).upper(),
        zip=match.group(5) or None,
        country=match.group(6).upper(),
        date=date,
        time=time,
    )


def _apply_stops(load: ParsedLoad, stops: list[Stop]) -> None:
    if not stops:
        return
    first_pickup = next((stop for stop in stops if stop.type == "pick up"), None)
    if first_pickup is not None:
        load.origin_city = first_pickup.city
        load.origin_state = first_pickup.state
        load.origin_zip = first_pickup.zip
        load.pickup_date = first_pickup.date
        load.pickup_time = first_pickup.time
    first_delivery = next((stop for stop in stops if stop.type == "delivery"), None)
    if first_delivery is not None:
        load.destination_city = first_delivery.city
        load.destination_state = first_delivery.state
        load.destination_zip = first_delivery.zip
        load.delivery_date = first_delivery.date
        load.delivery_time = first_delivery.time
    load.stops = stops
    load.stop_count = len(stops)
    load.has_multiple_stops = len(stops) > 2


def _yes_no(match: re.Match[str] | None) -> bool | None:
    if match is None:
        return None
    return match.group(1).lower() == "yes"


def _apply_broker_contact(load: ParsedLoad, text: str, markup: str) -> None:
    if markup:
        contact = _HTML_CONTACT_RE.search(markup)
        if contact:
            load.broker_company = load.broker_company or decode_entities(contact.group(1).strip())
            load.mc_number = contact.group(2)

    if not load.mc_number and text:
        contact = _TEXT_CONTACT_RE.search(text)
        if contact:
            load.broker_company = load.broker_company or contact.group(1).strip()
            load.mc_number = contact.group(2)

    if not load.mc_number:
        mc = _MC_RE.search(markup or text)
        if mc:
            load.mc_number = mc.group(1)

    address = _ADDRESS_RE.search(text)
    if address:
        load.broker_address = address.group(1).strip()
        load.broker_city = address.group(2).strip()
        load.broker_state = address.group(3).upper()
        load.broker_zip = address.group(4)

    posted_by = _POSTED_BY_RE.search(text)
    if posted_by:
        load.broker_name = posted_by.group(1).strip()
    phone = _PHONE_RE.search(text)
    if phone:
        load.broker_phone = phone.group(1).strip() or None
    fax = _FAX_RE.search(text)
    if fax:
        load.broker_fax = fax.group(1).strip() or None


def _clean_note(fragment: str) -> str | None:
    note = _TAG_RE.sub("", decode_entities(fragment.strip())).strip()
    note = _NOTES_PREFIX_RE.sub("", note)
    lowered = note.lower()
    if not note or any(marker in lowered for marker in NOTE_BOILERPLATE):
        return None
    return note


def extract_notes(content: str) -> str | None:
    notes: list[str] = []
    for pattern in (_RED_P_RE, _RED_H4_RE):
        for match in pattern.finditer(content):
            note = _clean_note(match.group(1))
            if note:
                notes.append(note)
    if notes:
        return " | ".join(notes)
    fallback = _NOTES_FALLBACK_RE.search(content)
    if fallback and fallback.group(1).strip():
        return fallback.group(1).strip()
    return None
