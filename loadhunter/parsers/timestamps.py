from __future__ import annotations

import html
import re
from datetime import datetime, timedelta, timezone

TZ_OFFSETS_HOURS: dict[str, int] = {
    "EST": -5,
    "EDT": -4,
    "CST": -6,
    "CDT": -5,
    "MST": -7,
    "MDT": -6,
    "PST": -8,
    "PDT": -7,
}
DEFAULT_TZ_OFFSET_HOURS = -5
TZ_PATTERN = "EST|CST|MST|PST|EDT|CDT|MDT|PDT"
INSTRUCTION_TIME_PATTERN = r"ASAP|Direct|Deliver\s*Direct|Flexible|TBD|Open|Will\s*Call"

_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_BLOCK_END_RE = re.compile(r"</(?:p|div|tr)>", re.IGNORECASE)
_CELL_END_RE = re.compile(r"</td>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")
_US_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")


def strip_html(markup: str | None) -> str:
    """Flatten an HTML fragment to a single line of plain text."""
    if not markup:
        return ""
    text = _BR_RE.sub("\n", markup)
    text = _BLOCK_END_RE.sub("\n", text)
    text = _CELL_END_RE.sub(" ", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text.replace("&nbsp;", " "))
    return _WS_RE.sub(" ", text).strip()


def decode_entities(text: str) -> str:
    return html.unescape(text)


def tz_offset_hours(abbreviation: str | None) -> int:
    if not abbreviation:
        return DEFAULT_TZ_OFFSET_HOURS
    return TZ_OFFSETS_HOURS.get(abbreviation.strip().upper(), DEFAULT_TZ_OFFSET_HOURS)


def local_to_utc(
    year: int,
    month: int,
    day: int,
    hour: int,
    minute: int,
    tz_abbreviation: str | None,
) -> datetime | None:
    offset = tz_offset_hours(tz_abbreviation)
    try:
        local = datetime(year, month, day, 0, 0, tzinfo=timezone.utc)
    except ValueError:
        return None
    return local + timedelta(hours=hour - offset, minutes=minute)


def parse_us_timestamp(date_text: str, time_text: str, meridiem: str | None, tz_abbreviation: str | None) -> datetime | None:
    """Parse ``MM/DD/YY[YY] HH:MM [AM|PM] TZ`` into an aware UTC datetime."""
    parts = date_text.split("/")
    if len(parts) != 3:
        return None
    try:
        month, day, year = int(parts[0]), int(parts[1]), int(parts[2])
        hour_text, minute_text = time_text.split(":", 1)
        hour, minute = int(hour_text), int(minute_text)
    except ValueError:
        return None
    if year < 100:
        year += 2000
    marker = (meridiem or "").upper()
    if marker == "PM" and hour < 12:
        hour += 12
    if marker == "AM" and hour == 12:
        hour = 0
    return local_to_utc(year, month, day, hour, minute, tz_abbreviation)


def parse_iso_timestamp(date_text: str, time_text: str, tz_abbreviation: str | None) -> datetime | None:
    """Parse ``YYYY-MM-DD HH:MM TZ`` into an aware UTC datetime."""
    try:
        year, month, day = (int(part) for part in date_text.split("-"))
        hour_text, minute_text = time_text.split(":", 1)
        hour, minute = int(hour_text), int(minute_text)
    except ValueError:
        return None
    return local_to_utc(year, month, day, hour, minute, tz_abbreviation)


def normalize_date(value: object) -> str | None:
    """Normalize ``MM/DD/YY``, ``MM/DD/YYYY`` or an ISO prefix to ``YYYY-MM-DD``."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    us_match = _US_DATE_RE.match(text)
    if us_match:
        month = us_match.group(1).zfill(2)
        day = us_match.group(2).zfill(2)
        year = us_match.group(3)
        if len(year) == 2:
            year = ("19" if int(year) > 50 else "20") + year
        return f"{year}-{month}-{day}"
    iso_match = _ISO_DATE_RE.match(text)
    if iso_match:
        return f"{iso_match.group(1)}-{iso_match.group(2)}-{iso_match.group(3)}"
    return None


def parse_instant(value: object) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
