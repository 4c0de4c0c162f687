from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from loadhunter.schemas.loads import ParsedLoad, ParserHint

logger = logging.getLogger(__name__)

INT_HINT_FIELDS = frozenset({"pieces", "miles", "loaded_miles", "stop_count"})
# Structured or derived fields a single regex capture cannot populate.
UNHINTABLE_FIELDS = frozenset(
    {
        "stops",
        "posted_at",
        "expires_at",
        "pickup_coordinates",
        "has_multiple_stops",
        "dock_level",
        "hazmat",
        "team_required",
        "stackable",
    }
)
_DIGITS_RE = re.compile(r"\d+")


def _search(pattern: str, text: str) -> str | None:
    match = re.search(pattern, text, re.IGNORECASE)
    if match is None:
        return None
    value = match.group(1) if match.groups() and match.group(1) is not None else match.group(0)
    return value.strip() or None


def _coerce(field_name: str, value: str) -> str | int | None:
    if field_name not in INT_HINT_FIELDS:
        return value
    digits = _DIGITS_RE.search(value.replace(",", ""))
    return int(digits.group(0)) if digits else None


def _hint_value(hint: ParserHint, text: str) -> str | None:
    try:
        return _search(hint.pattern, text)
    except re.error as exc:
        if not hint.context_before and not hint.context_after:
            logger.warning("parser hint pattern invalid field=%s error=%s", hint.field_name, exc)
            return None
        context_pattern = f"{hint.context_before or ''}([\\s\\S]*?){hint.context_after or ''}"
        try:
            return _search(context_pattern, text)
        except re.error as context_exc:
            logger.warning("parser hint context invalid field=%s error=%s", hint.field_name, context_exc)
            return None


def apply_parser_hints(
    load: ParsedLoad,
    hints: Iterable[ParserHint],
    body_text: str | None,
    body_html: str | None,
) -> list[str]:
    """Fill still-absent fields from tenant-maintained regex hints.

    Hints run in stored order against the HTML body, or the text body when
    there is no HTML. Returns the field names that were filled.
    """
    text = body_html or body_text or ""
    if not text:
        return []

    known = set(ParsedLoad.field_names())
    filled: list[str] = []
    for hint in hints:
        if not hint.is_active:
            continue
        if hint.field_name not in known or hint.field_name in UNHINTABLE_FIELDS:
            logger.debug("parser hint skipped field=%s", hint.field_name)
            continue
        if not load.is_absent(hint.field_name):
            continue

        raw = _hint_value(hint, text)
        if raw is None:
            continue
        value = _coerce(hint.field_name, raw)
        if value is None:
            continue
        setattr(load, hint.field_name, value)
        filled.append(hint.field_name)
        logger.info("parser hint applied field=%s source=%s", hint.field_name, hint.email_source)
    return filled
