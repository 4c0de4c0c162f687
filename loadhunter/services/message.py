from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

_NAMED_ADDRESS_RE = re.compile(r"^(.+?)\s*<(.+?)>$")


class InvalidPayloadError(ValueError):
    """Raised when a stored message payload is structurally unusable."""


@dataclass(slots=True)
class EmailMessage:
    message_id: str | None
    thread_id: str | None
    subject: str
    sender: str
    from_name: str
    from_email: str
    body_text: str
    body_html: str
    received_at: datetime


def _decode_part_data(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.replace("+", "-").replace("/", "_")).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def extract_part(part: Any, mime_type: str) -> str:
    """Depth-first search for the first part of ``mime_type`` with a body."""
    if not isinstance(part, dict):
        return ""
    body = part.get("body")
    if part.get("mimeType") == mime_type and isinstance(body, dict) and body.get("data"):
        return _decode_part_data(str(body["data"]))
    for child in part.get("parts") or []:
        text = extract_part(child, mime_type)
        if text:
            return text
    return ""


def header_value(payload: dict[str, Any], name: str) -> str | None:
    wanted = name.lower()
    for header in payload.get("headers") or []:
        if isinstance(header, dict) and str(header.get("name", "")).lower() == wanted:
            value = header.get("value")
            return str(value) if value is not None else None
    return None


def split_sender(sender: str) -> tuple[str, str]:
    match = _NAMED_ADDRESS_RE.match(sender)
    if match:
        return match.group(1).strip(), match.group(2)
    return sender, sender


def _received_at(raw: Any, fallback: datetime | None) -> datetime:
    if raw is not None:
        try:
            return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            pass
    return fallback or datetime.now(timezone.utc)


def decode_message(raw: bytes | str, *, now: datetime | None = None) -> EmailMessage:
    """Decode a stored Gmail API ``format=full`` message document."""
    try:
        document = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidPayloadError(f"Invalid email payload JSON: {exc}") from exc

    payload = document.get("payload") if isinstance(document, dict) else None
    if not isinstance(payload, dict):
        raise InvalidPayloadError("Invalid email payload structure: missing payload object")

    sender = header_value(payload, "From") or ""
    from_name, from_email = split_sender(sender)
    body_html = extract_part(payload, "text/html")
    body_text = extract_part(payload, "text/plain") or body_html

    return EmailMessage(
        message_id=document.get("id"),
        thread_id=document.get("threadId"),
        subject=header_value(payload, "Subject") or "",
        sender=sender,
        from_name=from_name,
        from_email=from_email,
        body_text=body_text,
        body_html=body_html,
        received_at=_received_at(document.get("internalDate"), now),
    )
