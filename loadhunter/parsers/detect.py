from __future__ import annotations

import re

from loadhunter.schemas.loads import EmailSource

_ANGLE_ADDRESS_RE = re.compile(r"<([^>]+)>")
_FULLCIRCLE_SUBJECT_RE = re.compile(r"^Load Available:\s+[A-Z]{2}\s+-\s+[A-Z]{2}", re.IGNORECASE)
_FULLCIRCLE_SENDER_DOMAINS = ("fullcircletms.com", "fctms.com")
_FULLCIRCLE_BODY_MARKERS = ("app.fullcircletms.com", "bid yes to this load")


def sender_address(sender: str | None) -> str:
    if not sender:
        return ""
    match = _ANGLE_ADDRESS_RE.search(sender)
    return (match.group(1) if match else sender).strip()


def detect_email_source(sender: str | None, subject: str | None, body_text: str | None, body_html: str | None) -> EmailSource:
    address = sender_address(sender).lower()
    if any(domain in address for domain in _FULLCIRCLE_SENDER_DOMAINS):
        return "fullcircle"

    combined = f"{body_text or ''}\n{body_html or ''}".lower()
    if any(marker in combined for marker in _FULLCIRCLE_BODY_MARKERS):
        return "fullcircle"

    if subject and _FULLCIRCLE_SUBJECT_RE.match(subject):
        return "fullcircle"
    return "sylectus"
