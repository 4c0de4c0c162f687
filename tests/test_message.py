from __future__ import annotations

import base64
import json
from datetime import datetime, timezone

import pytest

from loadhunter.services.message import InvalidPayloadError, decode_message, extract_part, split_sender

RECEIVED = datetime(2026, 1, 19, 12, 0, tzinfo=timezone.utc)


def test_decodes_multipart_message(gmail_document) -> None:
    raw = gmail_document(
        "m-1",
        subject="SPRINTER from Dallas, TX to Atlanta, GA",
        sender="Acme Dispatch <dispatch@acme.com>",
        received_at=RECEIVED,
        text="plain body",
        html="<p>html body</p>",
    )

    message = decode_message(raw)

    assert message.message_id == "m-1"
    assert message.thread_id == "thread-m-1"
    assert message.subject == "SPRINTER from Dallas, TX to Atlanta, GA"
    assert message.from_name == "Acme Dispatch"
    assert message.from_email == "dispatch@acme.com"
    assert message.body_text == "plain body"
    assert message.body_html == "<p>html body</p>"
    assert message.received_at == RECEIVED


def test_html_only_message_uses_html_as_text(gmail_document) -> None:
    raw = gmail_document("m-2", subject="s", sender="a@b.com", received_at=RECEIVED, html="<p>only</p>")

    message = decode_message(raw)

    assert message.body_text == "<p>only</p>"
    assert message.from_name == "a@b.com"


def test_missing_internal_date_falls_back_to_now() -> None:
    raw = json.dumps({"id": "m-3", "payload": {"headers": []}})

    message = decode_message(raw, now=RECEIVED)

    assert message.received_at == RECEIVED
    assert message.subject == ""


def test_missing_payload_object_is_structural_error() -> None:
    with pytest.raises(InvalidPayloadError, match="Invalid email payload structure: missing payload object"):
        decode_message(b'{"id": "m-4"}')


def test_invalid_json_is_structural_error() -> None:
    with pytest.raises(InvalidPayloadError, match="Invalid email payload JSON"):
        decode_message(b"not json")


def test_extract_part_walks_nested_parts() -> None:
    data = base64.urlsafe_b64encode("nested ✓".encode("utf-8")).decode("ascii").rstrip("=")
    payload = {
        "mimeType": "multipart/mixed",
        "parts": [{"mimeType": "multipart/alternative", "parts": [{"mimeType": "text/plain", "body": {"data": data}}]}],
    }

    assert extract_part(payload, "text/plain") == "nested ✓"
    assert extract_part(payload, "text/html") == ""


def test_split_sender() -> None:
    assert split_sender('"Jane Doe" <jane@acme.com>') == ('"Jane Doe"', "jane@acme.com")
    assert split_sender("jane@acme.com") == ("jane@acme.com", "jane@acme.com")
