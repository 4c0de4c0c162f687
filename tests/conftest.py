from __future__ import annotations

import base64
import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

import pytest


def _encode(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def build_gmail_document(
    message_id: str,
    *,
    subject: str,
    sender: str,
    received_at: datetime,
    text: str | None = None,
    html: str | None = None,
) -> bytes:
    parts: list[dict[str, Any]] = []
    if text is not None:
        parts.append({"mimeType": "text/plain", "body": {"data": _encode(text)}})
    if html is not None:
        parts.append({"mimeType": "text/html", "body": {"data": _encode(html)}})
    document = {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "internalDate": str(int(received_at.timestamp() * 1000)),
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "Subject", "value": subject},
            ],
            "parts": parts,
        },
    }
    return json.dumps(document).encode("utf-8")


@pytest.fixture
def gmail_document() -> Callable[..., bytes]:
    return build_gmail_document
