from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

QueueStatus = Literal["pending", "processing", "completed", "failed"]

DEFAULT_STORAGE_BUCKET = "email-content"


@dataclass(slots=True)
class QueueItem:
    id: str
    message_id: str
    tenant_id: str | None
    status: QueueStatus
    attempts: int
    queued_at: datetime
    storage_bucket: str | None = None
    storage_path: str | None = None
    payload_url: str | None = None
    processing_started_at: datetime | None = None
    processed_at: datetime | None = None
    last_error: str | None = None

    def blob_location(self, default_bucket: str = DEFAULT_STORAGE_BUCKET) -> tuple[str, str | None]:
        return (self.storage_bucket or default_bucket, self.storage_path or self.payload_url)
