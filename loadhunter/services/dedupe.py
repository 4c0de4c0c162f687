from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from loadhunter.schemas.loads import LoadRef, LoadStatus

DEFAULT_DUPLICATE_WINDOW = timedelta(hours=168)
DEFAULT_UPDATE_WINDOW = timedelta(hours=48)


@dataclass(slots=True)
class DedupDecision:
    status: LoadStatus
    is_duplicate: bool
    duplicate_of_id: str | None
    is_update: bool
    parent_email_id: str | None


def window_start(received_at: datetime, window: timedelta) -> datetime:
    return received_at - window


def classify(original: LoadRef | None, update_parent: LoadRef | None) -> DedupDecision:
    """Resolve the load status from the two history lookups.

    A strict fingerprint match wins; the looser content-hash match only marks
    an update when the load is not already a duplicate.
    """
    if original is not None:
        return DedupDecision(
            status="duplicate",
            is_duplicate=True,
            duplicate_of_id=original.id,
            is_update=False,
            parent_email_id=None,
        )
    if update_parent is not None:
        return DedupDecision(
            status="update",
            is_duplicate=False,
            duplicate_of_id=None,
            is_update=True,
            parent_email_id=update_parent.id,
        )
    return DedupDecision(status="new", is_duplicate=False, duplicate_of_id=None, is_update=False, parent_email_id=None)
