from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from loadhunter.schemas.loads import ParsedLoad

logger = logging.getLogger(__name__)

DEFAULT_GRACE = timedelta(minutes=30)


def apply_expiration_policy(
    load: ParsedLoad,
    *,
    now: datetime | None = None,
    grace: timedelta = DEFAULT_GRACE,
) -> list[str]:
    """Guarantee a live posting window; returns the rules that fired.

    posted_missing: posted_at defaults to now.
    expires_missing / expires_before_posted: expires_at becomes posted_at + grace.
    expired_on_arrival: an expires_at already in the past becomes now + grace.
    """
    now = now or datetime.now(timezone.utc)
    applied: list[str] = []

    if load.posted_at is None:
        load.posted_at = now
        applied.append("posted_missing")

    if load.expires_at is None:
        load.expires_at = load.posted_at + grace
        applied.append("expires_missing")
    elif load.expires_at <= load.posted_at:
        load.expires_at = load.posted_at + grace
        applied.append("expires_before_posted")

    if load.expires_at < now:
        load.expires_at = now + grace
        applied.append("expired_on_arrival")

    if applied:
        logger.debug("expiration corrected rules=%s expires_at=%s", ",".join(applied), load.expires_at.isoformat())
    return applied
