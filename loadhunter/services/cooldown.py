from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from loadhunter.schemas.hunts import GateDecision, HuntPlan
from loadhunter.services.repository import RepositoryError

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 60


def cooldown_allows(received_at: datetime, last_received_at: datetime | None, cooldown_seconds: int) -> bool:
    """A repeat action is allowed once ``cooldown_seconds`` have elapsed (inclusive)."""
    if last_received_at is None:
        return True
    return received_at >= last_received_at + timedelta(seconds=cooldown_seconds)


def resolve_cooldown(
    hunt: HuntPlan,
    tenant_default: int | None,
    default: int = DEFAULT_COOLDOWN_SECONDS,
) -> int:
    if hunt.cooldown_seconds_min is not None:
        return int(hunt.cooldown_seconds_min)
    if tenant_default is not None:
        return int(tenant_default)
    return default


class CooldownGate:
    """Fail-closed per (tenant, hunt, fingerprint) cooldown check.

    Any missing input or datastore failure suppresses the action rather than
    risking a duplicate notification.
    """

    def __init__(self, repository: Any, *, default_cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS) -> None:
        self.repository = repository
        self.default_cooldown_seconds = default_cooldown_seconds

    async def check(
        self,
        *,
        tenant_id: str | None,
        hunt: HuntPlan,
        fingerprint: str | None,
        received_at: datetime | None,
        load_email_id: str,
    ) -> GateDecision:
        missing = tuple(
            name
            for name, value in (
                ("fingerprint", fingerprint.strip() if fingerprint else None),
                ("received_at", received_at),
                ("tenant_id", tenant_id),
            )
            if not value
        )
        if missing or tenant_id is None or fingerprint is None or received_at is None:
            logger.info(
                "hunt cooldown suppressed_missing_gate_data tenant=%s hunt=%s load_email_id=%s missing=%s",
                tenant_id,
                hunt.id,
                load_email_id,
                "|".join(missing),
            )
            return GateDecision(allowed=False, reason="suppressed_missing_gate_data", missing=missing)

        try:
            tenant_default = None
            if hunt.cooldown_seconds_min is None:
                tenant_default = await self.repository.get_tenant_cooldown_seconds(tenant_id)
            cooldown = resolve_cooldown(hunt, tenant_default, self.default_cooldown_seconds)
            allowed = await self.repository.should_trigger_hunt_for_fingerprint(
                tenant_id=tenant_id,
                hunt_plan_id=hunt.id,
                fingerprint=fingerprint,
                received_at=received_at,
                cooldown_seconds=cooldown,
                last_load_email_id=load_email_id,
            )
        except RepositoryError as exc:
            logger.error("hunt cooldown gate error, suppressing tenant=%s hunt=%s error=%s", tenant_id, hunt.id, exc)
            return GateDecision(allowed=False, reason="suppressed_gate_error")

        outcome = "allowed" if allowed else "suppressed"
        logger.info(
            "hunt cooldown %s tenant=%s hunt=%s fp=%s received_at=%s cooldown=%ss",
            outcome,
            tenant_id,
            hunt.id,
            fingerprint[:8],
            received_at.isoformat(),
            cooldown,
        )
        if not allowed:
            return GateDecision(allowed=False, reason="suppressed_cooldown", cooldown_seconds=cooldown)
        return GateDecision(allowed=True, reason="allowed", cooldown_seconds=cooldown)
