"""
Unlock lifecycle driver.

Thin service layer over repositories/unlock_repository.py:
- transition(): the single entry point for status changes from services;
  illegal transitions are logged, audited and turned into a no-op.
- audit(): best-effort audit log writes.
- Rate limiting of teaser dispatch per provider.
- Expiry and retention sweeps with per-item failure isolation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from uuid import UUID

from domain.audit import AuditEntry, AuditEvent
from domain.errors import BrokerError, ConflictError
from domain.unlock import Unlock, UnlockAudit, UnlockStatus
from repositories.audit_repository import record_audit
from repositories.lead_repository import close_lead, find_expired_leads
from repositories.provider_repository import count_recent_sends
from repositories.unlock_repository import (
    find_expired_unlocks,
    purge_terminal_unlocks,
    update_status,
)
from services.context import BrokerContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExpirySweepResult:
    expired_unlocks: int
    closed_leads: int
    skipped: int
    failures: int


def audit(
    ctx: BrokerContext,
    event: AuditEvent,
    *,
    lead_id: Optional[UUID] = None,
    provider_id: Optional[str] = None,
    checkout_session_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> None:
    """Append an audit entry. A failed audit write is logged and never aborts the caller."""

    entry = AuditEntry(
        event_type=event,
        created_at=ctx.now(),
        lead_id=lead_id,
        provider_id=provider_id,
        checkout_session_id=checkout_session_id,
        notes=notes,
    )
    try:
        record_audit(ctx.db, entry)
    except BrokerError:
        logger.exception(
            "Failed to write audit entry",
            extra={"event_type": event.value, "lead_id": str(lead_id), "provider_id": provider_id},
        )


def transition(
    ctx: BrokerContext,
    lead_id: UUID,
    provider_id: str,
    target: UnlockStatus,
    changes: Optional[UnlockAudit] = None,
    *,
    strict: bool = False,
) -> Optional[Unlock]:
    """
    Move an unlock to `target`.

    Returns:
        The updated Unlock, or None when the transition is illegal from the
        stored status (or, with strict=True, when another caller already made
        it).

    Raises:
        NotFoundError: no unlock exists for the pair.
        StorageError: the store failed.
    """

    try:
        return update_status(
            ctx.db, lead_id, provider_id, target, changes, now=ctx.now(), strict=strict
        )
    except ConflictError as exc:
        logger.warning(
            "Rejected unlock transition",
            extra={
                "lead_id": str(lead_id),
                "provider_id": provider_id,
                "target_status": target.value,
                "reason": str(exc),
            },
        )
        audit(
            ctx,
            AuditEvent.ILLEGAL_TRANSITION,
            lead_id=lead_id,
            provider_id=provider_id,
            notes=str(exc),
        )
        return None


def is_rate_limited(ctx: BrokerContext, provider_id: str) -> bool:
    """True when the provider already got the maximum number of sends in the window."""

    window = timedelta(minutes=ctx.settings.rate_limit_window_minutes)
    sent = count_recent_sends(ctx.db, provider_id, since=ctx.now() - window)
    return sent >= ctx.settings.rate_limit_max_sends


def run_expiry_sweep(ctx: BrokerContext) -> ExpirySweepResult:
    """
    Expire every offered-but-unpaid unlock whose TTL has passed, then close
    every lead past its own expiry.

    A failure on one item is logged and counted; the sweep continues.
    """

    now = ctx.now()
    expired = closed = skipped = failures = 0

    for unlock in find_expired_unlocks(ctx.db, now=now):
        try:
            update_status(
                ctx.db,
                unlock.lead_id,
                unlock.provider_id,
                UnlockStatus.EXPIRED,
                now=now,
                strict=True,
            )
            expired += 1
        except ConflictError:
            # Moved on (paid, declined) since it was read.
            skipped += 1
        except Exception:
            failures += 1
            logger.exception(
                "Failed to expire unlock",
                extra={"lead_id": str(unlock.lead_id), "provider_id": unlock.provider_id},
            )

    for lead in find_expired_leads(ctx.db, now=now):
        try:
            if close_lead(ctx.db, lead.lead_id, now=now):
                closed += 1
        except Exception:
            failures += 1
            logger.exception("Failed to close expired lead", extra={"lead_id": str(lead.lead_id)})

    result = ExpirySweepResult(
        expired_unlocks=expired, closed_leads=closed, skipped=skipped, failures=failures
    )
    logger.info(
        "Expiry sweep finished",
        extra={
            "expired_unlocks": expired,
            "closed_leads": closed,
            "skipped": skipped,
            "failures": failures,
        },
    )
    return result


def run_retention_sweep(ctx: BrokerContext, older_than_days: Optional[int] = None) -> int:
    """Delete EXPIRED and REVEALED unlocks not touched for `older_than_days` (default 30)."""

    days = ctx.settings.retention_days if older_than_days is None else older_than_days
    deleted = purge_terminal_unlocks(ctx.db, older_than=ctx.now() - timedelta(days=days))
    logger.info("Retention sweep finished", extra={"deleted_unlocks": deleted, "older_than_days": days})
    return deleted


__all__ = [
    "ExpirySweepResult",
    "audit",
    "transition",
    "is_rate_limited",
    "run_expiry_sweep",
    "run_retention_sweep",
]
