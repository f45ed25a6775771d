"""
Lead intake and dispatch.

Flow for a new lead:
1. ingest_lead(): validated intake -> Lead Store (idempotent; a redelivered
   submission is reported as not created and is not offered again).
2. process_new_lead(): quality gate, candidate providers, ranking.
3. dispatch_to_provider() for each match, isolated from the others:
   - skip missing / opted-out providers, missing / closed leads and
     rate-limited providers;
   - create (or refresh) the Unlock;
   - outside the active window, defer via the scheduler;
   - a provider's first lead is free and revealed at once;
   - otherwise win NEW_LEAD -> TEASER_SENT, then send the teaser.

recover_missed_leads() re-runs step 2 for stored leads that never got an
unlock, e.g. because the process stopped between intake and processing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import List, Optional, Tuple
from uuid import UUID

from domain.audit import AuditEvent
from domain.errors import ConflictError, NotFoundError, UpstreamError
from domain.lead import Lead, LeadIntake, LeadPublicView
from domain.provider import normalize_provider_id
from domain.schedule import is_within_active_window
from domain.unlock import UnlockAudit, UnlockStatus
from repositories.lead_repository import create_lead, get_public_view, list_public_views
from repositories.provider_repository import (
    SEND_KIND_TEASER,
    claim_first_lead,
    find_matching_providers,
    get_provider_by_id,
    record_send,
)
from repositories.unlock_repository import create_unlock, find_leads_with_unlocks, update_status
from services import notification_service
from services.context import BrokerContext
from services.payment_service import send_reveal
from services.scheduler_service import schedule_dispatch
from services.unlock_service import audit, is_rate_limited

logger = logging.getLogger(__name__)

# Leads older than this are left alone by the recovery sweep.
MISSED_LEAD_LOOKBACK_HOURS: int = 48


class DispatchOutcome(str, Enum):
    TEASER_SENT = "TEASER_SENT"
    FREE_REVEAL = "FREE_REVEAL"
    DEFERRED = "DEFERRED"
    SEND_FAILED = "SEND_FAILED"
    ALREADY_OFFERED = "ALREADY_OFFERED"
    RATE_LIMITED = "RATE_LIMITED"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    LEAD_UNAVAILABLE = "LEAD_UNAVAILABLE"
    FAILED = "FAILED"


@dataclass(frozen=True, slots=True)
class DispatchResult:
    provider_id: str
    outcome: DispatchOutcome
    detail: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.outcome in (DispatchOutcome.SEND_FAILED, DispatchOutcome.FAILED)


@dataclass(frozen=True, slots=True)
class RecoveryResult:
    found: int
    processed: int
    failed: int
    lead_ids: Tuple[UUID, ...] = ()


def ingest_lead(ctx: BrokerContext, intake: LeadIntake) -> Tuple[Lead, bool]:
    """Store a lead; the flag is False when the submission was already stored."""

    lead, created = create_lead(
        ctx.db, intake, now=ctx.now(), ttl_hours=ctx.settings.lead_ttl_hours
    )
    if not created:
        logger.info("Duplicate lead submission ignored", extra={"lead_id": str(lead.lead_id)})
        return lead, False
    logger.info(
        "Lead stored",
        extra={"lead_id": str(lead.lead_id), "city": lead.city, "service_type": lead.service_type},
    )
    return lead, True


def process_new_lead(
    ctx: BrokerContext, lead_id: UUID, *, provider_id: Optional[str] = None
) -> List[DispatchResult]:
    """
    Offer a lead to its matching providers.

    A forced provider id (direct links, testing) bypasses ranking.

    Raises:
        NotFoundError: the lead does not exist.
    """

    lead = get_public_view(ctx.db, lead_id)
    if lead is None:
        raise NotFoundError(f"Lead not found: {lead_id}")

    if provider_id is not None:
        targets = [normalize_provider_id(provider_id)]
    else:
        try:
            score = ctx.intelligence.score_lead(lead)
        except UpstreamError as exc:
            logger.warning("Lead scoring unavailable; processing anyway", extra={"error": str(exc)})
        else:
            if not score.should_process:
                logger.info(
                    "Lead failed quality gate",
                    extra={"lead_id": str(lead_id), "red_flags": score.red_flags},
                )
                return []

        providers = find_matching_providers(ctx.db)
        try:
            matches = ctx.intelligence.match_providers(lead, providers)
        except UpstreamError as exc:
            logger.error("Provider matching failed", extra={"lead_id": str(lead_id), "error": str(exc)})
            return []
        targets = [match.provider_id for match in matches]

    logger.info("Dispatching lead", extra={"lead_id": str(lead_id), "providers": len(targets)})

    results: List[DispatchResult] = []
    for target in targets:
        try:
            results.append(dispatch_to_provider(ctx, lead_id, target))
        except Exception as exc:
            logger.exception(
                "Dispatch to provider failed",
                extra={"lead_id": str(lead_id), "provider_id": target},
            )
            results.append(DispatchResult(target, DispatchOutcome.FAILED, str(exc)))
    return results


def _free_reveal(ctx: BrokerContext, lead_id: UUID, provider_id: str) -> DispatchResult:
    now = ctx.now()
    try:
        update_status(
            ctx.db,
            lead_id,
            provider_id,
            UnlockStatus.REVEALED,
            UnlockAudit(paid_at=now, unlocked_at=now, revealed_at=now),
            now=now,
            strict=True,
        )
    except ConflictError:
        return DispatchResult(provider_id, DispatchOutcome.ALREADY_OFFERED)

    audit(ctx, AuditEvent.FIRST_LEAD_FREE, lead_id=lead_id, provider_id=provider_id)
    if not send_reveal(ctx, lead_id, provider_id):
        audit(
            ctx,
            AuditEvent.REVEAL_FAILED,
            lead_id=lead_id,
            provider_id=provider_id,
            notes="free first lead reveal not delivered",
        )
        return DispatchResult(provider_id, DispatchOutcome.SEND_FAILED, "free reveal not delivered")

    logger.info("First lead revealed for free", extra={"lead_id": str(lead_id), "provider_id": provider_id})
    return DispatchResult(provider_id, DispatchOutcome.FREE_REVEAL)


def dispatch_to_provider(
    ctx: BrokerContext, lead_id: UUID, provider_id: str, *, deferred: bool = False
) -> DispatchResult:
    """
    Offer one lead to one provider.

    `deferred=True` marks a run from the scheduler, which never defers again.
    """

    provider_id = normalize_provider_id(provider_id)
    provider = get_provider_by_id(ctx.db, provider_id)
    if provider is None or not provider.can_receive_leads():
        return DispatchResult(provider_id, DispatchOutcome.PROVIDER_UNAVAILABLE)

    now = ctx.now()
    lead = get_public_view(ctx.db, lead_id)
    if lead is None or lead.is_closed or lead.expires_at < now:
        return DispatchResult(provider_id, DispatchOutcome.LEAD_UNAVAILABLE)

    if is_rate_limited(ctx, provider_id):
        logger.info("Provider rate limited; skipping", extra={"lead_id": str(lead_id), "provider_id": provider_id})
        return DispatchResult(provider_id, DispatchOutcome.RATE_LIMITED)

    unlock = create_unlock(
        ctx.db, lead_id, provider_id, now=now, ttl_hours=ctx.settings.unlock_ttl_hours
    )
    if unlock.status != UnlockStatus.NEW_LEAD:
        return DispatchResult(provider_id, DispatchOutcome.ALREADY_OFFERED, unlock.status.value)

    if not deferred and not is_within_active_window(now, ctx.settings.active_window):
        schedule_dispatch(ctx, lead_id, provider_id)
        return DispatchResult(provider_id, DispatchOutcome.DEFERRED)

    if not provider.first_lead_used and claim_first_lead(ctx.db, provider_id, now=now):
        return _free_reveal(ctx, lead_id, provider_id)

    try:
        update_status(
            ctx.db,
            lead_id,
            provider_id,
            UnlockStatus.TEASER_SENT,
            UnlockAudit(teaser_sent_at=now, last_sent_at=now),
            now=now,
            strict=True,
        )
    except ConflictError:
        return DispatchResult(provider_id, DispatchOutcome.ALREADY_OFFERED)

    text = notification_service.render_teaser(lead, price=ctx.settings.unlock_price_display)
    if not notification_service.send(ctx, provider.phone, text, kind="teaser"):
        audit(ctx, AuditEvent.SEND_FAILED, lead_id=lead_id, provider_id=provider_id, notes="teaser")
        return DispatchResult(provider_id, DispatchOutcome.SEND_FAILED)

    record_send(ctx.db, provider_id, lead_id, SEND_KIND_TEASER, sent_at=now)
    logger.info("Teaser sent", extra={"lead_id": str(lead_id), "provider_id": provider_id})
    return DispatchResult(provider_id, DispatchOutcome.TEASER_SENT)


def find_missed_leads(
    ctx: BrokerContext, *, hours: int = MISSED_LEAD_LOOKBACK_HOURS
) -> List[LeadPublicView]:
    """Open, unexpired leads from the last `hours` hours that never got an unlock."""

    now = ctx.now()
    views = list_public_views(ctx.db, created_since=now - timedelta(hours=hours))
    candidates = [view for view in views if not view.is_closed and view.expires_at > now]
    offered = find_leads_with_unlocks(ctx.db, [view.lead_id for view in candidates])
    return [view for view in candidates if view.lead_id not in offered]


def recover_missed_leads(
    ctx: BrokerContext, *, hours: int = MISSED_LEAD_LOOKBACK_HOURS
) -> RecoveryResult:
    """
    Run the normal processing again for leads that were stored but never offered
    (a crash or restart between intake and background processing).

    Each lead is isolated; the active window still applies, so a recovered
    lead may be deferred rather than teased.
    """

    missed = find_missed_leads(ctx, hours=hours)
    processed = failed = 0
    for view in missed:
        try:
            process_new_lead(ctx, view.lead_id)
        except Exception:
            logger.exception("Missed lead recovery failed", extra={"lead_id": str(view.lead_id)})
            failed += 1
            continue
        processed += 1

    if missed:
        logger.info(
            "Missed leads recovered",
            extra={"found": len(missed), "processed": processed, "failed": failed},
        )
    return RecoveryResult(
        found=len(missed),
        processed=processed,
        failed=failed,
        lead_ids=tuple(view.lead_id for view in missed),
    )


def dispatch_scheduled(ctx: BrokerContext, lead_id: UUID, provider_id: str) -> DispatchResult:
    """Dispatch callable for the scheduler sweep."""

    return dispatch_to_provider(ctx, lead_id, provider_id, deferred=True)


__all__ = [
    "DispatchOutcome",
    "DispatchResult",
    "RecoveryResult",
    "MISSED_LEAD_LOOKBACK_HOURS",
    "ingest_lead",
    "process_new_lead",
    "dispatch_to_provider",
    "dispatch_scheduled",
    "find_missed_leads",
    "recover_missed_leads",
]
