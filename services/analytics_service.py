"""
Read-only reporting over the unlock ledger.

Every figure is derived from the audit timestamps on the Unlock rows rather
than from the current status alone, so an offer that was accepted and then
expired still counts as accepted:

- teased: teaser_sent_at is set
- accepted: y_received_at is set
- paid: paid through checkout (paid_at and checkout_session_id are set)
- free reveal: REVEALED without a checkout session (the first free lead)

Revenue is paid unlocks times the configured unlock price.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from domain.unlock import Unlock, UnlockStatus
from repositories.lead_repository import list_public_views
from repositories.provider_repository import list_providers
from repositories.unlock_repository import list_unlocks
from services.context import BrokerContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProviderPerformance:
    provider_id: str
    name: str
    teasers_sent: int
    accepted: int
    paid: int
    expired: int
    free_reveals: int
    acceptance_rate: float
    payment_rate: float
    revenue_cents: int
    last_teaser_sent_at: Optional[datetime]


@dataclass(frozen=True, slots=True)
class ProviderAnalytics:
    providers: List[ProviderPerformance]
    total_providers: int
    active_providers: int
    top_performer: Optional[str]
    total_revenue_cents: int


@dataclass(frozen=True, slots=True)
class ConversionFunnel:
    total_leads: int
    sent_to_providers: int
    accepted_by_providers: int
    paid_and_unlocked: int
    lead_to_teaser_rate: float
    teaser_to_acceptance_rate: float
    acceptance_to_payment_rate: float


@dataclass(frozen=True, slots=True)
class DailyActivity:
    day: date
    teasers_sent: int
    accepted: int
    paid: int
    revenue_cents: int


def _teased(unlock: Unlock) -> bool:
    return unlock.teaser_sent_at is not None


def _accepted(unlock: Unlock) -> bool:
    return unlock.y_received_at is not None


def _paid(unlock: Unlock) -> bool:
    return unlock.paid_at is not None and unlock.checkout_session_id is not None


def _free_reveal(unlock: Unlock) -> bool:
    return unlock.status == UnlockStatus.REVEALED and unlock.checkout_session_id is None


def _rate(part: int, whole: int) -> float:
    """Percentage rounded to two places; 0.0 when there is nothing to divide."""
    if whole <= 0:
        return 0.0
    return round(part * 100.0 / whole, 2)


def _count(unlocks: Iterable[Unlock], predicate) -> int:
    return sum(1 for unlock in unlocks if predicate(unlock))


def get_provider_analytics(ctx: BrokerContext) -> ProviderAnalytics:
    """
    Per-provider offer performance, best performers first.

    Providers are ranked by accepted offers, then by teasers sent. Providers
    that never got an offer are listed with zeros.
    """

    price = ctx.settings.unlock_price_cents
    by_provider: Dict[str, List[Unlock]] = defaultdict(list)
    for unlock in list_unlocks(ctx.db):
        by_provider[unlock.provider_id].append(unlock)

    rows: List[ProviderPerformance] = []
    for provider in list_providers(ctx.db):
        unlocks = by_provider.get(provider.provider_id, [])
        teased = _count(unlocks, _teased)
        accepted = _count(unlocks, _accepted)
        paid = _count(unlocks, _paid)
        teaser_times = [u.teaser_sent_at for u in unlocks if u.teaser_sent_at is not None]
        rows.append(
            ProviderPerformance(
                provider_id=provider.provider_id,
                name=provider.name,
                teasers_sent=teased,
                accepted=accepted,
                paid=paid,
                expired=_count(unlocks, lambda u: u.status == UnlockStatus.EXPIRED),
                free_reveals=_count(unlocks, _free_reveal),
                acceptance_rate=_rate(accepted, teased),
                payment_rate=_rate(paid, accepted),
                revenue_cents=paid * price,
                last_teaser_sent_at=max(teaser_times) if teaser_times else None,
            )
        )

    rows.sort(key=lambda row: (-row.accepted, -row.teasers_sent, row.provider_id))
    active = [row for row in rows if row.teasers_sent or row.free_reveals]
    return ProviderAnalytics(
        providers=rows,
        total_providers=len(rows),
        active_providers=len(active),
        top_performer=active[0].provider_id if active else None,
        total_revenue_cents=sum(row.revenue_cents for row in rows),
    )


def get_conversion_funnel(ctx: BrokerContext, *, days: Optional[int] = None) -> ConversionFunnel:
    """
    Lead-level funnel: stored -> offered -> accepted -> paid.

    A lead counts at a stage when at least one of its unlocks reached it.
    With `days`, only leads created in that many days before now are counted.
    """

    since = ctx.now() - timedelta(days=days) if days is not None else None
    lead_ids = {view.lead_id for view in list_public_views(ctx.db, created_since=since)}
    by_lead: Dict[UUID, List[Unlock]] = defaultdict(list)
    for unlock in list_unlocks(ctx.db, created_since=since):
        if unlock.lead_id in lead_ids:
            by_lead[unlock.lead_id].append(unlock)

    def leads_where(predicate) -> int:
        return sum(1 for unlocks in by_lead.values() if any(predicate(u) for u in unlocks))

    sent = leads_where(lambda u: _teased(u) or _free_reveal(u))
    accepted = leads_where(_accepted)
    paid = leads_where(_paid)
    return ConversionFunnel(
        total_leads=len(lead_ids),
        sent_to_providers=sent,
        accepted_by_providers=accepted,
        paid_and_unlocked=paid,
        lead_to_teaser_rate=_rate(sent, len(lead_ids)),
        teaser_to_acceptance_rate=_rate(accepted, sent),
        acceptance_to_payment_rate=_rate(paid, accepted),
    )


def get_recent_activity(ctx: BrokerContext, *, days: int = 7) -> List[DailyActivity]:
    """
    Offers created in the last `days` days, grouped by UTC day, newest first.

    Days without any offer are omitted.
    """

    price = ctx.settings.unlock_price_cents
    by_day: Dict[date, List[Unlock]] = defaultdict(list)
    for unlock in list_unlocks(ctx.db, created_since=ctx.now() - timedelta(days=days)):
        by_day[unlock.created_at.date()].append(unlock)

    activity = []
    for day in sorted(by_day, reverse=True):
        unlocks = by_day[day]
        paid = _count(unlocks, _paid)
        activity.append(
            DailyActivity(
                day=day,
                teasers_sent=_count(unlocks, _teased),
                accepted=_count(unlocks, _accepted),
                paid=paid,
                revenue_cents=paid * price,
            )
        )
    logger.debug("Recent activity computed", extra={"days": days, "active_days": len(activity)})
    return activity


__all__ = [
    "ProviderPerformance",
    "ProviderAnalytics",
    "ConversionFunnel",
    "DailyActivity",
    "get_provider_analytics",
    "get_conversion_funnel",
    "get_recent_activity",
]
