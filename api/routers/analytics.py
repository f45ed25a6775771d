"""
Analytics API Endpoints.

Operator reports over the unlock ledger: provider performance, the lead
conversion funnel and daily activity. Every route requires the
X-Webhook-Secret header when WEBHOOK_SECRET is set.
"""

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_context, verify_webhook_secret
from api.errors import http_error_for
from api.models import (
    ConversionFunnelResponse,
    DailyActivityResponse,
    ProviderAnalyticsResponse,
    ProviderPerformanceResponse,
    RecentActivityResponse,
)
from services.analytics_service import (
    get_conversion_funnel,
    get_provider_analytics,
    get_recent_activity,
)
from services.context import BrokerContext

router = APIRouter(dependencies=[Depends(verify_webhook_secret)])


@router.get("/analytics/providers", response_model=ProviderAnalyticsResponse, summary="Provider Performance")
def provider_performance(ctx: BrokerContext = Depends(get_context)):
    """Teasers, acceptances, payments and revenue per provider, best first."""
    try:
        report = get_provider_analytics(ctx)
    except Exception as e:
        raise http_error_for(e)
    return ProviderAnalyticsResponse(
        providers=[ProviderPerformanceResponse(**asdict(row)) for row in report.providers],
        total_providers=report.total_providers,
        active_providers=report.active_providers,
        top_performer=report.top_performer,
        total_revenue_cents=report.total_revenue_cents,
    )


@router.get(
    "/analytics/conversion-funnel",
    response_model=ConversionFunnelResponse,
    summary="Lead Conversion Funnel",
)
def conversion_funnel(
    days: Optional[int] = Query(None, ge=1, description="Only leads from the last N days"),
    ctx: BrokerContext = Depends(get_context),
):
    try:
        funnel = get_conversion_funnel(ctx, days=days)
    except Exception as e:
        raise http_error_for(e)
    return ConversionFunnelResponse(days=days, **asdict(funnel))


@router.get(
    "/analytics/recent-activity",
    response_model=RecentActivityResponse,
    summary="Recent Daily Activity",
)
def recent_activity(
    days: int = Query(7, ge=1, le=365),
    ctx: BrokerContext = Depends(get_context),
):
    try:
        activity = get_recent_activity(ctx, days=days)
    except Exception as e:
        raise http_error_for(e)
    return RecentActivityResponse(
        days=days,
        activity=[DailyActivityResponse(**asdict(row)) for row in activity],
    )
