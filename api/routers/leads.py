"""
Lead API Endpoints.

Read-only public views of leads. Client contact details are never exposed
here; they only travel by SMS to a provider whose unlock is paid.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_context
from api.errors import http_error_for
from api.models import LeadPublicResponse, UnlockStatsResponse
from repositories.lead_repository import get_public_view
from repositories.unlock_repository import get_unlock_stats
from services.context import BrokerContext

router = APIRouter()


@router.get(
    "/leads/{lead_id}",
    response_model=LeadPublicResponse,
    summary="Get Lead",
    description="Public (PII-free) projection of a lead.",
)
def get_lead(lead_id: UUID, ctx: BrokerContext = Depends(get_context)):
    try:
        view = get_public_view(ctx.db, lead_id)
    except Exception as e:
        raise http_error_for(e)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Lead not found: {lead_id}")
    return LeadPublicResponse.from_view(view)


@router.get(
    "/leads/{lead_id}/stats",
    response_model=UnlockStatsResponse,
    summary="Get Unlock Stats",
    description="Number of unlocks per status for a lead.",
)
def get_lead_stats(lead_id: UUID, ctx: BrokerContext = Depends(get_context)):
    try:
        stats = get_unlock_stats(ctx.db, lead_id)
    except Exception as e:
        raise http_error_for(e)
    return UnlockStatsResponse(lead_id=lead_id, stats=stats, total=sum(stats.values()))
