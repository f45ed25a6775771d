"""
Provider API Endpoints.

Operator view of the offers made to one provider. Requires the
X-Webhook-Secret header when WEBHOOK_SECRET is set; client contact details
never appear here.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_context, verify_webhook_secret
from api.errors import http_error_for
from api.models import ProviderUnlockResponse, ProviderUnlocksResponse
from domain.provider import normalize_provider_id
from domain.unlock import UnlockStatus
from repositories.lead_repository import get_public_views
from repositories.unlock_repository import list_unlocks_for_provider
from services.context import BrokerContext

router = APIRouter(dependencies=[Depends(verify_webhook_secret)])


@router.get(
    "/providers/{provider_id}/unlocks",
    response_model=ProviderUnlocksResponse,
    summary="List Provider Unlocks",
    description="A provider's offers, newest first, with the public lead fields.",
)
def get_provider_unlocks(
    provider_id: str,
    status: Optional[UnlockStatus] = Query(None, description="Only unlocks in this status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    ctx: BrokerContext = Depends(get_context),
):
    try:
        provider_id = normalize_provider_id(provider_id)
        unlocks = list_unlocks_for_provider(
            ctx.db, provider_id, status=status, limit=limit, offset=offset
        )
        leads = get_public_views(ctx.db, [unlock.lead_id for unlock in unlocks])
    except Exception as e:
        raise http_error_for(e)
    return ProviderUnlocksResponse(
        provider_id=provider_id,
        limit=limit,
        offset=offset,
        unlocks=[ProviderUnlockResponse.from_unlock(u, leads.get(u.lead_id)) for u in unlocks],
    )
