"""
Operations API Endpoints.

Manual triggers for the periodic sweeps, the failed-reveal retry, the
missed-lead recovery and the scheduled dispatch summary. Every route requires the X-Webhook-Secret header
when WEBHOOK_SECRET is set.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_context, verify_webhook_secret
from api.errors import http_error_for
from api.models import (
    DispatchSweepResponse,
    ExpirySweepResponse,
    MissedLeadRecoveryResponse,
    MissedLeadResponse,
    MissedLeadsResponse,
    RetentionSweepResponse,
    RevealRetryResponse,
    ScheduleSummaryResponse,
)
from services.context import BrokerContext
from services.lead_service import (
    MISSED_LEAD_LOOKBACK_HOURS,
    dispatch_scheduled,
    find_missed_leads,
    recover_missed_leads,
)
from services.payment_service import retry_reveal
from services.scheduler_service import get_schedule_summary, run_due_dispatches
from services.unlock_service import run_expiry_sweep, run_retention_sweep

router = APIRouter(dependencies=[Depends(verify_webhook_secret)])


@router.post("/operations/expiry-sweep", response_model=ExpirySweepResponse, summary="Run Expiry Sweep")
def trigger_expiry_sweep(ctx: BrokerContext = Depends(get_context)):
    """Expire unlocks past their TTL and close expired leads."""
    try:
        result = run_expiry_sweep(ctx)
    except Exception as e:
        raise http_error_for(e)
    return ExpirySweepResponse(
        expired_unlocks=result.expired_unlocks,
        closed_leads=result.closed_leads,
        skipped=result.skipped,
        failures=result.failures,
    )


@router.post("/operations/dispatch-sweep", response_model=DispatchSweepResponse, summary="Run Dispatch Sweep")
def trigger_dispatch_sweep(ctx: BrokerContext = Depends(get_context)):
    """Send every deferred teaser whose time has come."""
    try:
        result = run_due_dispatches(ctx, dispatch_scheduled)
    except Exception as e:
        raise http_error_for(e)
    return DispatchSweepResponse(processed=result.processed, failed=result.failed, skipped=result.skipped)


@router.post(
    "/operations/retention-sweep",
    response_model=RetentionSweepResponse,
    summary="Run Retention Sweep",
)
def trigger_retention_sweep(
    older_than_days: Optional[int] = Query(None, ge=1, description="Defaults to RETENTION_DAYS (30)"),
    ctx: BrokerContext = Depends(get_context),
):
    """Delete EXPIRED and REVEALED unlocks older than the cutoff."""
    days = older_than_days if older_than_days is not None else ctx.settings.retention_days
    try:
        deleted = run_retention_sweep(ctx, days)
    except Exception as e:
        raise http_error_for(e)
    return RetentionSweepResponse(deleted_unlocks=deleted, older_than_days=days)


@router.post(
    "/operations/reveals/{session_id}/retry",
    response_model=RevealRetryResponse,
    summary="Retry Reveal",
)
def trigger_reveal_retry(session_id: str, ctx: BrokerContext = Depends(get_context)):
    """Re-send lead details for a paid unlock whose reveal SMS failed."""
    try:
        outcome = retry_reveal(ctx, session_id)
    except Exception as e:
        raise http_error_for(e)
    return RevealRetryResponse(checkout_session_id=session_id, outcome=outcome.value)


@router.get("/operations/schedule", response_model=ScheduleSummaryResponse, summary="Scheduled Dispatch Summary")
def schedule_summary(ctx: BrokerContext = Depends(get_context)):
    try:
        summary = get_schedule_summary(ctx.db)
    except Exception as e:
        raise http_error_for(e)
    return ScheduleSummaryResponse(**summary)


@router.get("/operations/missed-leads", response_model=MissedLeadsResponse, summary="List Missed Leads")
def list_missed_leads(
    hours: int = Query(MISSED_LEAD_LOOKBACK_HOURS, ge=1, le=24 * 30),
    ctx: BrokerContext = Depends(get_context),
):
    """Open leads from the last `hours` hours that were never offered to any provider."""
    try:
        missed = find_missed_leads(ctx, hours=hours)
    except Exception as e:
        raise http_error_for(e)
    return MissedLeadsResponse(
        hours=hours,
        count=len(missed),
        leads=[
            MissedLeadResponse(
                lead_id=view.lead_id,
                city=view.city,
                service_type=view.service_type,
                created_at=view.created_at,
                expires_at=view.expires_at,
            )
            for view in missed
        ],
    )


@router.post(
    "/operations/missed-leads/recover",
    response_model=MissedLeadRecoveryResponse,
    summary="Recover Missed Leads",
)
def trigger_missed_lead_recovery(
    hours: int = Query(MISSED_LEAD_LOOKBACK_HOURS, ge=1, le=24 * 30),
    ctx: BrokerContext = Depends(get_context),
):
    """Process every missed lead as if it had just arrived."""
    try:
        result = recover_missed_leads(ctx, hours=hours)
    except Exception as e:
        raise http_error_for(e)
    return MissedLeadRecoveryResponse(
        hours=hours,
        found=result.found,
        processed=result.processed,
        failed=result.failed,
        lead_ids=list(result.lead_ids),
    )
