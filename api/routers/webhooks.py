"""
Webhook Endpoints.

Inbound traffic from the form builder (new leads), the SMS gateway (provider
replies) and Stripe (payment events). All three are delivered at least once;
the services they call are idempotent.
"""

import json
import logging
from typing import Any, Mapping
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from api.dependencies import get_context, verify_webhook_secret
from api.errors import http_error_for
from api.models import (
    InboundSmsResponse,
    LeadIntakeResponse,
    PaymentWebhookResponse,
)
from api.payloads import parse_intake, parse_sms
from domain.errors import ValidationError
from services.context import BrokerContext
from services.lead_service import ingest_lead, process_new_lead
from services.payment_service import handle_payment_event
from services.reply_service import handle_inbound_message

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_payload(request: Request) -> Mapping[str, Any]:
    """JSON or form-encoded body as a mapping."""
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return dict(form)
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Body must be JSON or form-encoded")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be an object")
    return body


def _process_lead_in_background(ctx: BrokerContext, lead_id: UUID, provider_id) -> None:
    try:
        results = process_new_lead(ctx, lead_id, provider_id=provider_id)
    except Exception:
        logger.exception("Lead processing failed", extra={"lead_id": str(lead_id)})
        return
    logger.info(
        "Lead processing finished",
        extra={
            "lead_id": str(lead_id),
            "outcomes": [f"{r.provider_id}:{r.outcome.value}" for r in results],
        },
    )


@router.post(
    "/forms",
    response_model=LeadIntakeResponse,
    summary="Lead Intake Webhook",
    description="Receive a client request from the intake form and start offering it to providers.",
    dependencies=[Depends(verify_webhook_secret)],
)
async def receive_form_submission(
    request: Request,
    background_tasks: BackgroundTasks,
    ctx: BrokerContext = Depends(get_context),
):
    """
    Create a lead from a form submission.

    Accepts the flat, `form_data` and `data.fields` envelope shapes.
    Matching and teaser dispatch run after the response is sent. A repeated
    delivery of the same submission returns the same `lead_id` and is not
    offered to providers again.
    """
    payload = await _read_payload(request)
    try:
        submission = parse_intake(payload)
        intake = submission.to_intake()
    except PydanticValidationError as e:
        raise HTTPException(
            status_code=400,
            detail=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        lead, created = await run_in_threadpool(ingest_lead, ctx, intake)
    except Exception as e:
        raise http_error_for(e)

    provider_id = intake.provider_id or "auto-matched"
    if not created:
        return LeadIntakeResponse(
            success=True,
            lead_id=lead.lead_id,
            provider_id=provider_id,
            message="Lead already received",
        )

    logger.info("Form submission accepted", extra={"lead_id": str(lead.lead_id), "shape": submission.shape})
    background_tasks.add_task(_process_lead_in_background, ctx, lead.lead_id, intake.provider_id)

    return LeadIntakeResponse(
        success=True,
        lead_id=lead.lead_id,
        provider_id=provider_id,
        message="Lead received and processing started",
    )


@router.post(
    "/sms/incoming",
    response_model=InboundSmsResponse,
    summary="Inbound SMS Webhook",
    dependencies=[Depends(verify_webhook_secret)],
)
async def receive_sms(request: Request, ctx: BrokerContext = Depends(get_context)):
    """Handle a provider's SMS reply (Y / N / STOP / START / questions)."""
    payload = await _read_payload(request)
    try:
        message = parse_sms(payload).to_message()
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        result = await run_in_threadpool(handle_inbound_message, ctx, message)
    except Exception as e:
        raise http_error_for(e)

    return InboundSmsResponse(
        action=result.action.value,
        intent=result.intent.value if result.intent else None,
    )


@router.post(
    "/stripe",
    response_model=PaymentWebhookResponse,
    summary="Stripe Webhook",
)
async def receive_stripe_event(request: Request, ctx: BrokerContext = Depends(get_context)):
    """
    Verify and apply a Stripe event.

    Only `checkout.session.completed` changes state. Storage failures return
    503 so Stripe retries the delivery.
    """
    payload = await request.body()
    try:
        event = ctx.payments.parse_event(payload, request.headers.get("stripe-signature"))
        outcome = await run_in_threadpool(handle_payment_event, ctx, event)
    except Exception as e:
        raise http_error_for(e)

    return PaymentWebhookResponse(received=True, outcome=outcome.value if outcome else None)
