"""
Payment bridge: payment links, payment confirmation and detail reveal.

Contract excerpts implemented here:
- At most one live payment session per (lead, provider): a stored link is
  reused while the unlock is PAYMENT_LINK_SENT, its TTL has not elapsed and
  the session is still open.
- Payment confirmation is idempotent under at-least-once webhook delivery:
  only the caller that wins the strict transition to PAID reveals details.
- A payment arriving after expiry is honored and closes the lead.
- A second payment for an already revealed pair is audited and answered with
  a short notice; the details are never sent again.
- A failed reveal leaves the unlock PAID for retry_reveal().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Mapping, Optional
from urllib.parse import urlencode
from uuid import UUID

from domain.audit import AuditEvent
from domain.errors import ConflictError, NotFoundError, UpstreamError
from domain.provider import normalize_provider_id
from domain.unlock import Unlock, UnlockAudit, UnlockStatus
from repositories.lead_repository import close_lead, get_private_details, get_public_view
from repositories.provider_repository import get_provider_by_id
from repositories.unlock_repository import find_by_session, get_unlock, update_status
from services import notification_service
from services.collaborators import PaymentEvent, metadata_str
from services.context import BrokerContext
from services.unlock_service import audit, transition

logger = logging.getLogger(__name__)


class PaymentOutcome(str, Enum):
    REVEALED = "REVEALED"
    REVEAL_PENDING = "REVEAL_PENDING"
    DUPLICATE_DELIVERY = "DUPLICATE_DELIVERY"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    UNKNOWN_SESSION = "UNKNOWN_SESSION"
    REJECTED = "REJECTED"


@dataclass(frozen=True, slots=True)
class PaymentLink:
    url: str
    session_id: str
    reused: bool


def _renewal_key(unlock: Unlock) -> str:
    if unlock.checkout_session_id:
        return f"{unlock.idempotency_key}:renew:{unlock.checkout_session_id}"
    return unlock.idempotency_key


def _session_still_open(ctx: BrokerContext, unlock: Unlock) -> bool:
    try:
        return ctx.payments.retrieve_session(unlock.checkout_session_id).is_open
    except UpstreamError as exc:
        # Unknown is treated as open so a second live session is never created.
        logger.warning(
            "Could not verify checkout session; reusing stored link",
            extra={"checkout_session_id": unlock.checkout_session_id, "error": str(exc)},
        )
        return True


def create_payment_link(
    ctx: BrokerContext,
    lead_id: UUID,
    provider_id: str,
    *,
    customer_email: Optional[str] = None,
) -> PaymentLink:
    """
    Return the payment link for a (lead, provider) unlock, creating a session
    only when no live one exists.

    Raises:
        NotFoundError: no unlock for the pair.
        ConflictError: the unlock is already paid, revealed or expired.
        UpstreamError: the payment collaborator failed.
    """

    provider_id = normalize_provider_id(provider_id)
    unlock = get_unlock(ctx.db, lead_id, provider_id)
    if unlock is None:
        raise NotFoundError(f"No unlock for lead {lead_id} / provider {provider_id}")

    now = ctx.now()
    if (
        unlock.status == UnlockStatus.PAYMENT_LINK_SENT
        and unlock.payment_link_url
        and unlock.checkout_session_id
        and not unlock.ttl_elapsed(now)
        and _session_still_open(ctx, unlock)
    ):
        logger.info(
            "Reusing existing payment link",
            extra={"lead_id": str(lead_id), "provider_id": provider_id},
        )
        return PaymentLink(
            url=unlock.payment_link_url, session_id=unlock.checkout_session_id, reused=True
        )

    if unlock.status not in (UnlockStatus.AWAIT_CONFIRM, UnlockStatus.PAYMENT_LINK_SENT):
        raise ConflictError(
            f"Unlock for lead {lead_id} / provider {provider_id} is {unlock.status.value}; "
            "no payment link can be issued"
        )

    settings = ctx.settings
    query = urlencode({"lead_id": str(lead_id), "provider_id": provider_id})
    idempotency_key = _renewal_key(unlock)
    session = ctx.payments.create_session(
        amount_cents=settings.unlock_price_cents,
        metadata={
            "lead_id": str(lead_id),
            "provider_id": provider_id,
            "idempotency_key": unlock.idempotency_key,
        },
        success_url=f"{settings.public_base_url}/unlocks/success?{query}",
        cancel_url=f"{settings.public_base_url}/unlocks/cancel?{query}",
        ttl=timedelta(hours=settings.unlock_ttl_hours),
        idempotency_key=idempotency_key,
        customer_email=customer_email,
    )

    updated = transition(
        ctx,
        lead_id,
        provider_id,
        UnlockStatus.PAYMENT_LINK_SENT,
        UnlockAudit(payment_link_url=session.url, checkout_session_id=session.session_id),
    )
    if updated is None:
        raise ConflictError(f"Unlock for lead {lead_id} / provider {provider_id} moved on")

    logger.info(
        "Payment link created",
        extra={
            "lead_id": str(lead_id),
            "provider_id": provider_id,
            "checkout_session_id": session.session_id,
        },
    )
    return PaymentLink(url=session.url, session_id=session.session_id, reused=False)


def send_reveal(ctx: BrokerContext, lead_id: UUID, provider_id: str) -> bool:
    """
    Send the client's private details to a provider.

    Callers must hold a paid or free unlock for the pair.
    """

    provider = get_provider_by_id(ctx.db, provider_id)
    lead = get_public_view(ctx.db, lead_id)
    details = get_private_details(ctx.db, lead_id)
    if provider is None or lead is None or details is None:
        logger.error(
            "Cannot reveal: provider or lead missing",
            extra={"lead_id": str(lead_id), "provider_id": provider_id},
        )
        return False

    return notification_service.send(
        ctx, provider.phone, notification_service.render_reveal(details, lead), kind="reveal"
    )


def _reveal(ctx: BrokerContext, unlock: Unlock, session_id: Optional[str]) -> PaymentOutcome:
    if not send_reveal(ctx, unlock.lead_id, unlock.provider_id):
        audit(
            ctx,
            AuditEvent.REVEAL_FAILED,
            lead_id=unlock.lead_id,
            provider_id=unlock.provider_id,
            checkout_session_id=session_id,
            notes="reveal SMS not delivered; unlock left PAID",
        )
        return PaymentOutcome.REVEAL_PENDING

    revealed = transition(
        ctx,
        unlock.lead_id,
        unlock.provider_id,
        UnlockStatus.REVEALED,
        UnlockAudit(revealed_at=ctx.now()),
        strict=True,
    )
    if revealed is None:
        return PaymentOutcome.DUPLICATE_DELIVERY
    logger.info(
        "Lead details revealed",
        extra={"lead_id": str(unlock.lead_id), "provider_id": unlock.provider_id},
    )
    return PaymentOutcome.REVEALED


def _unlock_from_metadata(ctx: BrokerContext, metadata: Mapping[str, str]) -> Optional[Unlock]:
    lead_text = metadata_str(metadata, "lead_id")
    provider_text = metadata_str(metadata, "provider_id")
    if not lead_text or not provider_text:
        return None
    try:
        lead_id = UUID(lead_text)
    except ValueError:
        return None
    return get_unlock(ctx.db, lead_id, provider_text)


def _duplicate_delivery(ctx: BrokerContext, unlock: Unlock, session_id: str) -> PaymentOutcome:
    logger.info(
        "Duplicate payment webhook ignored",
        extra={"lead_id": str(unlock.lead_id), "checkout_session_id": session_id},
    )
    audit(
        ctx,
        AuditEvent.DUPLICATE_SESSION_WEBHOOK,
        lead_id=unlock.lead_id,
        provider_id=unlock.provider_id,
        checkout_session_id=session_id,
    )
    return PaymentOutcome.DUPLICATE_DELIVERY


def handle_payment_confirmed(
    ctx: BrokerContext,
    session_id: str,
    metadata: Optional[Mapping[str, str]] = None,
) -> PaymentOutcome:
    """
    Apply a "payment completed" event. Safe to call any number of times for
    the same session; never raises for duplicate or unknown sessions.
    """

    unlock = find_by_session(ctx.db, session_id)
    if unlock is None and metadata:
        unlock = _unlock_from_metadata(ctx, metadata)

    if unlock is None:
        logger.warning("Payment for unknown checkout session", extra={"checkout_session_id": session_id})
        audit(ctx, AuditEvent.UNKNOWN_SESSION, checkout_session_id=session_id)
        return PaymentOutcome.UNKNOWN_SESSION

    if unlock.checkout_session_id != session_id and unlock.is_payment_settled():
        logger.warning(
            "Second payment for an already settled unlock",
            extra={
                "lead_id": str(unlock.lead_id),
                "provider_id": unlock.provider_id,
                "checkout_session_id": session_id,
            },
        )
        audit(
            ctx,
            AuditEvent.DUPLICATE_PAYMENT,
            lead_id=unlock.lead_id,
            provider_id=unlock.provider_id,
            checkout_session_id=session_id,
            notes=f"settled by {unlock.checkout_session_id}",
        )
        if unlock.status == UnlockStatus.REVEALED:
            provider = get_provider_by_id(ctx.db, unlock.provider_id)
            if provider is not None:
                notification_service.send(
                    ctx,
                    provider.phone,
                    notification_service.DUPLICATE_PAYMENT_NOTICE,
                    kind="duplicate_payment",
                )
        return PaymentOutcome.DUPLICATE_PAYMENT

    if unlock.is_payment_settled():
        return _duplicate_delivery(ctx, unlock, session_id)

    now = ctx.now()
    after_expiry = unlock.status == UnlockStatus.EXPIRED or unlock.ttl_elapsed(now)
    try:
        paid = update_status(
            ctx.db,
            unlock.lead_id,
            unlock.provider_id,
            UnlockStatus.PAID,
            UnlockAudit(paid_at=now, unlocked_at=now, checkout_session_id=session_id),
            now=now,
            strict=True,
        )
    except ConflictError as exc:
        current = get_unlock(ctx.db, unlock.lead_id, unlock.provider_id)
        if current is not None and current.is_payment_settled():
            return _duplicate_delivery(ctx, current, session_id)
        logger.error(
            "Payment received for an unlock that cannot be paid",
            extra={"lead_id": str(unlock.lead_id), "checkout_session_id": session_id},
        )
        audit(
            ctx,
            AuditEvent.ILLEGAL_TRANSITION,
            lead_id=unlock.lead_id,
            provider_id=unlock.provider_id,
            checkout_session_id=session_id,
            notes=str(exc),
        )
        return PaymentOutcome.REJECTED

    if after_expiry:
        logger.info(
            "Payment arrived after expiry; honoring and closing lead",
            extra={"lead_id": str(paid.lead_id), "provider_id": paid.provider_id},
        )
        audit(
            ctx,
            AuditEvent.PAYMENT_AFTER_EXPIRY,
            lead_id=paid.lead_id,
            provider_id=paid.provider_id,
            checkout_session_id=session_id,
        )
        close_lead(ctx.db, paid.lead_id, now=now)

    return _reveal(ctx, paid, session_id)


def handle_payment_event(ctx: BrokerContext, event: PaymentEvent) -> Optional[PaymentOutcome]:
    """Route a verified payment webhook. Events other than a paid checkout are ignored."""

    if not event.is_checkout_completed or not event.session_id:
        logger.info("Ignoring payment event", extra={"event_type": event.event_type})
        return None
    if event.payment_status and event.payment_status != "paid":
        logger.info(
            "Checkout completed without payment; ignoring",
            extra={"checkout_session_id": event.session_id, "payment_status": event.payment_status},
        )
        return None
    return handle_payment_confirmed(ctx, event.session_id, event.metadata)


def retry_reveal(ctx: BrokerContext, session_id: str) -> PaymentOutcome:
    """
    Operator path for a reveal that failed after payment.

    Raises:
        NotFoundError: no unlock carries this session id.
        ConflictError: the unlock is not PAID, or the session is not paid.
        UpstreamError: the payment collaborator could not be reached.
    """

    unlock = find_by_session(ctx.db, session_id)
    if unlock is None:
        raise NotFoundError(f"No unlock for checkout session {session_id}")
    if unlock.status == UnlockStatus.REVEALED:
        return PaymentOutcome.DUPLICATE_DELIVERY
    if unlock.status != UnlockStatus.PAID:
        raise ConflictError(f"Unlock is {unlock.status.value}, not PAID")

    status = ctx.payments.retrieve_session(session_id)
    if not status.is_paid:
        raise ConflictError(f"Checkout session {session_id} is not paid")

    return _reveal(ctx, unlock, session_id)


__all__ = [
    "PaymentOutcome",
    "PaymentLink",
    "create_payment_link",
    "send_reveal",
    "handle_payment_confirmed",
    "handle_payment_event",
    "retry_reveal",
]
