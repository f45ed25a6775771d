"""
Inbound SMS handling.

Providers answer teasers by SMS. Replies carry no lead id, so "Y" and "N"
apply to the provider's most recent open unlock.

Order of checks:
1. a redelivered gateway message id is dropped;
2. STOP / START toggle the opt-out flag (known or not, the number is honored);
3. unknown senders get at most one auto-reply per 24 hours;
4. questions get a support answer;
5. Y / YES moves the unlock to AWAIT_CONFIRM and sends the payment link;
6. N / NO expires the unlock;
7. anything else is ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from domain.errors import ConflictError, UpstreamError
from domain.provider import Provider
from domain.unlock import UnlockAudit, UnlockStatus
from repositories.lead_repository import is_lead_closed
from repositories.message_repository import claim_auto_response, claim_inbound_message
from repositories.provider_repository import (
    SEND_KIND_PAYMENT_LINK,
    find_provider_by_phone,
    record_send,
    set_opt_out,
)
from repositories.unlock_repository import find_latest_open_unlock
from services import notification_service
from services.context import BrokerContext
from services.notification_service import ReplyIntent, classify_reply
from services.payment_service import create_payment_link
from services.unlock_service import transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InboundMessage:
    sender: str
    text: str
    external_message_id: Optional[str] = None


class ReplyAction(str, Enum):
    DUPLICATE_MESSAGE = "DUPLICATE_MESSAGE"
    OPTED_OUT = "OPTED_OUT"
    OPTED_IN = "OPTED_IN"
    AUTO_REPLIED = "AUTO_REPLIED"
    UNKNOWN_SENDER_IGNORED = "UNKNOWN_SENDER_IGNORED"
    SUPPORT_ANSWERED = "SUPPORT_ANSWERED"
    HELP_SENT = "HELP_SENT"
    PAYMENT_LINK_SENT = "PAYMENT_LINK_SENT"
    PAYMENT_ERROR = "PAYMENT_ERROR"
    LEAD_UNAVAILABLE = "LEAD_UNAVAILABLE"
    DECLINED = "DECLINED"
    IGNORED = "IGNORED"


@dataclass(frozen=True, slots=True)
class ReplyResult:
    action: ReplyAction
    intent: Optional[ReplyIntent] = None


def handle_inbound_message(ctx: BrokerContext, message: InboundMessage) -> ReplyResult:
    now = ctx.now()
    if message.external_message_id and not claim_inbound_message(
        ctx.db, message.external_message_id, message.sender, received_at=now
    ):
        logger.info(
            "Duplicate inbound SMS dropped",
            extra={"external_message_id": message.external_message_id},
        )
        return ReplyResult(ReplyAction.DUPLICATE_MESSAGE)

    intent = classify_reply(message.text, ctx.intelligence.is_support_question)

    if intent in (ReplyIntent.OPT_OUT, ReplyIntent.OPT_IN):
        opted_out = intent == ReplyIntent.OPT_OUT
        updated = set_opt_out(ctx.db, message.sender, opted_out, now=now)
        logger.info("SMS opt-out flag changed", extra={"opted_out": opted_out, "providers": updated})
        text = (
            notification_service.OPT_OUT_CONFIRMATION
            if opted_out
            else notification_service.OPT_IN_CONFIRMATION
        )
        notification_service.send(ctx, message.sender, text, kind="opt_out" if opted_out else "opt_in")
        return ReplyResult(ReplyAction.OPTED_OUT if opted_out else ReplyAction.OPTED_IN, intent)

    provider = find_provider_by_phone(ctx.db, message.sender)
    if provider is None:
        if claim_auto_response(ctx.db, message.sender, now=now):
            notification_service.send(
                ctx, message.sender, notification_service.UNKNOWN_NUMBER_REPLY, kind="auto_reply"
            )
            return ReplyResult(ReplyAction.AUTO_REPLIED, intent)
        return ReplyResult(ReplyAction.UNKNOWN_SENDER_IGNORED, intent)

    if intent == ReplyIntent.HELP:
        return _answer_help(ctx, provider, message.text)
    if intent == ReplyIntent.ACCEPT:
        return _accept(ctx, provider)
    if intent == ReplyIntent.DECLINE:
        return _decline(ctx, provider)

    logger.info("Ignoring unrelated provider message", extra={"provider_id": provider.provider_id})
    return ReplyResult(ReplyAction.IGNORED, intent)


def _send_help(ctx: BrokerContext, provider: Provider) -> None:
    notification_service.send(
        ctx,
        provider.phone,
        notification_service.render_help(price=ctx.settings.unlock_price_display),
        kind="help",
    )


def _answer_help(ctx: BrokerContext, provider: Provider, text: str) -> ReplyResult:
    if text.strip().upper() == "HELP":
        _send_help(ctx, provider)
        return ReplyResult(ReplyAction.HELP_SENT, ReplyIntent.HELP)

    try:
        answer = ctx.intelligence.answer_support_question(text)
    except UpstreamError as exc:
        logger.warning("Support answer unavailable", extra={"error": str(exc)})
        _send_help(ctx, provider)
        return ReplyResult(ReplyAction.HELP_SENT, ReplyIntent.HELP)

    notification_service.send(ctx, provider.phone, answer, kind="support")
    return ReplyResult(ReplyAction.SUPPORT_ANSWERED, ReplyIntent.HELP)


def _accept(ctx: BrokerContext, provider: Provider) -> ReplyResult:
    unlock = find_latest_open_unlock(ctx.db, provider.provider_id)
    if unlock is None:
        _send_help(ctx, provider)
        return ReplyResult(ReplyAction.HELP_SENT, ReplyIntent.ACCEPT)

    lead_id = unlock.lead_id
    if is_lead_closed(ctx.db, lead_id):
        notification_service.send(
            ctx, provider.phone, notification_service.LEAD_UNAVAILABLE_MESSAGE, kind="lead_unavailable"
        )
        return ReplyResult(ReplyAction.LEAD_UNAVAILABLE, ReplyIntent.ACCEPT)

    now = ctx.now()
    if unlock.status != UnlockStatus.PAYMENT_LINK_SENT:
        accepted = transition(
            ctx,
            lead_id,
            provider.provider_id,
            UnlockStatus.AWAIT_CONFIRM,
            UnlockAudit(y_received_at=now),
        )
        if accepted is None:
            notification_service.send(
                ctx, provider.phone, notification_service.LEAD_UNAVAILABLE_MESSAGE, kind="lead_unavailable"
            )
            return ReplyResult(ReplyAction.LEAD_UNAVAILABLE, ReplyIntent.ACCEPT)

    try:
        link = create_payment_link(ctx, lead_id, provider.provider_id, customer_email=provider.email)
    except (UpstreamError, ConflictError) as exc:
        logger.error(
            "Could not issue payment link",
            extra={"lead_id": str(lead_id), "provider_id": provider.provider_id, "error": str(exc)},
        )
        notification_service.send(
            ctx, provider.phone, notification_service.GENERIC_ERROR_MESSAGE, kind="error"
        )
        return ReplyResult(ReplyAction.PAYMENT_ERROR, ReplyIntent.ACCEPT)

    notification_service.send(
        ctx,
        provider.phone,
        notification_service.render_payment_link(link.url, price=ctx.settings.unlock_price_display),
        kind="payment_link",
    )
    sent_at = ctx.now()
    record_send(ctx.db, provider.provider_id, lead_id, SEND_KIND_PAYMENT_LINK, sent_at=sent_at)
    transition(
        ctx,
        lead_id,
        provider.provider_id,
        UnlockStatus.PAYMENT_LINK_SENT,
        UnlockAudit(payment_link_sent_at=sent_at, last_sent_at=sent_at),
    )
    return ReplyResult(ReplyAction.PAYMENT_LINK_SENT, ReplyIntent.ACCEPT)


def _decline(ctx: BrokerContext, provider: Provider) -> ReplyResult:
    unlock = find_latest_open_unlock(ctx.db, provider.provider_id)
    if unlock is None:
        _send_help(ctx, provider)
        return ReplyResult(ReplyAction.HELP_SENT, ReplyIntent.DECLINE)

    transition(ctx, unlock.lead_id, provider.provider_id, UnlockStatus.EXPIRED)
    notification_service.send(
        ctx, provider.phone, notification_service.DECLINE_ACKNOWLEDGEMENT, kind="decline"
    )
    return ReplyResult(ReplyAction.DECLINED, ReplyIntent.DECLINE)


__all__ = [
    "InboundMessage",
    "ReplyAction",
    "ReplyResult",
    "handle_inbound_message",
]
