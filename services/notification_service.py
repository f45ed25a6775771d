"""
Notification dispatcher: SMS rendering, best-effort delivery, reply parsing.

Contract excerpts implemented here:
- A teaser never contains client PII: it is rendered from LeadPublicView only.
- The reveal message is rendered from LeadPrivateDetails and is only sent by
  callers that hold a paid (or free) unlock.
- send() is best effort: gateway failures are logged and reported as False,
  never raised.
- This module never changes ledger state.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from domain.errors import UpstreamError
from domain.lead import LeadPrivateDetails, LeadPublicView
from services.context import BrokerContext

logger = logging.getLogger(__name__)

HELP_MESSAGE = "Reply Y to unlock for {price}. Reply N to skip. Reply STOP to opt out."
OPT_OUT_CONFIRMATION = "You've been opted out of client request notifications. Reply START to opt back in."
OPT_IN_CONFIRMATION = "You're opted back in. You'll receive new client requests again."
DECLINE_ACKNOWLEDGEMENT = "Thanks for letting us know. You'll receive future lead opportunities."
LEAD_UNAVAILABLE_MESSAGE = "Sorry, this client request is no longer available."
GENERIC_ERROR_MESSAGE = "Sorry, there was an issue processing your request. Please try again later."
DUPLICATE_PAYMENT_NOTICE = (
    "We received another payment for a client request you already unlocked. "
    "The details were sent earlier; contact support if you were charged twice."
)
UNKNOWN_NUMBER_REPLY = (
    "Hi! Thanks for reaching out.\n"
    "Visit our website to browse verified providers and contact them directly for your session."
)
TEASER_DISCLAIMER = (
    "We provide advertising access to client inquiries. We do not arrange or guarantee appointments."
)

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m.%d.%Y", "%m-%d-%Y")


class ReplyIntent(str, Enum):
    OPT_OUT = "OPT_OUT"
    OPT_IN = "OPT_IN"
    ACCEPT = "ACCEPT"
    DECLINE = "DECLINE"
    HELP = "HELP"
    UNRELATED = "UNRELATED"


_EXACT_INTENTS = {
    "STOP": ReplyIntent.OPT_OUT,
    "START": ReplyIntent.OPT_IN,
    "Y": ReplyIntent.ACCEPT,
    "YES": ReplyIntent.ACCEPT,
    "N": ReplyIntent.DECLINE,
    "NO": ReplyIntent.DECLINE,
}


def classify_reply(
    text: str, support_detector: Optional[Callable[[str], bool]] = None
) -> ReplyIntent:
    """
    Classify an inbound provider SMS.

    Keywords are matched exactly after trimming and uppercasing, so "yes!" or
    "no thanks" are not answers. Anything else is HELP when the support
    detector says it is a question, and UNRELATED otherwise.
    """

    normalized = (text or "").strip().upper()
    if normalized in _EXACT_INTENTS:
        return _EXACT_INTENTS[normalized]
    if normalized == "HELP":
        return ReplyIntent.HELP
    if normalized and support_detector is not None and support_detector(text):
        return ReplyIntent.HELP
    return ReplyIntent.UNRELATED


def format_when(value: Optional[str]) -> str:
    """
    Render the client's preferred date for an SMS, e.g. "Oct 19, 2025".

    Values that are not a recognizable date are shown as given.
    """

    if not value or not value.strip():
        return "Flexible"
    text = re.sub(r"\s+12:00:00 AM$", "", value.strip())
    candidate = text.split("T")[0].split(" ")[0]
    for fmt in _DATE_FORMATS:
        try:
            parsed = datetime.strptime(candidate, fmt)
        except ValueError:
            continue
        return f"{parsed.strftime('%b')} {parsed.day}, {parsed.year}"
    return text


def render_teaser(lead: LeadPublicView, *, price: str) -> str:
    lines = [
        "CLIENT REQUEST AVAILABLE",
        f"Service: {lead.service_type}",
        f"Location: {lead.city}",
        f"When: {format_when(lead.preferred_time_window)}",
        f"Session: {lead.session_length or 'Not specified'}",
    ]
    if lead.contact_preference:
        lines.append(f"Contact Pref: {lead.contact_preference}")
    lines.extend(
        [
            "",
            f"Unlock full contact details for {price}",
            "Reply Y to proceed, N to pass",
            "",
            TEASER_DISCLAIMER,
        ]
    )
    return "\n".join(lines)


def render_payment_link(url: str, *, price: str) -> str:
    return f"Pay {price} to unlock this client request: {url}"


def render_reveal(details: LeadPrivateDetails, lead: LeadPublicView) -> str:
    address = details.exact_address or f"{details.city}, {details.zip_code or ''}".rstrip(", ")
    return "\n".join(
        [
            "Client Request Unlocked",
            "",
            f"Client: {details.client_name}",
            f"Phone: {details.client_phone}",
            f"Email: {details.client_email or 'Not provided'}",
            f"Address: {address}",
            f"Contact Pref: {lead.contact_preference or 'Not specified'}",
            "",
            f"Service: {lead.service_type}",
            f"When: {format_when(lead.preferred_time_window)}",
            "",
            "Contact the client directly. Good luck!",
        ]
    )


def render_help(*, price: str) -> str:
    return HELP_MESSAGE.format(price=price)


def send(ctx: BrokerContext, phone: str, text: str, *, kind: str = "message") -> bool:
    """
    Send one SMS.

    Returns:
        True if the gateway accepted the message, False if it failed.
    """

    try:
        result = ctx.sms.send(phone, text)
    except UpstreamError as exc:
        logger.warning(
            "SMS send failed",
            extra={"kind": kind, "service": exc.service, "error": str(exc)},
        )
        return False

    logger.info("SMS sent", extra={"kind": kind, "message_id": result.message_id})
    return True


__all__ = [
    "ReplyIntent",
    "classify_reply",
    "format_when",
    "render_teaser",
    "render_payment_link",
    "render_reveal",
    "render_help",
    "send",
    "OPT_OUT_CONFIRMATION",
    "OPT_IN_CONFIRMATION",
    "DECLINE_ACKNOWLEDGEMENT",
    "LEAD_UNAVAILABLE_MESSAGE",
    "GENERIC_ERROR_MESSAGE",
    "DUPLICATE_PAYMENT_NOTICE",
    "UNKNOWN_NUMBER_REPLY",
]
