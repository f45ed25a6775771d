"""
Stripe Checkout adapter.

- create_session: one-time Checkout Session for the unlock price, carrying
  the (lead, provider) pair in its metadata and protected by a Stripe
  idempotency key.
- retrieve_session: current status of a session, used before reusing a link.
- parse_event: verifies the webhook signature and extracts the fields the
  broker needs.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

import stripe

from domain.errors import UpstreamError, ValidationError
from services.collaborators import PaymentEvent, PaymentSession, SessionStatus

logger = logging.getLogger(__name__)

# Stripe only accepts a Checkout expiry between 30 minutes and 24 hours ahead.
_MIN_SESSION_TTL = timedelta(minutes=30)
_MAX_SESSION_TTL = timedelta(hours=24)

# Replay window for webhook signatures.
_SIGNATURE_TOLERANCE_SECONDS = 300

PRODUCT_NAME: str = "Client Request Contact Details"
PRODUCT_DESCRIPTION: str = "Unlock full client contact information for this request"


def _plain_metadata(metadata: Any) -> Dict[str, str]:
    if not metadata:
        return {}
    return {str(key): str(value) for key, value in dict(metadata).items()}


class StripePaymentGateway:
    def __init__(
        self,
        secret_key: Optional[str],
        *,
        webhook_secret: Optional[str] = None,
        currency: str = "usd",
    ) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    def _require_key(self) -> str:
        if not self.secret_key:
            raise UpstreamError("payments", "STRIPE_SECRET_KEY is not configured")
        return self.secret_key

    def create_session(
        self,
        *,
        amount_cents: int,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        ttl: timedelta,
        idempotency_key: str,
        customer_email: Optional[str] = None,
    ) -> PaymentSession:
        api_key = self._require_key()
        ttl = max(_MIN_SESSION_TTL, min(ttl, _MAX_SESSION_TTL))

        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            "name": PRODUCT_NAME,
                            "description": PRODUCT_DESCRIPTION,
                        },
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "expires_at": int(time.time() + ttl.total_seconds()),
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(
                api_key=api_key, idempotency_key=idempotency_key, **params
            )
        except stripe.StripeError as exc:
            raise UpstreamError("payments", f"Checkout session create failed: {exc}") from exc

        logger.info(
            "Stripe checkout session created",
            extra={"checkout_session_id": session.id, "idempotency_key": idempotency_key},
        )
        return PaymentSession(session_id=str(session.id), url=str(session.url))

    def retrieve_session(self, session_id: str) -> SessionStatus:
        api_key = self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=api_key)
        except stripe.StripeError as exc:
            raise UpstreamError("payments", f"Checkout session retrieve failed: {exc}") from exc

        return SessionStatus(
            session_id=str(session.id),
            status=str(session.status or ""),
            payment_status=str(session.payment_status or ""),
            metadata=_plain_metadata(session.metadata),
        )

    def parse_event(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        """
        Verify and decode a webhook delivery.

        Raises:
            ValidationError: missing or invalid signature, or malformed payload.
            UpstreamError: the webhook secret is not configured.
        """

        if not self.webhook_secret:
            raise UpstreamError("payments", "STRIPE_WEBHOOK_SECRET is not configured")
        if not signature:
            raise ValidationError("Missing Stripe-Signature header")

        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text, signature, self.webhook_secret, tolerance=_SIGNATURE_TOLERANCE_SECONDS
            )
            event = json.loads(text)
            obj: Mapping[str, Any] = event["data"]["object"]
        except stripe.SignatureVerificationError as exc:
            raise ValidationError("Invalid Stripe webhook signature") from exc
        except (ValueError, KeyError, TypeError) as exc:
            raise ValidationError("Malformed Stripe webhook payload") from exc

        session_id = obj.get("id") if obj.get("object") == "checkout.session" else None
        return PaymentEvent(
            event_id=str(event["id"]),
            event_type=str(event["type"]),
            session_id=str(session_id) if session_id else None,
            payment_status=obj.get("payment_status"),
            metadata=_plain_metadata(obj.get("metadata")),
        )


__all__ = ["StripePaymentGateway"]
