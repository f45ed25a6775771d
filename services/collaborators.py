"""
Interfaces of the external collaborators the broker depends on.

The services only ever talk to these protocols. Concrete adapters live in
sms_gateway.py (TextMagic), payment_gateway.py (Stripe) and
lead_intelligence.py (OpenAI); tests substitute in-memory fakes.

Adapters raise domain.errors.UpstreamError for every transport or provider
failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from domain.lead import LeadPublicView
from domain.provider import Provider


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    message_id: Optional[str] = None
    status: str = "sent"


@dataclass(frozen=True, slots=True)
class PaymentSession:
    session_id: str
    url: str


@dataclass(frozen=True, slots=True)
class SessionStatus:
    """
    status: "open", "complete" or "expired"
    payment_status: "paid", "unpaid" or "no_payment_required"
    """

    session_id: str
    status: str
    payment_status: str
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass(frozen=True, slots=True)
class PaymentEvent:
    event_id: str
    event_type: str
    session_id: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_checkout_completed(self) -> bool:
        return self.event_type == "checkout.session.completed"


@dataclass(frozen=True, slots=True)
class LeadScore:
    should_process: bool
    quality_score: float = 0.7
    quality_level: str = "medium"
    red_flags: List[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ProviderMatch:
    provider_id: str
    match_score: float = 1.0
    reasons: List[str] = field(default_factory=list)


class SmsGateway(Protocol):
    def send(self, destination: str, text: str) -> DeliveryResult: ...


class PaymentGateway(Protocol):
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
    ) -> PaymentSession: ...

    def retrieve_session(self, session_id: str) -> SessionStatus: ...

    def parse_event(self, payload: bytes, signature: Optional[str]) -> PaymentEvent: ...


class LeadIntelligence(Protocol):
    def score_lead(self, lead: LeadPublicView) -> LeadScore: ...

    def match_providers(
        self, lead: LeadPublicView, providers: Sequence[Provider]
    ) -> List[ProviderMatch]: ...

    def is_support_question(self, text: str) -> bool: ...

    def answer_support_question(self, text: str) -> str: ...


def metadata_str(metadata: Mapping[str, Any], key: str) -> Optional[str]:
    value = metadata.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "DeliveryResult",
    "PaymentSession",
    "SessionStatus",
    "PaymentEvent",
    "LeadScore",
    "ProviderMatch",
    "SmsGateway",
    "PaymentGateway",
    "LeadIntelligence",
    "metadata_str",
]
