"""
Dependency bundle handed to every broker service.

Built once by the application factory (or a script) and passed explicitly;
tests build one around in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from domain.time import utc_now
from repositories.client import Client, create_supabase_client
from services.collaborators import LeadIntelligence, PaymentGateway, SmsGateway
from services.lead_intelligence import OpenAILeadIntelligence
from services.payment_gateway import StripePaymentGateway
from services.settings import BrokerSettings
from services.sms_gateway import TextMagicSmsGateway


@dataclass(frozen=True)
class BrokerContext:
    db: Client
    settings: BrokerSettings
    sms: SmsGateway
    payments: PaymentGateway
    intelligence: LeadIntelligence
    clock: Callable[[], datetime] = field(default=utc_now)

    def now(self) -> datetime:
        return self.clock()

    def close(self) -> None:
        """Release adapter resources such as HTTP connection pools."""

        for adapter in (self.sms, self.payments, self.intelligence):
            close = getattr(adapter, "close", None)
            if callable(close):
                close()


def build_context(settings: BrokerSettings) -> BrokerContext:
    """
    Wire the production adapters.

    Raises:
        RuntimeError: if Supabase credentials are missing.
    """

    return BrokerContext(
        db=create_supabase_client(settings.supabase_url, settings.supabase_key),
        settings=settings,
        sms=TextMagicSmsGateway(
            settings.textmagic_username,
            settings.textmagic_api_key,
            from_number=settings.textmagic_from_number,
        ),
        payments=StripePaymentGateway(
            settings.stripe_secret_key, webhook_secret=settings.stripe_webhook_secret
        ),
        intelligence=OpenAILeadIntelligence(settings.openai_api_key, model=settings.openai_model),
    )


__all__ = ["BrokerContext", "build_context"]
