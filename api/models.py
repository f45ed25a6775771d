"""
API Request and Response Models.

Pydantic models for validating webhook bodies and serializing responses.
"""

from datetime import date, datetime
from typing import Dict, List, Optional, Union
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field

from domain.lead import LeadIntake, LeadPublicView
from domain.provider import normalize_provider_id
from domain.unlock import Unlock


# ============================================================================
# Intake Models
# ============================================================================

class FormSubmission(BaseModel):
    """A lead intake form after shape resolution (see api/payloads.py)."""
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    cityzip: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1, description="Requested service type")
    date_time: Optional[str] = None
    length: Optional[str] = None
    location: Optional[str] = None
    contactpref: Optional[str] = None
    email: Optional[str] = None
    provider_id: Optional[Union[int, str]] = Field(
        None, description="Forces a single provider, e.g. 10 or 'provider10'"
    )
    submission_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("submission_id", "entry_id")
    )

    class Config:
        # Form builders sometimes post phone numbers and ids as JSON numbers.
        coerce_numbers_to_str = True
        json_schema_extra = {
            "example": {
                "name": "Jane Client",
                "phone": "+15551234567",
                "cityzip": "Miami 33101",
                "date_time": "10/19/2025",
                "length": "60 min",
                "type": "Massage",
                "location": "Home",
                "contactpref": "Text",
                "email": "jane@example.com",
            }
        }

    def to_intake(self) -> LeadIntake:
        return LeadIntake(
            client_name=self.name,
            client_phone=self.phone,
            city_zip=self.cityzip,
            service_type=self.type,
            preferred_time_window=self.date_time,
            session_length=self.length,
            location_type=self.location,
            contact_preference=self.contactpref,
            client_email=self.email,
            provider_id=normalize_provider_id(self.provider_id) if self.provider_id not in (None, "") else None,
            submission_id=str(self.submission_id) if self.submission_id else None,
        )


class LeadIntakeResponse(BaseModel):
    success: bool
    lead_id: UUID
    provider_id: str
    message: str


# ============================================================================
# Webhook Responses
# ============================================================================

class InboundSmsResponse(BaseModel):
    action: str
    intent: Optional[str] = None


class PaymentWebhookResponse(BaseModel):
    received: bool
    outcome: Optional[str] = None


# ============================================================================
# Lead Models
# ============================================================================

class LeadPublicResponse(BaseModel):
    """Public lead projection; never contains client contact details."""
    lead_id: UUID
    city: str
    service_type: str
    preferred_time_window: Optional[str] = None
    session_length: Optional[str] = None
    location_type: Optional[str] = None
    contact_preference: Optional[str] = None
    notes_snippet: str
    created_at: datetime
    expires_at: datetime
    is_closed: bool

    @classmethod
    def from_view(cls, view: LeadPublicView) -> "LeadPublicResponse":
        return cls(
            lead_id=view.lead_id,
            city=view.city,
            service_type=view.service_type,
            preferred_time_window=view.preferred_time_window,
            session_length=view.session_length,
            location_type=view.location_type,
            contact_preference=view.contact_preference,
            notes_snippet=view.notes_snippet,
            created_at=view.created_at,
            expires_at=view.expires_at,
            is_closed=view.is_closed,
        )


class UnlockStatsResponse(BaseModel):
    lead_id: UUID
    stats: Dict[str, int]
    total: int

    class Config:
        json_schema_extra = {
            "example": {
                "lead_id": "123e4567-e89b-12d3-a456-426614174000",
                "stats": {"TEASER_SENT": 3, "REVEALED": 1},
                "total": 4,
            }
        }


# ============================================================================
# Operations Models
# ============================================================================

class ExpirySweepResponse(BaseModel):
    expired_unlocks: int
    closed_leads: int
    skipped: int
    failures: int


class DispatchSweepResponse(BaseModel):
    processed: int
    failed: int
    skipped: int


class RetentionSweepResponse(BaseModel):
    deleted_unlocks: int
    older_than_days: int


class RevealRetryResponse(BaseModel):
    checkout_session_id: str
    outcome: str


class ScheduleSummaryResponse(BaseModel):
    pending: int
    processed: int
    failed: int
    next_scheduled_for: Optional[datetime] = None
    last_scheduled_for: Optional[datetime] = None


class MissedLeadResponse(BaseModel):
    lead_id: UUID
    city: str
    service_type: str
    created_at: datetime
    expires_at: datetime


class MissedLeadsResponse(BaseModel):
    hours: int
    count: int
    leads: List[MissedLeadResponse]


class MissedLeadRecoveryResponse(BaseModel):
    hours: int
    found: int
    processed: int
    failed: int
    lead_ids: List[UUID]


# ============================================================================
# Provider Models
# ============================================================================

class ProviderUnlockResponse(BaseModel):
    """One offer as seen by its provider; lead fields are the public projection."""
    lead_id: UUID
    provider_id: str
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    ttl_expires_at: datetime
    teaser_sent_at: Optional[datetime] = None
    y_received_at: Optional[datetime] = None
    payment_link_sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    revealed_at: Optional[datetime] = None
    city: Optional[str] = None
    service_type: Optional[str] = None
    lead_created_at: Optional[datetime] = None

    @classmethod
    def from_unlock(cls, unlock: Unlock, lead: Optional[LeadPublicView]) -> "ProviderUnlockResponse":
        return cls(
            lead_id=unlock.lead_id,
            provider_id=unlock.provider_id,
            status=unlock.status.value,
            created_at=unlock.created_at,
            updated_at=unlock.updated_at,
            ttl_expires_at=unlock.ttl_expires_at,
            teaser_sent_at=unlock.teaser_sent_at,
            y_received_at=unlock.y_received_at,
            payment_link_sent_at=unlock.payment_link_sent_at,
            paid_at=unlock.paid_at,
            revealed_at=unlock.revealed_at,
            city=lead.city if lead else None,
            service_type=lead.service_type if lead else None,
            lead_created_at=lead.created_at if lead else None,
        )


class ProviderUnlocksResponse(BaseModel):
    provider_id: str
    limit: int
    offset: int
    unlocks: List[ProviderUnlockResponse]


# ============================================================================
# Analytics Models
# ============================================================================

class ProviderPerformanceResponse(BaseModel):
    provider_id: str
    name: str
    teasers_sent: int
    accepted: int
    paid: int
    expired: int
    free_reveals: int
    acceptance_rate: float = Field(..., description="Accepted / teasers sent, in percent")
    payment_rate: float = Field(..., description="Paid / accepted, in percent")
    revenue_cents: int
    last_teaser_sent_at: Optional[datetime] = None


class ProviderAnalyticsResponse(BaseModel):
    providers: List[ProviderPerformanceResponse]
    total_providers: int
    active_providers: int
    top_performer: Optional[str] = None
    total_revenue_cents: int


class ConversionFunnelResponse(BaseModel):
    days: Optional[int] = None
    total_leads: int
    sent_to_providers: int
    accepted_by_providers: int
    paid_and_unlocked: int
    lead_to_teaser_rate: float
    teaser_to_acceptance_rate: float
    acceptance_to_payment_rate: float

    class Config:
        json_schema_extra = {
            "example": {
                "days": 30,
                "total_leads": 40,
                "sent_to_providers": 36,
                "accepted_by_providers": 12,
                "paid_and_unlocked": 9,
                "lead_to_teaser_rate": 90.0,
                "teaser_to_acceptance_rate": 33.33,
                "acceptance_to_payment_rate": 75.0,
            }
        }


class DailyActivityResponse(BaseModel):
    day: date
    teasers_sent: int
    accepted: int
    paid: int
    revenue_cents: int


class RecentActivityResponse(BaseModel):
    days: int
    activity: List[DailyActivityResponse]
