"""
Domain: Lead entity and intake derivation.

Contract excerpts implemented here:
- A Lead represents a single client service request and is uniquely identified
  by lead_id (UUID).
- Private fields (client name, phone, email, exact address) are never part of
  the public projection.
- The notes snippet is PII-free and at most 160 characters.
- City is derived from the combined city/zip text by stripping digits; when no
  letters remain the zip digits are used as the city.
- A Lead expires 24 hours after creation unless configured otherwise; closed
  leads accept no further unlocks.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID, uuid5

from .errors import ValidationError
from .time import require_utc_timestamp

NOTES_SNIPPET_MAX_LENGTH: int = 160
DEFAULT_LEAD_TTL_HOURS: int = 24

# Namespace for deterministic lead identifiers derived from intake fingerprints.
LEAD_ID_NAMESPACE = UUID("6f1c2d4e-8a0b-5c3d-9e7f-1a2b3c4d5e6f")

_DIGITS = re.compile(r"\d+")


def derive_city(city_zip: str) -> str:
    """
    Derive the display city from a combined "city zip" field.

    Examples:
        derive_city("Miami 33101")  -> "Miami"
        derive_city("33101")        -> "33101"
    """

    city = _DIGITS.sub("", city_zip).strip().strip(",").strip()
    if not city:
        return extract_zip(city_zip) or ""
    return city


def extract_zip(city_zip: str) -> Optional[str]:
    match = _DIGITS.search(city_zip)
    return match.group(0) if match else None


def build_notes_snippet(
    service_type: str,
    session_length: Optional[str] = None,
    contact_preference: Optional[str] = None,
) -> str:
    """Compose the PII-free notes snippet, truncated to 160 characters."""

    snippet = f"{service_type} session"
    if session_length:
        snippet += f" ({session_length})"
    if contact_preference:
        snippet += f", prefers {contact_preference}"
    return snippet[:NOTES_SNIPPET_MAX_LENGTH]


def build_exact_address(city_zip: str, location: Optional[str] = None) -> str:
    address = city_zip.strip()
    if location:
        address += f", {location.strip()}"
    return address


@dataclass(frozen=True, slots=True)
class LeadIntake:
    """
    Canonical intake record produced at the webhook boundary.

    All payload-shape differences are resolved before this type is built.
    """

    client_name: str
    client_phone: str
    city_zip: str
    service_type: str
    preferred_time_window: Optional[str] = None
    session_length: Optional[str] = None
    location_type: Optional[str] = None
    contact_preference: Optional[str] = None
    client_email: Optional[str] = None
    provider_id: Optional[str] = None  # forces a single provider (testing / direct links)
    submission_id: Optional[str] = None  # form provider's own entry id, when sent

    def __post_init__(self) -> None:
        for name in ("client_name", "client_phone", "city_zip", "service_type"):
            value = getattr(self, name)
            if not value or not str(value).strip():
                raise ValidationError(f"{name} is required")
        if self.client_email and "@" not in self.client_email:
            raise ValidationError("client_email must be a valid email address")


def intake_fingerprint(intake: LeadIntake, received_at: datetime) -> str:
    """
    Deterministic fingerprint of a submission.

    A form provider entry id identifies the submission on its own; otherwise the
    normalized fields plus the UTC receive date do, so a webhook redelivered
    the same day maps onto the same lead.
    """

    require_utc_timestamp("received_at", received_at)
    if intake.submission_id:
        material = f"submission:{intake.submission_id.strip()}"
    else:
        parts = [
            intake.client_name.strip().lower(),
            re.sub(r"\D", "", intake.client_phone),
            intake.city_zip.strip().lower(),
            intake.service_type.strip().lower(),
            (intake.preferred_time_window or "").strip().lower(),
            (intake.session_length or "").strip().lower(),
            (intake.location_type or "").strip().lower(),
            (intake.contact_preference or "").strip().lower(),
            (intake.client_email or "").strip().lower(),
            received_at.date().isoformat(),
        ]
        material = "|".join(parts)
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def lead_id_for_fingerprint(fingerprint: str) -> UUID:
    return uuid5(LEAD_ID_NAMESPACE, fingerprint)


@dataclass(frozen=True, slots=True)
class LeadPrivateDetails:
    """PII projection. Only ever sent to a provider whose unlock is paid or free."""

    client_name: str
    client_phone: str
    client_email: Optional[str]
    exact_address: Optional[str]
    city: str
    zip_code: Optional[str] = None


@dataclass(frozen=True, slots=True)
class LeadPublicView:
    """Non-PII projection used for teasers and the public lead API."""

    lead_id: UUID
    city: str
    service_type: str
    preferred_time_window: Optional[str]
    session_length: Optional[str]
    location_type: Optional[str]
    contact_preference: Optional[str]
    notes_snippet: str
    created_at: datetime
    expires_at: datetime
    is_closed: bool


@dataclass(frozen=True, slots=True)
class Lead:
    """
    Pure domain entity for a Lead.

    Immutability:
    - Frozen; closing a lead is a store update that yields a new instance.
    """

    lead_id: UUID
    city: str
    service_type: str
    notes_snippet: str
    client_name: str
    client_phone: str
    created_at: datetime
    expires_at: datetime
    zip_code: Optional[str] = None
    preferred_time_window: Optional[str] = None
    session_length: Optional[str] = None
    location_type: Optional[str] = None
    contact_preference: Optional[str] = None
    client_email: Optional[str] = None
    exact_address: Optional[str] = None
    is_closed: bool = False
    intake_key: Optional[str] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        require_utc_timestamp("expires_at", self.expires_at)
        if len(self.notes_snippet) > NOTES_SNIPPET_MAX_LENGTH:
            raise ValueError("notes_snippet must be at most 160 characters")

    def is_expired(self, as_of: datetime) -> bool:
        require_utc_timestamp("as_of", as_of)
        return self.expires_at < as_of

    def public_view(self) -> LeadPublicView:
        return LeadPublicView(
            lead_id=self.lead_id,
            city=self.city,
            service_type=self.service_type,
            preferred_time_window=self.preferred_time_window,
            session_length=self.session_length,
            location_type=self.location_type,
            contact_preference=self.contact_preference,
            notes_snippet=self.notes_snippet,
            created_at=self.created_at,
            expires_at=self.expires_at,
            is_closed=self.is_closed,
        )

    def private_details(self) -> LeadPrivateDetails:
        return LeadPrivateDetails(
            client_name=self.client_name,
            client_phone=self.client_phone,
            client_email=self.client_email,
            exact_address=self.exact_address,
            city=self.city,
            zip_code=self.zip_code,
        )

    @staticmethod
    def from_intake(
        intake: LeadIntake,
        *,
        received_at: datetime,
        ttl_hours: int = DEFAULT_LEAD_TTL_HOURS,
    ) -> "Lead":
        """Build a new Lead from a validated intake; all derivations happen here."""

        fingerprint = intake_fingerprint(intake, received_at)
        return Lead(
            lead_id=lead_id_for_fingerprint(fingerprint),
            city=derive_city(intake.city_zip),
            zip_code=extract_zip(intake.city_zip),
            service_type=intake.service_type.strip(),
            preferred_time_window=intake.preferred_time_window,
            session_length=intake.session_length,
            location_type=intake.location_type,
            contact_preference=intake.contact_preference,
            notes_snippet=build_notes_snippet(
                intake.service_type.strip(), intake.session_length, intake.contact_preference
            ),
            client_name=intake.client_name.strip(),
            client_phone=intake.client_phone.strip(),
            client_email=intake.client_email or None,
            exact_address=build_exact_address(intake.city_zip, intake.location_type),
            created_at=received_at,
            expires_at=received_at + timedelta(hours=ttl_hours),
            is_closed=False,
            intake_key=fingerprint,
        )
