"""
Lead repository (persistence).

This module provides *only* persistence operations for the Lead domain entity.
Intake derivations (city, notes snippet, fingerprint) live in domain/lead.py;
matching and dispatch rules live in the services.

Read paths return None for missing rows and never raise for absence.
Write failures propagate as StorageError.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from domain.lead import (
    DEFAULT_LEAD_TTL_HOURS,
    Lead,
    LeadIntake,
    LeadPrivateDetails,
    LeadPublicView,
)
from domain.time import parse_utc_datetime, to_iso_utc
from repositories.client import Client, rows_of, run_query

# Supabase table name for Lead records.
# Keep this aligned with migrations/001_unlock_broker_schema.sql.
_LEADS_TABLE: str = "leads"

_PUBLIC_COLUMNS: str = (
    "lead_id,city,service_type,preferred_time_window,session_length,location_type,"
    "contact_preference,notes_snippet,created_at_utc,expires_at_utc,is_closed"
)
_PRIVATE_COLUMNS: str = "client_name,client_phone,client_email,exact_address,city,zip_code"


def _lead_to_row(lead: Lead) -> dict[str, Any]:
    """Convert a domain Lead to a Supabase row payload."""

    return {
        "lead_id": str(lead.lead_id),
        "intake_key": lead.intake_key,
        "city": lead.city,
        "zip_code": lead.zip_code,
        "service_type": lead.service_type,
        "preferred_time_window": lead.preferred_time_window,
        "session_length": lead.session_length,
        "location_type": lead.location_type,
        "contact_preference": lead.contact_preference,
        "notes_snippet": lead.notes_snippet,
        # Private fields
        "client_name": lead.client_name,
        "client_phone": lead.client_phone,
        "client_email": lead.client_email,
        "exact_address": lead.exact_address,
        # Lifecycle
        "created_at_utc": to_iso_utc(lead.created_at, name="created_at"),
        "expires_at_utc": to_iso_utc(lead.expires_at, name="expires_at"),
        "is_closed": lead.is_closed,
    }


def _row_to_lead(row: Mapping[str, Any]) -> Lead:
    """Convert a Supabase row into a domain Lead."""

    return Lead(
        lead_id=UUID(str(row["lead_id"])),
        city=str(row["city"]),
        zip_code=row.get("zip_code"),
        service_type=str(row["service_type"]),
        preferred_time_window=row.get("preferred_time_window"),
        session_length=row.get("session_length"),
        location_type=row.get("location_type"),
        contact_preference=row.get("contact_preference"),
        notes_snippet=str(row.get("notes_snippet") or ""),
        client_name=str(row["client_name"]),
        client_phone=str(row["client_phone"]),
        client_email=row.get("client_email"),
        exact_address=row.get("exact_address"),
        created_at=parse_utc_datetime(row["created_at_utc"]),
        expires_at=parse_utc_datetime(row["expires_at_utc"]),
        is_closed=bool(row.get("is_closed", False)),
        intake_key=row.get("intake_key"),
    )


def create_lead(
    db: Client,
    intake: LeadIntake,
    *,
    now: datetime,
    ttl_hours: int = DEFAULT_LEAD_TTL_HOURS,
) -> Tuple[Lead, bool]:
    """
    Persist a Lead built from a validated intake.

    Idempotent: the lead id is derived from the intake fingerprint, so a
    redelivered submission hits the primary key, is ignored by the insert, and
    the stored lead is returned instead.

    Returns:
        (lead, created) where `created` is False for a redelivery.

    Raises:
        StorageError: if the store rejects the write.
    """

    lead = Lead.from_intake(intake, received_at=now, ttl_hours=ttl_hours)
    inserted = rows_of(
        run_query(
            db.table(_LEADS_TABLE).upsert(
                _lead_to_row(lead), on_conflict="lead_id", ignore_duplicates=True
            ),
            "insert lead",
        )
    )
    if inserted:
        return _row_to_lead(inserted[0]), True

    stored = get_lead_by_id(db, lead.lead_id)
    if stored is None:
        # Ignored as a duplicate yet unreadable means the store is misbehaving.
        return lead, False
    return stored, False


def get_lead_by_id(db: Client, lead_id: UUID) -> Optional[Lead]:
    """
    Fetch a Lead by ID.

    Returns:
    - Lead if found
    - None if no record exists for the given ID
    """

    response = run_query(
        db.table(_LEADS_TABLE).select("*").eq("lead_id", str(lead_id)).limit(1),
        "fetch lead",
    )
    rows = rows_of(response)
    if not rows:
        return None
    return _row_to_lead(rows[0])


def _row_to_public_view(row: Mapping[str, Any]) -> LeadPublicView:
    return LeadPublicView(
        lead_id=UUID(str(row["lead_id"])),
        city=str(row["city"]),
        service_type=str(row["service_type"]),
        preferred_time_window=row.get("preferred_time_window"),
        session_length=row.get("session_length"),
        location_type=row.get("location_type"),
        contact_preference=row.get("contact_preference"),
        notes_snippet=str(row.get("notes_snippet") or ""),
        created_at=parse_utc_datetime(row["created_at_utc"]),
        expires_at=parse_utc_datetime(row["expires_at_utc"]),
        is_closed=bool(row.get("is_closed", False)),
    )


def get_public_view(db: Client, lead_id: UUID) -> Optional[LeadPublicView]:
    """Fetch the non-PII projection of a lead; only public columns are selected."""

    response = run_query(
        db.table(_LEADS_TABLE).select(_PUBLIC_COLUMNS).eq("lead_id", str(lead_id)).limit(1),
        "fetch public lead fields",
    )
    rows = rows_of(response)
    if not rows:
        return None
    return _row_to_public_view(rows[0])


def get_public_views(db: Client, lead_ids: Sequence[UUID]) -> Dict[UUID, LeadPublicView]:
    """Public projections of several leads, keyed by lead id; missing ids are absent."""

    if not lead_ids:
        return {}
    response = run_query(
        db.table(_LEADS_TABLE)
        .select(_PUBLIC_COLUMNS)
        .in_("lead_id", sorted({str(i) for i in lead_ids})),
        "fetch public lead fields",
    )
    views = [_row_to_public_view(row) for row in rows_of(response)]
    return {view.lead_id: view for view in views}


def list_public_views(
    db: Client, *, created_since: Optional[datetime] = None
) -> List[LeadPublicView]:
    """Public projections of every lead (or those created since a cutoff), newest first."""

    query = db.table(_LEADS_TABLE).select(_PUBLIC_COLUMNS)
    if created_since is not None:
        query = query.gte("created_at_utc", to_iso_utc(created_since, name="created_since"))
    response = run_query(query.order("created_at_utc", desc=True), "list leads")
    return [_row_to_public_view(row) for row in rows_of(response)]


def get_private_details(db: Client, lead_id: UUID) -> Optional[LeadPrivateDetails]:
    response = run_query(
        db.table(_LEADS_TABLE).select(_PRIVATE_COLUMNS).eq("lead_id", str(lead_id)).limit(1),
        "fetch private lead fields",
    )
    rows = rows_of(response)
    if not rows:
        return None
    row = rows[0]
    return LeadPrivateDetails(
        client_name=str(row["client_name"]),
        client_phone=str(row["client_phone"]),
        client_email=row.get("client_email"),
        exact_address=row.get("exact_address"),
        city=str(row["city"]),
        zip_code=row.get("zip_code"),
    )


def close_lead(db: Client, lead_id: UUID, *, now: datetime) -> bool:
    """
    Mark a lead closed so no further provider can unlock it.

    Returns:
        True if a lead row was updated, False if the lead does not exist.
    """

    response = run_query(
        db.table(_LEADS_TABLE)
        .update({"is_closed": True, "updated_at_utc": to_iso_utc(now, name="now")})
        .eq("lead_id", str(lead_id)),
        "close lead",
    )
    return bool(rows_of(response))


def is_lead_closed(db: Client, lead_id: UUID) -> bool:
    view = get_public_view(db, lead_id)
    return view is None or view.is_closed


def find_expired_leads(db: Client, *, now: datetime) -> List[Lead]:
    """All leads that are still open but past their expiry time."""

    response = run_query(
        db.table(_LEADS_TABLE)
        .select("*")
        .eq("is_closed", False)
        .lt("expires_at_utc", to_iso_utc(now, name="now")),
        "find expired leads",
    )
    return [_row_to_lead(row) for row in rows_of(response)]


__all__ = [
    "create_lead",
    "get_lead_by_id",
    "get_public_view",
    "get_public_views",
    "list_public_views",
    "get_private_details",
    "close_lead",
    "is_lead_closed",
    "find_expired_leads",
]
