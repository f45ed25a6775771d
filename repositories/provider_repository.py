"""
Provider directory (persistence).

Reads and the few atomic writes the broker performs on providers:
opt-out flag, the one-time first-lead claim, and the per-provider send log
that backs rate limiting.

Notes:
- The first-lead claim is a single conditional UPDATE; the caller that gets a
  row back is the unique winner.
- Phone lookups try every stored spelling of the inbound number.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Mapping, Optional, Sequence
from uuid import UUID

from domain.provider import Provider, normalize_provider_id, phone_lookup_variants
from domain.time import parse_optional_utc, to_iso_utc
from repositories.client import Client, rows_of, run_query

_PROVIDERS_TABLE: str = "providers"
_SENDS_TABLE: str = "provider_sends"

SEND_KIND_TEASER: str = "teaser"
SEND_KIND_PAYMENT_LINK: str = "payment_link"


def _row_to_provider(row: Mapping[str, Any]) -> Provider:
    return Provider(
        provider_id=str(row["provider_id"]),
        name=str(row.get("name") or ""),
        phone=str(row["phone"]),
        email=row.get("email"),
        sms_opted_out=bool(row.get("sms_opted_out", False)),
        is_verified=bool(row.get("is_verified", True)),
        service_areas=tuple(row.get("service_areas") or ()),
        first_lead_used=bool(row.get("first_lead_used", False)),
        created_at=parse_optional_utc(row.get("created_at_utc")),
        updated_at=parse_optional_utc(row.get("updated_at_utc")),
    )


def get_provider_by_id(db: Client, provider_id: str) -> Optional[Provider]:
    response = run_query(
        db.table(_PROVIDERS_TABLE)
        .select("*")
        .eq("provider_id", normalize_provider_id(provider_id))
        .limit(1),
        "fetch provider",
    )
    rows = rows_of(response)
    if not rows:
        return None
    return _row_to_provider(rows[0])


def find_provider_by_phone(db: Client, phone: str) -> Optional[Provider]:
    """
    Look up a provider by an inbound phone number.

    Tries the raw value plus the normalized variants (+1XXXXXXXXXX,
    +XXXXXXXXXXX, bare digits) in one query.
    """

    variants = phone_lookup_variants(phone)
    if not variants:
        return None
    response = run_query(
        db.table(_PROVIDERS_TABLE).select("*").in_("phone", variants).limit(1),
        "fetch provider by phone",
    )
    rows = rows_of(response)
    if not rows:
        return None
    return _row_to_provider(rows[0])


def find_matching_providers(db: Client) -> List[Provider]:
    """Providers eligible to receive leads: verified and not opted out."""

    response = run_query(
        db.table(_PROVIDERS_TABLE)
        .select("*")
        .eq("sms_opted_out", False)
        .eq("is_verified", True)
        .order("provider_id"),
        "list matching providers",
    )
    return [_row_to_provider(row) for row in rows_of(response)]


def list_providers(db: Client) -> List[Provider]:
    """Every registered provider, opted out or not."""

    response = run_query(
        db.table(_PROVIDERS_TABLE).select("*").order("provider_id"),
        "list providers",
    )
    return [_row_to_provider(row) for row in rows_of(response)]


def claim_first_lead(db: Client, provider_id: str, *, now: datetime) -> bool:
    """
    Atomically consume the provider's free first lead.

    Returns:
        True for exactly one caller per provider, False for everyone else
        (including when the provider does not exist).
    """

    response = run_query(
        db.table(_PROVIDERS_TABLE)
        .update({"first_lead_used": True, "updated_at_utc": to_iso_utc(now, name="now")})
        .eq("provider_id", normalize_provider_id(provider_id))
        .eq("first_lead_used", False),
        "claim first lead",
    )
    return bool(rows_of(response))


def set_opt_out(db: Client, phone: str, opted_out: bool, *, now: datetime) -> int:
    """
    Set the SMS opt-out flag for every provider registered under `phone`.

    Returns:
        Number of provider rows updated.
    """

    variants = phone_lookup_variants(phone)
    if not variants:
        return 0
    response = run_query(
        db.table(_PROVIDERS_TABLE)
        .update({"sms_opted_out": opted_out, "updated_at_utc": to_iso_utc(now, name="now")})
        .in_("phone", variants),
        "update provider opt-out",
    )
    return len(rows_of(response))


def create_provider(
    db: Client,
    *,
    provider_id: str,
    name: str,
    phone: str,
    now: datetime,
    email: Optional[str] = None,
    service_areas: Sequence[str] = (),
    is_verified: bool = True,
) -> Provider:
    """Register a provider. Raises ConflictError if the id is taken."""

    row = {
        "provider_id": normalize_provider_id(provider_id),
        "name": name,
        "phone": phone,
        "email": email,
        "sms_opted_out": False,
        "is_verified": is_verified,
        "service_areas": list(service_areas),
        "first_lead_used": False,
        "created_at_utc": to_iso_utc(now, name="now"),
        "updated_at_utc": to_iso_utc(now, name="now"),
    }
    response = run_query(db.table(_PROVIDERS_TABLE).insert(row), "insert provider")
    rows = rows_of(response)
    return _row_to_provider(rows[0] if rows else row)


def record_send(
    db: Client,
    provider_id: str,
    lead_id: UUID,
    kind: str,
    *,
    sent_at: datetime,
) -> None:
    run_query(
        db.table(_SENDS_TABLE).insert(
            {
                "provider_id": normalize_provider_id(provider_id),
                "lead_id": str(lead_id),
                "kind": kind,
                "sent_at_utc": to_iso_utc(sent_at, name="sent_at"),
            }
        ),
        "record provider send",
    )


def count_recent_sends(db: Client, provider_id: str, *, since: datetime) -> int:
    """Number of teaser / payment-link messages sent to a provider since `since`."""

    response = run_query(
        db.table(_SENDS_TABLE)
        .select("provider_id", count="exact")
        .eq("provider_id", normalize_provider_id(provider_id))
        .gte("sent_at_utc", to_iso_utc(since, name="since")),
        "count provider sends",
    )
    count = getattr(response, "count", None)
    if count is None:
        return len(rows_of(response))
    return int(count)


__all__ = [
    "SEND_KIND_TEASER",
    "SEND_KIND_PAYMENT_LINK",
    "get_provider_by_id",
    "find_provider_by_phone",
    "find_matching_providers",
    "list_providers",
    "claim_first_lead",
    "set_opt_out",
    "create_provider",
    "record_send",
    "count_recent_sends",
]
