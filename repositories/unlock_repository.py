"""
Unlock ledger (persistence).

One row per (lead_id, provider_id). This module is the only writer of that
table, and every write after creation is a compare-and-set on `status`:

    UPDATE unlocks SET status = :target, ...
     WHERE lead_id = :lead AND provider_id = :provider
       AND status IN (:allowed_sources)

Postgres row locks serialize concurrent writers on the same pair, so at most
one caller observes a given transition. The transition table itself lives in
domain/unlock.py.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set
from uuid import UUID

from domain.errors import ConflictError, NotFoundError
from domain.provider import normalize_provider_id
from domain.time import parse_optional_utc, parse_utc_datetime, to_iso_utc
from domain.unlock import (
    DEFAULT_UNLOCK_TTL_HOURS,
    EXPIRABLE_STATUSES,
    OPEN_STATUSES,
    REFRESHABLE_STATUSES,
    RETENTION_STATUSES,
    Unlock,
    UnlockAudit,
    UnlockStatus,
    allowed_sources,
    ttl_deadline,
    unlock_idempotency_key,
)
from repositories.client import Client, rows_of, run_query

_UNLOCKS_TABLE: str = "unlocks"
_PAIR_CONFLICT: str = "lead_id,provider_id"


def _status_values(statuses: Iterable[UnlockStatus]) -> List[str]:
    return sorted(status.value for status in statuses)


def _row_to_unlock(row: Mapping[str, Any]) -> Unlock:
    """Convert a Supabase row into an Unlock snapshot."""

    return Unlock(
        lead_id=UUID(str(row["lead_id"])),
        provider_id=str(row["provider_id"]),
        status=UnlockStatus(str(row["status"])),
        idempotency_key=str(row["idempotency_key"]),
        ttl_expires_at=parse_utc_datetime(row["ttl_expires_at_utc"]),
        created_at=parse_utc_datetime(row["created_at_utc"]),
        updated_at=parse_optional_utc(row.get("updated_at_utc")),
        checkout_session_id=row.get("checkout_session_id"),
        payment_link_url=row.get("payment_link_url"),
        teaser_sent_at=parse_optional_utc(row.get("teaser_sent_at_utc")),
        y_received_at=parse_optional_utc(row.get("y_received_at_utc")),
        payment_link_sent_at=parse_optional_utc(row.get("payment_link_sent_at_utc")),
        paid_at=parse_optional_utc(row.get("paid_at_utc")),
        unlocked_at=parse_optional_utc(row.get("unlocked_at_utc")),
        revealed_at=parse_optional_utc(row.get("revealed_at_utc")),
        last_sent_at=parse_optional_utc(row.get("last_sent_at_utc")),
    )


def _pair_query(query: Any, lead_id: UUID, provider_id: str) -> Any:
    return query.eq("lead_id", str(lead_id)).eq("provider_id", provider_id)


def get_unlock(db: Client, lead_id: UUID, provider_id: str) -> Optional[Unlock]:
    provider_id = normalize_provider_id(provider_id)
    response = run_query(
        _pair_query(db.table(_UNLOCKS_TABLE).select("*"), lead_id, provider_id).limit(1),
        "fetch unlock",
    )
    rows = rows_of(response)
    if not rows:
        return None
    return _row_to_unlock(rows[0])


def create_unlock(
    db: Client,
    lead_id: UUID,
    provider_id: str,
    *,
    now: datetime,
    ttl_hours: float = DEFAULT_UNLOCK_TTL_HOURS,
) -> Unlock:
    """
    Create the Unlock for a (lead, provider) pair, or refresh an existing one.

    Behavior:
    - No row yet: insert with status NEW_LEAD and a fresh TTL.
    - Row still in NEW_LEAD (never offered, e.g. deferred): refresh the TTL.
    - Any other row: returned unchanged. An offer that was already sent or
      accepted is never restarted, so a re-match cannot resend its teaser.

    Both the insert (ON CONFLICT DO NOTHING) and the refresh (conditional on the
    current status) are single statements, so concurrent calls are safe.
    """

    provider_id = normalize_provider_id(provider_id)
    now_iso = to_iso_utc(now, name="now")
    ttl_iso = to_iso_utc(ttl_deadline(now, ttl_hours), name="ttl_expires_at")

    row = {
        "lead_id": str(lead_id),
        "provider_id": provider_id,
        "status": UnlockStatus.NEW_LEAD.value,
        "idempotency_key": unlock_idempotency_key(lead_id, provider_id),
        "ttl_expires_at_utc": ttl_iso,
        "created_at_utc": now_iso,
        "updated_at_utc": now_iso,
    }
    inserted = rows_of(
        run_query(
            db.table(_UNLOCKS_TABLE).upsert(
                row, on_conflict=_PAIR_CONFLICT, ignore_duplicates=True
            ),
            "insert unlock",
        )
    )
    if inserted:
        return _row_to_unlock(inserted[0])

    refreshed = rows_of(
        run_query(
            _pair_query(
                db.table(_UNLOCKS_TABLE).update(
                    {
                        "ttl_expires_at_utc": ttl_iso,
                        "updated_at_utc": now_iso,
                    }
                ),
                lead_id,
                provider_id,
            ).in_("status", _status_values(REFRESHABLE_STATUSES)),
            "refresh unlock",
        )
    )
    if refreshed:
        return _row_to_unlock(refreshed[0])

    existing = get_unlock(db, lead_id, provider_id)
    if existing is None:
        raise NotFoundError(f"Unlock vanished during create: {lead_id}/{provider_id}")
    return existing


def update_status(
    db: Client,
    lead_id: UUID,
    provider_id: str,
    new_status: UnlockStatus,
    audit: Optional[UnlockAudit] = None,
    *,
    now: datetime,
    strict: bool = False,
) -> Unlock:
    """
    Apply a status transition and merge audit fields.

    With strict=True the self-transition is not allowed, which makes the
    caller the unique winner of `-> new_status`.

    Raises:
        NotFoundError: no unlock exists for the pair.
        ConflictError: the stored status cannot move to `new_status`.
        StorageError: the store failed.
    """

    provider_id = normalize_provider_id(provider_id)
    payload: Dict[str, Any] = {
        "status": new_status.value,
        "updated_at_utc": to_iso_utc(now, name="now"),
    }
    if audit is not None:
        payload.update(audit.as_columns())

    sources = allowed_sources(new_status, strict=strict)
    response = run_query(
        _pair_query(db.table(_UNLOCKS_TABLE).update(payload), lead_id, provider_id).in_(
            "status", _status_values(sources)
        ),
        "update unlock status",
    )
    rows = rows_of(response)
    if rows:
        return _row_to_unlock(rows[0])

    current = get_unlock(db, lead_id, provider_id)
    if current is None:
        raise NotFoundError(f"No unlock for lead {lead_id} / provider {provider_id}")
    raise ConflictError(
        f"Illegal transition {current.status.value} -> {new_status.value} "
        f"for lead {lead_id} / provider {provider_id}"
    )


def find_by_session(db: Client, checkout_session_id: str) -> Optional[Unlock]:
    response = run_query(
        db.table(_UNLOCKS_TABLE)
        .select("*")
        .eq("checkout_session_id", checkout_session_id)
        .limit(1),
        "fetch unlock by session",
    )
    rows = rows_of(response)
    if not rows:
        return None
    return _row_to_unlock(rows[0])


def find_expired_unlocks(db: Client, *, now: datetime) -> List[Unlock]:
    """Offered-but-unpaid unlocks whose TTL is strictly in the past."""

    response = run_query(
        db.table(_UNLOCKS_TABLE)
        .select("*")
        .in_("status", _status_values(EXPIRABLE_STATUSES))
        .lt("ttl_expires_at_utc", to_iso_utc(now, name="now")),
        "find expired unlocks",
    )
    return [_row_to_unlock(row) for row in rows_of(response)]


def find_latest_open_unlock(db: Client, provider_id: str) -> Optional[Unlock]:
    """
    Most recently created unlock still awaiting the provider's answer.

    Inbound "Y"/"N" replies carry no lead id, so they apply to this one.
    """

    response = run_query(
        db.table(_UNLOCKS_TABLE)
        .select("*")
        .eq("provider_id", normalize_provider_id(provider_id))
        .in_("status", _status_values(OPEN_STATUSES))
        .order("created_at_utc", desc=True)
        .limit(1),
        "fetch latest open unlock",
    )
    rows = rows_of(response)
    if not rows:
        return None
    return _row_to_unlock(rows[0])


def list_unlocks_for_lead(db: Client, lead_id: UUID) -> List[Unlock]:
    response = run_query(
        db.table(_UNLOCKS_TABLE).select("*").eq("lead_id", str(lead_id)),
        "list unlocks for lead",
    )
    return [_row_to_unlock(row) for row in rows_of(response)]


def list_unlocks_for_provider(
    db: Client,
    provider_id: str,
    *,
    status: Optional[UnlockStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Unlock]:
    """One provider's unlocks, newest first, optionally narrowed to one status."""

    query = (
        db.table(_UNLOCKS_TABLE)
        .select("*")
        .eq("provider_id", normalize_provider_id(provider_id))
    )
    if status is not None:
        query = query.eq("status", status.value)
    response = run_query(
        query.order("created_at_utc", desc=True).range(offset, offset + limit - 1),
        "list unlocks for provider",
    )
    return [_row_to_unlock(row) for row in rows_of(response)]


def list_unlocks(db: Client, *, created_since: Optional[datetime] = None) -> List[Unlock]:
    """Every unlock, or only those created at or after `created_since`."""

    query = db.table(_UNLOCKS_TABLE).select("*")
    if created_since is not None:
        query = query.gte("created_at_utc", to_iso_utc(created_since, name="created_since"))
    response = run_query(query.order("created_at_utc", desc=True), "list unlocks")
    return [_row_to_unlock(row) for row in rows_of(response)]


def find_leads_with_unlocks(db: Client, lead_ids: Sequence[UUID]) -> Set[UUID]:
    """The subset of `lead_ids` that has at least one unlock record."""

    if not lead_ids:
        return set()
    response = run_query(
        db.table(_UNLOCKS_TABLE).select("lead_id").in_("lead_id", [str(i) for i in lead_ids]),
        "find leads with unlocks",
    )
    return {UUID(str(row["lead_id"])) for row in rows_of(response)}


def get_unlock_stats(db: Client, lead_id: UUID) -> Dict[str, int]:
    """Count of unlocks per status for one lead, e.g. {"TEASER_SENT": 3}."""

    response = run_query(
        db.table(_UNLOCKS_TABLE).select("status").eq("lead_id", str(lead_id)),
        "fetch unlock stats",
    )
    stats: Dict[str, int] = {}
    for row in rows_of(response):
        status = str(row["status"])
        stats[status] = stats.get(status, 0) + 1
    return stats


def purge_terminal_unlocks(db: Client, *, older_than: datetime) -> int:
    """
    Delete EXPIRED and REVEALED unlocks last touched before `older_than`.

    Returns:
        Number of rows deleted.
    """

    response = run_query(
        db.table(_UNLOCKS_TABLE)
        .delete()
        .in_("status", _status_values(RETENTION_STATUSES))
        .lt("updated_at_utc", to_iso_utc(older_than, name="older_than")),
        "purge terminal unlocks",
    )
    return len(rows_of(response))


__all__ = [
    "get_unlock",
    "create_unlock",
    "update_status",
    "find_by_session",
    "find_expired_unlocks",
    "find_latest_open_unlock",
    "list_unlocks_for_lead",
    "list_unlocks_for_provider",
    "list_unlocks",
    "find_leads_with_unlocks",
    "get_unlock_stats",
    "purge_terminal_unlocks",
]
