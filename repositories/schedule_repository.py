"""
Scheduled dispatch queue (persistence).

Deferred teaser dispatches, one row per (lead_id, provider_id). Scheduling the
same pair again moves the entry and puts it back to pending.

Claiming an entry is a conditional UPDATE pending -> processed, so two sweeps
running at once never dispatch the same entry twice.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Mapping
from uuid import UUID

from domain.provider import normalize_provider_id
from domain.schedule import DispatchStatus, ScheduledDispatch
from domain.time import parse_optional_utc, parse_utc_datetime, to_iso_utc
from repositories.client import Client, rows_of, run_query

_SCHEDULE_TABLE: str = "scheduled_leads"

# Failure text is stored for operators; keep rows small.
_MAX_ERROR_LENGTH: int = 500


def _row_to_dispatch(row: Mapping[str, Any]) -> ScheduledDispatch:
    return ScheduledDispatch(
        lead_id=UUID(str(row["lead_id"])),
        provider_id=str(row["provider_id"]),
        scheduled_for=parse_utc_datetime(row["scheduled_for_utc"]),
        status=DispatchStatus(str(row["status"])),
        created_at=parse_optional_utc(row.get("created_at_utc")),
        processed_at=parse_optional_utc(row.get("processed_at_utc")),
        last_error=row.get("last_error"),
    )


def upsert_dispatch(
    db: Client,
    lead_id: UUID,
    provider_id: str,
    scheduled_for: datetime,
    *,
    now: datetime,
) -> ScheduledDispatch:
    row = {
        "lead_id": str(lead_id),
        "provider_id": normalize_provider_id(provider_id),
        "scheduled_for_utc": to_iso_utc(scheduled_for, name="scheduled_for"),
        "status": DispatchStatus.PENDING.value,
        "processed_at_utc": None,
        "last_error": None,
        "created_at_utc": to_iso_utc(now, name="now"),
    }
    response = run_query(
        db.table(_SCHEDULE_TABLE).upsert(row, on_conflict="lead_id,provider_id"),
        "schedule dispatch",
    )
    rows = rows_of(response)
    return _row_to_dispatch(rows[0] if rows else row)


def find_due_dispatches(db: Client, *, now: datetime, limit: int = 100) -> List[ScheduledDispatch]:
    """Pending entries whose time has come, oldest first."""

    response = run_query(
        db.table(_SCHEDULE_TABLE)
        .select("*")
        .eq("status", DispatchStatus.PENDING.value)
        .lte("scheduled_for_utc", to_iso_utc(now, name="now"))
        .order("scheduled_for_utc")
        .limit(limit),
        "find due dispatches",
    )
    return [_row_to_dispatch(row) for row in rows_of(response)]


def claim_dispatch(db: Client, lead_id: UUID, provider_id: str, *, now: datetime) -> bool:
    """Move a pending entry to processed. True only for the caller that moved it."""

    response = run_query(
        db.table(_SCHEDULE_TABLE)
        .update(
            {
                "status": DispatchStatus.PROCESSED.value,
                "processed_at_utc": to_iso_utc(now, name="now"),
            }
        )
        .eq("lead_id", str(lead_id))
        .eq("provider_id", normalize_provider_id(provider_id))
        .eq("status", DispatchStatus.PENDING.value),
        "claim scheduled dispatch",
    )
    return bool(rows_of(response))


def mark_dispatch_failed(
    db: Client, lead_id: UUID, provider_id: str, error: str, *, now: datetime
) -> None:
    run_query(
        db.table(_SCHEDULE_TABLE)
        .update(
            {
                "status": DispatchStatus.FAILED.value,
                "processed_at_utc": to_iso_utc(now, name="now"),
                "last_error": error[:_MAX_ERROR_LENGTH],
            }
        )
        .eq("lead_id", str(lead_id))
        .eq("provider_id", normalize_provider_id(provider_id)),
        "mark scheduled dispatch failed",
    )


def list_dispatches(db: Client) -> List[ScheduledDispatch]:
    response = run_query(
        db.table(_SCHEDULE_TABLE).select("*").order("scheduled_for_utc"),
        "list scheduled dispatches",
    )
    return [_row_to_dispatch(row) for row in rows_of(response)]


__all__ = [
    "upsert_dispatch",
    "find_due_dispatches",
    "claim_dispatch",
    "mark_dispatch_failed",
    "list_dispatches",
]
