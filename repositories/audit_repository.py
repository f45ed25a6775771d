"""
Audit log (persistence).

Append-only. The broker writes here on duplicate deliveries, unknown sessions,
late payments and failed reveals; nothing in the broker reads it back.
"""

from __future__ import annotations

from typing import Any, Dict

from domain.audit import AuditEntry
from domain.time import to_iso_utc
from repositories.client import Client, run_query

_AUDIT_TABLE: str = "unlock_audit_log"


def _entry_to_row(entry: AuditEntry) -> Dict[str, Any]:
    return {
        "event_type": entry.event_type.value,
        "lead_id": str(entry.lead_id) if entry.lead_id is not None else None,
        "provider_id": entry.provider_id,
        "checkout_session_id": entry.checkout_session_id,
        "notes": entry.notes,
        "created_at_utc": to_iso_utc(entry.created_at, name="created_at"),
    }


def record_audit(db: Client, entry: AuditEntry) -> None:
    run_query(db.table(_AUDIT_TABLE).insert(_entry_to_row(entry)), "write audit entry")


__all__ = ["record_audit"]
