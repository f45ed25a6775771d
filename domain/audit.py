"""
Domain: append-only audit log entries.

The audit log exists for operators diagnosing duplicate deliveries and races.
The state machine writes to it but never reads it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from .time import require_utc_timestamp


class AuditEvent(str, Enum):
    DUPLICATE_SESSION_WEBHOOK = "DUPLICATE_SESSION_WEBHOOK"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    UNKNOWN_SESSION = "UNKNOWN_SESSION"
    PAYMENT_AFTER_EXPIRY = "PAYMENT_AFTER_EXPIRY"
    REVEAL_FAILED = "REVEAL_FAILED"
    FIRST_LEAD_FREE = "FIRST_LEAD_FREE"
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    SEND_FAILED = "SEND_FAILED"


@dataclass(frozen=True, slots=True)
class AuditEntry:
    event_type: AuditEvent
    created_at: datetime
    lead_id: Optional[UUID] = None
    provider_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
