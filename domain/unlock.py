"""
Domain: Unlock state machine for a single (lead, provider) pair.

Contract excerpts implemented here:
- One Unlock record per (lead_id, provider_id); the composite key is the
  concurrency boundary.
- Success path: NEW_LEAD -> TEASER_SENT -> AWAIT_CONFIRM -> PAYMENT_LINK_SENT
  -> PAID -> REVEALED (terminal).
- EXPIRED (terminal for the teaser flow) is reachable from every non-terminal
  status except PAID. A payment arriving after expiry is still honored:
  EXPIRED -> PAID.
- A provider can only accept (-> AWAIT_CONFIRM) an offer whose teaser was
  sent; replies never reach a NEW_LEAD record.
- Nothing leaves PAID except PAID -> REVEALED; nothing leaves REVEALED.
- The first free lead skips the payment flow: an open status goes straight to
  REVEALED with paid/unlocked/revealed stamped together.
- Every status may be re-applied to itself (idempotent no-op that still merges
  the audit fields) unless the caller asks for a strict transition.
- The idempotency key is a deterministic function of (lead_id, provider_id).

This module contains only pure domain logic: no I/O, no database.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional
from uuid import UUID

from .time import require_utc_timestamp, to_iso_utc

DEFAULT_UNLOCK_TTL_HOURS: int = 24


class UnlockStatus(str, Enum):
    NEW_LEAD = "NEW_LEAD"
    TEASER_SENT = "TEASER_SENT"
    AWAIT_CONFIRM = "AWAIT_CONFIRM"
    PAYMENT_LINK_SENT = "PAYMENT_LINK_SENT"
    PAID = "PAID"
    REVEALED = "REVEALED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (UnlockStatus.REVEALED, UnlockStatus.EXPIRED)


# Statuses the TTL applies to; NEW_LEAD has not been offered yet.
EXPIRABLE_STATUSES: FrozenSet[UnlockStatus] = frozenset(
    {UnlockStatus.TEASER_SENT, UnlockStatus.AWAIT_CONFIRM, UnlockStatus.PAYMENT_LINK_SENT}
)

# Statuses in which a provider reply ("Y"/"N") refers to an offer the provider
# has actually received. A NEW_LEAD unlock has not been teased yet.
OPEN_STATUSES: FrozenSet[UnlockStatus] = EXPIRABLE_STATUSES

# Statuses whose TTL a re-match may refresh. Once offered, a record is left
# alone so the same teaser is never sent twice.
REFRESHABLE_STATUSES: FrozenSet[UnlockStatus] = frozenset({UnlockStatus.NEW_LEAD})

RETENTION_STATUSES: FrozenSet[UnlockStatus] = frozenset(
    {UnlockStatus.EXPIRED, UnlockStatus.REVEALED}
)

_TRANSITIONS: Mapping[UnlockStatus, FrozenSet[UnlockStatus]] = {
    UnlockStatus.NEW_LEAD: frozenset(
        {UnlockStatus.TEASER_SENT, UnlockStatus.REVEALED, UnlockStatus.EXPIRED}
    ),
    UnlockStatus.TEASER_SENT: frozenset(
        {UnlockStatus.AWAIT_CONFIRM, UnlockStatus.REVEALED, UnlockStatus.EXPIRED}
    ),
    UnlockStatus.AWAIT_CONFIRM: frozenset(
        {UnlockStatus.PAYMENT_LINK_SENT, UnlockStatus.REVEALED, UnlockStatus.EXPIRED}
    ),
    UnlockStatus.PAYMENT_LINK_SENT: frozenset({UnlockStatus.PAID, UnlockStatus.EXPIRED}),
    UnlockStatus.PAID: frozenset({UnlockStatus.REVEALED}),
    UnlockStatus.REVEALED: frozenset(),
    UnlockStatus.EXPIRED: frozenset({UnlockStatus.PAID}),
}


def can_transition(current: UnlockStatus, target: UnlockStatus, *, strict: bool = False) -> bool:
    """Return True if `current -> target` is a legal transition."""

    if current == target:
        return not strict
    return target in _TRANSITIONS[current]


def allowed_sources(target: UnlockStatus, *, strict: bool = False) -> FrozenSet[UnlockStatus]:
    """
    Every status from which `target` may be reached.

    The store uses this set as the compare-and-set guard of a status update.
    """

    sources = {status for status, targets in _TRANSITIONS.items() if target in targets}
    if not strict:
        sources.add(target)
    return frozenset(sources)


def unlock_idempotency_key(lead_id: UUID, provider_id: str) -> str:
    return f"unlock_{lead_id}_{provider_id}"


@dataclass(frozen=True, slots=True)
class UnlockAudit:
    """
    Audit fields merged into an Unlock by a status update.

    Only fields that are set are written; unset fields keep their stored value.
    """

    payment_link_url: Optional[str] = None
    checkout_session_id: Optional[str] = None
    teaser_sent_at: Optional[datetime] = None
    y_received_at: Optional[datetime] = None
    payment_link_sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    unlocked_at: Optional[datetime] = None
    revealed_at: Optional[datetime] = None
    last_sent_at: Optional[datetime] = None

    def as_columns(self) -> Dict[str, Any]:
        columns: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, datetime):
                columns[f"{f.name}_utc"] = to_iso_utc(value, name=f.name)
            else:
                columns[f.name] = value
        return columns


@dataclass(frozen=True, slots=True)
class Unlock:
    """
    Immutable snapshot of the disclosure gate for one (lead, provider) pair.

    The store is the source of truth; every change goes through a status
    update that returns a fresh snapshot.
    """

    lead_id: UUID
    provider_id: str
    status: UnlockStatus
    idempotency_key: str
    ttl_expires_at: datetime
    created_at: datetime
    updated_at: Optional[datetime] = None
    checkout_session_id: Optional[str] = None
    payment_link_url: Optional[str] = None
    teaser_sent_at: Optional[datetime] = None
    y_received_at: Optional[datetime] = None
    payment_link_sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    unlocked_at: Optional[datetime] = None
    revealed_at: Optional[datetime] = None
    last_sent_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("ttl_expires_at", self.ttl_expires_at)
        require_utc_timestamp("created_at", self.created_at)

    def ttl_elapsed(self, as_of: datetime) -> bool:
        require_utc_timestamp("as_of", as_of)
        return self.ttl_expires_at < as_of

    def is_payment_settled(self) -> bool:
        return self.status in (UnlockStatus.PAID, UnlockStatus.REVEALED)


def ttl_deadline(now: datetime, ttl_hours: float) -> datetime:
    require_utc_timestamp("now", now)
    return now + timedelta(hours=ttl_hours)
