"""
Domain: deferred dispatch and the active (business-hours) window.

Contract excerpts implemented here:
- A deferred dispatch is unique per (lead_id, provider_id) and is one of
  pending, processed or failed.
- Whether "now" is inside the active window is a pure function of the
  current time, a daily start/end, a timezone and a set of ISO weekdays
  (1 = Monday ... 7 = Sunday).
- start == end means the window is always open; start > end wraps past
  midnight (e.g. 21:00-06:00).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import FrozenSet, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from .time import require_utc_timestamp

ALL_WEEKDAYS: FrozenSet[int] = frozenset(range(1, 8))


class DispatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ScheduledDispatch:
    lead_id: UUID
    provider_id: str
    scheduled_for: datetime
    status: DispatchStatus = DispatchStatus.PENDING
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("scheduled_for", self.scheduled_for)
        if self.processed_at is not None:
            require_utc_timestamp("processed_at", self.processed_at)

    def is_due(self, as_of: datetime) -> bool:
        return self.status == DispatchStatus.PENDING and self.scheduled_for <= as_of


@dataclass(frozen=True, slots=True)
class ActiveWindow:
    """
    Daily window during which unsolicited messages may be sent.

    Defaults mirror the quiet hours providers were promised: nothing between
    21:30 and 08:00 America/New_York.
    """

    start: time = time(8, 0)
    end: time = time(21, 30)
    timezone: str = "America/New_York"
    weekdays: FrozenSet[int] = field(default=ALL_WEEKDAYS)

    def __post_init__(self) -> None:
        if not self.weekdays:
            raise ValueError("weekdays must not be empty")
        if not self.weekdays <= ALL_WEEKDAYS:
            raise ValueError("weekdays must be ISO weekday numbers 1-7")
        ZoneInfo(self.timezone)

    @property
    def always_open(self) -> bool:
        return self.start == self.end


def is_within_active_window(now: datetime, window: ActiveWindow) -> bool:
    """
    Return True if `now` falls inside the active window.

    For a window that wraps midnight, the portion after midnight belongs to the
    weekday on which the window opened.
    """

    require_utc_timestamp("now", now)
    local = now.astimezone(ZoneInfo(window.timezone))
    clock = local.time().replace(tzinfo=None)

    if window.always_open:
        return local.isoweekday() in window.weekdays

    if window.start < window.end:
        return local.isoweekday() in window.weekdays and window.start <= clock < window.end

    # Wrapping window, e.g. 21:00-06:00.
    if clock >= window.start:
        return local.isoweekday() in window.weekdays
    if clock < window.end:
        opened_on = (local - timedelta(days=1)).isoweekday()
        return opened_on in window.weekdays
    return False


def next_active_time(now: datetime, window: ActiveWindow) -> datetime:
    """
    Earliest UTC instant at or after `now` that is inside the active window.

    Returns `now` unchanged if it is already inside the window.
    """

    require_utc_timestamp("now", now)
    if is_within_active_window(now, window):
        return now

    zone = ZoneInfo(window.timezone)
    local = now.astimezone(zone)

    opens_at = time(0, 0) if window.always_open else window.start

    # The next opening is at most one week away; check each day's start.
    for day_offset in range(0, 8):
        day = local.date() + timedelta(days=day_offset)
        opening = datetime.combine(day, opens_at, tzinfo=zone)
        if opening <= local:
            continue
        if opening.isoweekday() in window.weekdays:
            return opening.astimezone(timezone.utc)

    raise ValueError("active window never opens")
