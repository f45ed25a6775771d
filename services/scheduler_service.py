"""
Scheduler: deferred teaser dispatch outside the active window.

- schedule_dispatch() queues (or re-queues) a (lead, provider) pair for the
  next time the active window opens.
- run_due_dispatches() drains due entries. Each entry is claimed with a
  pending -> processed compare-and-set before it runs. An entry whose dispatch
  raises or reports a failed outcome is marked failed with its error text
  without stopping the sweep.
- LeadScheduler runs the sweeps periodically as an owned asyncio task; the
  blocking work happens in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from domain.schedule import DispatchStatus, ScheduledDispatch, next_active_time
from domain.time import to_iso_utc
from repositories.client import Client
from repositories.schedule_repository import (
    claim_dispatch,
    find_due_dispatches,
    list_dispatches,
    mark_dispatch_failed,
    upsert_dispatch,
)
from services.context import BrokerContext
from services.unlock_service import run_expiry_sweep

logger = logging.getLogger(__name__)

DispatchFn = Callable[[BrokerContext, UUID, str], Any]


@dataclass(frozen=True, slots=True)
class DispatchSweepResult:
    processed: int
    failed: int
    skipped: int


def schedule_dispatch(
    ctx: BrokerContext,
    lead_id: UUID,
    provider_id: str,
    scheduled_for: Optional[datetime] = None,
) -> ScheduledDispatch:
    """Queue a teaser dispatch; defaults to the next opening of the active window."""

    now = ctx.now()
    when = scheduled_for or next_active_time(now, ctx.settings.active_window)
    entry = upsert_dispatch(ctx.db, lead_id, provider_id, when, now=now)
    logger.info(
        "Teaser dispatch deferred",
        extra={
            "lead_id": str(lead_id),
            "provider_id": provider_id,
            "scheduled_for": to_iso_utc(when, name="scheduled_for"),
        },
    )
    return entry


def _describe_failure(result: Any) -> str:
    outcome = getattr(result, "outcome", "FAILED")
    label = str(getattr(outcome, "value", outcome))
    detail = getattr(result, "detail", None)
    return f"{label}: {detail}" if detail else label


def run_due_dispatches(ctx: BrokerContext, dispatch: DispatchFn) -> DispatchSweepResult:
    """
    Run every due entry once.

    `dispatch` may raise, or return a result whose `failed` attribute is true;
    either way the entry is marked failed with a short error text.
    """

    processed = failed = skipped = 0
    now = ctx.now()

    for entry in find_due_dispatches(ctx.db, now=now):
        if not claim_dispatch(ctx.db, entry.lead_id, entry.provider_id, now=now):
            # Another sweep got it first.
            skipped += 1
            continue
        try:
            result = dispatch(ctx, entry.lead_id, entry.provider_id)
        except Exception as exc:
            failed += 1
            logger.exception(
                "Scheduled dispatch failed",
                extra={"lead_id": str(entry.lead_id), "provider_id": entry.provider_id},
            )
            mark_dispatch_failed(
                ctx.db, entry.lead_id, entry.provider_id, f"{type(exc).__name__}: {exc}", now=ctx.now()
            )
            continue

        # A dispatch may also report failure without raising, e.g. an undelivered SMS.
        if getattr(result, "failed", False):
            failed += 1
            error = _describe_failure(result)
            logger.warning(
                "Scheduled dispatch not delivered",
                extra={"lead_id": str(entry.lead_id), "provider_id": entry.provider_id, "error": error},
            )
            mark_dispatch_failed(ctx.db, entry.lead_id, entry.provider_id, error, now=ctx.now())
            continue
        processed += 1

    if processed or failed or skipped:
        logger.info(
            "Dispatch sweep finished",
            extra={"processed": processed, "failed": failed, "skipped": skipped},
        )
    return DispatchSweepResult(processed=processed, failed=failed, skipped=skipped)


def get_schedule_summary(db: Client) -> Dict[str, Any]:
    """
    Counts per status plus the earliest pending and the latest scheduled time.

    Example:
        {"pending": 2, "processed": 10, "failed": 1,
         "next_scheduled_for": "2025-01-02T13:00:00+00:00",
         "last_scheduled_for": "2025-01-02T13:00:00+00:00"}
    """

    entries = list_dispatches(db)
    summary: Dict[str, Any] = {status.value: 0 for status in DispatchStatus}
    for entry in entries:
        summary[entry.status.value] += 1

    pending = [e.scheduled_for for e in entries if e.status == DispatchStatus.PENDING]
    summary["next_scheduled_for"] = (
        to_iso_utc(min(pending), name="next_scheduled_for") if pending else None
    )
    summary["last_scheduled_for"] = (
        to_iso_utc(max(e.scheduled_for for e in entries), name="last_scheduled_for")
        if entries
        else None
    )
    return summary


class LeadScheduler:
    """
    Periodic dispatch (and expiry) sweeps.

    start() and stop() are called from the application lifespan.
    """

    def __init__(
        self,
        ctx: BrokerContext,
        dispatch: DispatchFn,
        *,
        interval_seconds: Optional[float] = None,
        run_expiry: bool = True,
    ) -> None:
        self.ctx = ctx
        self.dispatch = dispatch
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else ctx.settings.scheduler_interval_seconds
        )
        self.run_expiry = run_expiry
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> None:
        try:
            run_due_dispatches(self.ctx, self.dispatch)
        except Exception:
            logger.exception("Dispatch sweep crashed")
        if self.run_expiry:
            try:
                run_expiry_sweep(self.ctx)
            except Exception:
                logger.exception("Expiry sweep crashed")

    async def _loop(self) -> None:
        while True:
            await asyncio.to_thread(self.run_once)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            logger.warning("LeadScheduler already running")
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("LeadScheduler started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("LeadScheduler stopped")


__all__ = [
    "DispatchSweepResult",
    "schedule_dispatch",
    "run_due_dispatches",
    "get_schedule_summary",
    "LeadScheduler",
]
