"""
Tests for `services/lead_service.py`.

Covers contract rules:
- A lead is offered to every matching provider; a failure for one provider
  never blocks the others.
- A provider's first lead is revealed for free, exactly once.
- Teasers carry no PII and are recorded for rate limiting.
- Outside the active window, dispatch is deferred to the scheduler.
- Closed / expired leads, unavailable and rate-limited providers are skipped.
- Leads stored but never offered are found and processed again, one at a time.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from domain.errors import NotFoundError
from domain.schedule import ActiveWindow
from domain.unlock import UnlockStatus
from repositories.lead_repository import close_lead
from repositories.provider_repository import get_provider_by_id
from repositories.schedule_repository import list_dispatches
from repositories.unlock_repository import get_unlock, update_status
from services.lead_service import (
    DispatchOutcome,
    dispatch_to_provider,
    find_missed_leads,
    ingest_lead,
    process_new_lead,
    recover_missed_leads,
)
from fakes import FakeIntelligence, FakeSms, make_intake


def _outcomes(results):
    return {r.provider_id: r.outcome for r in results}


def test_new_lead_goes_to_matching_providers(ctx, db, sms, make_provider) -> None:
    make_provider("provider10", phone="+15550001010", service_areas=["Miami"], first_lead_used=True)
    make_provider("provider11", phone="+15550001111", first_lead_used=True)
    make_provider("provider12", phone="+15550001212", service_areas=["Orlando"], first_lead_used=True)
    lead, _ = ingest_lead(ctx, make_intake())

    results = process_new_lead(ctx, lead.lead_id)

    assert [r.provider_id for r in results] == ["provider10", "provider11"]
    assert set(_outcomes(results).values()) == {DispatchOutcome.TEASER_SENT}
    assert sms.messages_to("+15550001212") == []
    teaser = sms.messages_to("+15550001010")[0]
    assert teaser.startswith("CLIENT REQUEST AVAILABLE")
    assert "Jane" not in teaser and "+15551234567" not in teaser
    assert get_unlock(db, lead.lead_id, "provider10").teaser_sent_at == ctx.now()
    assert len(db.rows("provider_sends")) == 2


def test_first_lead_is_free_once(ctx, db, sms, make_provider) -> None:
    make_provider("provider10", phone="+15550001010")
    first, _ = ingest_lead(ctx, make_intake())
    second, _ = ingest_lead(ctx, make_intake(service_type="Facial"))

    assert dispatch_to_provider(ctx, first.lead_id, "provider10").outcome == DispatchOutcome.FREE_REVEAL
    assert dispatch_to_provider(ctx, second.lead_id, "provider10").outcome == DispatchOutcome.TEASER_SENT

    unlock = get_unlock(db, first.lead_id, "provider10")
    assert unlock.status == UnlockStatus.REVEALED
    assert unlock.paid_at == unlock.unlocked_at == unlock.revealed_at == ctx.now()
    assert get_provider_by_id(db, "provider10").first_lead_used is True
    assert sms.messages_to("+15550001010")[0].startswith("Client Request Unlocked")
    assert [row["event_type"] for row in db.rows("unlock_audit_log")] == ["FIRST_LEAD_FREE"]


def test_free_reveal_send_failure_is_audited(ctx, db, sms, make_provider) -> None:
    make_provider("provider10", phone="+15550001010")
    sms.failing_numbers.add("+15550001010")
    lead, _ = ingest_lead(ctx, make_intake())

    result = dispatch_to_provider(ctx, lead.lead_id, "provider10")

    assert result.outcome == DispatchOutcome.SEND_FAILED
    assert [row["event_type"] for row in db.rows("unlock_audit_log")] == ["FIRST_LEAD_FREE", "REVEAL_FAILED"]


def test_forced_provider_bypasses_matching(ctx, make_provider) -> None:
    make_provider("provider12", phone="+15550001212", service_areas=["Orlando"], first_lead_used=True)
    make_provider("provider10", phone="+15550001010", first_lead_used=True)
    lead, _ = ingest_lead(ctx, make_intake())

    results = process_new_lead(ctx, lead.lead_id, provider_id="12")

    assert _outcomes(results) == {"provider12": DispatchOutcome.TEASER_SENT}


def test_quality_gate_stops_processing(ctx, sms, make_provider) -> None:
    make_provider("provider10", first_lead_used=True)
    gated = replace(ctx, intelligence=FakeIntelligence(should_process=False))
    lead, _ = ingest_lead(gated, make_intake())

    assert process_new_lead(gated, lead.lead_id) == []
    assert sms.sent == []


def test_unknown_lead(ctx) -> None:
    with pytest.raises(NotFoundError):
        process_new_lead(ctx, uuid4())


def test_teaser_send_failure(ctx, db, sms, make_provider) -> None:
    make_provider("provider10", phone="+15550001010", first_lead_used=True)
    sms.fail_all = True
    lead, _ = ingest_lead(ctx, make_intake())

    result = dispatch_to_provider(ctx, lead.lead_id, "provider10")

    assert result.outcome == DispatchOutcome.SEND_FAILED
    assert db.rows("provider_sends") == []
    assert [row["event_type"] for row in db.rows("unlock_audit_log")] == ["SEND_FAILED"]


def test_one_failing_provider_does_not_block_others(ctx, make_provider) -> None:
    class ExplodingSms(FakeSms):
        def send(self, destination, text):
            if destination == "+15550001010":
                raise RuntimeError("socket closed")
            return super().send(destination, text)

    make_provider("provider10", phone="+15550001010", first_lead_used=True)
    make_provider("provider11", phone="+15550001111", first_lead_used=True)
    exploding = replace(ctx, sms=ExplodingSms())
    lead, _ = ingest_lead(exploding, make_intake())

    results = _outcomes(process_new_lead(exploding, lead.lead_id))

    assert results == {
        "provider10": DispatchOutcome.FAILED,
        "provider11": DispatchOutcome.TEASER_SENT,
    }


def test_rematching_an_offered_lead_sends_no_second_teaser(ctx, db, sms, make_provider) -> None:
    make_provider("provider10", phone="+15550001010", first_lead_used=True)
    lead, created = ingest_lead(ctx, make_intake())
    process_new_lead(ctx, lead.lead_id)

    again, created_again = ingest_lead(ctx, make_intake())
    results = process_new_lead(ctx, again.lead_id)

    assert created is True
    assert created_again is False
    assert again.lead_id == lead.lead_id
    assert _outcomes(results) == {"provider10": DispatchOutcome.ALREADY_OFFERED}
    assert len(sms.messages_to("+15550001010")) == 1
    assert get_unlock(db, lead.lead_id, "provider10").status == UnlockStatus.TEASER_SENT


def test_pair_past_payment_link_is_not_offered_again(ctx, db, make_provider) -> None:
    make_provider("provider10", first_lead_used=True)
    lead, _ = ingest_lead(ctx, make_intake())
    dispatch_to_provider(ctx, lead.lead_id, "provider10")
    update_status(db, lead.lead_id, "provider10", UnlockStatus.AWAIT_CONFIRM, now=ctx.now())
    update_status(db, lead.lead_id, "provider10", UnlockStatus.PAYMENT_LINK_SENT, now=ctx.now())

    result = dispatch_to_provider(ctx, lead.lead_id, "provider10")

    assert result.outcome == DispatchOutcome.ALREADY_OFFERED
    assert get_unlock(db, lead.lead_id, "provider10").status == UnlockStatus.PAYMENT_LINK_SENT


def test_closed_and_expired_leads_are_skipped(ctx, db, clock, make_provider) -> None:
    make_provider("provider10", first_lead_used=True)
    closed, _ = ingest_lead(ctx, make_intake())
    close_lead(db, closed.lead_id, now=clock())
    stale, _ = ingest_lead(ctx, make_intake(service_type="Facial"))
    clock.advance(hours=25)

    assert dispatch_to_provider(ctx, closed.lead_id, "provider10").outcome == DispatchOutcome.LEAD_UNAVAILABLE
    assert dispatch_to_provider(ctx, stale.lead_id, "provider10").outcome == DispatchOutcome.LEAD_UNAVAILABLE
    assert dispatch_to_provider(ctx, uuid4(), "provider99").outcome == DispatchOutcome.PROVIDER_UNAVAILABLE


def test_rate_limited_provider_is_skipped(ctx, db, make_provider) -> None:
    limited = replace(ctx, settings=replace(ctx.settings, rate_limit_max_sends=1))
    make_provider("provider10", first_lead_used=True)
    first, _ = ingest_lead(limited, make_intake())
    second, _ = ingest_lead(limited, make_intake(service_type="Facial"))

    assert dispatch_to_provider(limited, first.lead_id, "provider10").outcome == DispatchOutcome.TEASER_SENT
    assert dispatch_to_provider(limited, second.lead_id, "provider10").outcome == DispatchOutcome.RATE_LIMITED
    assert get_unlock(db, second.lead_id, "provider10") is None


def test_outside_active_window_defers(ctx, db, sms, clock, make_provider) -> None:
    clock.now = datetime(2025, 1, 16, 3, 0, tzinfo=timezone.utc)  # 22:00 in New York
    night = replace(ctx, settings=replace(ctx.settings, active_window=ActiveWindow()))
    make_provider("provider10", first_lead_used=True)
    lead, _ = ingest_lead(night, make_intake())

    result = dispatch_to_provider(night, lead.lead_id, "provider10")

    assert result.outcome == DispatchOutcome.DEFERRED
    assert sms.sent == []
    [entry] = list_dispatches(db)
    assert entry.scheduled_for == datetime(2025, 1, 16, 13, 0, tzinfo=timezone.utc)
    assert get_unlock(db, lead.lead_id, "provider10").status == UnlockStatus.NEW_LEAD


def test_missed_leads_are_recovered(ctx, db, make_provider) -> None:
    make_provider("provider10", service_areas=["Miami"], first_lead_used=True)
    offered, _ = ingest_lead(ctx, make_intake())
    process_new_lead(ctx, offered.lead_id)
    missed, _ = ingest_lead(ctx, make_intake(service_type="Facial"))
    closed, _ = ingest_lead(ctx, make_intake(service_type="Nails"))
    close_lead(db, closed.lead_id, now=ctx.now())

    assert [view.lead_id for view in find_missed_leads(ctx)] == [missed.lead_id]

    result = recover_missed_leads(ctx)

    assert (result.found, result.processed, result.failed) == (1, 1, 0)
    assert result.lead_ids == (missed.lead_id,)
    assert get_unlock(db, missed.lead_id, "provider10").status == UnlockStatus.TEASER_SENT
    assert find_missed_leads(ctx) == []


def test_missed_lead_lookback(ctx, clock) -> None:
    lead, _ = ingest_lead(ctx, make_intake())
    clock.advance(hours=3)

    assert find_missed_leads(ctx, hours=2) == []
    assert [view.lead_id for view in find_missed_leads(ctx, hours=4)] == [lead.lead_id]


def test_missed_lead_recovery_isolates_failures(ctx, db, make_provider) -> None:
    class TampaFails(FakeIntelligence):
        def score_lead(self, lead):
            if lead.city == "Tampa":
                raise RuntimeError("model crashed")
            return super().score_lead(lead)

    make_provider("provider10", first_lead_used=True)
    flaky = replace(ctx, intelligence=TampaFails())
    tampa, _ = ingest_lead(flaky, make_intake(city_zip="Tampa 33601"))
    miami, _ = ingest_lead(flaky, make_intake())

    result = recover_missed_leads(flaky)

    assert (result.found, result.processed, result.failed) == (2, 1, 1)
    assert get_unlock(db, miami.lead_id, "provider10").status == UnlockStatus.TEASER_SENT
    assert get_unlock(db, tampa.lead_id, "provider10") is None
