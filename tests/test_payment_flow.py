"""
Tests for `services/payment_service.py`.

Covers contract rules:
- At most one live payment session per (lead, provider); a stored link is
  reused while the session is open.
- Payment confirmation is idempotent: redelivered or concurrent webhooks
  reveal the details exactly once.
- A payment after expiry is honored and closes the lead.
- A second payment for a revealed pair is audited and answered with a notice.
- A failed reveal leaves the unlock PAID until retry_reveal succeeds.
"""

from __future__ import annotations

import threading
from uuid import uuid4

import pytest

from domain.errors import ConflictError, NotFoundError
from domain.unlock import UnlockStatus
from repositories.lead_repository import is_lead_closed
from repositories.unlock_repository import get_unlock, update_status
from services.collaborators import PaymentEvent
from services.lead_service import DispatchOutcome, dispatch_to_provider, ingest_lead
from services.payment_service import (
    PaymentOutcome,
    create_payment_link,
    handle_payment_confirmed,
    handle_payment_event,
    retry_reveal,
)
from services.unlock_service import run_expiry_sweep
from fakes import make_intake

PHONE = "+15550001010"


def _reveals(sms) -> list:
    return [text for text in sms.messages_to(PHONE) if text.startswith("Client Request Unlocked")]


def _audit_events(db) -> list:
    return [row["event_type"] for row in db.rows("unlock_audit_log")]


@pytest.fixture
def lead(ctx, make_provider):
    """A lead whose teaser went to provider10 (free lead already used)."""

    make_provider("provider10", phone=PHONE, first_lead_used=True)
    lead, _ = ingest_lead(ctx, make_intake())
    assert dispatch_to_provider(ctx, lead.lead_id, "provider10").outcome == DispatchOutcome.TEASER_SENT
    return lead


@pytest.fixture
def link(ctx, db, lead):
    update_status(db, lead.lead_id, "provider10", UnlockStatus.AWAIT_CONFIRM, now=ctx.now())
    return create_payment_link(ctx, lead.lead_id, "provider10")


def test_payment_link_carries_pair_metadata(ctx, payments, lead, link) -> None:
    call = payments.create_calls[0]

    assert call["amount_cents"] == 2000
    assert call["metadata"] == {
        "lead_id": str(lead.lead_id),
        "provider_id": "provider10",
        "idempotency_key": f"unlock_{lead.lead_id}_provider10",
    }
    assert call["success_url"].startswith("https://broker.test/unlocks/success?")
    unlock = get_unlock(ctx.db, lead.lead_id, "provider10")
    assert unlock.status == UnlockStatus.PAYMENT_LINK_SENT
    assert unlock.checkout_session_id == link.session_id
    assert unlock.payment_link_url == link.url


def test_live_payment_link_is_reused(ctx, payments, lead, link) -> None:
    again = create_payment_link(ctx, lead.lead_id, "provider10")

    assert again.reused is True
    assert again.url == link.url
    assert len(payments.create_calls) == 1


def test_unverifiable_session_is_treated_as_live(ctx, payments, lead, link) -> None:
    payments.fail_retrieve = True

    again = create_payment_link(ctx, lead.lead_id, "provider10")

    assert again.reused is True
    assert len(payments.create_calls) == 1


def test_expired_session_gets_a_new_link(ctx, payments, lead, link) -> None:
    payments.expire(link.session_id)

    renewed = create_payment_link(ctx, lead.lead_id, "provider10")

    assert renewed.reused is False
    assert renewed.session_id != link.session_id
    assert payments.create_calls[1]["idempotency_key"].endswith(f":renew:{link.session_id}")
    assert get_unlock(ctx.db, lead.lead_id, "provider10").checkout_session_id == renewed.session_id


def test_no_link_before_acceptance(ctx, lead) -> None:
    with pytest.raises(ConflictError):
        create_payment_link(ctx, lead.lead_id, "provider10")
    with pytest.raises(NotFoundError):
        create_payment_link(ctx, lead.lead_id, "provider99")


def test_confirmation_reveals_once(ctx, db, sms, lead, link) -> None:
    first = handle_payment_confirmed(ctx, link.session_id)
    second = handle_payment_confirmed(ctx, link.session_id)

    assert first == PaymentOutcome.REVEALED
    assert second == PaymentOutcome.DUPLICATE_DELIVERY
    assert len(_reveals(sms)) == 1
    unlock = get_unlock(db, lead.lead_id, "provider10")
    assert unlock.status == UnlockStatus.REVEALED
    assert unlock.paid_at is not None
    assert unlock.revealed_at is not None
    assert _audit_events(db) == ["DUPLICATE_SESSION_WEBHOOK"]


def test_concurrent_confirmations_reveal_once(ctx, sms, lead, link) -> None:
    outcomes = []
    barrier = threading.Barrier(6)

    def deliver() -> None:
        barrier.wait()
        outcomes.append(handle_payment_confirmed(ctx, link.session_id))

    threads = [threading.Thread(target=deliver) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count(PaymentOutcome.REVEALED) == 1
    assert outcomes.count(PaymentOutcome.DUPLICATE_DELIVERY) == 5
    assert len(_reveals(sms)) == 1


def test_payment_after_expiry_is_honored_and_closes_lead(ctx, db, sms, clock, lead, link) -> None:
    clock.advance(hours=25)
    run_expiry_sweep(ctx)
    assert get_unlock(db, lead.lead_id, "provider10").status == UnlockStatus.EXPIRED

    outcome = handle_payment_confirmed(ctx, link.session_id)

    assert outcome == PaymentOutcome.REVEALED
    assert len(_reveals(sms)) == 1
    assert is_lead_closed(db, lead.lead_id)
    assert "PAYMENT_AFTER_EXPIRY" in _audit_events(db)


def test_payment_after_ttl_before_sweep_closes_lead(ctx, db, clock, lead, link) -> None:
    clock.advance(hours=24, seconds=1)

    assert handle_payment_confirmed(ctx, link.session_id) == PaymentOutcome.REVEALED
    assert is_lead_closed(db, lead.lead_id)


def test_second_payment_gets_notice_not_details(ctx, db, sms, lead, link) -> None:
    handle_payment_confirmed(ctx, link.session_id)

    outcome = handle_payment_confirmed(
        ctx,
        "cs_other",
        {"lead_id": str(lead.lead_id), "provider_id": "provider10"},
    )

    assert outcome == PaymentOutcome.DUPLICATE_PAYMENT
    assert len(_reveals(sms)) == 1
    assert "contact support" in sms.messages_to(PHONE)[-1]
    assert _audit_events(db) == ["DUPLICATE_PAYMENT"]
    assert get_unlock(db, lead.lead_id, "provider10").checkout_session_id == link.session_id


def test_failed_reveal_stays_paid_until_retried(ctx, db, sms, payments, lead, link) -> None:
    sms.failing_numbers.add(PHONE)

    assert handle_payment_confirmed(ctx, link.session_id) == PaymentOutcome.REVEAL_PENDING
    assert get_unlock(db, lead.lead_id, "provider10").status == UnlockStatus.PAID
    assert "REVEAL_FAILED" in _audit_events(db)

    # Redelivery does not reveal; the operator retry does.
    assert handle_payment_confirmed(ctx, link.session_id) == PaymentOutcome.DUPLICATE_DELIVERY

    sms.failing_numbers.clear()
    with pytest.raises(ConflictError):
        retry_reveal(ctx, link.session_id)

    payments.complete(link.session_id)
    assert retry_reveal(ctx, link.session_id) == PaymentOutcome.REVEALED
    assert retry_reveal(ctx, link.session_id) == PaymentOutcome.DUPLICATE_DELIVERY
    assert len(_reveals(sms)) == 1


def test_retry_reveal_unknown_session(ctx) -> None:
    with pytest.raises(NotFoundError):
        retry_reveal(ctx, "cs_missing")


def test_unknown_session_is_audited(ctx, db) -> None:
    assert handle_payment_confirmed(ctx, "cs_missing") == PaymentOutcome.UNKNOWN_SESSION
    assert handle_payment_confirmed(
        ctx, "cs_missing", {"lead_id": str(uuid4()), "provider_id": "provider10"}
    ) == PaymentOutcome.UNKNOWN_SESSION
    assert _audit_events(db) == ["UNKNOWN_SESSION", "UNKNOWN_SESSION"]


def test_payment_for_unaccepted_offer_is_rejected(ctx, db, lead) -> None:
    outcome = handle_payment_confirmed(
        ctx, "cs_odd", {"lead_id": str(lead.lead_id), "provider_id": "provider10"}
    )

    assert outcome == PaymentOutcome.REJECTED
    assert get_unlock(db, lead.lead_id, "provider10").status == UnlockStatus.TEASER_SENT
    assert _audit_events(db) == ["ILLEGAL_TRANSITION"]


def test_only_paid_checkouts_are_applied(ctx, sms, lead, link) -> None:
    other = PaymentEvent(event_id="evt_1", event_type="payment_intent.created")
    unpaid = PaymentEvent(
        event_id="evt_2",
        event_type="checkout.session.completed",
        session_id=link.session_id,
        payment_status="unpaid",
    )
    paid = PaymentEvent(
        event_id="evt_3",
        event_type="checkout.session.completed",
        session_id=link.session_id,
        payment_status="paid",
    )

    assert handle_payment_event(ctx, other) is None
    assert handle_payment_event(ctx, unpaid) is None
    assert _reveals(sms) == []
    assert handle_payment_event(ctx, paid) == PaymentOutcome.REVEALED
