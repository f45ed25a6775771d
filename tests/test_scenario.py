"""
End-to-end broker flow over the in-memory store.

Lead L1 (Miami, Massage) is matched to provider P1, teased, accepted with
"Y" (twice), paid, revealed once, and the duplicate payment webhook is
absorbed with a single audit entry.
"""

from __future__ import annotations

from uuid import uuid4

from domain.unlock import UnlockStatus
from repositories.lead_repository import get_public_view
from repositories.unlock_repository import (
    create_unlock,
    find_expired_unlocks,
    get_unlock,
    update_status,
)
from services.collaborators import PaymentEvent
from services.lead_service import DispatchOutcome, ingest_lead, process_new_lead
from services.payment_service import PaymentOutcome, handle_payment_event
from services.reply_service import InboundMessage, ReplyAction, handle_inbound_message
from services.unlock_service import run_expiry_sweep
from fakes import make_intake

P1_PHONE = "+15550001010"


def _paid_event(event_id: str, session_id: str) -> PaymentEvent:
    return PaymentEvent(
        event_id=event_id,
        event_type="checkout.session.completed",
        session_id=session_id,
        payment_status="paid",
    )


def test_full_unlock_flow(ctx, db, sms, payments, make_provider) -> None:
    make_provider("P1", phone=P1_PHONE, service_areas=["Miami"], first_lead_used=True)
    lead, _ = ingest_lead(ctx, make_intake(city_zip="Miami 33101", service_type="Massage"))
    assert get_public_view(db, lead.lead_id).city == "Miami"

    # Match and tease.
    results = process_new_lead(ctx, lead.lead_id)
    assert [(r.provider_id, r.outcome) for r in results] == [("P1", DispatchOutcome.TEASER_SENT)]
    unlock = get_unlock(db, lead.lead_id, "P1")
    assert unlock.status == UnlockStatus.TEASER_SENT
    assert len(sms.messages_to(P1_PHONE)) == 1

    # "Y": accepted, payment link created and sent.
    first = handle_inbound_message(ctx, InboundMessage(P1_PHONE, "Y", "sms-1"))
    assert first.action == ReplyAction.PAYMENT_LINK_SENT
    unlock = get_unlock(db, lead.lead_id, "P1")
    assert unlock.y_received_at is not None
    assert unlock.status == UnlockStatus.PAYMENT_LINK_SENT
    url = unlock.payment_link_url

    # Duplicate "Y": same URL, no second session.
    second = handle_inbound_message(ctx, InboundMessage(P1_PHONE, "Y", "sms-2"))
    assert second.action == ReplyAction.PAYMENT_LINK_SENT
    assert len(payments.sessions) == 1
    assert get_unlock(db, lead.lead_id, "P1").payment_link_url == url
    assert sms.messages_to(P1_PHONE)[-1].endswith(url)

    # Payment confirmed: revealed once.
    session_id = unlock.checkout_session_id
    payments.complete(session_id)
    assert handle_payment_event(ctx, _paid_event("evt_1", session_id)) == PaymentOutcome.REVEALED
    reveals = [t for t in sms.messages_to(P1_PHONE) if t.startswith("Client Request Unlocked")]
    assert len(reveals) == 1
    assert "Jane Client" in reveals[0]
    assert get_unlock(db, lead.lead_id, "P1").status == UnlockStatus.REVEALED

    # Duplicate confirmation: no second reveal, one audit entry.
    assert handle_payment_event(ctx, _paid_event("evt_1", session_id)) == PaymentOutcome.DUPLICATE_DELIVERY
    reveals = [t for t in sms.messages_to(P1_PHONE) if t.startswith("Client Request Unlocked")]
    assert len(reveals) == 1
    events = [row["event_type"] for row in db.rows("unlock_audit_log")]
    assert events.count("DUPLICATE_SESSION_WEBHOOK") == 1
    assert get_unlock(db, lead.lead_id, "P1").status == UnlockStatus.REVEALED


def test_unlock_with_negative_ttl_is_swept(ctx, db, clock) -> None:
    lead_id = uuid4()
    create_unlock(db, lead_id, "P1", now=clock(), ttl_hours=-1 / 3600)
    update_status(db, lead_id, "P1", UnlockStatus.TEASER_SENT, now=clock())

    assert [u.lead_id for u in find_expired_unlocks(db, now=clock())] == [lead_id]

    assert run_expiry_sweep(ctx).expired_unlocks == 1
    assert get_unlock(db, lead_id, "P1").status == UnlockStatus.EXPIRED
