"""
Tests for the HTTP surface (`api/`).

The app is built around the in-memory context; background lead processing
runs before TestClient returns, so its effects are visible immediately.
"""

from __future__ import annotations

import json
from dataclasses import replace
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from domain.unlock import UnlockStatus
from repositories.unlock_repository import get_unlock
from services.lead_service import ingest_lead
from fakes import make_intake

P1_PHONE = "+15550001010"

FORM = {
    "name": "Jane Client",
    "phone": "+15551234567",
    "cityzip": "Miami 33101",
    "date_time": "10/19/2025 12:00:00 AM",
    "length": "60 min",
    "type": "Massage",
    "location": "Home",
    "contactpref": "Text",
    "email": "jane@example.com",
}


@pytest.fixture
def client(ctx, make_provider):
    make_provider("provider10", phone=P1_PHONE, service_areas=["Miami"], first_lead_used=True)
    with TestClient(create_app(context=ctx)) as test_client:
        yield test_client


def _stripe_event(session_id: str) -> bytes:
    return json.dumps(
        {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {"id": session_id, "payment_status": "paid", "metadata": {}}},
        }
    ).encode()


def test_app_closes_the_context_it_builds(ctx, sms, monkeypatch) -> None:
    monkeypatch.setattr("api.main.build_context", lambda settings: ctx)

    with TestClient(create_app(settings=ctx.settings)) as client:
        assert client.get("/health").status_code == 200
        assert sms.closed is False

    assert sms.closed is True


def test_app_leaves_a_passed_context_open(ctx, sms) -> None:
    with TestClient(create_app(context=ctx)):
        pass

    assert sms.closed is False


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["service"] == "lead-unlock-broker"


def test_form_intake_creates_lead_and_sends_teaser(client, sms) -> None:
    response = client.post("/webhooks/forms", json=FORM)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["provider_id"] == "auto-matched"
    assert sms.messages_to(P1_PHONE)[0].startswith("CLIENT REQUEST AVAILABLE")


def test_redelivered_form_is_not_offered_again(client, sms) -> None:
    first = client.post("/webhooks/forms", json=FORM).json()
    again = client.post("/webhooks/forms", json=FORM)

    assert again.status_code == 200
    assert again.json()["lead_id"] == first["lead_id"]
    assert again.json()["message"] == "Lead already received"
    assert len(sms.messages_to(P1_PHONE)) == 1


def test_form_intake_envelope_and_forced_provider(client) -> None:
    envelope = {"data": {"fields": {k: {"value": v} for k, v in FORM.items()}}}
    envelope["data"]["fields"]["provider_id"] = {"value": "10"}

    response = client.post("/webhooks/forms", json=envelope)

    assert response.status_code == 200
    assert response.json()["provider_id"] == "provider10"


def test_form_intake_accepts_form_encoding(client) -> None:
    response = client.post("/webhooks/forms", data=FORM)

    assert response.status_code == 200


def test_form_intake_rejects_missing_fields(client) -> None:
    response = client.post("/webhooks/forms", json={"name": "Jane Client"})

    assert response.status_code == 400
    assert any(item.startswith("phone") for item in response.json()["detail"])


def test_form_intake_rejects_non_object_body(client) -> None:
    assert client.post("/webhooks/forms", json=["x"]).status_code == 400
    assert client.post(
        "/webhooks/forms", content=b"not json", headers={"content-type": "application/json"}
    ).status_code == 400


def test_storage_outage_is_503(client, db) -> None:
    db.fail("leads", "upsert")

    response = client.post("/webhooks/forms", json=FORM)

    assert response.status_code == 503
    assert "simulated" not in response.text


def test_webhook_secret_is_enforced(ctx) -> None:
    secured = replace(ctx, settings=replace(ctx.settings, webhook_secret="s3cret"))
    with TestClient(create_app(context=secured)) as client:
        assert client.post("/webhooks/forms", json=FORM).status_code == 401
        assert (
            client.post("/webhooks/forms", json=FORM, headers={"X-Webhook-Secret": "wrong"}).status_code
            == 401
        )
        assert (
            client.post("/webhooks/forms", json=FORM, headers={"X-Webhook-Secret": "s3cret"}).status_code
            == 200
        )
        assert client.post("/api/v1/operations/expiry-sweep").status_code == 401
        assert client.get("/api/v1/providers/10/unlocks").status_code == 401
        assert client.get("/api/v1/analytics/providers").status_code == 401


def test_sms_yes_then_stripe_payment_reveals(client, db, sms, payments) -> None:
    lead_id = client.post("/webhooks/forms", json=FORM).json()["lead_id"]

    response = client.post(
        "/webhooks/sms/incoming", json={"from": P1_PHONE, "text": "Y", "message_id": "tm-1"}
    )
    assert response.status_code == 200
    assert response.json() == {"action": "PAYMENT_LINK_SENT", "intent": "ACCEPT"}

    unlock = get_unlock(db, UUID(lead_id), "provider10")
    payload = _stripe_event(unlock.checkout_session_id)

    assert client.post("/webhooks/stripe", content=payload, headers={"stripe-signature": "bad"}).status_code == 400

    paid = client.post("/webhooks/stripe", content=payload, headers={"stripe-signature": "valid"})
    assert paid.json() == {"received": True, "outcome": "REVEALED"}
    again = client.post("/webhooks/stripe", content=payload, headers={"stripe-signature": "valid"})
    assert again.json() == {"received": True, "outcome": "DUPLICATE_DELIVERY"}

    assert get_unlock(db, UUID(lead_id), "provider10").status == UnlockStatus.REVEALED
    assert len([t for t in sms.messages_to(P1_PHONE) if t.startswith("Client Request Unlocked")]) == 1

    stats = client.get(f"/api/v1/leads/{lead_id}/stats").json()
    assert stats["stats"] == {"REVEALED": 1}
    assert stats["total"] == 1


def test_checkout_redirects_land_on_pages(client, payments) -> None:
    lead_id = client.post("/webhooks/forms", json=FORM).json()["lead_id"]
    client.post("/webhooks/sms/incoming", json={"from": P1_PHONE, "text": "Y"})
    call = payments.create_calls[0]

    success = client.get(call["success_url"].removeprefix("https://broker.test"))
    cancel = client.get(call["cancel_url"].removeprefix("https://broker.test"))

    assert success.status_code == 200
    assert success.headers["content-type"].startswith("text/html")
    assert "Payment Successful!" in success.text
    assert lead_id in success.text
    assert cancel.status_code == 200
    assert "Payment Cancelled" in cancel.text


def test_checkout_page_escapes_query(client) -> None:
    response = client.get("/unlocks/cancel", params={"lead_id": "<script>alert(1)</script>"})

    assert response.status_code == 200
    assert "<script>" not in response.text
    assert "&lt;script&gt;" in response.text


def test_sms_payload_requires_sender(client) -> None:
    assert client.post("/webhooks/sms/incoming", json={"text": "Y"}).status_code == 400


def test_public_lead_has_no_pii(client) -> None:
    lead_id = client.post("/webhooks/forms", json=FORM).json()["lead_id"]

    response = client.get(f"/api/v1/leads/{lead_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["city"] == "Miami"
    assert body["preferred_time_window"] == "10/19/2025"
    for secret in ("Jane Client", "+15551234567", "jane@example.com", "Miami 33101"):
        assert secret not in response.text
    assert client.get(f"/api/v1/leads/{uuid4()}").status_code == 404
    assert client.get("/api/v1/leads/not-a-uuid").status_code == 422


def test_operations_endpoints(client) -> None:
    sweep = client.post("/api/v1/operations/expiry-sweep")
    assert sweep.json() == {"expired_unlocks": 0, "closed_leads": 0, "skipped": 0, "failures": 0}

    dispatch = client.post("/api/v1/operations/dispatch-sweep")
    assert dispatch.json() == {"processed": 0, "failed": 0, "skipped": 0}

    retention = client.post("/api/v1/operations/retention-sweep", params={"older_than_days": 7})
    assert retention.json() == {"deleted_unlocks": 0, "older_than_days": 7}

    schedule = client.get("/api/v1/operations/schedule")
    assert schedule.json()["pending"] == 0

    assert client.post("/api/v1/operations/reveals/cs_missing/retry").status_code == 404


def test_provider_unlocks_listing(client) -> None:
    lead_id = client.post("/webhooks/forms", json=FORM).json()["lead_id"]

    response = client.get("/api/v1/providers/10/unlocks")

    assert response.status_code == 200
    body = response.json()
    assert body["provider_id"] == "provider10"
    [unlock] = body["unlocks"]
    assert unlock["lead_id"] == lead_id
    assert unlock["status"] == "TEASER_SENT"
    assert unlock["city"] == "Miami"
    assert unlock["service_type"] == "Massage"
    for secret in ("Jane Client", "+15551234567", "jane@example.com"):
        assert secret not in response.text

    revealed = client.get("/api/v1/providers/10/unlocks", params={"status": "REVEALED"})
    assert revealed.json()["unlocks"] == []
    assert client.get("/api/v1/providers/10/unlocks", params={"status": "BOGUS"}).status_code == 422


def test_analytics_endpoints(client) -> None:
    client.post("/webhooks/forms", json=FORM)
    client.post("/webhooks/sms/incoming", json={"from": P1_PHONE, "text": "Y"})

    providers = client.get("/api/v1/analytics/providers").json()
    assert providers["top_performer"] == "provider10"
    assert providers["providers"][0]["teasers_sent"] == 1
    assert providers["providers"][0]["accepted"] == 1

    funnel = client.get("/api/v1/analytics/conversion-funnel", params={"days": 30}).json()
    assert funnel["days"] == 30
    assert (funnel["total_leads"], funnel["sent_to_providers"], funnel["accepted_by_providers"]) == (1, 1, 1)
    assert funnel["paid_and_unlocked"] == 0

    activity = client.get("/api/v1/analytics/recent-activity").json()
    assert activity["days"] == 7
    assert activity["activity"] == [
        {"day": "2025-01-15", "teasers_sent": 1, "accepted": 1, "paid": 0, "revenue_cents": 0}
    ]


def test_missed_lead_endpoints(client, ctx, sms) -> None:
    lead, _ = ingest_lead(ctx, make_intake())

    listed = client.get("/api/v1/operations/missed-leads").json()
    assert listed["hours"] == 48
    assert listed["count"] == 1
    assert listed["leads"][0]["lead_id"] == str(lead.lead_id)

    recovered = client.post("/api/v1/operations/missed-leads/recover").json()
    assert recovered == {
        "hours": 48,
        "found": 1,
        "processed": 1,
        "failed": 0,
        "lead_ids": [str(lead.lead_id)],
    }
    assert sms.messages_to(P1_PHONE)[0].startswith("CLIENT REQUEST AVAILABLE")
    assert client.get("/api/v1/operations/missed-leads").json()["count"] == 0
