"""
Tests for `services/notification_service.py`.

Covers contract rules:
- Reply keywords are matched exactly after trimming and uppercasing.
- Questions are routed to support; anything else is unrelated.
- Teasers never contain client contact details.
- A failed SMS is reported, not raised.
"""

from __future__ import annotations

from datetime import datetime, timezone

from domain.lead import Lead
from services.lead_intelligence import looks_like_support_question
from services.notification_service import (
    ReplyIntent,
    classify_reply,
    format_when,
    render_help,
    render_reveal,
    render_teaser,
    send,
)
from fakes import make_intake

RECEIVED_AT = datetime(2025, 1, 15, 15, 0, 0, tzinfo=timezone.utc)


def test_exact_keywords() -> None:
    assert classify_reply("y") == ReplyIntent.ACCEPT
    assert classify_reply("  Yes ") == ReplyIntent.ACCEPT
    assert classify_reply("N") == ReplyIntent.DECLINE
    assert classify_reply("no") == ReplyIntent.DECLINE
    assert classify_reply("stop") == ReplyIntent.OPT_OUT
    assert classify_reply("START") == ReplyIntent.OPT_IN
    assert classify_reply("help") == ReplyIntent.HELP


def test_near_keywords_are_not_answers() -> None:
    assert classify_reply("yes!", looks_like_support_question) == ReplyIntent.UNRELATED
    assert classify_reply("not interested", looks_like_support_question) == ReplyIntent.UNRELATED
    assert classify_reply("", looks_like_support_question) == ReplyIntent.UNRELATED


def test_questions_go_to_support() -> None:
    assert classify_reply("How much does it cost?", looks_like_support_question) == ReplyIntent.HELP
    assert classify_reply("How much does it cost?") == ReplyIntent.UNRELATED


def test_format_when() -> None:
    assert format_when("10/19/2025") == "Oct 19, 2025"
    assert format_when("10/19/2025 12:00:00 AM") == "Oct 19, 2025"
    assert format_when("2025-10-19T14:00:00") == "Oct 19, 2025"
    assert format_when("Tomorrow evening") == "Tomorrow evening"
    assert format_when(None) == "Flexible"
    assert format_when("  ") == "Flexible"


def test_teaser_has_public_fields_only() -> None:
    intake = make_intake()
    lead = Lead.from_intake(intake, received_at=RECEIVED_AT)

    text = render_teaser(lead.public_view(), price="$20")

    assert "Service: Massage" in text
    assert "Location: Miami" in text
    assert "When: Oct 19, 2025" in text
    assert "Unlock full contact details for $20" in text
    assert "Reply Y to proceed, N to pass" in text
    for secret in (intake.client_name, intake.client_phone, intake.client_email, "33101"):
        assert secret not in text


def test_reveal_has_contact_details() -> None:
    lead = Lead.from_intake(make_intake(), received_at=RECEIVED_AT)

    text = render_reveal(lead.private_details(), lead.public_view())

    assert "Client: Jane Client" in text
    assert "Phone: +15551234567" in text
    assert "Email: jane@example.com" in text
    assert "Address: Miami 33101, Home" in text


def test_help_text_includes_price() -> None:
    assert "$20" in render_help(price="$20")


def test_send_reports_failure_without_raising(ctx, sms) -> None:
    assert send(ctx, "+15550001010", "hello") is True
    sms.fail_all = True
    assert send(ctx, "+15550001010", "hello again") is False
    assert sms.sent == [("+15550001010", "hello")]
