"""
Inbound SMS bookkeeping (persistence).

- inbound_messages: one row per gateway message id, so a redelivered inbound
  SMS is recognized and dropped.
- auto_responses: when an unknown number last got the "visit our site" reply.

Both "claim" helpers are single statements whose returned rows tell the
caller whether it won.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from domain.provider import clean_phone
from domain.time import to_iso_utc
from repositories.client import Client, rows_of, run_query

_INBOUND_TABLE: str = "inbound_messages"
_AUTO_RESPONSES_TABLE: str = "auto_responses"


def claim_inbound_message(
    db: Client, external_message_id: str, sender: str, *, received_at: datetime
) -> bool:
    """
    Record an inbound message id.

    Returns:
        True the first time a message id is seen, False on every redelivery.
    """

    response = run_query(
        db.table(_INBOUND_TABLE).upsert(
            {
                "external_message_id": external_message_id,
                "sender": clean_phone(sender),
                "received_at_utc": to_iso_utc(received_at, name="received_at"),
            },
            on_conflict="external_message_id",
            ignore_duplicates=True,
        ),
        "record inbound message",
    )
    return bool(rows_of(response))


def claim_auto_response(
    db: Client, phone: str, *, now: datetime, cooldown: timedelta = timedelta(hours=24)
) -> bool:
    """
    Reserve the right to auto-reply to an unknown number.

    Returns:
        True if no auto-reply went to this number within `cooldown`.
    """

    phone = clean_phone(phone)
    now_iso = to_iso_utc(now, name="now")
    inserted = rows_of(
        run_query(
            db.table(_AUTO_RESPONSES_TABLE).upsert(
                {"phone": phone, "sent_at_utc": now_iso},
                on_conflict="phone",
                ignore_duplicates=True,
            ),
            "record auto-response",
        )
    )
    if inserted:
        return True

    refreshed = rows_of(
        run_query(
            db.table(_AUTO_RESPONSES_TABLE)
            .update({"sent_at_utc": now_iso})
            .eq("phone", phone)
            .lt("sent_at_utc", to_iso_utc(now - cooldown, name="cutoff")),
            "refresh auto-response",
        )
    )
    return bool(refreshed)


__all__ = ["claim_inbound_message", "claim_auto_response"]
