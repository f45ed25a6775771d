"""
Domain: Provider (service provider receiving leads over SMS).

Contract excerpts implemented here:
- Providers are identified by a single canonical opaque string id.
- A provider only receives leads while verified and not opted out.
- first_lead_used flips from False to True exactly once; the flip is an atomic
  conditional update in the directory, never a read-then-write.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple, Union

from .errors import ValidationError
from .time import require_utc_timestamp

_LEGACY_NUMERIC_ID = re.compile(r"^\d+$")


def normalize_provider_id(value: Union[str, int, None]) -> str:
    """
    Normalize a provider identifier to its canonical string form.

    Numeric ids (10 or "10") are the legacy spelling of "provider10"; any
    other value is stripped and kept as an opaque token.

    Raises:
        ValidationError: if the value is empty.
    """

    if value is None or isinstance(value, bool):
        raise ValidationError("provider_id is required")
    text = str(value).strip()
    if not text:
        raise ValidationError("provider_id is required")
    if _LEGACY_NUMERIC_ID.match(text):
        return f"provider{int(text)}"
    return text


def phone_lookup_variants(phone: str) -> List[str]:
    """
    Candidate stored spellings of an inbound phone number.

    SMS gateways report senders as "15551234567", "+15551234567" or
    "(555) 123-4567" depending on the carrier path.
    """

    digits = re.sub(r"\D", "", phone)
    variants: List[str] = [phone.strip()]
    if digits:
        variants.append(f"+{digits}")
        variants.append(digits)
        if len(digits) == 10:
            variants.append(f"+1{digits}")
            variants.append(f"1{digits}")
        elif len(digits) == 11 and digits.startswith("1"):
            variants.append(digits[1:])
    seen: List[str] = []
    for variant in variants:
        if variant and variant not in seen:
            seen.append(variant)
    return seen


def clean_phone(phone: str) -> str:
    """Strip everything except digits and a leading '+'."""

    return re.sub(r"[^\d+]", "", phone)


@dataclass(frozen=True, slots=True)
class Provider:
    provider_id: str
    name: str
    phone: str
    email: Optional[str] = None
    sms_opted_out: bool = False
    is_verified: bool = True
    service_areas: Tuple[str, ...] = ()
    first_lead_used: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.created_at is not None:
            require_utc_timestamp("created_at", self.created_at)
        if self.updated_at is not None:
            require_utc_timestamp("updated_at", self.updated_at)

    def can_receive_leads(self) -> bool:
        return self.is_verified and not self.sms_opted_out
