"""
Inbound webhook payload resolution.

Form providers and SMS gateways post several shapes. parse_intake() and
parse_sms() pick exactly one variant per body; every variant resolves to the
same canonical struct (LeadIntake / InboundMessage), so nothing past this
module sees the original shape.

Intake shapes:
- FieldsEnvelopeIntake: {"data": {"fields": {"name": {"value": "Ana"}, ...}}}
- FormDataIntake:       {"form_data": {"name": "Ana", ...}}
- FlatIntake:           {"name": "Ana", ...}

Inbound SMS shapes:
- GatewaySms:   {"from": "+1555...", "text": "Y", "message_id": "abc"}
- TextMagicSms: {"sender": "+1555...", "text": "Y", "id": "abc"}
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional, Union

from api.models import FormSubmission
from domain.errors import ValidationError
from domain.lead import LeadIntake
from services.reply_service import InboundMessage

# Some form builders post the field label when no option was chosen.
SESSION_LENGTH_PLACEHOLDER = "Session Length Preference"
NOT_SPECIFIED = "Not specified"

_MIDNIGHT_SUFFIX = re.compile(r"\s+12:00:00 AM")


def _normalize(fields: Dict[str, Any], selected_length: Optional[str] = None) -> Dict[str, Any]:
    if fields.get("length") == SESSION_LENGTH_PLACEHOLDER:
        fields["length"] = selected_length or NOT_SPECIFIED

    date_time = fields.get("date_time")
    if isinstance(date_time, str) and "12:00:00 AM" in date_time:
        fields["date_time"] = _MIDNIGHT_SUFFIX.sub("", date_time).strip()

    # Blank optional fields behave as missing.
    return {key: (None if isinstance(value, str) and not value.strip() else value) for key, value in fields.items()}


def _selected_length(raw_field: Any) -> Optional[str]:
    if not isinstance(raw_field, Mapping):
        return None
    for key in ("selected_value", "raw_value"):
        if raw_field.get(key):
            return str(raw_field[key])
    for option in raw_field.get("options") or []:
        if isinstance(option, Mapping) and option.get("selected"):
            value = option.get("value") or option.get("label")
            if value:
                return str(value)
    return None


class _IntakeVariant:
    shape: ClassVar[str]

    def fields(self) -> Dict[str, Any]:
        raise NotImplementedError

    def to_intake(self) -> LeadIntake:
        """
        Validate the resolved fields into a LeadIntake.

        Raises:
            pydantic.ValidationError: a required field is missing or malformed.
            ValidationError: the fields violate a domain rule.
        """
        return FormSubmission(**self.fields()).to_intake()


@dataclass(frozen=True)
class FlatIntake(_IntakeVariant):
    shape: ClassVar[str] = "flat"
    values: Mapping[str, Any]

    def fields(self) -> Dict[str, Any]:
        return _normalize(dict(self.values))


@dataclass(frozen=True)
class FormDataIntake(_IntakeVariant):
    shape: ClassVar[str] = "form_data"
    form_data: Mapping[str, Any]

    def fields(self) -> Dict[str, Any]:
        return _normalize(dict(self.form_data))


@dataclass(frozen=True)
class FieldsEnvelopeIntake(_IntakeVariant):
    """Each field is an object carrying `value` (or `raw_value`) and, for
    choice fields, the selected option."""

    shape: ClassVar[str] = "fields_envelope"
    raw_fields: Mapping[str, Any]

    def fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        for key, value in self.raw_fields.items():
            if isinstance(value, Mapping):
                fields[key] = value.get("value") or value.get("raw_value")
            else:
                fields[key] = value
        return _normalize(fields, _selected_length(self.raw_fields.get("length")))


IntakePayload = Union[FlatIntake, FormDataIntake, FieldsEnvelopeIntake]


def parse_intake(body: Mapping[str, Any]) -> IntakePayload:
    """Pick the intake variant for a webhook body."""

    if not isinstance(body, Mapping):
        raise ValidationError("Form payload must be a JSON object")

    data = body.get("data")
    if isinstance(data, Mapping) and isinstance(data.get("fields"), Mapping):
        return FieldsEnvelopeIntake(raw_fields=data["fields"])
    if isinstance(body.get("form_data"), Mapping):
        return FormDataIntake(form_data=body["form_data"])
    return FlatIntake(values=body)


def _message_id(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def _require_text(text: Any) -> str:
    if text is None:
        raise ValidationError("SMS payload is missing the message text")
    return str(text)


@dataclass(frozen=True)
class GatewaySms:
    shape: ClassVar[str] = "gateway"
    sender: str
    text: Any
    message_id: Any = None

    def to_message(self) -> InboundMessage:
        return InboundMessage(
            sender=self.sender.strip(),
            text=_require_text(self.text),
            external_message_id=_message_id(self.message_id),
        )


@dataclass(frozen=True)
class TextMagicSms:
    shape: ClassVar[str] = "textmagic"
    sender: str
    text: Any
    id: Any = None

    def to_message(self) -> InboundMessage:
        return InboundMessage(
            sender=self.sender.strip(),
            text=_require_text(self.text),
            external_message_id=_message_id(self.id),
        )


SmsPayload = Union[GatewaySms, TextMagicSms]


def parse_sms(body: Mapping[str, Any]) -> SmsPayload:
    """Pick the SMS variant for a webhook body: `from` wins over `sender`."""

    if not isinstance(body, Mapping):
        raise ValidationError("SMS payload must be an object")

    if body.get("from") and str(body["from"]).strip():
        return GatewaySms(sender=str(body["from"]), text=body.get("text"), message_id=body.get("message_id"))
    if body.get("sender") and str(body["sender"]).strip():
        return TextMagicSms(sender=str(body["sender"]), text=body.get("text"), id=body.get("id"))
    raise ValidationError("SMS payload is missing the sender number")


__all__ = [
    "SESSION_LENGTH_PLACEHOLDER",
    "NOT_SPECIFIED",
    "FlatIntake",
    "FormDataIntake",
    "FieldsEnvelopeIntake",
    "IntakePayload",
    "GatewaySms",
    "TextMagicSms",
    "SmsPayload",
    "parse_intake",
    "parse_sms",
]
