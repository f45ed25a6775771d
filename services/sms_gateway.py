"""
TextMagic SMS adapter.

Sends a single message through the TextMagic REST API (v2) using basic auth
with the account username and API key.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from domain.errors import UpstreamError
from domain.provider import clean_phone
from services.collaborators import DeliveryResult

logger = logging.getLogger(__name__)

TEXTMAGIC_BASE_URL: str = "https://rest.textmagic.com/api/v2"


class TextMagicSmsGateway:
    def __init__(
        self,
        username: Optional[str],
        api_key: Optional[str],
        *,
        from_number: Optional[str] = None,
        base_url: str = TEXTMAGIC_BASE_URL,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.username = username
        self.api_key = api_key
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self.session = client or httpx.Client(timeout=timeout)

    def send(self, destination: str, text: str) -> DeliveryResult:
        if not self.username or not self.api_key:
            raise UpstreamError("sms", "TEXTMAGIC_USERNAME / TEXTMAGIC_API_KEY are not configured")

        payload: Dict[str, Any] = {"text": text, "phones": clean_phone(destination)}
        if self.from_number:
            payload["from"] = clean_phone(self.from_number)

        try:
            resp = self.session.post(
                f"{self.base_url}/messages",
                json=payload,
                auth=(self.username, self.api_key),
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(
                "sms", f"TextMagic returned {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError("sms", f"TextMagic request failed: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}

        message_id = data.get("messageId") or data.get("id")
        logger.info("SMS accepted by TextMagic", extra={"message_id": message_id})
        return DeliveryResult(message_id=str(message_id) if message_id is not None else None)

    def close(self) -> None:
        self.session.close()


__all__ = ["TextMagicSmsGateway", "TEXTMAGIC_BASE_URL"]
