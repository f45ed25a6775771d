"""
Request dependencies shared by the routers.
"""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from services.context import BrokerContext


def get_context(request: Request) -> BrokerContext:
    """The BrokerContext built by the application factory."""
    return request.app.state.broker


def verify_webhook_secret(
    request: Request,
    x_webhook_secret: Optional[str] = Header(None),
) -> None:
    """
    Reject form / SMS webhooks without the shared secret.

    No check is made when WEBHOOK_SECRET is unset (local development).
    """
    expected = get_context(request).settings.webhook_secret
    if not expected:
        return
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
