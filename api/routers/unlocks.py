"""
Checkout redirect pages.

Stripe sends the provider's browser here after checkout. The pages are
static confirmations: the reveal itself happens through the payment webhook,
never through these routes.
"""

from html import escape
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import HTMLResponse

router = APIRouter()

_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>{title} - Lead Unlock Broker</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {{ font-family: Arial, sans-serif; max-width: 600px; margin: 50px auto;
               padding: 20px; text-align: center; background-color: #f5f5f5; }}
        .container {{ background: white; padding: 40px; border-radius: 10px;
                     box-shadow: 0 2px 10px rgba(0,0,0,0.1); }}
        .lead-id {{ background: #e9ecef; padding: 10px; border-radius: 5px;
                   font-family: monospace; margin: 20px 0; }}
        .footer {{ margin-top: 30px; font-size: 14px; color: #666; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{message}</p>
        {lead_block}
        {body}
        <div class="footer"><p>{footer}</p></div>
    </div>
</body>
</html>
"""


def _render(title: str, message: str, body: str, footer: str, lead_id: Optional[str]) -> str:
    lead_block = f'<div class="lead-id">Lead ID: {escape(lead_id)}</div>' if lead_id else ""
    return _PAGE.format(
        title=title, message=message, lead_block=lead_block, body=body, footer=footer
    )


@router.get(
    "/success",
    response_class=HTMLResponse,
    summary="Checkout Success Page",
)
def checkout_success(lead_id: Optional[str] = None, provider_id: Optional[str] = None):
    """Shown after a completed checkout; the details arrive by SMS."""
    return _render(
        "Payment Successful!",
        "Thank you for your payment. The client's contact details have been sent "
        "to your phone via SMS.",
        "<p><strong>What happens next?</strong></p>"
        '<ul style="text-align: left; display: inline-block;">'
        "<li>Check your phone for the contact details SMS</li>"
        "<li>Contact the client directly using the provided information</li>"
        "<li>Follow up professionally and promptly</li>"
        "</ul>",
        "We provide advertising access to client inquiries.<br>"
        "We do not arrange or guarantee appointments.",
        lead_id,
    )


@router.get(
    "/cancel",
    response_class=HTMLResponse,
    summary="Checkout Cancel Page",
)
def checkout_cancel(lead_id: Optional[str] = None, provider_id: Optional[str] = None):
    """Shown when the provider abandons checkout; nothing was charged."""
    return _render(
        "Payment Cancelled",
        "Your payment was cancelled. No charges have been made to your account.",
        "<p>If you change your mind, reply <strong>Y</strong> to the original SMS "
        "to get your payment link again.</p>",
        "Client requests delivered to your phone",
        lead_id,
    )
