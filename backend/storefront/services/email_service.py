# Overview: Transactional email over the Resend HTTP API; failures are reported, never raised.

from __future__ import annotations

import logging
from dataclasses import dataclass
from html import escape

import httpx
from flask import current_app

from .currency_service import format_amount
from .http import http_client


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailResult:
    ok: bool
    error: str | None = None


def send_email(to: str, subject: str, html: str) -> EmailResult:
    """
    Send one email. Never raises: callers attach this to committed work and
    must not fail because the mail provider is down.
    """
    config = current_app.config
    if not to:
        return EmailResult(False, "No recipient")
    if not config.get("EMAILS_ENABLED", True):
        logger.info("Emails disabled; skipping %r to %s", subject, to)
        return EmailResult(False, "Emails disabled")
    api_key = config.get("RESEND_API_KEY")
    if not api_key:
        logger.info("RESEND_API_KEY not set; skipping %r to %s", subject, to)
        return EmailResult(False, "Email provider not configured")

    try:
        with http_client() as client:
            response = client.post(
                config["RESEND_API_URL"],
                json={
                    "from": config["EMAIL_FROM"],
                    "to": [to],
                    "subject": subject,
                    "html": html,
                },
                headers={"Authorization": f"Bearer {api_key}"},
            )
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.error("Failed to send email %r to %s: %s", subject, to, exc)
        return EmailResult(False, str(exc))
    except Exception as exc:
        # Bad URL, missing config key and the like
        logger.exception("Unexpected error sending email %r to %s", subject, to)
        return EmailResult(False, str(exc) or exc.__class__.__name__)

    return EmailResult(True)


def _items_table(order) -> str:
    rows = []
    for item in order.items:
        variant = " / ".join(v for v in (item.size, item.color) if v)
        label = escape(item.product_name)
        if variant:
            label += f" ({escape(variant)})"
        rows.append(
            f"<tr><td>{label}</td><td>{item.quantity}</td>"
            f"<td>{escape(format_amount(item.price_at_purchase))}</td></tr>"
        )
    return "<table>" + "".join(rows) + "</table>"


def send_order_thank_you_email(order) -> EmailResult:
    subject = f"Order Confirmation - {order.id}"
    html = (
        f"<p>Hi {escape(order.name)},</p>"
        "<p>Thank you for your order. We'll let you know when it ships.</p>"
        f"{_items_table(order)}"
        f"<p>Total: {escape(format_amount(order.total))}</p>"
    )
    return send_email(order.email, subject, html)


def send_shipping_confirmation_email(order) -> EmailResult:
    subject = f"Your Order {order.id} Has Shipped"
    tracking = (
        f"<p>Tracking number: {escape(order.tracking_number)}</p>"
        if order.tracking_number else ""
    )
    html = (
        f"<p>Hi {escape(order.name)},</p>"
        "<p>Good news: your order is on its way.</p>"
        f"{tracking}"
        f"{_items_table(order)}"
    )
    return send_email(order.email, subject, html)
