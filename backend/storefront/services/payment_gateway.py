# Overview: Minimal Stripe REST client (form-encoded over httpx) and webhook signature checks.

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time

import httpx
from flask import current_app

from .http import http_client


logger = logging.getLogger(__name__)

DEFAULT_SIGNATURE_TOLERANCE = 300


class PaymentGatewayError(Exception):
    """The gateway rejected a request or could not be reached."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class WebhookSignatureError(Exception):
    """Webhook payload does not carry a valid signature."""


def _flatten(params, prefix: str = "") -> list[tuple[str, str]]:
    """Encode nested dicts/lists the way the gateway expects: a[b][0][c]=v."""
    pairs: list[tuple[str, str]] = []
    if isinstance(params, dict):
        for key, value in params.items():
            if value is None:
                continue
            name = f"{prefix}[{key}]" if prefix else str(key)
            pairs.extend(_flatten(value, name))
    elif isinstance(params, (list, tuple)):
        for index, value in enumerate(params):
            pairs.extend(_flatten(value, f"{prefix}[{index}]"))
    elif isinstance(params, bool):
        pairs.append((prefix, "true" if params else "false"))
    else:
        pairs.append((prefix, str(params)))
    return pairs


class StripeClient:
    def __init__(self, secret_key: str | None, api_base: str, timeout: float | None = None):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_app(cls) -> "StripeClient":
        config = current_app.config
        return cls(
            config.get("STRIPE_SECRET_KEY"),
            config.get("STRIPE_API_BASE", "https://api.stripe.com"),
            config.get("HTTP_TIMEOUT"),
        )

    def _request(self, method: str, path: str, params: dict | None = None) -> dict:
        if not self.secret_key:
            raise PaymentGatewayError("Payment gateway is not configured")

        url = f"{self.api_base}{path}"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        try:
            with http_client(self.timeout) as client:
                if method == "GET":
                    response = client.get(url, params=_flatten(params or {}), headers=headers)
                else:
                    response = client.post(url, data=dict(_flatten(params or {})), headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Payment gateway request %s %s failed: %s", method, path, exc)
            raise PaymentGatewayError("Payment gateway unreachable", details={"path": path}) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error = body.get("error", {}) if isinstance(body, dict) else {}
            message = error.get("message") or f"Payment gateway returned {response.status_code}"
            logger.error("Payment gateway error on %s %s: %s", method, path, message)
            raise PaymentGatewayError(
                message,
                details={"status_code": response.status_code, "type": error.get("type")},
            )

        if not isinstance(body, dict):
            raise PaymentGatewayError("Payment gateway returned an invalid response")
        return body

    def create_coupon(self, *, amount_off: int, currency: str, name: str) -> dict:
        return self._request("POST", "/v1/coupons", {
            "amount_off": amount_off,
            "currency": currency.lower(),
            "duration": "once",
            "name": name,
        })

    def create_checkout_session(self, params: dict) -> dict:
        return self._request("POST", "/v1/checkout/sessions", params)

    def retrieve_checkout_session(self, session_id: str) -> dict:
        if not session_id:
            raise PaymentGatewayError("Missing session id")
        return self._request("GET", f"/v1/checkout/sessions/{session_id}")


def verify_webhook_signature(
    payload: bytes,
    header: str | None,
    secret: str | None,
    tolerance: int = DEFAULT_SIGNATURE_TOLERANCE,
    now: float | None = None,
) -> dict:
    """
    Check a `t=<unix>,v1=<hex>` signature header and return the decoded event.

    The signed message is "<t>.<raw body>", HMAC-SHA256 with the endpoint secret.
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("Missing signature header")

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if not timestamp or not signatures:
        raise WebhookSignatureError("Malformed signature header")
    try:
        signed_at = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Malformed signature timestamp")

    now = time.time() if now is None else now
    if tolerance and abs(now - signed_at) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    signed_payload = timestamp.encode("utf-8") + b"." + payload
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Signature mismatch")

    try:
        event = json.loads(payload)
    except ValueError:
        raise WebhookSignatureError("Payload is not valid JSON")
    if not isinstance(event, dict):
        raise WebhookSignatureError("Payload is not a JSON object")
    return event


def sign_webhook_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a signature header for `payload` (used by local tooling and tests)."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed_payload = str(timestamp).encode("utf-8") + b"." + payload
    digest = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
