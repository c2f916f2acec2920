# Overview: Shared outbound HTTP client factory for gateway, rate, geolocation and email calls.

from __future__ import annotations

import httpx
from flask import current_app


def http_client(timeout: float | None = None) -> httpx.Client:
    """
    Build a short-lived httpx client from app config.

    HTTP_TRANSPORT lets tests swap in an httpx.MockTransport.
    """
    config = current_app.config
    return httpx.Client(
        timeout=timeout if timeout is not None else config.get("HTTP_TIMEOUT", 10.0),
        transport=config.get("HTTP_TRANSPORT"),
    )
