from __future__ import annotations

import logging

import httpx
from flask import current_app

from .http import http_client


logger = logging.getLogger(__name__)

COUNTRY_CURRENCY_MAP = {
    # Europe
    "GB": "GBP", "UK": "GBP",
    "DE": "EUR", "FR": "EUR", "IT": "EUR", "ES": "EUR", "NL": "EUR",
    "BE": "EUR", "AT": "EUR", "IE": "EUR", "PT": "EUR", "FI": "EUR", "GR": "EUR",
    "SE": "SEK", "NO": "NOK", "DK": "DKK", "CH": "CHF",
    # Americas
    "US": "USD", "CA": "CAD", "MX": "MXN", "BR": "BRL", "AR": "USD",
    # Asia-Pacific
    "AU": "AUD", "NZ": "NZD", "JP": "JPY", "CN": "CNY", "HK": "HKD",
    "SG": "SGD", "IN": "INR", "KR": "KRW",
    # Middle East & Africa
    "AE": "AED", "ZA": "ZAR",
}


def default_currency() -> str:
    return current_app.config.get("DEFAULT_CURRENCY", "GBP").upper()


def get_currency_for_country(country_code: str | None) -> str:
    code = (country_code or "").strip().upper()
    return COUNTRY_CURRENCY_MAP.get(code, default_currency())


def detect_currency(ip: str | None = None) -> str:
    """
    Look up the caller's country with the geolocation API and map it to a currency.

    Any failure (timeout, non-2xx, missing country) returns the default currency.
    """
    config = current_app.config
    base_url = config["GEOLOCATION_API_URL"].rstrip("/")
    url = f"{base_url}/{ip}/json/" if ip else f"{base_url}/json/"

    try:
        with http_client(config.get("GEOLOCATION_TIMEOUT", 3.0)) as client:
            response = client.get(url)
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Failed to detect location, using default currency: %s", exc)
        return default_currency()

    country_code = data.get("country_code") if isinstance(data, dict) else None
    if not country_code:
        logger.warning("No country code in geolocation response")
        return default_currency()

    currency = get_currency_for_country(country_code)
    logger.info("Detected location %s, currency %s", country_code, currency)
    return currency
