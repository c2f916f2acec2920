# Overview: Exchange rates and canonical-currency conversion, including gateway minor units.

"""
Currency conversion.

All stored prices are in the base currency (config BASE_CURRENCY). Rates map a
currency code to "units of that currency per one base unit".

RATE SOURCES (first that works wins):
1. Process-lifetime cache, valid for EXCHANGE_RATE_CACHE_SECONDS (1 hour)
2. Live fetch from EXCHANGE_RATE_API_URL with a hard timeout
3. Last cached rates, even if expired
4. DEFAULT_RATES embedded below

Fetch failures are logged and never raised: checkout keeps working on
stale or default rates.

MINOR UNITS:
to_minor_units() is the only place amounts are turned into gateway integers.
Line items, shipping and the discount coupon all go through it so the
gateway total reconciles with the order total.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

import httpx
from flask import current_app

from .http import http_client


logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = (
    "GBP", "USD", "EUR", "CAD", "AUD", "JPY", "CHF", "CNY", "INR", "NZD",
    "SGD", "HKD", "KRW", "SEK", "NOK", "DKK", "MXN", "BRL", "ZAR", "AED",
)

# Currencies whose smallest unit is the base unit (1 JPY is sent as 1, not 100)
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP", "ISK", "TWD"})

CURRENCY_SYMBOLS = {
    "GBP": "£",
    "USD": "$",
    "EUR": "€",
    "CAD": "$",
    "AUD": "$",
    "JPY": "¥",
}

# Per 1 GBP
DEFAULT_RATES = {
    "GBP": Decimal("1.00"),
    "USD": Decimal("1.27"),
    "EUR": Decimal("1.16"),
    "CAD": Decimal("1.73"),
    "AUD": Decimal("1.92"),
    "JPY": Decimal("189.50"),
    "CHF": Decimal("1.12"),
    "CNY": Decimal("9.18"),
    "INR": Decimal("106.50"),
    "NZD": Decimal("2.10"),
    "SGD": Decimal("1.70"),
    "HKD": Decimal("9.90"),
    "KRW": Decimal("1720.00"),
    "SEK": Decimal("13.20"),
    "NOK": Decimal("13.80"),
    "DKK": Decimal("8.65"),
    "MXN": Decimal("24.50"),
    "BRL": Decimal("6.35"),
    "ZAR": Decimal("22.80"),
    "AED": Decimal("4.67"),
}

SOURCE_CACHE = "cache"
SOURCE_LIVE = "live"
SOURCE_CACHED_FALLBACK = "cached-fallback"
SOURCE_DEFAULT = "error-fallback"


@dataclass(frozen=True)
class RatesSnapshot:
    rates: dict[str, Decimal]
    source: str
    cached: bool

    def to_dict(self) -> dict:
        return {
            "rates": {code: float(rate) for code, rate in self.rates.items()},
            "source": self.source,
            "cached": self.cached,
        }


class _RateCache:
    def __init__(self):
        self.rates: dict[str, Decimal] | None = None
        self.fetched_at: float = 0.0
        self.lock = threading.Lock()

    def clear(self) -> None:
        with self.lock:
            self.rates = None
            self.fetched_at = 0.0


_cache = _RateCache()


def clear_rate_cache() -> None:
    _cache.clear()


def base_currency() -> str:
    return current_app.config.get("BASE_CURRENCY", "GBP").upper()


def is_supported_currency(currency: str | None) -> bool:
    return bool(currency) and currency.upper() in SUPPORTED_CURRENCIES


def is_zero_decimal(currency: str) -> bool:
    return currency.upper() in ZERO_DECIMAL_CURRENCIES


def _fetch_live_rates(base: str) -> dict[str, Decimal]:
    config = current_app.config
    symbols = ",".join(sorted(set(SUPPORTED_CURRENCIES) | {base}))
    with http_client(config.get("EXCHANGE_RATE_TIMEOUT", 3.0)) as client:
        response = client.get(
            config["EXCHANGE_RATE_API_URL"],
            params={"base": base, "symbols": symbols},
        )
    response.raise_for_status()
    data = response.json()
    if not isinstance(data, dict) or data.get("success") is False or not isinstance(data.get("rates"), dict):
        raise ValueError("Exchange rate API returned an error response")

    live = data["rates"]
    rates: dict[str, Decimal] = {}
    for code in SUPPORTED_CURRENCIES:
        if code == base:
            rates[code] = Decimal("1")
            continue
        value = live.get(code)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            rates[code] = Decimal(str(value))
        elif code in DEFAULT_RATES:
            rates[code] = DEFAULT_RATES[code]
    rates[base] = Decimal("1")
    return rates


def get_rates(*, now: float | None = None) -> RatesSnapshot:
    """Rates for the base currency; never raises."""
    now = time.monotonic() if now is None else now
    ttl = current_app.config.get("EXCHANGE_RATE_CACHE_SECONDS", 3600)

    with _cache.lock:
        if _cache.rates is not None and (now - _cache.fetched_at) < ttl:
            return RatesSnapshot(dict(_cache.rates), SOURCE_CACHE, True)

        base = base_currency()
        try:
            rates = _fetch_live_rates(base)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to fetch exchange rates: %s", exc)
            if _cache.rates is not None:
                return RatesSnapshot(dict(_cache.rates), SOURCE_CACHED_FALLBACK, True)
            return RatesSnapshot(dict(DEFAULT_RATES), SOURCE_DEFAULT, False)

        _cache.rates = rates
        _cache.fetched_at = now
        return RatesSnapshot(dict(rates), SOURCE_LIVE, False)


def _rate_for(currency: str, rates: dict[str, Decimal] | None) -> Decimal | None:
    if rates is None:
        rates = get_rates().rates
    return rates.get(currency.upper())


def convert_from_base(amount, currency: str, rates: dict[str, Decimal] | None = None) -> Decimal:
    """Base -> currency. Unknown currencies are returned unconverted."""
    amount = Decimal(str(amount))
    currency = currency.upper()
    if currency == base_currency():
        return amount
    rate = _rate_for(currency, rates)
    if not rate:
        return amount
    return amount * rate


def convert_between(amount, from_currency: str, to_currency: str, rates: dict[str, Decimal] | None = None) -> Decimal:
    amount = Decimal(str(amount))
    source = from_currency.upper()
    target = to_currency.upper()
    if source == target:
        return amount
    if rates is None:
        rates = get_rates().rates
    source_rate = rates.get(source)
    target_rate = rates.get(target)
    if not source_rate or not target_rate:
        return amount
    return amount / source_rate * target_rate


def to_minor_units(amount, currency: str, rates: dict[str, Decimal] | None = None) -> int:
    """
    Convert a base-currency amount to the integer the gateway expects.

    Standard currencies are scaled by 100; zero-decimal currencies are not.
    Rounds half-up to the nearest integer unit.
    """
    converted = convert_from_base(amount, currency, rates)
    if not is_zero_decimal(currency):
        converted = converted * 100
    return int(converted.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount, currency: str | None = None, rates: dict[str, Decimal] | None = None) -> str:
    """Plain-text price for emails, e.g. "£12.50" or "¥2369"."""
    currency = (currency or base_currency()).upper()
    value = convert_from_base(amount, currency, rates)
    places = Decimal("1") if is_zero_decimal(currency) else Decimal("0.01")
    value = value.quantize(places, rounding=ROUND_HALF_UP)
    return f"{CURRENCY_SYMBOLS.get(currency, currency + ' ')}{value}"
