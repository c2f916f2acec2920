from decimal import Decimal

import httpx
import pytest

from storefront.services import currency_service, geolocation_service
from storefront.services.currency_service import (
    DEFAULT_RATES,
    SOURCE_CACHE,
    SOURCE_CACHED_FALLBACK,
    SOURCE_DEFAULT,
    SOURCE_LIVE,
)


RATES_HOST = "api.exchangerate.host"
GEO_HOST = "ipapi.co"

LIVE_RATES = {"success": True, "base": "GBP", "rates": {"USD": 1.25, "EUR": 1.2, "JPY": 190.0}}


@pytest.fixture(autouse=True)
def _fresh_cache(db_session):
    currency_service.clear_rate_cache()
    yield
    currency_service.clear_rate_cache()


def test_minor_units_standard_and_zero_decimal(app):
    rates = {"GBP": Decimal("1"), "USD": Decimal("1.27"), "JPY": Decimal("189.50")}
    assert currency_service.to_minor_units(Decimal("10.00"), "GBP", rates) == 1000
    assert currency_service.to_minor_units(Decimal("10.00"), "USD", rates) == 1270
    # 10 GBP = 1895 JPY, sent without the x100 scaling
    assert currency_service.to_minor_units(Decimal("10.00"), "JPY", rates) == 1895


def test_minor_units_round_half_up(app):
    rates = {"GBP": Decimal("1"), "USD": Decimal("1.5"), "JPY": Decimal("100.5")}
    # 0.01 GBP = 0.015 USD -> 1.5 cents -> 2
    assert currency_service.to_minor_units(Decimal("0.01"), "USD", rates) == 2
    # 0.01 GBP = 1.005 JPY -> 1
    assert currency_service.to_minor_units(Decimal("0.01"), "JPY", rates) == 1
    # 0.03 GBP = 3.015 JPY -> 3
    assert currency_service.to_minor_units(Decimal("0.03"), "JPY", rates) == 3
    assert currency_service.to_minor_units(Decimal("0.005"), "GBP", rates) == 1


def test_unknown_currency_is_not_converted(app):
    rates = {"GBP": Decimal("1")}
    assert currency_service.convert_from_base(Decimal("5"), "XYZ", rates) == Decimal("5")
    assert currency_service.convert_between(Decimal("5"), "USD", "XYZ", rates) == Decimal("5")


def test_convert_between(app):
    rates = {"GBP": Decimal("1"), "USD": Decimal("1.25"), "EUR": Decimal("1.20")}
    assert currency_service.convert_between(Decimal("125"), "USD", "EUR", rates) == Decimal("120")
    assert currency_service.convert_between(Decimal("7"), "EUR", "eur", rates) == Decimal("7")


def test_format_amount(app):
    rates = {"GBP": Decimal("1"), "JPY": Decimal("189.5")}
    assert currency_service.format_amount(Decimal("12.5")) == "£12.50"
    assert currency_service.format_amount(Decimal("12.5"), "JPY", rates) == "¥2369"
    assert currency_service.format_amount(Decimal("1"), "SEK", {"SEK": Decimal("13.2")}) == "SEK 13.20"


def test_supported_and_zero_decimal_sets():
    assert currency_service.is_supported_currency("usd")
    assert not currency_service.is_supported_currency("XYZ")
    assert not currency_service.is_supported_currency(None)
    assert currency_service.is_zero_decimal("jpy")
    assert currency_service.is_zero_decimal("KRW")
    assert not currency_service.is_zero_decimal("GBP")


def test_live_rates_are_cached(app, fake_http):
    fake_http.on(RATES_HOST, json=LIVE_RATES)

    first = currency_service.get_rates(now=1000.0)
    assert first.source == SOURCE_LIVE
    assert first.cached is False
    assert first.rates["USD"] == Decimal("1.25")
    assert first.rates["GBP"] == Decimal("1")
    # Missing symbols are filled from the defaults
    assert first.rates["KRW"] == DEFAULT_RATES["KRW"]

    second = currency_service.get_rates(now=1000.0 + 60)
    assert second.source == SOURCE_CACHE
    assert second.cached is True
    assert len(fake_http.requests_to(RATES_HOST)) == 1

    request = fake_http.requests_to(RATES_HOST)[0]
    assert request.url.params["base"] == "GBP"


def test_expired_cache_refetches(app, fake_http):
    fake_http.on(RATES_HOST, json=LIVE_RATES)
    currency_service.get_rates(now=0.0)
    later = currency_service.get_rates(now=3600.0 + 1)
    assert later.source == SOURCE_LIVE
    assert len(fake_http.requests_to(RATES_HOST)) == 2


def test_failure_falls_back_to_stale_cache(app, fake_http):
    fake_http.on(RATES_HOST, json=LIVE_RATES)
    currency_service.get_rates(now=0.0)

    fake_http.on(RATES_HOST, status=503, json={"error": "down"})
    snapshot = currency_service.get_rates(now=7200.0)
    assert snapshot.source == SOURCE_CACHED_FALLBACK
    assert snapshot.rates["USD"] == Decimal("1.25")


def test_failure_without_cache_uses_defaults(app, fake_http):
    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    fake_http.on(RATES_HOST, timeout)
    snapshot = currency_service.get_rates(now=0.0)
    assert snapshot.source == SOURCE_DEFAULT
    assert snapshot.rates == DEFAULT_RATES
    assert snapshot.to_dict()["rates"]["USD"] == 1.27


def test_error_payload_is_treated_as_failure(app, fake_http):
    fake_http.on(RATES_HOST, json={"success": False, "error": {"info": "bad key"}})
    assert currency_service.get_rates(now=0.0).source == SOURCE_DEFAULT


def test_country_mapping(app):
    assert geolocation_service.get_currency_for_country("jp") == "JPY"
    assert geolocation_service.get_currency_for_country("UK") == "GBP"
    assert geolocation_service.get_currency_for_country("DE") == "EUR"
    assert geolocation_service.get_currency_for_country("ZZ") == "GBP"
    assert geolocation_service.get_currency_for_country(None) == "GBP"


def test_detect_currency(app, fake_http):
    fake_http.on(GEO_HOST, json={"country_code": "US"})
    assert geolocation_service.detect_currency("8.8.8.8") == "USD"
    assert fake_http.requests_to(GEO_HOST)[0].url.path == "/8.8.8.8/json/"


def test_detect_currency_falls_back(app, fake_http):
    fake_http.on(GEO_HOST, json={"error": True, "reason": "RateLimited"})
    assert geolocation_service.detect_currency("1.2.3.4") == "GBP"

    fake_http.on(GEO_HOST, status=500, json={})
    assert geolocation_service.detect_currency("1.2.3.4") == "GBP"

    # No route configured: network error
    del fake_http.routes[GEO_HOST]
    assert geolocation_service.detect_currency() == "GBP"
