# backend/storefront/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storefront.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///storefront.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Public storefront URL, used for checkout redirects and absolute image URLs
    APP_URL = os.environ.get("APP_URL", "http://localhost:3000")

    # Bearer token accepted by admin endpoints
    ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN")

    # Currency: all stored prices are in BASE_CURRENCY
    BASE_CURRENCY = os.environ.get("BASE_CURRENCY", "GBP").upper()
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", BASE_CURRENCY).upper()
    EXCHANGE_RATE_API_URL = os.environ.get(
        "EXCHANGE_RATE_API_URL", "https://api.exchangerate.host/latest"
    )
    EXCHANGE_RATE_TIMEOUT = float(os.environ.get("EXCHANGE_RATE_TIMEOUT", "3"))
    EXCHANGE_RATE_CACHE_SECONDS = int(os.environ.get("EXCHANGE_RATE_CACHE_SECONDS", "3600"))

    GEOLOCATION_API_URL = os.environ.get("GEOLOCATION_API_URL", "https://ipapi.co")
    GEOLOCATION_TIMEOUT = float(os.environ.get("GEOLOCATION_TIMEOUT", "3"))

    # Payment gateway
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    STRIPE_API_BASE = os.environ.get("STRIPE_API_BASE", "https://api.stripe.com")

    # Transactional email
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
    RESEND_API_URL = os.environ.get("RESEND_API_URL", "https://api.resend.com/emails")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "orders@elucid.store")
    EMAILS_ENABLED = _env_bool("EMAILS_ENABLED", True)

    HTTP_TIMEOUT = float(os.environ.get("HTTP_TIMEOUT", "10"))

    # Optional httpx transport for all outbound calls (tests use httpx.MockTransport)
    HTTP_TRANSPORT = None
