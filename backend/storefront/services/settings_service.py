from __future__ import annotations

from ..extensions import db
from ..models import HomepageConfig
from ..models.settings import HOMEPAGE_CONFIG_ID
from ..validation import ValidationError


BOOLEAN_KEYS = ("auto_deduct_stock", "shipping_emails_enabled", "purchasing_enabled")


def get_homepage_config(*, create: bool = True) -> HomepageConfig | None:
    """
    Load the singleton config row, creating it with defaults on first access.

    The new row is flushed, not committed; callers own the transaction.
    """
    config = db.session.get(HomepageConfig, HOMEPAGE_CONFIG_ID)
    if config is None and create:
        config = HomepageConfig(id=HOMEPAGE_CONFIG_ID)
        db.session.add(config)
        db.session.flush()
    return config


def read_auto_deduct_stock() -> bool:
    """Current value of the stock policy flag; a missing row means OFF."""
    value = (
        db.session.query(HomepageConfig.auto_deduct_stock)
        .filter(HomepageConfig.id == HOMEPAGE_CONFIG_ID)
        .scalar()
    )
    return bool(value)


def update_homepage_config(data: dict) -> HomepageConfig:
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")

    unknown = [k for k in data if k not in BOOLEAN_KEYS]
    if unknown:
        raise ValidationError(f"Field not allowed: {unknown[0]}")

    config = get_homepage_config()
    for key in BOOLEAN_KEYS:
        if key not in data:
            continue
        if not isinstance(data[key], bool):
            raise ValidationError(f"{key} must be a boolean")
        setattr(config, key, data[key])

    db.session.commit()
    return config
