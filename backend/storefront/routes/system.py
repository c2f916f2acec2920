# backend/storefront/routes/system.py
"""
System health endpoint.

Checks the database and the store configuration row so deploys can tell a
broken schema from a missing bootstrap.
"""

import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import HomepageConfig, Order, Product
from ..models.settings import HOMEPAGE_CONFIG_ID
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        product_count = db.session.query(Product).count()
        order_count = db.session.query(Order).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"products": product_count, "orders": order_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_store_config_health() -> dict:
    """Degraded (not unhealthy) when `flask system init` has not been run."""
    try:
        config = db.session.get(HomepageConfig, HOMEPAGE_CONFIG_ID)
    except Exception:
        current_app.logger.exception("Store config health check failed")
        return {"status": "unhealthy", "error": "Store config error"}

    if config is None:
        return {"status": "degraded", "warning": "Store config not initialized; defaults in use"}
    return {
        "status": "healthy",
        "details": {
            "auto_deduct_stock": config.auto_deduct_stock,
            "purchasing_enabled": config.purchasing_enabled,
        },
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()
    config_health = check_store_config_health()

    all_checks = [database_health, config_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "store_config": config_health,
        },
    }, http_status
