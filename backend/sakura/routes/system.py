# backend/sakura/routes/system.py
"""
System health and version endpoints.

Provides health checks for the database and the workflow ledgers, used by
deployment probes.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Coupon, InventoryLog, Order, PaymentTransaction
from ..models.constants import PAYMENT_PENDING, PAYMENT_PROCESSING
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)

API_VERSION = "0.1.0"


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        order_count = db.session.query(func.count(Order.id)).scalar()
        coupon_count = db.session.query(func.count(Coupon.id)).scalar()
        log_count = db.session.query(func.count(InventoryLog.id)).scalar()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "orders": order_count,
                "coupons": coupon_count,
                "inventory_logs": log_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_payment_health() -> dict:
    """
    Report payment attempts still waiting on a gateway.

    Degraded when no webhook secret is configured and unsigned callbacks are
    allowed (development setting left on).
    """
    start_time = time.time()
    try:
        open_attempts = db.session.query(func.count(PaymentTransaction.id)).filter(
            PaymentTransaction.status.in_([PAYMENT_PENDING, PAYMENT_PROCESSING])
        ).scalar()

        secrets = current_app.config.get("PAYMENT_WEBHOOK_SECRETS") or {}
        unsigned_gateways = sorted(name for name, secret in secrets.items() if not secret)
        allow_unsigned = bool(current_app.config.get("PAYMENT_WEBHOOK_ALLOW_UNSIGNED"))

        elapsed_ms = (time.time() - start_time) * 1000
        details = {
            "open_attempts": open_attempts,
            "gateways_without_secret": unsigned_gateways,
        }

        if unsigned_gateways and allow_unsigned:
            return {
                "status": "degraded",
                "latency_ms": round(elapsed_ms, 2),
                "warning": "Unsigned webhook callbacks are accepted",
                "details": details,
            }
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": details,
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Payment health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Payment service error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: All systems healthy (or degraded but operational)
    - 503: One or more systems unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    payment_health = check_payment_health()

    all_checks = [database_health, payment_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "payments": payment_health,
        }
    }

    return response, http_status


@system_bp.get("/version")
def version():
    """
    Version endpoint for deployment debugging.

    Returns the API version, environment, settlement currency and server
    time. Never exposes secrets or webhook keys.
    """
    import sys

    env = "production" if not current_app.debug else "development"

    return {
        "api_version": API_VERSION,
        "environment": env,
        "currency": current_app.config.get("DEFAULT_CURRENCY"),
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    }
