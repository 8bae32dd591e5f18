# backend/stockroom/routes/system.py
"""
System health endpoint.

Reports database reachability plus the ledger and alerting state an operator
looks at first: how many products are low, whether stock and movement log
agree, and whether the SMS channel is configured.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Product, SensibleCategory, User
from ..services.stock_service import verify_stock_consistency
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        product_count = db.session.query(Product).count()
        user_count = db.session.query(User).count()
        rule_count = db.session.query(SensibleCategory).filter_by(is_active=True).count()

        return {
            "status": "healthy",
            "latency_ms": round((time.time() - start_time) * 1000, 2),
            "details": {
                "products": product_count,
                "users": user_count,
                "active_alert_rules": rule_count,
            },
        }
    except SQLAlchemyError:
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round((time.time() - start_time) * 1000, 2),
            "error": "Database error",
        }


def check_ledger_health() -> dict:
    """Degraded when any product's stored stock differs from its movement sum."""
    start_time = time.time()
    try:
        mismatches = verify_stock_consistency()
    except SQLAlchemyError:
        current_app.logger.exception("Ledger health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round((time.time() - start_time) * 1000, 2),
            "error": "Ledger check error",
        }

    result = {
        "status": "degraded" if mismatches else "healthy",
        "latency_ms": round((time.time() - start_time) * 1000, 2),
        "details": {"mismatched_products": [m["product_id"] for m in mismatches]},
    }
    if mismatches:
        result["warning"] = f"{len(mismatches)} products disagree with their movement log"
    return result


def check_delivery_config() -> dict:
    cfg = current_app.config
    sms_configured = bool(
        cfg.get("TWILIO_ACCOUNT_SID") and cfg.get("TWILIO_AUTH_TOKEN") and cfg.get("TWILIO_FROM_NUMBER")
    )
    return {
        "status": "healthy",
        "details": {
            "mail_server": cfg.get("MAIL_SERVER"),
            "mail_suppressed": bool(cfg.get("MAIL_SUPPRESS_SEND")),
            "sms_configured": sms_configured,
        },
    }


@system_bp.get("/health")
def health():
    """
    Health check.

    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    if database_health["status"] == "unhealthy":
        ledger_health = {"status": "unhealthy", "error": "Database unavailable"}
    else:
        ledger_health = check_ledger_health()
    delivery = check_delivery_config()

    all_checks = [database_health, ledger_health, delivery]
    if any(c["status"] == "unhealthy" for c in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(c["status"] == "degraded" for c in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    low_stock = 0
    if database_health["status"] == "healthy":
        low_stock = (
            db.session.query(Product)
            .filter(
                Product.is_active.is_(True),
                (Product.current_stock <= Product.min_stock) | (Product.current_stock <= 0),
            )
            .count()
        )

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "low_stock_products": low_stock,
        "checks": {
            "database": database_health,
            "ledger": ledger_health,
            "delivery": delivery,
        },
    }, http_status
