# backend/storefront/routes/system.py
"""
System health endpoint.

Reports database connectivity and which payment providers are configured,
for deployment debugging.
"""

import time
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from ..extensions import db
from ..time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """Round-trip a trivial query; returns status and latency."""
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    database = check_database_health()
    providers = sorted(current_app.extensions.get("payment_providers", {}).keys())
    healthy = database["status"] == "healthy"
    body = {
        "status": "ok" if healthy else "degraded",
        "time": to_utc_z(utcnow()),
        "checks": {
            "database": database,
            "payment_providers": providers,
            "inventory_reservation": current_app.config.get("INVENTORY_RESERVATION"),
        },
    }
    return jsonify(body), 200 if healthy else 503
