# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

# backend/storefront/routes/payments.py
"""
Payment Processing API Routes

DESIGN:
- One entry point (POST /process) for every method; the payload is
  validated into a tagged StripePayload | MobileMoneyPayload
- The attempt is persisted before the provider is called; a provider
  outage returns 502 with the failed attempt in the body
- GET /status/<id> polls the provider while the payment is processing

SECURITY:
- Buyers may only pay for and read their own orders' payments
- Listings and statistics are staff-only
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..providers import ProviderError
from ..services import payment_service
from ..services.order_service import AlreadyPaid, OrderNotFound
from ..services.payment_service import (
    PaymentError,
    PaymentForbidden,
    PaymentNotFound,
    UnsupportedMethod,
)
from ..services.concurrency import ConcurrencyConflict
from ..validation import ValidationError, parse_pagination, parse_payment_request
from ..decorators import require_auth, require_role, is_owner_or_staff


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _json_error(exc: Exception):
    if isinstance(exc, (ValidationError, UnsupportedMethod)):
        return jsonify({"error": str(exc), "details": getattr(exc, "details", {})}), 400
    if isinstance(exc, PaymentForbidden):
        return jsonify({"error": str(exc)}), 403
    if isinstance(exc, (PaymentNotFound, OrderNotFound)):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, (AlreadyPaid, ConcurrencyConflict)):
        return jsonify({"error": str(exc), "details": exc.details}), 409
    if isinstance(exc, ProviderError):
        return jsonify({
            "error": "Payment provider unavailable",
            "message": str(exc),
            "payment": exc.details.get("payment"),
        }), 502
    if isinstance(exc, PaymentError):
        return jsonify({"error": str(exc), "details": exc.details}), 400
    current_app.logger.exception("Payment request failed")
    return jsonify({"error": "Internal server error"}), 500


def _page(payments, total, limit, offset):
    return jsonify({
        "items": [p.to_dict() for p in payments],
        "count": len(payments),
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@payments_bp.get("/methods")
def methods_route():
    methods = payment_service.available_methods()
    return jsonify({"methods": methods, "count": len(methods)})


@payments_bp.post("/process")
@require_auth
def process_payment_route():
    """
    Start a payment attempt.

    Request body:
    {
        "order_id": 12,
        "payment_method": "stripe" | "paypack",
        "payment_data": {"payment_method_id": "pm_...", "card_holder": "..."}
                      | {"mobile_number": "0781234567", "network": "mtn"}
    }

    Returns:
        200: payment (status processing|completed|failed), plus client_secret
             when the card needs client-side confirmation
        400: invalid input or unavailable method
        403: order belongs to someone else
        409: order already paid
        502: provider unreachable (attempt persisted as failed)
    """
    try:
        order_id, payload = parse_payment_request(request.get_json(silent=True))
        payment, result = payment_service.initiate(order_id, g.current_user.id, payload)
        return jsonify({
            "payment": payment.to_dict(),
            "status": payment.status,
            "client_secret": getattr(result, "client_secret", None),
        })
    except Exception as e:
        return _json_error(e)


@payments_bp.get("/status/<int:payment_id>")
@require_auth
def payment_status_route(payment_id: int):
    try:
        payment = payment_service.get_payment(payment_id)
        if not is_owner_or_staff(payment.user_id):
            return jsonify({"error": "Not authorized to view this payment"}), 403
        payment = payment_service.refresh_status(payment_id)
        return jsonify({"payment": payment.to_dict(), "status": payment.status})
    except Exception as e:
        return _json_error(e)


@payments_bp.get("/<int:payment_id>")
@require_auth
def payment_details_route(payment_id: int):
    try:
        payment = payment_service.get_payment(payment_id)
        if not is_owner_or_staff(payment.user_id):
            return jsonify({"error": "Not authorized to view this payment"}), 403
        return jsonify({"payment": payment_service.get_payment_details(payment_id)})
    except Exception as e:
        return _json_error(e)


@payments_bp.get("")
@require_auth
@require_role("admin", "moderator")
def list_payments_route():
    """Query params: status, provider, method, limit, offset."""
    try:
        limit, offset = parse_pagination(request.args)
        payments, total = payment_service.list_payments(
            status=request.args.get("status"),
            provider=request.args.get("provider"),
            method=request.args.get("method"),
            limit=limit,
            offset=offset,
        )
        return _page(payments, total, limit, offset)
    except Exception as e:
        return _json_error(e)


@payments_bp.get("/provider/<provider>")
@require_auth
@require_role("admin", "moderator")
def payments_by_provider_route(provider: str):
    try:
        limit, offset = parse_pagination(request.args)
        payments, total = payment_service.get_payments_by_provider(provider, limit=limit, offset=offset)
        return _page(payments, total, limit, offset)
    except Exception as e:
        return _json_error(e)


@payments_bp.get("/stats")
@require_auth
@require_role("admin", "moderator")
def payment_stats_route():
    try:
        return jsonify(payment_service.get_payment_stats(request.args.get("timeframe", "daily")))
    except Exception as e:
        return _json_error(e)
