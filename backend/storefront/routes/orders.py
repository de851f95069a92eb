# Overview: Flask API routes for orders operations; parses input and returns JSON responses.

# backend/storefront/routes/orders.py
"""
Order API Routes

DESIGN:
- Checkout takes product ids and quantities only; prices and totals are
  computed server-side
- Buyers see their own orders; staff see all
- Fulfilment status changes are admin-only and follow the allowed
  transitions in order_service
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import order_service, inventory_service
from ..services.order_service import (
    AlreadyPaid,
    InvalidTransition,
    OrderError,
    OrderNotFound,
    OutOfStock,
)
from ..services.concurrency import ConcurrencyConflict
from ..validation import ValidationError, parse_bool_arg, parse_checkout, parse_pagination
from ..decorators import require_auth, require_role, is_owner_or_staff


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _json_error(exc: Exception):
    if isinstance(exc, ValidationError):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, OrderNotFound):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, OutOfStock):
        return jsonify({"error": str(exc), "product_id": exc.product_id, "details": exc.details}), 409
    if isinstance(exc, (AlreadyPaid, InvalidTransition)):
        return jsonify({"error": str(exc), "details": exc.details}), 409
    if isinstance(exc, (inventory_service.InsufficientStock, ConcurrencyConflict)):
        return jsonify({"error": str(exc), "details": exc.details}), 409
    if isinstance(exc, (OrderError, inventory_service.InventoryError)):
        return jsonify({"error": str(exc), "details": exc.details}), 400
    current_app.logger.exception("Order request failed")
    return jsonify({"error": "Internal server error"}), 500


def _page(orders, total, limit, offset):
    return jsonify({
        "items": [o.to_dict() for o in orders],
        "count": len(orders),
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@orders_bp.post("")
@require_auth
def create_order_route():
    """
    Checkout.

    Request body:
    {
        "items": [{"product_id": 1, "quantity": 2}, ...],
        "shipping_address": {"address1": "...", "city": "...", "country": "..."},
        "billing_address": {...},       (optional, defaults to shipping)
        "tax_cents": 100, "shipping_cents": 300, "discount_cents": 0,
        "notes": "..."
    }

    Returns:
        201: order with lines and computed totals
        400: invalid input
        409: a line cannot be filled (nothing was reserved)
    """
    try:
        checkout = parse_checkout(request.get_json(silent=True))
        order = order_service.create_order(
            g.current_user.id,
            checkout["lines"],
            shipping_address=checkout["shipping_address"],
            billing_address=checkout["billing_address"],
            tax_cents=checkout["tax_cents"],
            shipping_cents=checkout["shipping_cents"],
            discount_cents=checkout["discount_cents"],
            notes=checkout["notes"],
        )
        return jsonify({"order": order.to_dict(include_lines=True)}), 201
    except Exception as e:
        return _json_error(e)


@orders_bp.get("")
@require_auth
@require_role("admin", "moderator")
def list_orders_route():
    """Query params: status, payment_status, user_id, needs_attention, limit, offset."""
    try:
        limit, offset = parse_pagination(request.args)
        orders, total = order_service.list_orders(
            status=request.args.get("status"),
            payment_status=request.args.get("payment_status"),
            user_id=request.args.get("user_id", type=int),
            needs_attention=parse_bool_arg(request.args, "needs_attention"),
            limit=limit,
            offset=offset,
        )
        return _page(orders, total, limit, offset)
    except Exception as e:
        return _json_error(e)


@orders_bp.get("/mine")
@require_auth
def my_orders_route():
    try:
        limit, offset = parse_pagination(request.args)
        orders, total = order_service.list_user_orders(g.current_user.id, limit=limit, offset=offset)
        return _page(orders, total, limit, offset)
    except Exception as e:
        return _json_error(e)


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        if not is_owner_or_staff(order.user_id):
            return jsonify({"error": "Not authorized to view this order"}), 403
        data = order.to_dict(include_lines=True)
        data["payments"] = [p.to_dict() for p in order.payments]
        return jsonify({"order": data})
    except Exception as e:
        return _json_error(e)


@orders_bp.patch("/<int:order_id>/status")
@require_auth
@require_role("admin")
def update_status_route(order_id: int):
    """
    Request body: {"status": "confirmed"}

    Returns:
        200: updated order
        409: transition not allowed from the current status
    """
    try:
        data = request.get_json(silent=True) or {}
        new_status = data.get("status")
        if not new_status:
            return jsonify({"error": "status required"}), 400
        order = order_service.update_status(order_id, new_status)
        current_app.logger.info(
            "Order %s moved to %s by user %s", order.order_number, order.status, g.current_user.id
        )
        return jsonify({"order": order.to_dict(include_lines=True)})
    except Exception as e:
        return _json_error(e)


@orders_bp.get("/sold")
@require_auth
@require_role("admin", "moderator")
def sold_products_route():
    try:
        items = order_service.get_sold_products(timeframe=request.args.get("timeframe"))
        return jsonify({"items": items, "count": len(items)})
    except Exception as e:
        return _json_error(e)


@orders_bp.get("/stats")
@require_auth
@require_role("admin", "moderator")
def order_stats_route():
    try:
        return jsonify(order_service.get_order_stats(request.args.get("timeframe", "daily")))
    except Exception as e:
        return _json_error(e)
