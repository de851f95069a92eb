# Overview: Flask API routes for products operations; parses input and returns JSON responses.

# backend/storefront/routes/products.py
"""
Catalog and inventory API routes

- Listing and detail are public
- Creation, updates, sell, restock, flag toggles, deletion and reports are admin-only
- Sell and restock require an idempotency_key so a retried request is applied once
- Stock counters are never written directly; updates only touch catalog fields
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import inventory_service
from ..services.inventory_service import (
    DuplicateMutation,
    InsufficientStock,
    InvalidQuantity,
    InventoryError,
    ProductInUse,
    ProductNotFound,
)
from ..validation import (
    ValidationError,
    parse_bool_arg,
    parse_pagination,
    parse_product_create,
    parse_product_update,
    parse_stock_mutation,
)
from ..decorators import require_auth, require_role


products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _json_error(exc: Exception):
    if isinstance(exc, (ValidationError, InvalidQuantity)):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, ProductNotFound):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, (DuplicateMutation, InsufficientStock, ProductInUse)):
        return jsonify({"error": str(exc), "details": exc.details}), 409
    if isinstance(exc, InventoryError):
        return jsonify({"error": str(exc), "details": exc.details}), 400
    current_app.logger.exception("Product request failed")
    return jsonify({"error": "Internal server error"}), 500


@products_bp.get("")
def list_products_route():
    """
    Query params: active, featured, in_stock (true/false), category, search,
    limit, offset. Anonymous callers only see active products.
    """
    try:
        limit, offset = parse_pagination(request.args)
        active = parse_bool_arg(request.args, "active")
        products, total = inventory_service.list_products(
            active=True if active is None else active,
            featured=parse_bool_arg(request.args, "featured"),
            in_stock=parse_bool_arg(request.args, "in_stock"),
            category=request.args.get("category"),
            search=request.args.get("search"),
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "items": [p.to_dict() for p in products],
            "count": len(products),
            "total": total,
            "limit": limit,
            "offset": offset,
        })
    except Exception as e:
        return _json_error(e)


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    try:
        return jsonify({"product": inventory_service.get_product(product_id).to_dict()})
    except Exception as e:
        return _json_error(e)


@products_bp.post("")
@require_auth
@require_role("admin")
def create_product_route():
    """
    Request body:
    {
        "sku": "tee-001",            (normalized to upper case)
        "name": "T-shirt",
        "price_cents": 1999,
        "initial_stock": 10,         (optional, booked as RESTOCK)
        "category": "apparel",       (optional)
        "low_stock_alert": 5         (optional)
    }
    """
    try:
        patch = parse_product_create(request.get_json(silent=True))
        product = inventory_service.create_product(**patch)
        return jsonify({"product": product.to_dict()}), 201
    except Exception as e:
        return _json_error(e)


@products_bp.patch("/<int:product_id>")
@require_auth
@require_role("admin")
def update_product_route(product_id: int):
    """
    Partial update of name, description, category, price_cents, sku,
    low_stock_alert, is_active or is_featured. Stock fields are rejected.
    """
    try:
        patch = parse_product_update(request.get_json(silent=True))
        product = inventory_service.update_product(product_id, **patch)
        return jsonify({"product": product.to_dict()})
    except Exception as e:
        return _json_error(e)


@products_bp.post("/<int:product_id>/sell")
@require_auth
@require_role("admin")
def sell_route(product_id: int):
    """
    Direct sale outside checkout (e.g. a counter sale).

    Request body: {"quantity": 2, "idempotency_key": "pos-991", "reference": "till 3"}

    Returns:
        200: product with new counters
        409: not enough stock, or idempotency_key already applied
    """
    try:
        body = request.get_json(silent=True)
        quantity, key = parse_stock_mutation(body)
        mutation = inventory_service.sell(
            product_id,
            quantity,
            idempotency_key=key,
            reference=body.get("reference"),
        )
        product = inventory_service.get_product(product_id)
        return jsonify({"product": product.to_dict(), "mutation": mutation.to_dict()})
    except Exception as e:
        return _json_error(e)


@products_bp.post("/<int:product_id>/restock")
@require_auth
@require_role("admin")
def restock_route(product_id: int):
    """
    Request body: {"quantity": 5, "idempotency_key": "po-123-line-1"}

    Returns:
        200: product with new counters
        409: idempotency_key already applied
    """
    try:
        quantity, key = parse_stock_mutation(request.get_json(silent=True))
        mutation = inventory_service.restock(
            product_id,
            quantity,
            idempotency_key=key,
            reference=request.get_json(silent=True).get("reference"),
        )
        product = inventory_service.get_product(product_id)
        return jsonify({"product": product.to_dict(), "mutation": mutation.to_dict()})
    except Exception as e:
        return _json_error(e)


@products_bp.post("/<int:product_id>/toggle-active")
@require_auth
@require_role("admin")
def toggle_active_route(product_id: int):
    try:
        return jsonify({"product": inventory_service.toggle_active(product_id).to_dict()})
    except Exception as e:
        return _json_error(e)


@products_bp.post("/<int:product_id>/toggle-featured")
@require_auth
@require_role("admin")
def toggle_featured_route(product_id: int):
    try:
        return jsonify({"product": inventory_service.toggle_featured(product_id).to_dict()})
    except Exception as e:
        return _json_error(e)


@products_bp.delete("/<int:product_id>")
@require_auth
@require_role("admin")
def delete_product_route(product_id: int):
    """Refused with 409 while any order references the product."""
    try:
        inventory_service.delete_product(product_id)
        return jsonify({"message": "Product deleted"})
    except Exception as e:
        return _json_error(e)


@products_bp.get("/<int:product_id>/mutations")
@require_auth
@require_role("admin", "moderator")
def product_mutations_route(product_id: int):
    try:
        inventory_service.get_product(product_id)
        mutations = inventory_service.list_mutations(product_id)
        return jsonify({"items": [m.to_dict() for m in mutations], "count": len(mutations)})
    except Exception as e:
        return _json_error(e)


@products_bp.get("/stats")
@require_auth
@require_role("admin", "moderator")
def inventory_stats_route():
    try:
        return jsonify(inventory_service.get_inventory_stats())
    except Exception as e:
        return _json_error(e)


@products_bp.get("/low-stock")
@require_auth
@require_role("admin", "moderator")
def low_stock_route():
    try:
        products = inventory_service.get_low_stock_products()
        return jsonify({"items": [p.to_dict() for p in products], "count": len(products)})
    except Exception as e:
        return _json_error(e)


@products_bp.get("/out-of-stock")
@require_auth
@require_role("admin", "moderator")
def out_of_stock_route():
    try:
        products = inventory_service.get_out_of_stock_products()
        return jsonify({"items": [p.to_dict() for p in products], "count": len(products)})
    except Exception as e:
        return _json_error(e)
