# Overview: Service-layer operations for inventory; encapsulates business logic and database work.

"""
Storefront Inventory Invariants (authoritative)

Inventory model:
- Product.stock is the only shared mutable quantity in the system.
- stock never goes negative (CHECK constraint plus conditional UPDATE).
- For rows mutated only through this module: stock = stock_in - stock_out.
- sold advances together with stock_out.

Mutation rules:
- sell and restock are single conditional UPDATE statements. The WHERE clause
  (stock >= :qty for sell) is the guard; the application never reads stock,
  does arithmetic and writes it back.
- Every accepted mutation inserts an InventoryMutation row carrying the
  caller's idempotency key in the same transaction. A repeated key is rejected
  with DuplicateMutation and changes nothing.
- Functions take commit=False so callers (checkout, reconciliation) can make
  several mutations all-or-nothing inside their own transaction.
"""

from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product, InventoryMutation, OrderLine
from .concurrency import guarded_update, reload, run_with_retry


logger = logging.getLogger(__name__)

MUTATION_SELL = "SELL"
MUTATION_RESTOCK = "RESTOCK"


class InventoryError(Exception):
    """Base class for inventory errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ProductNotFound(InventoryError):
    pass


class InvalidQuantity(InventoryError):
    pass


class InsufficientStock(InventoryError):
    pass


class DuplicateMutation(InventoryError):
    pass


class ProductInUse(InventoryError):
    pass


def normalize_sku(sku: str) -> str:
    return (sku or "").strip().upper()


# =============================================================================
# LEDGER MUTATIONS
# =============================================================================

def _record_mutation(
    *,
    product_id: int,
    kind: str,
    quantity: int,
    idempotency_key: str,
    reference: str | None,
) -> InventoryMutation:
    """
    Insert the idempotency row inside a SAVEPOINT.

    The unique constraint on idempotency_key turns a replayed request into an
    IntegrityError, which is rolled back to the savepoint only, so the
    caller's outer transaction survives and sees DuplicateMutation.
    """
    mutation = InventoryMutation(
        idempotency_key=idempotency_key,
        product_id=product_id,
        kind=kind,
        quantity=quantity,
        reference=reference,
    )
    try:
        with db.session.begin_nested():
            db.session.add(mutation)
    except IntegrityError:
        raise DuplicateMutation(
            f"Inventory mutation {idempotency_key!r} was already applied",
            details={"idempotency_key": idempotency_key, "product_id": product_id},
        )
    return mutation


def _sell_locked(
    product_id: int,
    quantity: int,
    idempotency_key: str,
    reference: str | None,
) -> InventoryMutation:
    if quantity is None or quantity <= 0:
        raise InvalidQuantity("Quantity must be greater than 0", details={"quantity": quantity})

    if db.session.get(Product, product_id) is None:
        raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})

    mutation = _record_mutation(
        product_id=product_id,
        kind=MUTATION_SELL,
        quantity=quantity,
        idempotency_key=idempotency_key,
        reference=reference,
    )

    matched = guarded_update(
        Product,
        Product.id == product_id,
        Product.stock >= quantity,
        stock=Product.stock - quantity,
        stock_out=Product.stock_out + quantity,
        sold=Product.sold + quantity,
    )
    if not matched:
        # Drop the idempotency row so the key can be reused once stock arrives
        db.session.delete(mutation)
        db.session.flush()
        product = reload(Product, product_id)
        raise InsufficientStock(
            f"Insufficient stock. Available: {product.stock}, Requested: {quantity}",
            details={
                "product_id": product_id,
                "sku": product.sku,
                "available": product.stock,
                "requested": quantity,
            },
        )

    product = reload(Product, product_id)
    mutation.stock_after = product.stock
    db.session.flush()
    return mutation


def _restock_locked(
    product_id: int,
    quantity: int,
    idempotency_key: str,
    reference: str | None,
) -> InventoryMutation:
    if quantity is None or quantity <= 0:
        raise InvalidQuantity("Quantity must be greater than 0", details={"quantity": quantity})

    if db.session.get(Product, product_id) is None:
        raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})

    mutation = _record_mutation(
        product_id=product_id,
        kind=MUTATION_RESTOCK,
        quantity=quantity,
        idempotency_key=idempotency_key,
        reference=reference,
    )

    guarded_update(
        Product,
        Product.id == product_id,
        stock=Product.stock + quantity,
        stock_in=Product.stock_in + quantity,
    )

    product = reload(Product, product_id)
    mutation.stock_after = product.stock
    db.session.flush()
    return mutation


def sell(
    product_id: int,
    quantity: int,
    *,
    idempotency_key: str,
    reference: str | None = None,
    commit: bool = True,
) -> InventoryMutation:
    """
    Remove `quantity` units from available stock.

    Raises:
        InvalidQuantity: quantity <= 0
        ProductNotFound: unknown product
        InsufficientStock: quantity > stock at the moment of the UPDATE
        DuplicateMutation: idempotency_key already applied
    """
    if not commit:
        return _sell_locked(product_id, quantity, idempotency_key, reference)

    def _op():
        try:
            mutation = _sell_locked(product_id, quantity, idempotency_key, reference)
        except InventoryError:
            db.session.rollback()
            raise
        db.session.commit()
        return mutation

    return run_with_retry(_op)


def restock(
    product_id: int,
    quantity: int,
    *,
    idempotency_key: str,
    reference: str | None = None,
    commit: bool = True,
) -> InventoryMutation:
    """
    Add `quantity` received units to stock.

    Raises:
        InvalidQuantity: quantity <= 0
        ProductNotFound: unknown product
        DuplicateMutation: idempotency_key already applied
    """
    if not commit:
        return _restock_locked(product_id, quantity, idempotency_key, reference)

    def _op():
        try:
            mutation = _restock_locked(product_id, quantity, idempotency_key, reference)
        except InventoryError:
            db.session.rollback()
            raise
        db.session.commit()
        return mutation

    return run_with_retry(_op)


def list_mutations(product_id: int, limit: int = 200) -> list[InventoryMutation]:
    return (
        db.session.query(InventoryMutation)
        .filter_by(product_id=product_id)
        .order_by(InventoryMutation.id.desc())
        .limit(limit)
        .all()
    )


# =============================================================================
# CATALOG
# =============================================================================

def create_product(
    *,
    sku: str,
    name: str,
    price_cents: int,
    description: str | None = None,
    category: str = "other",
    initial_stock: int = 0,
    low_stock_alert: int = 10,
    is_active: bool = True,
    is_featured: bool = False,
) -> Product:
    """
    Create a catalog product.

    Initial stock is booked as a RESTOCK mutation so the counters start
    consistent (stock == stock_in).
    """
    normalized = normalize_sku(sku)
    if not normalized:
        raise InventoryError("SKU is required")
    if initial_stock < 0:
        raise InvalidQuantity("Initial stock cannot be negative", details={"initial_stock": initial_stock})

    if get_product_by_sku(normalized):
        raise InventoryError(f"SKU {normalized} already exists", details={"sku": normalized})

    product = Product(
        sku=normalized,
        name=name.strip(),
        description=description,
        category=category or "other",
        price_cents=price_cents,
        stock=0,
        stock_in=0,
        stock_out=0,
        sold=0,
        low_stock_alert=low_stock_alert,
        is_active=is_active,
        is_featured=is_featured,
    )
    db.session.add(product)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise InventoryError(f"SKU {normalized} already exists", details={"sku": normalized})

    if initial_stock:
        _restock_locked(
            product.id,
            initial_stock,
            idempotency_key=f"product:{product.id}:initial",
            reference="initial stock",
        )

    db.session.commit()
    return reload(Product, product.id)


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise ProductNotFound(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def get_product_by_sku(sku: str) -> Product | None:
    return db.session.query(Product).filter_by(sku=normalize_sku(sku)).first()


def update_product(product_id: int, **changes) -> Product:
    """
    Update catalog fields. Stock counters are not writable here; they only
    move through sell and restock.
    """
    product = get_product(product_id)

    if "sku" in changes:
        changes["sku"] = normalize_sku(changes["sku"])
        if not changes["sku"]:
            raise InventoryError("SKU is required")
        existing = get_product_by_sku(changes["sku"])
        if existing is not None and existing.id != product_id:
            raise InventoryError(f"SKU {changes['sku']} already exists", details={"sku": changes["sku"]})
    if "name" in changes and changes["name"] is not None:
        changes["name"] = changes["name"].strip()

    for field, value in changes.items():
        setattr(product, field, value)

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise InventoryError("Product update conflicts with an existing product", details={"product_id": product_id})

    logger.info("Product %s updated: %s", product.sku, ", ".join(sorted(changes)))
    return reload(Product, product_id)


def list_products(
    *,
    active: bool | None = None,
    featured: bool | None = None,
    in_stock: bool | None = None,
    category: str | None = None,
    search: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Product], int]:
    query = db.session.query(Product)

    if active is not None:
        query = query.filter(Product.is_active == active)
    if featured is not None:
        query = query.filter(Product.is_featured == featured)
    if in_stock is True:
        query = query.filter(Product.stock > 0)
    elif in_stock is False:
        query = query.filter(Product.stock == 0)
    if category:
        query = query.filter(Product.category == category)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            db.or_(
                Product.name.ilike(pattern),
                Product.description.ilike(pattern),
                Product.sku.ilike(pattern),
            )
        )

    total = query.count()
    limit = max(1, min(limit, 500))
    offset = max(0, offset)
    products = query.order_by(Product.created_at.desc(), Product.id.desc()).offset(offset).limit(limit).all()
    return products, total


def toggle_active(product_id: int) -> Product:
    product = get_product(product_id)
    guarded_update(Product, Product.id == product_id, is_active=~Product.is_active)
    db.session.commit()
    return reload(Product, product.id)


def toggle_featured(product_id: int) -> Product:
    product = get_product(product_id)
    guarded_update(Product, Product.id == product_id, is_featured=~Product.is_featured)
    db.session.commit()
    return reload(Product, product.id)


def delete_product(product_id: int) -> None:
    """
    Hard-delete a product that no order references.

    Products on historical orders are refused with ProductInUse; deactivate
    them instead.
    """
    product = get_product(product_id)

    referenced = db.session.query(OrderLine.id).filter_by(product_id=product_id).first()
    if referenced:
        raise ProductInUse(
            "Product is referenced by existing orders; deactivate it instead",
            details={"product_id": product_id},
        )

    db.session.query(InventoryMutation).filter_by(product_id=product_id).delete()
    db.session.delete(product)
    db.session.commit()


# =============================================================================
# REPORTING
# =============================================================================

def get_low_stock_products() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(
            Product.is_active.is_(True),
            Product.stock > 0,
            Product.stock <= Product.low_stock_alert,
        )
        .order_by(Product.stock.asc())
        .all()
    )


def get_out_of_stock_products() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.is_active.is_(True), Product.stock == 0)
        .order_by(Product.created_at.desc())
        .all()
    )


def get_inventory_stats() -> dict:
    """
    Inventory statistics per category and overall.

    Stock value is price * stock in cents.
    """
    low_stock = db.case(
        (db.and_(Product.stock > 0, Product.stock <= Product.low_stock_alert), 1),
        else_=0,
    )
    out_of_stock = db.case((Product.stock == 0, 1), else_=0)
    featured = db.case((Product.is_featured.is_(True), 1), else_=0)
    active = db.case((Product.is_active.is_(True), 1), else_=0)

    rows = (
        db.session.query(
            Product.category,
            func.count(Product.id),
            func.coalesce(func.sum(Product.stock), 0),
            func.coalesce(func.sum(Product.price_cents * Product.stock), 0),
            func.coalesce(func.sum(low_stock), 0),
            func.coalesce(func.sum(out_of_stock), 0),
            func.avg(Product.price_cents),
            func.coalesce(func.sum(featured), 0),
        )
        .group_by(Product.category)
        .order_by(Product.category)
        .all()
    )

    by_category = [
        {
            "category": category,
            "total_products": int(count),
            "total_stock": int(stock),
            "total_value_cents": int(value),
            "low_stock_count": int(low),
            "out_of_stock_count": int(out),
            "average_price_cents": int(round(avg or 0)),
            "featured_count": int(feat),
        }
        for category, count, stock, value, low, out, avg, feat in rows
    ]

    overall = db.session.query(
        func.count(Product.id),
        func.coalesce(func.sum(active), 0),
        func.coalesce(func.sum(Product.price_cents * Product.stock), 0),
        func.avg(Product.price_cents),
        func.coalesce(func.sum(low_stock), 0),
        func.coalesce(func.sum(out_of_stock), 0),
        func.coalesce(func.sum(featured), 0),
    ).one()

    return {
        "by_category": by_category,
        "overview": {
            "total_products": int(overall[0] or 0),
            "active_products": int(overall[1] or 0),
            "total_stock_value_cents": int(overall[2] or 0),
            "average_price_cents": int(round(overall[3] or 0)),
            "low_stock_items": int(overall[4] or 0),
            "out_of_stock_items": int(overall[5] or 0),
            "featured_products": int(overall[6] or 0),
        },
    }
