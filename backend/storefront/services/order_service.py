# Overview: Service-layer operations for orders; checkout, payment guard, fulfilment and reporting.

"""
Order Service - checkout and order lifecycle

WHY: The order is a priced snapshot taken at checkout. Prices come from the
catalog, totals are derived from lines, and the two status axes move
independently:

- status (fulfilment) is moved by staff through ALLOWED_TRANSITIONS
- payment_status is moved only by the reconciliation flow via mark_paid

Inventory is decremented exactly once per order, either at checkout
(INVENTORY_RESERVATION = "order") or when payment settles ("payment").
inventory_committed_at is the guard.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Order, OrderLine, Product
from ..time_utils import utcnow, timeframe_start
from . import inventory_service
from .concurrency import guarded_update, reload, run_with_retry
from .sequence_service import next_order_number


logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")

ALLOWED_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"processing", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": {"refunded"},
    "cancelled": set(),
    "refunded": set(),
}

# Timestamp stamped when the order enters a status
STATUS_TIMESTAMPS = {
    "shipped": "shipped_at",
    "delivered": "delivered_at",
    "cancelled": "cancelled_at",
}

RESERVATION_AT_ORDER = "order"
RESERVATION_AT_PAYMENT = "payment"


class OrderError(Exception):
    """Raised for order operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class OrderNotFound(OrderError):
    pass


class OutOfStock(OrderError):
    """Checkout rejected; product_id names the first line that cannot be filled."""
    def __init__(self, product_id: int, message: str, details: dict | None = None):
        super().__init__(message, details)
        self.product_id = product_id


class AlreadyPaid(OrderError):
    pass


class InvalidTransition(OrderError):
    pass


@dataclass(frozen=True)
class CheckoutLine:
    product_id: int
    quantity: int


def reservation_mode() -> str:
    mode = current_app.config.get("INVENTORY_RESERVATION", RESERVATION_AT_PAYMENT)
    if mode not in (RESERVATION_AT_ORDER, RESERVATION_AT_PAYMENT):
        raise OrderError(f"Unknown INVENTORY_RESERVATION {mode!r}")
    return mode


def sell_key(order_id: int, position: int) -> str:
    return f"order:{order_id}:line:{position}:sell"


def restock_key(order_id: int, position: int) -> str:
    return f"order:{order_id}:line:{position}:restock"


# =============================================================================
# CHECKOUT
# =============================================================================

def _load_products(lines: list[CheckoutLine]) -> dict[int, Product]:
    ids = {line.product_id for line in lines}
    products = db.session.query(Product).filter(Product.id.in_(ids)).all()
    found = {p.id: p for p in products}

    for line in lines:
        product = found.get(line.product_id)
        if product is None:
            raise OrderError(f"Product {line.product_id} not found", details={"product_id": line.product_id})
        if not product.is_active:
            raise OrderError(
                f"Product {product.sku} is not available",
                details={"product_id": product.id, "sku": product.sku},
            )
    return found


def _validate_stock(lines: list[CheckoutLine], products: dict[int, Product]) -> None:
    """
    Check every line before anything is decremented.

    Quantities of repeated products are summed. The error names the first
    line (in checkout order) that cannot be filled and lists all of them.
    """
    requested: dict[int, int] = {}
    for line in lines:
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

    insufficient = []
    for product_id, qty in requested.items():
        product = products[product_id]
        if product.stock < qty:
            insufficient.append({
                "product_id": product_id,
                "sku": product.sku,
                "requested_quantity": qty,
                "available": product.stock,
            })

    if insufficient:
        first = insufficient[0]
        raise OutOfStock(
            first["product_id"],
            f"Insufficient stock for {first['sku']}",
            details={"items": insufficient},
        )


def commit_inventory(order: Order) -> bool:
    """
    Decrement stock for every line of the order, once.

    Must run inside the caller's transaction. Returns False when the order's
    inventory was already committed. InsufficientStock propagates so the
    caller can roll back the whole set of lines.
    """
    claimed = guarded_update(
        Order,
        Order.id == order.id,
        Order.inventory_committed_at.is_(None),
        inventory_committed_at=utcnow(),
    )
    if not claimed:
        return False

    for line in order.lines:
        inventory_service.sell(
            line.product_id,
            line.quantity,
            idempotency_key=sell_key(order.id, line.position),
            reference=order.order_number,
            commit=False,
        )
    return True


def release_inventory(order: Order) -> int:
    """Put stock back for a cancelled order whose inventory was committed."""
    restocked = 0
    for line in order.lines:
        try:
            inventory_service.restock(
                line.product_id,
                line.quantity,
                idempotency_key=restock_key(order.id, line.position),
                reference=order.order_number,
                commit=False,
            )
            restocked += 1
        except inventory_service.DuplicateMutation:
            logger.warning("Line %s of %s already restocked", line.position, order.order_number)
    return restocked


def create_order(
    user_id: int,
    lines: list[CheckoutLine],
    *,
    shipping_address: dict,
    billing_address: dict | None = None,
    tax_cents: int = 0,
    shipping_cents: int = 0,
    discount_cents: int = 0,
    notes: str | None = None,
    currency: str | None = None,
) -> Order:
    """
    Checkout: validate every line, then persist a pending order.

    All-or-nothing: no stock is touched unless every line can be filled.
    Client-supplied prices and totals never reach this function; unit prices
    are read from the catalog.
    """
    if not lines:
        raise OrderError("Order must contain at least one item")
    for amount, label in ((tax_cents, "tax"), (shipping_cents, "shipping"), (discount_cents, "discount")):
        if amount < 0:
            raise OrderError(f"{label} cannot be negative", details={label: amount})

    mode = reservation_mode()

    def _op():
        products = _load_products(lines)
        _validate_stock(lines, products)

        order = Order(
            order_number=next_order_number(),
            user_id=user_id,
            currency=currency or current_app.config.get("DEFAULT_CURRENCY", "USD"),
            tax_cents=tax_cents,
            shipping_cents=shipping_cents,
            discount_cents=discount_cents,
            status="pending",
            payment_status="pending",
            shipping_address=shipping_address,
            billing_address=billing_address or shipping_address,
            notes=notes,
        )
        for position, line in enumerate(lines, start=1):
            product = products[line.product_id]
            order.lines.append(OrderLine(
                product_id=product.id,
                position=position,
                product_name=product.name,
                sku=product.sku,
                quantity=line.quantity,
                unit_price_cents=product.price_cents,
                line_total_cents=0,
            ))

        order.recompute_totals()
        if order.total_cents < 0:
            raise OrderError("Discount exceeds order value", details={"discount_cents": discount_cents})

        db.session.add(order)
        db.session.flush()

        if mode == RESERVATION_AT_ORDER:
            try:
                commit_inventory(order)
            except inventory_service.InsufficientStock as exc:
                # Stock moved between validation and the guarded update
                raise OutOfStock(exc.details.get("product_id"), str(exc), details={"items": [exc.details]})

        db.session.commit()
        logger.info("Order %s created for user %s (%s lines)", order.order_number, user_id, len(lines))
        return reload(Order, order.id)

    try:
        return run_with_retry(_op)
    except (OrderError, inventory_service.InventoryError):
        db.session.rollback()
        raise


def mark_paid(order_id: int, payment_id: int) -> None:
    """
    Guarded pending->paid transition; runs inside the caller's transaction.

    Raises AlreadyPaid if the order is already paid. failed->paid is allowed
    so a buyer can retry with a new payment.
    """
    matched = guarded_update(
        Order,
        Order.id == order_id,
        Order.payment_status.in_(("pending", "failed")),
        payment_status="paid",
        paid_at=utcnow(),
        payment_id=payment_id,
    )
    if not matched:
        order = reload(Order, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
        raise AlreadyPaid(
            f"Order {order.order_number} is already {order.payment_status}",
            details={
                "order_id": order_id,
                "payment_status": order.payment_status,
                "payment_id": order.payment_id,
            },
        )


def mark_payment_failed(order_id: int) -> bool:
    """pending->failed only; a paid order never regresses."""
    return bool(guarded_update(
        Order,
        Order.id == order_id,
        Order.payment_status == "pending",
        payment_status="failed",
    ))


def flag_for_attention(order_id: int, reason: str) -> None:
    logger.warning("Order %s flagged: %s", order_id, reason)
    guarded_update(Order, Order.id == order_id, attention_reason=reason[:255])


# =============================================================================
# FULFILMENT
# =============================================================================

def _transition_allowed(order: Order, new_status: str) -> bool:
    if new_status in ALLOWED_TRANSITIONS.get(order.status, set()):
        return True
    # A paid order can be refunded from any live status
    return (
        new_status == "refunded"
        and order.payment_status == "paid"
        and order.status not in ("cancelled", "refunded")
    )


def update_status(order_id: int, new_status: str) -> Order:
    """
    Move an order along its fulfilment lifecycle.

    Cancelling an order whose stock was committed restocks each line.
    Refunding a paid order also marks the settlement refunded.
    """
    if new_status not in ORDER_STATUSES:
        raise OrderError(f"Invalid status {new_status!r}", details={"allowed": list(ORDER_STATUSES)})

    def _op():
        order = reload(Order, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
        current = order.status

        if current == new_status:
            return order

        if not _transition_allowed(order, new_status):
            raise InvalidTransition(
                f"Cannot move order from {current} to {new_status}",
                details={"from": current, "to": new_status},
            )

        values = {"status": new_status}
        stamp = STATUS_TIMESTAMPS.get(new_status)
        if stamp:
            values[stamp] = utcnow()
        if new_status == "refunded" and order.payment_status == "paid":
            values["payment_status"] = "refunded"

        matched = guarded_update(Order, Order.id == order_id, Order.status == current, **values)
        if not matched:
            db.session.rollback()
            raise InvalidTransition(
                "Order status changed concurrently; reload and retry",
                details={"from": current, "to": new_status},
            )

        if new_status == "cancelled" and order.inventory_committed_at is not None:
            restocked = release_inventory(order)
            logger.info("Order %s cancelled, %s lines restocked", order.order_number, restocked)

        db.session.commit()
        return reload(Order, order_id)

    try:
        return run_with_retry(_op)
    except (OrderError, inventory_service.InventoryError):
        db.session.rollback()
        raise


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def get_order_by_number(order_number: str) -> Order | None:
    return db.session.query(Order).filter_by(order_number=order_number).first()


def list_orders(
    *,
    status: str | None = None,
    payment_status: str | None = None,
    user_id: int | None = None,
    needs_attention: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    query = db.session.query(Order)
    if status:
        query = query.filter(Order.status == status)
    if payment_status:
        query = query.filter(Order.payment_status == payment_status)
    if user_id:
        query = query.filter(Order.user_id == user_id)
    if needs_attention is True:
        query = query.filter(Order.attention_reason.isnot(None))

    total = query.count()
    limit = max(1, min(limit, 200))
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset(max(0, offset))
        .limit(limit)
        .all()
    )
    return orders, total


def list_user_orders(user_id: int, limit: int = 50, offset: int = 0) -> tuple[list[Order], int]:
    return list_orders(user_id=user_id, limit=limit, offset=offset)


def get_sold_products(timeframe: str | None = None, limit: int = 50) -> list[dict]:
    """Quantity, revenue and average price per product over paid orders."""
    query = (
        db.session.query(
            OrderLine.product_id,
            OrderLine.sku,
            func.max(OrderLine.product_name),
            func.sum(OrderLine.quantity),
            func.sum(OrderLine.line_total_cents),
            func.avg(OrderLine.unit_price_cents),
            func.count(func.distinct(OrderLine.order_id)),
        )
        .join(Order, Order.id == OrderLine.order_id)
        .filter(Order.payment_status == "paid")
    )
    if timeframe:
        query = query.filter(Order.paid_at >= timeframe_start(timeframe))

    rows = (
        query.group_by(OrderLine.product_id, OrderLine.sku)
        .order_by(func.sum(OrderLine.quantity).desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "product_id": product_id,
            "sku": sku,
            "product_name": name,
            "quantity_sold": int(qty or 0),
            "revenue_cents": int(revenue or 0),
            "average_price_cents": int(round(avg or 0)),
            "order_count": int(orders or 0),
        }
        for product_id, sku, name, qty, revenue, avg, orders in rows
    ]


def get_order_stats(timeframe: str = "daily") -> dict:
    """Orders created in the window, grouped by day, status and payment status."""
    start = timeframe_start(timeframe)
    base = db.session.query(Order).filter(Order.created_at >= start)
    paid_total = db.case((Order.payment_status == "paid", Order.total_cents), else_=0)

    period = func.date(Order.created_at)
    by_period = (
        base.with_entities(period, func.count(Order.id), func.coalesce(func.sum(paid_total), 0))
        .group_by(period)
        .order_by(period)
        .all()
    )
    by_status = base.with_entities(Order.status, func.count(Order.id)).group_by(Order.status).all()
    by_payment = (
        base.with_entities(Order.payment_status, func.count(Order.id))
        .group_by(Order.payment_status)
        .all()
    )
    count, revenue, paid_count = base.with_entities(
        func.count(Order.id),
        func.coalesce(func.sum(paid_total), 0),
        func.coalesce(func.sum(db.case((Order.payment_status == "paid", 1), else_=0)), 0),
    ).one()

    return {
        "timeframe": timeframe,
        "since": start.isoformat(),
        "by_period": [
            {"period": str(day), "orders": int(n), "revenue_cents": int(rev)}
            for day, n, rev in by_period
        ],
        "by_status": {status: int(n) for status, n in by_status},
        "by_payment_status": {status: int(n) for status, n in by_payment},
        "overview": {
            "total_orders": int(count or 0),
            "paid_orders": int(paid_count or 0),
            "revenue_cents": int(revenue or 0),
            "average_order_value_cents": int(revenue // paid_count) if paid_count else 0,
        },
    }
