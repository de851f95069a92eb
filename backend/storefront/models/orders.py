from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class Order(db.Model):
    """
    Customer order document.

    WHY: The order is a snapshot of what was bought and at what price. Lines
    are never edited after checkout, and totals are always derived from lines.

    TWO INDEPENDENT STATUS AXES:
    - status: fulfillment (pending, confirmed, processing, shipped, delivered,
      cancelled, refunded), moved by administrators
    - payment_status: settlement (pending, paid, failed, refunded), moved only
      by the reconciliation flow

    TOTALS (cents):
    total = subtotal + tax + shipping - discount
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        db.Index("ix_orders_status_payment", "status", "payment_status"),
        db.CheckConstraint("total_cents >= 0", name="ck_orders_total_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable number (e.g., "ORD-20260101-0001")
    order_number = db.Column(db.String(32), nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    currency = db.Column(db.String(3), nullable=False, default="USD")

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    # Payment that settled the order (set once, by the reconciliation flow)
    payment_id = db.Column(
        db.Integer,
        db.ForeignKey("payments.id", use_alter=True, name="fk_orders_payment_id"),
        nullable=True,
    )

    shipping_address = db.Column(db.JSON, nullable=True)
    billing_address = db.Column(db.JSON, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Set when stock for every line has been decremented
    inventory_committed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Non-null when the order needs a human (stock shortfall after payment, double settlement)
    attention_reason = db.Column(db.String(255), nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", backref=db.backref("orders", lazy=True))
    lines = db.relationship(
        "OrderLine",
        backref="order",
        lazy=True,
        order_by="OrderLine.position",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def recompute_totals(self) -> None:
        """Derive line totals, subtotal and total from the lines."""
        for line in self.lines:
            line.line_total_cents = line.quantity * line.unit_price_cents
        self.subtotal_cents = sum(line.line_total_cents for line in self.lines)
        self.total_cents = (
            self.subtotal_cents
            + (self.tax_cents or 0)
            + (self.shipping_cents or 0)
            - (self.discount_cents or 0)
        )

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "currency": self.currency,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "shipping_cents": self.shipping_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_id": self.payment_id,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "notes": self.notes,
            "inventory_committed_at": to_utc_z(self.inventory_committed_at),
            "attention_reason": self.attention_reason,
            "paid_at": to_utc_z(self.paid_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    """Individual line items on an order (immutable after checkout)."""
    __tablename__ = "order_lines"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_order_lines_quantity_positive"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_order_lines_price_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # 1-based position within the order; part of inventory idempotency keys
    position = db.Column(db.Integer, nullable=False)

    # Snapshot so historical orders read correctly after catalog edits
    product_name = db.Column(db.String(200), nullable=False)
    sku = db.Column(db.String(64), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "position": self.position,
            "product_name": self.product_name,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }


class OrderSequence(db.Model):
    """
    Atomic per-day order number counter.

    WHY: Scanning the day's orders for the highest suffix races under
    concurrent checkouts. A single counter row per day incremented with
    UPDATE ... SET next_number = next_number + 1 cannot hand out a number twice.
    """
    __tablename__ = "order_sequences"
    __table_args__ = (
        db.UniqueConstraint("date_key", name="uq_order_sequences_date_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    date_key = db.Column(db.String(8), nullable=False)  # YYYYMMDD
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date_key": self.date_key,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
