from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class InventoryMutation(db.Model):
    """
    Append-only record of every accepted stock mutation.

    WHY: The idempotency_key unique constraint is what makes sell/restock
    apply exactly once per logical request. The row is inserted in the same
    transaction as the counter update, so a rolled-back mutation leaves no key.

    KINDS:
    - SELL: stock -= quantity, stock_out += quantity, sold += quantity
    - RESTOCK: stock += quantity, stock_in += quantity
    """
    __tablename__ = "inventory_mutations"
    __table_args__ = (
        db.UniqueConstraint("idempotency_key", name="uq_inventory_mutations_key"),
        db.Index("ix_inventory_mutations_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    idempotency_key = db.Column(db.String(128), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    kind = db.Column(db.String(16), nullable=False, index=True)  # SELL, RESTOCK
    quantity = db.Column(db.Integer, nullable=False)

    # Free-form pointer to what caused the mutation (order number, admin note)
    reference = db.Column(db.String(255), nullable=True)

    # Snapshot of the counter after the mutation was applied
    stock_after = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("mutations", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "product_id": self.product_id,
            "kind": self.kind,
            "quantity": self.quantity,
            "reference": self.reference,
            "stock_after": self.stock_after,
            "created_at": to_utc_z(self.created_at),
        }
