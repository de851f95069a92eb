from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class Product(db.Model):
    """
    Catalog product and its inventory counters.

    SKU DESIGN DECISION:
    Product.sku is globally unique and stored uppercase. Callers may pass any
    case; the service normalizes before lookup or insert.

    INVENTORY COUNTERS:
    - stock: units currently available (never negative, enforced by CHECK)
    - stock_in: cumulative units received
    - stock_out: cumulative units removed
    - sold: cumulative units sold (advances together with stock_out)

    Counters are only changed by inventory_service.sell / restock, which use
    conditional UPDATE statements. Never read-modify-write them on the ORM object.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        db.CheckConstraint("price_cents >= 0", name="ck_products_price_non_negative"),
        db.Index("ix_products_category_active", "category", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(64), nullable=False, default="other", index=True)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False)

    stock = db.Column(db.Integer, nullable=False, default=0, index=True)
    stock_in = db.Column(db.Integer, nullable=False, default=0)
    stock_out = db.Column(db.Integer, nullable=False, default=0)
    sold = db.Column(db.Integer, nullable=False, default=0)
    low_stock_alert = db.Column(db.Integer, nullable=False, default=10)

    # Presentation only
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    is_featured = db.Column(db.Boolean, nullable=False, default=False, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def in_stock(self) -> bool:
        return self.stock > 0

    @property
    def is_low_stock(self) -> bool:
        return 0 < self.stock <= self.low_stock_alert

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "price_cents": self.price_cents,
            "stock": self.stock,
            "stock_in": self.stock_in,
            "stock_out": self.stock_out,
            "sold": self.sold,
            "low_stock_alert": self.low_stock_alert,
            "in_stock": self.in_stock,
            "is_low_stock": self.is_low_stock,
            "is_active": self.is_active,
            "is_featured": self.is_featured,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
