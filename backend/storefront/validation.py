from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Union

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta


# Maximum price: $9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

MAX_LINE_QUANTITY = 10_000
MAX_ORDER_LINES = 100

ADDRESS_FIELDS = (
    "first_name", "last_name", "company", "address1", "address2",
    "city", "state", "zip", "country", "phone",
)
ADDRESS_REQUIRED = ("address1", "city", "country")

# Rwanda mobile numbers accepted by Paypack
MOBILE_NUMBER_RE = re.compile(r"^(078|079|072|073)\d{7}$")
MOBILE_NETWORKS = ("mtn", "airtel", "tigo")


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(value: Any, field: str) -> int:
    """Strict integer: rejects bools, floats, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(value, col.key)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


# =============================================================================
# PRODUCTS
# =============================================================================

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "sku", "name", "description", "category", "price_cents",
        "low_stock_alert", "is_active", "is_featured",
    },
    required_on_create={"sku", "name", "price_cents"},
)


def enforce_rules_product(patch: dict) -> None:
    """Business rules that are not captured by SQLAlchemy metadata alone."""
    if "price_cents" in patch and patch["price_cents"] is not None:
        price = patch["price_cents"]
        if price < 0:
            raise ValidationError("price_cents must be >= 0")
        if price > MAX_PRICE_CENTS:
            raise ValidationError(f"price_cents cannot exceed {MAX_PRICE_CENTS} (${MAX_PRICE_CENTS / 100:,.2f})")

    if "low_stock_alert" in patch and patch["low_stock_alert"] is not None:
        if patch["low_stock_alert"] < 0:
            raise ValidationError("low_stock_alert must be >= 0")


def parse_product_create(payload: Any) -> dict:
    """Product fields plus the optional initial_stock (booked as a restock)."""
    from .models import Product

    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    body = dict(payload)
    initial_stock = body.pop("initial_stock", 0)
    initial_stock = coerce_int(initial_stock, "initial_stock") if initial_stock is not None else 0
    if initial_stock < 0:
        raise ValidationError("initial_stock must be >= 0")

    patch = validate_payload(model=Product, payload=body, policy=PRODUCT_POLICY, partial=False)
    enforce_rules_product(patch)
    patch["initial_stock"] = initial_stock
    return patch


def parse_product_update(payload: Any) -> dict:
    """Partial update of catalog fields; stock only moves through the ledger."""
    from .models import Product

    patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
    if not patch:
        raise ValidationError("No fields to update")
    enforce_rules_product(patch)
    return patch


def parse_stock_mutation(payload: Any) -> tuple[int, str]:
    """quantity and idempotency_key for a direct sell or restock."""
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    if "quantity" not in payload:
        raise ValidationError("quantity is required")
    quantity = coerce_int(payload["quantity"], "quantity")

    key = payload.get("idempotency_key")
    if not isinstance(key, str) or not key.strip():
        raise ValidationError("idempotency_key is required")
    if len(key) > 128:
        raise ValidationError("idempotency_key exceeds max length 128")
    return quantity, key.strip()


# =============================================================================
# CHECKOUT
# =============================================================================

def _parse_address(value: Any, field: str, required: bool) -> dict | None:
    if value is None:
        if required:
            raise ValidationError(f"{field} is required")
        return None
    if not isinstance(value, dict):
        raise ValidationError(f"{field} must be an object")

    unknown = sorted(set(value) - set(ADDRESS_FIELDS))
    if unknown:
        raise ValidationError(f"{field} has unknown fields: {', '.join(unknown)}")

    address = {}
    for key in ADDRESS_FIELDS:
        raw = value.get(key)
        if raw is None:
            continue
        text = str(raw).strip()
        if len(text) > 255:
            raise ValidationError(f"{field}.{key} exceeds max length 255")
        if text:
            address[key] = text

    missing = [key for key in ADDRESS_REQUIRED if key not in address]
    if missing:
        raise ValidationError(f"{field} is missing: {', '.join(missing)}")
    return address


def _non_negative_cents(payload: dict, field: str) -> int:
    raw = payload.get(field, 0)
    if raw is None:
        return 0
    value = coerce_int(raw, field)
    if value < 0:
        raise ValidationError(f"{field} must be >= 0")
    if value > MAX_PRICE_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_PRICE_CENTS}")
    return value


def parse_checkout(payload: Any) -> dict:
    """
    Validate a checkout request.

    Only product ids and quantities are taken from items. Any price, line
    total or order total the client sends is ignored.
    """
    from .services.order_service import CheckoutLine

    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    if len(items) > MAX_ORDER_LINES:
        raise ValidationError(f"An order can have at most {MAX_ORDER_LINES} items")

    lines = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{i}] must be an object")
        if "product_id" not in item:
            raise ValidationError(f"items[{i}].product_id is required")
        product_id = coerce_int(item["product_id"], f"items[{i}].product_id")
        quantity = coerce_int(item.get("quantity", 1), f"items[{i}].quantity")
        if quantity < 1:
            raise ValidationError(f"items[{i}].quantity must be >= 1")
        if quantity > MAX_LINE_QUANTITY:
            raise ValidationError(f"items[{i}].quantity cannot exceed {MAX_LINE_QUANTITY}")
        lines.append(CheckoutLine(product_id=product_id, quantity=quantity))

    notes = payload.get("notes")
    if notes is not None:
        notes = str(notes).strip()[:2000] or None

    return {
        "lines": lines,
        "shipping_address": _parse_address(payload.get("shipping_address"), "shipping_address", True),
        "billing_address": _parse_address(payload.get("billing_address"), "billing_address", False),
        "tax_cents": _non_negative_cents(payload, "tax_cents"),
        "shipping_cents": _non_negative_cents(payload, "shipping_cents"),
        "discount_cents": _non_negative_cents(payload, "discount_cents"),
        "notes": notes,
    }


# =============================================================================
# PAYMENTS
# =============================================================================

@dataclass(frozen=True)
class StripePayload:
    payment_method_id: str
    card_holder: str | None = None
    method: str = "stripe"


@dataclass(frozen=True)
class MobileMoneyPayload:
    mobile_number: str
    network: str

    @property
    def method(self) -> str:
        return f"paypack-{self.network}"


PaymentPayload = Union[StripePayload, MobileMoneyPayload]


def parse_payment_request(payload: Any) -> tuple[int, PaymentPayload]:
    """
    Validate POST /payments/process into (order_id, tagged payload).

    {"order_id": 1, "payment_method": "stripe",
     "payment_data": {"payment_method_id": "pm_...", "card_holder": "..."}}
    {"order_id": 1, "payment_method": "paypack",
     "payment_data": {"mobile_number": "0781234567", "network": "mtn"}}
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    if "order_id" not in payload:
        raise ValidationError("order_id is required")
    order_id = coerce_int(payload["order_id"], "order_id")

    method = payload.get("payment_method")
    data = payload.get("payment_data")
    if not isinstance(data, dict):
        raise ValidationError("payment_data must be an object")

    if method == "stripe":
        pm = data.get("payment_method_id")
        if not isinstance(pm, str) or not pm.strip():
            raise ValidationError("payment_data.payment_method_id is required")
        holder = data.get("card_holder")
        holder = str(holder).strip()[:128] if holder else None
        return order_id, StripePayload(payment_method_id=pm.strip(), card_holder=holder)

    if method == "paypack":
        number = str(data.get("mobile_number") or "").strip().replace(" ", "")
        if not MOBILE_NUMBER_RE.match(number):
            raise ValidationError("payment_data.mobile_number must be a valid Rwanda mobile number")
        network = str(data.get("network") or "").strip().lower()
        if network not in MOBILE_NETWORKS:
            raise ValidationError(f"payment_data.network must be one of {', '.join(MOBILE_NETWORKS)}")
        return order_id, MobileMoneyPayload(mobile_number=number, network=network)

    raise ValidationError("payment_method must be 'stripe' or 'paypack'")


def parse_pagination(args) -> tuple[int, int]:
    try:
        limit = int(args.get("limit", 50))
        offset = int(args.get("offset", 0))
    except (TypeError, ValueError):
        raise ValidationError("limit and offset must be integers")
    if limit < 1 or offset < 0:
        raise ValidationError("limit must be >= 1 and offset >= 0")
    return limit, offset


def parse_bool_arg(args, name: str) -> bool | None:
    raw = args.get(name)
    if raw is None or raw == "":
        return None
    value = raw.strip().lower()
    if value in ("true", "1", "yes"):
        return True
    if value in ("false", "0", "no"):
        return False
    raise ValidationError(f"{name} must be true or false")
