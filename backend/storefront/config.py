# backend/storefront/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storefront.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///storefront.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")

    # "payment": decrement stock when the order is paid
    # "order": decrement stock at checkout
    INVENTORY_RESERVATION = os.environ.get("INVENTORY_RESERVATION", "payment")

    # Payments left in processing longer than this are failed by the sweep
    PAYMENT_PROCESSING_TIMEOUT_MINUTES = int(os.environ.get("PAYMENT_PROCESSING_TIMEOUT_MINUTES", "30"))
    # Per-provider override, e.g. mobile money waits on the subscriber's handset
    PAYMENT_PROCESSING_TIMEOUT_BY_PROVIDER = {
        name: int(os.environ[var])
        for name, var in (
            ("stripe", "STRIPE_PROCESSING_TIMEOUT_MINUTES"),
            ("paypack", "PAYPACK_PROCESSING_TIMEOUT_MINUTES"),
        )
        if os.environ.get(var)
    }

    # Card payments
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:5173")

    # Mobile money (MTN / Airtel / Tigo through Paypack)
    PAYPACK_BASE_URL = os.environ.get("PAYPACK_BASE_URL", "https://payments.paypack.rw/api")
    PAYPACK_CLIENT_ID = os.environ.get("PAYPACK_CLIENT_ID")
    PAYPACK_CLIENT_SECRET = os.environ.get("PAYPACK_CLIENT_SECRET")
    PAYPACK_WEBHOOK_SECRET = os.environ.get("PAYPACK_WEBHOOK_SECRET")

    # Outbound mail: "console" logs messages, "smtp" delivers them
    MAIL_BACKEND = os.environ.get("MAIL_BACKEND", "console")
    MAIL_HOST = os.environ.get("MAIL_HOST", "localhost")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", "587"))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", True)
    MAIL_FROM = os.environ.get("MAIL_FROM", "orders@storefront.local")

    CORS_ORIGINS = [
        origin.strip()
        for origin in os.environ.get(
            "CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
        ).split(",")
        if origin.strip()
    ]
