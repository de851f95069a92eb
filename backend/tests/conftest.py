"""
Pytest fixtures for storefront backend tests.

Provides an in-memory database per test, injected payment providers and a
recording notifier, plus helpers for users, products and auth headers.
"""

import json
import time

import httpx
import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.models import User
from storefront.providers import (
    Completed,
    Failed,
    Pending,
    PaymentProvider,
    WebhookNotice,
    WebhookSignatureError,
)
from storefront.providers.paypack_provider import PaypackProvider
from storefront.services import inventory_service, order_service, session_service
from storefront.services.auth_service import hash_password
from storefront.services.order_service import CheckoutLine


PAYPACK_WEBHOOK_SECRET = "paypack-test-secret"
FAKE_SIGNATURE_HEADER = "X-Fake-Signature"

SHIPPING_ADDRESS = {
    "first_name": "Ada",
    "last_name": "Buyer",
    "address1": "KG 11 Ave",
    "city": "Kigali",
    "country": "RW",
}

TEST_CONFIG = {
    "TESTING": True,
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "INVENTORY_RESERVATION": "payment",
    "PAYMENT_PROCESSING_TIMEOUT_MINUTES": 30,
    "CORS_ORIGINS": ["http://localhost:5173"],
}


# =============================================================================
# TEST DOUBLES
# =============================================================================


class FakeCardProvider(PaymentProvider):
    """
    Card provider double.

    outcome decides what charge returns: "completed", "pending" or "failed".
    Setting error makes charge raise it instead. Webhooks are JSON bodies
    {"id", "type", "ref", "outcome"} signed with a fixed header value.
    """

    name = "stripe"
    methods = ("stripe",)

    def __init__(self):
        self.outcome = "completed"
        self.poll_outcome = "pending"
        self.error = None
        self.charges = []

    def _result(self, outcome, ref):
        if outcome == "completed":
            return Completed(provider_ref=ref)
        if outcome == "failed":
            return Failed(reason="Your card was declined.", provider_ref=ref)
        return Pending(provider_ref=ref, client_secret=f"{ref}_secret")

    def charge(self, amount_cents, currency, payload, metadata):
        if self.error is not None:
            raise self.error
        ref = f"pi_test_{len(self.charges) + 1}"
        self.charges.append({
            "ref": ref,
            "amount_cents": amount_cents,
            "currency": currency,
            "payload": payload,
            "metadata": dict(metadata),
        })
        return self._result(self.outcome, ref)

    def retrieve_status(self, provider_ref):
        return self._result(self.poll_outcome, provider_ref)

    def parse_webhook(self, raw_body, headers):
        if headers.get(FAKE_SIGNATURE_HEADER) != "valid":
            raise WebhookSignatureError("Invalid webhook signature")
        event = json.loads(raw_body)
        outcome = event.get("outcome")
        result = self._result(outcome, event["ref"]) if outcome else None
        return WebhookNotice(
            provider=self.name,
            event_id=event["id"],
            event_type=event.get("type", "payment_intent.succeeded"),
            provider_ref=event["ref"],
            result=result,
        )


class RecordingNotifier:
    name = "recording"

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, notification):
        if self.fail:
            raise RuntimeError("SMTP server unavailable")
        self.sent.append(notification)


class PaypackSandbox:
    """httpx.MockTransport handler standing in for the Paypack API."""

    def __init__(self):
        self.authorizations = 0
        self.cashins = []
        self.processed = {}
        self.fail_cashin = False
        self.fail_events = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/auth/agents/authorize"):
            self.authorizations += 1
            return httpx.Response(200, json={"access": "sandbox-token", "expires": time.time() + 900})
        if path.endswith("/transactions/cashin"):
            if self.fail_cashin:
                return httpx.Response(503, json={"message": "service unavailable"})
            body = json.loads(request.content)
            ref = f"pp-ref-{len(self.cashins) + 1}"
            self.cashins.append({"ref": ref, **body})
            return httpx.Response(200, json={"ref": ref, "status": "pending", "amount": body["amount"]})
        if path.endswith("/events/transactions"):
            if self.fail_events:
                return httpx.Response(503, json={"message": "service unavailable"})
            ref = request.url.params.get("ref")
            status = self.processed.get(ref)
            events = []
            if status:
                events.append({"event_kind": "transaction:processed", "data": {"ref": ref, "status": status}})
            return httpx.Response(200, json={"transactions": events})
        return httpx.Response(404, json={"message": "not found"})


# =============================================================================
# APP
# =============================================================================


@pytest.fixture
def card_provider():
    return FakeCardProvider()


@pytest.fixture
def paypack_sandbox():
    return PaypackSandbox()


@pytest.fixture
def paypack_provider(paypack_sandbox):
    provider = PaypackProvider(
        "client-id",
        "client-secret",
        webhook_secret=PAYPACK_WEBHOOK_SECRET,
        base_url="https://paypack.test/api",
        transport=httpx.MockTransport(paypack_sandbox),
    )
    yield provider
    provider.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(card_provider, paypack_provider, notifier):
    """Create application for testing with a fresh in-memory database."""
    app = create_app(
        TEST_CONFIG,
        providers={"stripe": card_provider, "paypack": paypack_provider},
        notifier=notifier,
    )

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


# =============================================================================
# DATA
# =============================================================================


def make_user(email="buyer@example.com", role="user", name="Test Buyer", password="Password123"):
    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        role=role,
    )
    db.session.add(user)
    db.session.commit()
    return user


def make_product(sku="TEE-001", price_cents=1000, stock=10, name=None, **kwargs):
    return inventory_service.create_product(
        sku=sku,
        name=name or f"Product {sku}",
        price_cents=price_cents,
        initial_stock=stock,
        **kwargs,
    )


def place_order(user, items, **kwargs):
    """items: [(product, quantity), ...]"""
    kwargs.setdefault("shipping_address", dict(SHIPPING_ADDRESS))
    return order_service.create_order(
        user.id,
        [CheckoutLine(product_id=product.id, quantity=qty) for product, qty in items],
        **kwargs,
    )


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def buyer(app):
    return make_user()


@pytest.fixture
def other_buyer(app):
    return make_user(email="other@example.com", name="Other Buyer")


@pytest.fixture
def admin(app):
    return make_user(email="admin@example.com", role="admin", name="Admin")


@pytest.fixture
def buyer_headers(buyer):
    _, token = session_service.create_session(buyer.id)
    return auth_headers(token)


@pytest.fixture
def other_headers(other_buyer):
    _, token = session_service.create_session(other_buyer.id)
    return auth_headers(token)


@pytest.fixture
def admin_headers(admin):
    _, token = session_service.create_session(admin.id)
    return auth_headers(token)
