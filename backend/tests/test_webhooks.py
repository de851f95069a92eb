"""
Provider webhook tests.

Verifies:
- Paypack bodies are authenticated with base64 HMAC-SHA256
- replays and repeated success events settle the order once
- unknown refs and irrelevant event types are acknowledged with 200
"""

import json

import pytest

from storefront.extensions import db
from storefront.models import Order, Payment, Product, WebhookEvent
from storefront.providers.paypack_provider import SIGNATURE_HEADER, sign_body
from storefront.services import payment_service
from storefront.validation import MobileMoneyPayload, StripePayload

from conftest import FAKE_SIGNATURE_HEADER, PAYPACK_WEBHOOK_SECRET, make_product, place_order


PAYPACK_URL = "/api/payments/webhook/paypack"
STRIPE_URL = "/api/payments/webhook/stripe"


def _fresh(model, pk):
    return db.session.get(model, pk, populate_existing=True)


def paypack_event(ref, status="successful", event_id="evt-1", kind="transaction:processed"):
    return json.dumps({
        "event_id": event_id,
        "kind": kind,
        "data": {"ref": ref, "status": status, "kind": "CASHIN", "amount": 25},
    }).encode("utf-8")


def post_paypack(client, body, secret=PAYPACK_WEBHOOK_SECRET):
    return client.post(
        PAYPACK_URL,
        data=body,
        headers={SIGNATURE_HEADER: sign_body(secret, body)},
        content_type="application/json",
    )


@pytest.fixture
def shirt(app):
    return make_product(sku="SHIRT", price_cents=1000, stock=5)


@pytest.fixture
def momo_payment(buyer, shirt):
    order = place_order(buyer, [(shirt, 2)], shipping_cents=500)
    payment, _ = payment_service.initiate(
        order.id, buyer.id, MobileMoneyPayload(mobile_number="0781234567", network="mtn")
    )
    return payment


# =============================================================================
# PAYPACK
# =============================================================================


class TestPaypackWebhook:

    def test_successful_transaction_settles_order(self, client, momo_payment, shirt, notifier):
        resp = post_paypack(client, paypack_event(momo_payment.provider_ref))

        assert resp.status_code == 200
        assert resp.json == {"received": True, "outcome": "applied"}
        assert _fresh(Payment, momo_payment.id).status == "completed"
        assert _fresh(Order, momo_payment.order_id).payment_status == "paid"
        assert _fresh(Product, shirt.id).stock == 3
        assert len(notifier.sent) == 1

    def test_replayed_event_is_acknowledged_once(self, client, momo_payment, shirt, notifier):
        body = paypack_event(momo_payment.provider_ref)

        post_paypack(client, body)
        resp = post_paypack(client, body)

        assert resp.status_code == 200
        assert resp.json == {"received": True, "duplicate": True}
        assert _fresh(Product, shirt.id).stock == 3
        assert len(notifier.sent) == 1
        assert db.session.query(WebhookEvent).count() == 1

    def test_second_success_event_has_no_side_effects(self, client, momo_payment, shirt, notifier):
        post_paypack(client, paypack_event(momo_payment.provider_ref, event_id="evt-1"))
        resp = post_paypack(client, paypack_event(momo_payment.provider_ref, event_id="evt-2"))

        assert resp.status_code == 200
        assert resp.json["outcome"] == "applied"
        assert _fresh(Product, shirt.id).stock == 3
        assert len(notifier.sent) == 1

    def test_failed_transaction(self, client, momo_payment):
        resp = post_paypack(client, paypack_event(momo_payment.provider_ref, status="failed"))

        assert resp.status_code == 200
        assert _fresh(Payment, momo_payment.id).status == "failed"
        assert _fresh(Order, momo_payment.order_id).payment_status == "failed"

    def test_invalid_signature_rejected(self, client, momo_payment):
        resp = post_paypack(client, paypack_event(momo_payment.provider_ref), secret="wrong-secret")

        assert resp.status_code == 400
        assert _fresh(Payment, momo_payment.id).status == "processing"
        assert db.session.query(WebhookEvent).count() == 0

    def test_missing_signature_rejected(self, client, momo_payment):
        resp = client.post(
            PAYPACK_URL,
            data=paypack_event(momo_payment.provider_ref),
            content_type="application/json",
        )

        assert resp.status_code == 400

    def test_tampered_body_rejected(self, client, momo_payment):
        signed = paypack_event(momo_payment.provider_ref, status="failed")
        tampered = paypack_event(momo_payment.provider_ref, status="successful")

        resp = client.post(
            PAYPACK_URL,
            data=tampered,
            headers={SIGNATURE_HEADER: sign_body(PAYPACK_WEBHOOK_SECRET, signed)},
            content_type="application/json",
        )

        assert resp.status_code == 400
        assert _fresh(Payment, momo_payment.id).status == "processing"

    def test_signed_non_object_body_rejected(self, client, momo_payment):
        resp = post_paypack(client, b"[]")

        assert resp.status_code == 400
        assert _fresh(Payment, momo_payment.id).status == "processing"
        assert db.session.query(WebhookEvent).count() == 0

    def test_unknown_reference_acknowledged(self, client, app):
        resp = post_paypack(client, paypack_event("pp-unknown"))

        assert resp.status_code == 200
        assert resp.json == {"received": True, "outcome": "unknown_payment"}

    def test_other_event_kinds_ignored(self, client, momo_payment):
        resp = post_paypack(client, paypack_event(momo_payment.provider_ref, kind="transaction:created"))

        assert resp.status_code == 200
        assert resp.json["outcome"] == "ignored"
        assert _fresh(Payment, momo_payment.id).status == "processing"

    def test_unconfigured_provider(self, client, app, card_provider):
        app.extensions["payment_providers"] = {"stripe": card_provider}

        resp = post_paypack(client, paypack_event("pp-ref-1"))

        assert resp.status_code == 404


# =============================================================================
# CARD PROVIDER
# =============================================================================


class TestCardWebhook:

    def test_pending_card_settled_by_webhook(self, client, buyer, shirt, card_provider, notifier):
        card_provider.outcome = "pending"
        order = place_order(buyer, [(shirt, 1)])
        payment, _ = payment_service.initiate(order.id, buyer.id, StripePayload(payment_method_id="pm_card"))
        body = json.dumps({"id": "evt_card_1", "ref": payment.provider_ref, "outcome": "completed"})

        resp = client.post(
            STRIPE_URL,
            data=body,
            headers={FAKE_SIGNATURE_HEADER: "valid"},
            content_type="application/json",
        )

        assert resp.status_code == 200
        assert _fresh(Order, order.id).payment_status == "paid"
        assert _fresh(Product, shirt.id).stock == 4
        assert len(notifier.sent) == 1

    def test_bad_card_signature(self, client, app):
        resp = client.post(
            STRIPE_URL,
            data=json.dumps({"id": "evt_x", "ref": "pi_x", "outcome": "completed"}),
            headers={FAKE_SIGNATURE_HEADER: "forged"},
            content_type="application/json",
        )

        assert resp.status_code == 400
