"""
Payment and reconciliation tests.

Verifies:
- initiate persists the attempt and applies the provider's answer
- completion side effects (order paid, stock, confirmation) happen once
- a paid order never moves back to pending or failed
- double settlement and post-payment stock shortfall are flagged
- provider outages, the timeout sweep and status polling
"""

from datetime import timedelta

import pytest

from storefront.extensions import db
from storefront.models import Order, Payment, PaymentEvent, Product
from storefront.providers import Completed, Failed, Pending, ProviderError
from storefront.services import inventory_service, order_service, payment_service
from storefront.services.payment_service import PaymentForbidden, UnknownPayment, UnsupportedMethod
from storefront.services.reconciliation_service import (
    OUTCOME_DOUBLE_SETTLEMENT,
    OUTCOME_DUPLICATE,
    OUTCOME_SETTLED,
    complete_payment,
    fail_payment,
)
from storefront.time_utils import utcnow
from storefront.validation import MobileMoneyPayload, StripePayload

from conftest import make_product, place_order


CARD = StripePayload(payment_method_id="pm_card_visa", card_holder="Ada Buyer")
MOMO = MobileMoneyPayload(mobile_number="0781234567", network="mtn")


def _fresh(model, pk):
    return db.session.get(model, pk, populate_existing=True)


def _event_types(payment_id):
    return [
        e.event_type
        for e in db.session.query(PaymentEvent).filter_by(payment_id=payment_id).order_by(PaymentEvent.id)
    ]


@pytest.fixture
def shirt(app):
    return make_product(sku="SHIRT", price_cents=1000, stock=5)


@pytest.fixture
def order(buyer, shirt):
    return place_order(buyer, [(shirt, 2)], shipping_cents=500)


# =============================================================================
# INITIATE
# =============================================================================


class TestInitiate:

    def test_sync_completion_settles_order(self, app, buyer, order, shirt, card_provider, notifier):
        payment, result = payment_service.initiate(order.id, buyer.id, CARD)

        assert isinstance(result, Completed)
        assert payment.status == "completed"
        assert payment.amount_cents == 2500
        assert payment.card_holder == "Ada Buyer"
        assert card_provider.charges[0]["metadata"]["order_number"] == order.order_number

        order = _fresh(Order, order.id)
        assert order.payment_status == "paid"
        assert order.payment_id == payment.id
        assert order.paid_at is not None
        assert order.inventory_committed_at is not None
        assert _fresh(Product, shirt.id).stock == 3
        assert len(notifier.sent) == 1
        assert notifier.sent[0].to == buyer.email
        assert order.order_number in notifier.sent[0].subject
        assert _event_types(payment.id) == ["initiated", "completed"]

    def test_pending_card_returns_client_secret(self, app, buyer, order, card_provider):
        card_provider.outcome = "pending"

        payment, result = payment_service.initiate(order.id, buyer.id, CARD)

        assert isinstance(result, Pending)
        assert payment.status == "processing"
        assert payment.provider_ref == "pi_test_1"
        assert result.client_secret == "pi_test_1_secret"
        assert _fresh(Order, order.id).payment_status == "pending"

    def test_declined_card_fails_payment_and_order(self, app, buyer, order, card_provider, shirt):
        card_provider.outcome = "failed"

        payment, result = payment_service.initiate(order.id, buyer.id, CARD)

        assert isinstance(result, Failed)
        assert payment.status == "failed"
        assert payment.failure_reason == "Your card was declined."
        assert _fresh(Order, order.id).payment_status == "failed"
        assert _fresh(Product, shirt.id).stock == 5

    def test_retry_after_failure_can_settle(self, app, buyer, order, card_provider):
        card_provider.outcome = "failed"
        payment_service.initiate(order.id, buyer.id, CARD)

        card_provider.outcome = "completed"
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)

        assert payment.status == "completed"
        assert _fresh(Order, order.id).payment_status == "paid"

    def test_provider_outage_persists_failed_attempt(self, app, buyer, order, card_provider):
        card_provider.error = ProviderError("Card provider timed out")

        with pytest.raises(ProviderError) as exc:
            payment_service.initiate(order.id, buyer.id, CARD)

        persisted = exc.value.details["payment"]
        assert persisted["status"] == "failed"
        assert "timed out" in persisted["failure_reason"]
        assert _fresh(Payment, persisted["id"]).status == "failed"
        assert _event_types(persisted["id"]) == ["initiated", "failed"]

    def test_mobile_money_is_pending_until_reconciled(self, app, buyer, order, paypack_sandbox):
        payment, result = payment_service.initiate(order.id, buyer.id, MOMO)

        assert isinstance(result, Pending)
        assert payment.provider == "paypack"
        assert payment.payment_method == "paypack-mtn"
        assert payment.mobile_number == "0781234567"
        assert payment.provider_ref == "pp-ref-1"
        # 2500 cents in whole units
        assert paypack_sandbox.cashins[0]["amount"] == 25
        assert paypack_sandbox.cashins[0]["number"] == "0781234567"

    def test_mobile_money_outage(self, app, buyer, order, paypack_sandbox):
        paypack_sandbox.fail_cashin = True

        with pytest.raises(ProviderError):
            payment_service.initiate(order.id, buyer.id, MOMO)

        assert db.session.query(Payment).filter_by(status="failed").count() == 1

    def test_other_users_order_forbidden(self, app, other_buyer, order):
        with pytest.raises(PaymentForbidden):
            payment_service.initiate(order.id, other_buyer.id, CARD)
        assert db.session.query(Payment).count() == 0

    def test_paid_order_cannot_be_paid_again(self, app, buyer, order):
        payment_service.initiate(order.id, buyer.id, CARD)

        with pytest.raises(order_service.AlreadyPaid):
            payment_service.initiate(order.id, buyer.id, CARD)

    def test_cancelled_order_cannot_be_paid(self, app, buyer, order):
        order_service.update_status(order.id, "cancelled")

        with pytest.raises(payment_service.PaymentError):
            payment_service.initiate(order.id, buyer.id, CARD)

    def test_unconfigured_method(self, app, buyer, order, card_provider):
        app.extensions["payment_providers"] = {"stripe": card_provider}

        with pytest.raises(UnsupportedMethod) as exc:
            payment_service.initiate(order.id, buyer.id, MOMO)

        assert exc.value.details["available"] == ["stripe"]


# =============================================================================
# EXACTLY-ONCE COMPLETION
# =============================================================================


class TestExactlyOnce:

    def test_reconcile_completed_twice(self, app, buyer, order, shirt, notifier):
        payment, _ = payment_service.initiate(order.id, buyer.id, MOMO)
        ref = payment.provider_ref

        payment_service.reconcile("paypack", ref, Completed(provider_ref=ref))
        payment_service.reconcile("paypack", ref, Completed(provider_ref=ref))

        order = _fresh(Order, order.id)
        assert order.payment_status == "paid"
        assert order.payment_id == payment.id
        assert _fresh(Product, shirt.id).stock == 3
        assert _fresh(Product, shirt.id).sold == 2
        assert len(notifier.sent) == 1
        assert _event_types(payment.id) == ["initiated", "completed", "duplicate_completion"]

    def test_complete_payment_outcomes(self, app, buyer, order, card_provider):
        card_provider.outcome = "pending"
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)

        assert complete_payment(payment.id, source="webhook") == OUTCOME_SETTLED
        assert complete_payment(payment.id, source="poll") == OUTCOME_DUPLICATE

    def test_order_mode_stock_not_decremented_twice(self, app, buyer, shirt):
        app.config["INVENTORY_RESERVATION"] = "order"
        order = place_order(buyer, [(shirt, 2)])
        assert _fresh(Product, shirt.id).stock == 3

        payment_service.initiate(order.id, buyer.id, CARD)

        assert _fresh(Product, shirt.id).stock == 3
        assert _fresh(Order, order.id).payment_status == "paid"

    def test_pending_result_changes_nothing(self, app, buyer, order, card_provider):
        card_provider.outcome = "pending"
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)

        payment_service.reconcile("stripe", payment.provider_ref, Pending(provider_ref=payment.provider_ref))

        assert _fresh(Payment, payment.id).status == "processing"
        assert _event_types(payment.id) == ["initiated"]

    def test_unknown_reference(self, app):
        with pytest.raises(UnknownPayment):
            payment_service.reconcile("paypack", "pp-nope", Completed(provider_ref="pp-nope"))


# =============================================================================
# MONOTONIC PAYMENT STATUS
# =============================================================================


class TestNoRegression:

    def test_failure_after_completion_is_ignored(self, app, buyer, order):
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)

        payment_service.reconcile("stripe", payment.provider_ref, Failed(reason="late decline"))

        assert _fresh(Payment, payment.id).status == "completed"
        assert _fresh(Order, order.id).payment_status == "paid"

    def test_failed_second_attempt_keeps_order_paid(self, app, buyer, order, card_provider):
        card_provider.outcome = "pending"
        first, _ = payment_service.initiate(order.id, buyer.id, CARD)
        second, _ = payment_service.initiate(order.id, buyer.id, CARD)

        complete_payment(first.id)
        assert fail_payment(second.id, "abandoned") is True

        assert _fresh(Payment, second.id).status == "failed"
        assert _fresh(Order, order.id).payment_status == "paid"

    def test_fail_is_processing_only(self, app, buyer, order, card_provider):
        card_provider.outcome = "failed"
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)

        assert fail_payment(payment.id, "again") is False
        assert _event_types(payment.id) == ["initiated", "failed"]


# =============================================================================
# FLAGGED SETTLEMENTS
# =============================================================================


class TestFlaggedSettlements:

    def test_double_settlement_is_flagged(self, app, buyer, order, shirt, card_provider, notifier):
        card_provider.outcome = "pending"
        first, _ = payment_service.initiate(order.id, buyer.id, CARD)
        second, _ = payment_service.initiate(order.id, buyer.id, CARD)

        assert complete_payment(first.id) == OUTCOME_SETTLED
        assert complete_payment(second.id) == OUTCOME_DOUBLE_SETTLEMENT

        order = _fresh(Order, order.id)
        assert order.payment_id == first.id
        assert order.attention_reason.startswith("Double settlement")
        assert _fresh(Payment, second.id).status == "completed"
        assert _fresh(Product, shirt.id).stock == 3
        assert len(notifier.sent) == 1

    def test_stock_shortfall_after_payment_is_flagged(self, app, buyer, order, shirt, card_provider, notifier):
        card_provider.outcome = "pending"
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)
        inventory_service.sell(shirt.id, 4, idempotency_key="walk-in-sale")

        assert complete_payment(payment.id) == OUTCOME_SETTLED

        order = _fresh(Order, order.id)
        assert order.payment_status == "paid"
        assert order.inventory_committed_at is None
        assert "Insufficient stock" in order.attention_reason
        assert _fresh(Product, shirt.id).stock == 1
        assert len(notifier.sent) == 1

    def test_shortfall_rolls_back_every_line(self, app, buyer, shirt, card_provider):
        socks = make_product(sku="SOCKS", price_cents=300, stock=1)
        order = place_order(buyer, [(shirt, 2), (socks, 1)])
        card_provider.outcome = "pending"
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)
        inventory_service.sell(socks.id, 1, idempotency_key="walk-in-socks")

        complete_payment(payment.id)

        assert _fresh(Product, shirt.id).stock == 5
        assert _fresh(Product, socks.id).stock == 0
        assert _fresh(Order, order.id).attention_reason is not None

    def test_paid_after_cancellation_is_flagged(self, app, buyer, order, shirt, card_provider):
        card_provider.outcome = "pending"
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)
        order_service.update_status(order.id, "cancelled")

        complete_payment(payment.id)

        order = _fresh(Order, order.id)
        assert order.payment_status == "paid"
        assert order.attention_reason.startswith("Paid after cancellation")
        assert _fresh(Product, shirt.id).stock == 5

    def test_notifier_failure_does_not_undo_settlement(self, app, buyer, order, notifier):
        notifier.fail = True

        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)

        assert payment.status == "completed"
        assert _fresh(Order, order.id).payment_status == "paid"
        assert notifier.sent == []


# =============================================================================
# POLLING AND SWEEP
# =============================================================================


class TestPollingAndSweep:

    def test_refresh_status_applies_polled_completion(self, app, buyer, order, card_provider):
        card_provider.outcome = "pending"
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)

        assert payment_service.refresh_status(payment.id).status == "processing"

        card_provider.poll_outcome = "completed"
        assert payment_service.refresh_status(payment.id).status == "completed"
        assert _fresh(Order, order.id).payment_status == "paid"
        assert _event_types(payment.id) == ["initiated", "completed"]

    def test_refresh_status_polls_paypack(self, app, buyer, order, paypack_sandbox):
        payment, _ = payment_service.initiate(order.id, buyer.id, MOMO)
        paypack_sandbox.processed[payment.provider_ref] = "failed"

        refreshed = payment_service.refresh_status(payment.id)

        assert refreshed.status == "failed"
        assert _fresh(Order, order.id).payment_status == "failed"

    def test_sweep_expires_stale_processing_payments(self, app, buyer, order, card_provider):
        card_provider.outcome = "pending"
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)

        assert payment_service.expire_stale_payments(now=utcnow()) == []
        expired = payment_service.expire_stale_payments(now=utcnow() + timedelta(hours=1))

        assert expired == [payment.id]
        payment = _fresh(Payment, payment.id)
        assert payment.status == "failed"
        assert payment.failure_reason == "timeout"
        assert _event_types(payment.id) == ["initiated", "expired"]
        assert _fresh(Order, order.id).payment_status == "failed"

    def test_late_success_after_sweep_still_settles(self, app, buyer, order, card_provider, shirt):
        card_provider.outcome = "pending"
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)
        payment_service.expire_stale_payments(now=utcnow() + timedelta(hours=1))

        payment_service.reconcile("stripe", payment.provider_ref, Completed(provider_ref=payment.provider_ref))

        assert _fresh(Payment, payment.id).status == "completed"
        assert _fresh(Order, order.id).payment_status == "paid"
        assert _fresh(Product, shirt.id).stock == 3

    def test_sweep_settles_payment_whose_webhook_was_lost(self, app, buyer, order, shirt, paypack_sandbox, notifier):
        payment, _ = payment_service.initiate(order.id, buyer.id, MOMO)
        paypack_sandbox.processed[payment.provider_ref] = "successful"

        expired = payment_service.expire_stale_payments(now=utcnow() + timedelta(hours=1))

        assert expired == []
        assert _fresh(Payment, payment.id).status == "completed"
        assert _fresh(Order, order.id).payment_status == "paid"
        assert _fresh(Product, shirt.id).stock == 3
        assert len(notifier.sent) == 1
        assert _event_types(payment.id) == ["initiated", "completed"]

    def test_sweep_records_provider_failure_reason(self, app, buyer, order, card_provider):
        card_provider.outcome = "pending"
        card_provider.poll_outcome = "failed"
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)

        expired = payment_service.expire_stale_payments(now=utcnow() + timedelta(hours=1))

        assert expired == []
        payment = _fresh(Payment, payment.id)
        assert payment.status == "failed"
        assert payment.failure_reason == "Your card was declined."
        assert _event_types(payment.id) == ["initiated", "failed"]

    def test_sweep_times_out_when_provider_unreachable(self, app, buyer, order, paypack_sandbox):
        payment, _ = payment_service.initiate(order.id, buyer.id, MOMO)
        paypack_sandbox.fail_events = True

        expired = payment_service.expire_stale_payments(now=utcnow() + timedelta(hours=1))

        assert expired == [payment.id]
        assert _fresh(Payment, payment.id).failure_reason == "timeout"

    def test_per_provider_timeout(self, app, buyer, order, card_provider):
        app.config["PAYMENT_PROCESSING_TIMEOUT_BY_PROVIDER"] = {"stripe": 120}
        card_provider.outcome = "pending"
        payment, _ = payment_service.initiate(order.id, buyer.id, CARD)

        assert payment_service.expire_stale_payments(now=utcnow() + timedelta(hours=1)) == []
        assert payment_service.expire_stale_payments(now=utcnow() + timedelta(hours=3)) == [payment.id]

    def test_sweep_skips_completed(self, app, buyer, order):
        payment_service.initiate(order.id, buyer.id, CARD)

        assert payment_service.expire_stale_payments(older_than_minutes=0, now=utcnow() + timedelta(hours=1)) == []


# =============================================================================
# QUERIES
# =============================================================================


class TestQueries:

    def test_details_and_stats(self, app, buyer, order, card_provider):
        card_provider.outcome = "failed"
        failed, _ = payment_service.initiate(order.id, buyer.id, CARD)
        card_provider.outcome = "completed"
        paid, _ = payment_service.initiate(order.id, buyer.id, CARD)

        details = payment_service.get_payment_details(paid.id)
        assert details["order"]["order_number"] == order.order_number
        assert [e["event_type"] for e in details["events"]] == ["initiated", "completed"]

        items, total = payment_service.list_payments(status="failed")
        assert total == 1 and items[0].id == failed.id

        stats = payment_service.get_payment_stats("weekly")
        assert stats["overview"]["total_payments"] == 2
        assert stats["overview"]["completed_payments"] == 1
        assert stats["overview"]["success_rate"] == 0.5
        assert stats["overview"]["completed_amount_cents"] == 2500
        assert stats["by_method"]["stripe"]["count"] == 2
