"""
Concurrency tests against a file-backed SQLite database.

Each worker thread pushes its own app context, so it gets its own session
and connection. A barrier releases the workers together.

Verifies:
- concurrent sells never oversell and never drive stock negative
- concurrent checkouts never share an order number
- checkouts that reserve stock at order time never oversell
- concurrent completion signals settle a payment exactly once
- two payments racing for one order settle it once and flag the other
"""

import threading

import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.models import Order, Product
from storefront.services import inventory_service, order_service, payment_service
from storefront.services.inventory_service import InsufficientStock
from storefront.services.order_service import CheckoutLine, OutOfStock
from storefront.services.reconciliation_service import (
    OUTCOME_DOUBLE_SETTLEMENT,
    OUTCOME_DUPLICATE,
    OUTCOME_SETTLED,
    complete_payment,
)
from storefront.validation import StripePayload

from conftest import SHIPPING_ADDRESS, TEST_CONFIG, make_product, make_user, place_order


@pytest.fixture
def file_app(tmp_path, card_provider, notifier):
    config = dict(TEST_CONFIG, SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'race.sqlite3'}")
    app = create_app(config, providers={"stripe": card_provider}, notifier=notifier)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def run_concurrently(app, target, args_list):
    """Run target(*args) in one thread per args tuple, each inside its own app context."""
    barrier = threading.Barrier(len(args_list))
    results = []
    errors = []

    def worker(args):
        with app.app_context():
            barrier.wait()
            try:
                results.append(target(*args))
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=worker, args=(args,)) for args in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results, errors


class TestConcurrentSell:

    def test_two_sells_racing_for_the_same_units(self, file_app):
        with file_app.app_context():
            product_id = make_product(stock=5).id

        def sell(key):
            inventory_service.sell(product_id, 3, idempotency_key=key)
            return "sold"

        results, errors = run_concurrently(file_app, sell, [("race-a",), ("race-b",)])

        assert results == ["sold"]
        assert len(errors) == 1 and isinstance(errors[0], InsufficientStock)
        with file_app.app_context():
            assert db.session.get(Product, product_id).stock == 2

    def test_many_sells_never_oversell(self, file_app):
        with file_app.app_context():
            product_id = make_product(stock=5).id

        def sell(key):
            inventory_service.sell(product_id, 2, idempotency_key=key)
            return key

        results, errors = run_concurrently(file_app, sell, [(f"bulk-{i}",) for i in range(8)])

        assert len(results) == 2
        assert len(errors) == 6
        assert all(isinstance(e, InsufficientStock) for e in errors)
        with file_app.app_context():
            product = db.session.get(Product, product_id)
            assert product.stock == 1
            assert product.sold == 4


class TestConcurrentCheckout:

    def test_order_numbers_are_unique(self, file_app):
        with file_app.app_context():
            buyer_id = make_user().id
            product_id = make_product(stock=100).id

        def checkout():
            return order_service.create_order(
                buyer_id,
                [CheckoutLine(product_id=product_id, quantity=1)],
                shipping_address=dict(SHIPPING_ADDRESS),
            ).order_number

        results, errors = run_concurrently(file_app, checkout, [() for _ in range(6)])

        assert errors == []
        assert len(results) == 6
        assert len(set(results)) == 6
        with file_app.app_context():
            assert db.session.query(Order).count() == 6

    def test_reservation_at_order_never_oversells(self, file_app):
        file_app.config["INVENTORY_RESERVATION"] = "order"
        with file_app.app_context():
            buyer_id = make_user().id
            product_id = make_product(stock=5).id

        def checkout():
            return order_service.create_order(
                buyer_id,
                [CheckoutLine(product_id=product_id, quantity=3)],
                shipping_address=dict(SHIPPING_ADDRESS),
            ).id

        results, errors = run_concurrently(file_app, checkout, [() for _ in range(4)])

        assert len(results) == 1
        assert len(errors) == 3
        assert all(isinstance(e, OutOfStock) for e in errors)
        with file_app.app_context():
            product = db.session.get(Product, product_id)
            assert product.stock == 2
            assert product.sold == 3
            assert db.session.query(Order).count() == 1
            assert db.session.get(Order, results[0]).inventory_committed_at is not None


class TestConcurrentCompletion:

    def test_completion_signals_settle_once(self, file_app, card_provider, notifier):
        card_provider.outcome = "pending"
        with file_app.app_context():
            buyer = make_user()
            product = make_product(stock=5)
            order = place_order(buyer, [(product, 2)])
            payment, _ = payment_service.initiate(order.id, buyer.id, StripePayload(payment_method_id="pm_1"))
            payment_id, order_id, product_id = payment.id, order.id, product.id

        results, errors = run_concurrently(
            file_app,
            complete_payment,
            [(payment_id,) for _ in range(4)],
        )

        assert errors == []
        assert sorted(results) == sorted([OUTCOME_SETTLED] + [OUTCOME_DUPLICATE] * 3)
        assert len(notifier.sent) == 1
        with file_app.app_context():
            assert db.session.get(Product, product_id).stock == 3
            assert db.session.get(Order, order_id).payment_status == "paid"

    def test_two_payments_racing_for_one_order(self, file_app, card_provider, notifier):
        card_provider.outcome = "pending"
        with file_app.app_context():
            buyer = make_user()
            product = make_product(stock=5)
            order = place_order(buyer, [(product, 2)])
            first, _ = payment_service.initiate(order.id, buyer.id, StripePayload(payment_method_id="pm_1"))
            second, _ = payment_service.initiate(order.id, buyer.id, StripePayload(payment_method_id="pm_2"))
            payment_ids, order_id, product_id = (first.id, second.id), order.id, product.id

        results, errors = run_concurrently(
            file_app,
            complete_payment,
            [(payment_id,) for payment_id in payment_ids],
        )

        assert errors == []
        assert sorted(results) == sorted([OUTCOME_SETTLED, OUTCOME_DOUBLE_SETTLEMENT])
        assert len(notifier.sent) == 1
        with file_app.app_context():
            order = db.session.get(Order, order_id)
            assert order.payment_status == "paid"
            assert order.payment_id in payment_ids
            assert order.attention_reason.startswith("Double settlement")
            assert db.session.get(Product, product_id).stock == 3
