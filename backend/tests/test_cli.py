"""
Flask CLI command tests.

Commands run through app.test_cli_runner() inside the test's app context,
so they share the in-memory database with the fixtures.
"""

from datetime import timedelta

import pytest

from storefront.extensions import db
from storefront.models import Payment, User
from storefront.services import payment_service
from storefront.time_utils import utcnow
from storefront.validation import StripePayload

from conftest import make_product, make_user, place_order


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


class TestUsersCommands:

    def test_set_role(self, runner, app):
        user_id = make_user(email="staff@example.com").id

        result = runner.invoke(args=["users", "set-role", " Staff@Example.com ", "moderator"])

        assert result.exit_code == 0, result.output
        assert "staff@example.com is now moderator" in result.output
        assert db.session.get(User, user_id, populate_existing=True).role == "moderator"

    def test_set_role_unknown_user(self, runner, app):
        result = runner.invoke(args=["users", "set-role", "nobody@example.com", "admin"])

        assert result.exit_code == 1
        assert "User nobody@example.com not found" in result.output

    def test_set_role_rejects_unknown_role(self, runner, app):
        user_id = make_user(email="staff@example.com").id

        result = runner.invoke(args=["users", "set-role", "staff@example.com", "owner"])

        assert result.exit_code == 2
        assert db.session.get(User, user_id, populate_existing=True).role == "user"

    def test_list(self, runner, admin):
        result = runner.invoke(args=["users", "list"])

        assert result.exit_code == 0
        assert "admin@example.com" in result.output


class TestPaymentsCommands:

    def test_expire_stale(self, runner, buyer, card_provider):
        card_provider.outcome = "pending"
        product = make_product(stock=5)
        order = place_order(buyer, [(product, 1)])
        payment, _ = payment_service.initiate(order.id, buyer.id, StripePayload(payment_method_id="pm_1"))
        payment_id = payment.id
        db.session.get(Payment, payment_id).created_at = utcnow() - timedelta(hours=2)
        db.session.commit()

        result = runner.invoke(args=["payments", "expire-stale"])

        assert result.exit_code == 0, result.output
        assert f"Expired 1 payment(s): {payment_id}" in result.output
        assert db.session.get(Payment, payment_id, populate_existing=True).failure_reason == "timeout"

    def test_nothing_to_expire(self, runner, app):
        result = runner.invoke(args=["payments", "expire-stale"])

        assert result.exit_code == 0
        assert "No stale payments." in result.output
