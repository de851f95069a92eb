# Overview: Service-layer reconciliation; applies provider outcomes to payments and orders exactly once.

"""
Reconciliation Flow

WHY: Success can be reported more than once and from several places: the
synchronous charge response, a webhook, a status poll, and provider replays
of the same webhook. Side effects (order paid, stock decremented,
confirmation sent) must happen exactly once per payment.

GUARDS (all conditional UPDATEs, so concurrent callers cannot both pass):
1. payments.status != 'completed'   -> first completion of this payment
2. orders.payment_status != 'paid'  -> first settlement of this order
3. orders.inventory_committed_at IS NULL -> stock decremented once

FAILURE HANDLING:
- Second payment settling an already-paid order: payment stays completed,
  order keeps the first payment, order is flagged for a manual refund.
- Stock gone by the time payment lands: the inventory SAVEPOINT rolls back
  every line, the order stays paid and is flagged for manual intervention.
- Notification is sent after commit; failures are logged only.
"""

from __future__ import annotations

import logging

from flask import current_app

from ..extensions import db
from ..models import Order, Payment
from ..time_utils import utcnow
from . import inventory_service, order_service
from .concurrency import guarded_update, reload, run_with_retry
from .notification_service import send_payment_confirmation
from .payment_service import (
    PaymentNotFound,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    log_payment_event,
)


logger = logging.getLogger(__name__)

# Outcomes of complete_payment
OUTCOME_SETTLED = "settled"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_DOUBLE_SETTLEMENT = "double_settlement"


def _notifier():
    return current_app.extensions.get("notifier")


def _commit_inventory_or_flag(order: Order) -> None:
    if order.status == "cancelled":
        order_service.flag_for_attention(
            order.id,
            f"Paid after cancellation; refund payment {order.payment_id}",
        )
        return

    try:
        with db.session.begin_nested():
            order_service.commit_inventory(order)
    except inventory_service.InsufficientStock as exc:
        order_service.flag_for_attention(
            order.id,
            f"Insufficient stock after payment for {exc.details.get('sku', 'unknown')}: "
            f"available {exc.details.get('available')}, requested {exc.details.get('requested')}",
        )


def complete_payment(payment_id: int, *, source: str = "sync", note: str | None = None) -> str:
    """
    Transition a payment into completed and settle its order.

    Safe to call any number of times for the same payment: only the first
    call that wins guard 1 performs side effects.

    Returns one of OUTCOME_SETTLED, OUTCOME_DUPLICATE, OUTCOME_DOUBLE_SETTLEMENT.
    """
    def _op():
        payment = reload(Payment, payment_id)
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found", details={"payment_id": payment_id})
        previous = payment.status
        order_id = payment.order_id

        matched = guarded_update(
            Payment,
            Payment.id == payment_id,
            Payment.status != STATUS_COMPLETED,
            status=STATUS_COMPLETED,
            completed_at=utcnow(),
            failure_reason=None,
        )
        if not matched:
            log_payment_event(
                payment_id=payment_id,
                order_id=order_id,
                event_type="duplicate_completion",
                from_status=STATUS_COMPLETED,
                to_status=STATUS_COMPLETED,
                source=source,
                note=note,
            )
            db.session.commit()
            logger.warning("Payment %s already completed; %s signal ignored", payment_id, source)
            return OUTCOME_DUPLICATE

        log_payment_event(
            payment_id=payment_id,
            order_id=order_id,
            event_type="completed",
            from_status=previous,
            to_status=STATUS_COMPLETED,
            source=source,
            note=note,
        )

        try:
            order_service.mark_paid(order_id, payment_id)
        except order_service.AlreadyPaid as exc:
            order_service.flag_for_attention(
                order_id,
                f"Double settlement: payment {payment_id} completed after order was "
                f"{exc.details.get('payment_status')} by payment {exc.details.get('payment_id')}",
            )
            db.session.commit()
            return OUTCOME_DOUBLE_SETTLEMENT

        order = reload(Order, order_id)
        _commit_inventory_or_flag(order)

        db.session.commit()
        logger.info("Payment %s settled order %s via %s", payment_id, order.order_number, source)
        return OUTCOME_SETTLED

    try:
        outcome = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    if outcome == OUTCOME_SETTLED:
        payment = reload(Payment, payment_id)
        order = reload(Order, payment.order_id)
        send_payment_confirmation(_notifier(), order, payment)

    return outcome


def fail_payment(
    payment_id: int,
    reason: str,
    *,
    source: str = "sync",
    event_type: str = "failed",
) -> bool:
    """
    processing -> failed. A completed payment never regresses.

    The order's payment_status moves to failed only while it is still
    pending; a later attempt may still settle it.
    """
    def _op():
        payment = reload(Payment, payment_id)
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found", details={"payment_id": payment_id})

        matched = guarded_update(
            Payment,
            Payment.id == payment_id,
            Payment.status == STATUS_PROCESSING,
            status=STATUS_FAILED,
            failed_at=utcnow(),
            failure_reason=(reason or "failed")[:255],
        )
        if not matched:
            db.session.rollback()
            logger.warning(
                "Payment %s is %s; %s failure signal ignored",
                payment_id, payment.status, source,
            )
            return False

        log_payment_event(
            payment_id=payment_id,
            order_id=payment.order_id,
            event_type=event_type,
            from_status=STATUS_PROCESSING,
            to_status=STATUS_FAILED,
            source=source,
            note=reason,
        )
        order_service.mark_payment_failed(payment.order_id)
        db.session.commit()
        return True

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise
