# Overview: Service-layer operations for payment; initiation, reconciliation entry points and reporting.

"""
Payment Processing Service

WHY: Every attempt to settle an order through an external provider is a
Payment row, persisted before the provider is called so no outcome can be
lost. Provider outcomes (sync response, webhook, poll, timeout sweep) all
funnel into the reconciliation flow, which is the only place side effects
happen.

DESIGN PRINCIPLES:
- Payments are separate from orders (many-to-one); one attempt may succeed
- A completed payment never regresses
- Immutable ledger: every transition is logged to payment_events
- Provider adapters are injected (app.extensions["payment_providers"])
"""

from __future__ import annotations

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, Payment, PaymentEvent, WebhookEvent
from ..providers import (
    Completed,
    Failed,
    Pending,
    ProviderError,
    ProviderResult,
    provider_for_method,
)
from ..time_utils import utcnow, timeframe_start
from . import order_service
from .concurrency import guarded_update, reload


logger = logging.getLogger(__name__)


class PaymentError(Exception):
    """Raised for payment operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class PaymentNotFound(PaymentError):
    pass


class PaymentForbidden(PaymentError):
    pass


class UnknownPayment(PaymentError):
    """Provider reference does not match any payment we created."""
    pass


class UnsupportedMethod(PaymentError):
    pass


# =============================================================================
# STATUS (CONSTANTS)
# =============================================================================

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

PAYMENT_STATUSES = (STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)

METHOD_LABELS = {
    "stripe": "Credit / debit card",
    "paypack-mtn": "MTN Mobile Money",
    "paypack-airtel": "Airtel Money",
    "paypack-tigo": "Tigo Cash",
}


def _providers() -> dict:
    return current_app.extensions.get("payment_providers", {})


def log_payment_event(
    *,
    payment_id: int,
    order_id: int,
    event_type: str,
    from_status: str | None = None,
    to_status: str | None = None,
    source: str | None = None,
    note: str | None = None,
) -> PaymentEvent:
    """Append to the payment ledger; the caller commits."""
    event = PaymentEvent(
        payment_id=payment_id,
        order_id=order_id,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        source=source,
        note=note[:255] if note else None,
        occurred_at=utcnow(),
    )
    db.session.add(event)
    return event


def available_methods() -> list[dict]:
    """Payment methods whose provider is configured."""
    methods = []
    for provider in _providers().values():
        for method in provider.methods:
            methods.append({
                "method": method,
                "provider": provider.name,
                "label": METHOD_LABELS.get(method, method),
            })
    return methods


# =============================================================================
# INITIATION
# =============================================================================

def _apply_result(payment_id: int, result: ProviderResult, *, source: str) -> None:
    from .reconciliation_service import complete_payment, fail_payment

    if isinstance(result, Completed):
        complete_payment(payment_id, source=source)
    elif isinstance(result, Failed):
        fail_payment(payment_id, result.reason, source=source)


def initiate(order_id: int, user_id: int, payload) -> tuple[Payment, ProviderResult]:
    """
    Start a payment attempt for an order.

    The Payment row is committed in `processing` before the provider is
    called. The provider's answer is then applied through reconciliation:
    Completed settles the order, Failed fails the attempt, Pending waits for
    a webhook or poll.

    Raises:
        UnsupportedMethod: method has no configured provider
        OrderNotFound / PaymentForbidden / AlreadyPaid: order checks
        ProviderError: provider unreachable; the attempt is persisted as
            failed and its dict is in exc.details["payment"]
    """
    provider = provider_for_method(_providers(), payload.method)
    if provider is None:
        raise UnsupportedMethod(
            f"Payment method {payload.method!r} is not available",
            details={"available": [m["method"] for m in available_methods()]},
        )

    order = reload(Order, order_id)
    if order is None:
        raise order_service.OrderNotFound(f"Order {order_id} not found", details={"order_id": order_id})
    if order.user_id != user_id:
        raise PaymentForbidden("Not authorized to pay for this order", details={"order_id": order_id})
    if order.payment_status in ("paid", "refunded"):
        raise order_service.AlreadyPaid(
            f"Order {order.order_number} is already {order.payment_status}",
            details={"order_id": order_id, "payment_status": order.payment_status},
        )
    if order.status == "cancelled":
        raise PaymentError("Cannot pay for a cancelled order", details={"order_id": order_id})

    payment = Payment(
        order_id=order.id,
        user_id=user_id,
        payment_method=payload.method,
        provider=provider.name,
        status=STATUS_PROCESSING,
        amount_cents=order.total_cents,
        currency=order.currency,
        mobile_number=getattr(payload, "mobile_number", None),
        card_holder=getattr(payload, "card_holder", None),
    )
    db.session.add(payment)
    db.session.flush()
    log_payment_event(
        payment_id=payment.id,
        order_id=order.id,
        event_type="initiated",
        to_status=STATUS_PROCESSING,
        source="sync",
        note=f"{payload.method} {order.total_cents} {order.currency}",
    )
    db.session.commit()
    payment_id = payment.id

    metadata = {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "payment_id": str(payment_id),
        "user_id": str(user_id),
    }
    try:
        result = provider.charge(order.total_cents, order.currency, payload, metadata)
    except ProviderError as exc:
        from .reconciliation_service import fail_payment

        logger.error("Provider %s failed for payment %s: %s", provider.name, payment_id, exc)
        fail_payment(payment_id, f"Provider error: {exc}", source="sync")
        exc.details["payment"] = reload(Payment, payment_id).to_dict()
        raise

    ref = getattr(result, "provider_ref", None)
    if ref:
        try:
            guarded_update(
                Payment,
                Payment.id == payment_id,
                provider_ref=ref,
                client_secret=getattr(result, "client_secret", None),
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.error("Provider ref %s already belongs to another payment", ref)
            raise

    _apply_result(payment_id, result, source="sync")
    return reload(Payment, payment_id), result


# =============================================================================
# RECONCILIATION ENTRY POINTS
# =============================================================================

def find_by_provider_ref(provider: str, provider_ref: str) -> Payment | None:
    return (
        db.session.query(Payment)
        .filter_by(provider=provider, provider_ref=provider_ref)
        .first()
    )


def reconcile(provider: str, provider_ref: str, result: ProviderResult, *, source: str = "webhook") -> Payment:
    """
    Apply a provider-reported outcome to the payment it refers to.

    Raises UnknownPayment when the ref matches nothing; webhook handlers
    acknowledge those instead of failing.
    """
    payment = find_by_provider_ref(provider, provider_ref)
    if payment is None:
        raise UnknownPayment(
            f"No {provider} payment with ref {provider_ref}",
            details={"provider": provider, "provider_ref": provider_ref},
        )

    if isinstance(result, Pending):
        return payment

    _apply_result(payment.id, result, source=source)
    return reload(Payment, payment.id)


def handle_webhook(provider_name: str, raw_body: bytes, headers) -> dict:
    """
    Authenticate and apply a provider webhook.

    WebhookSignatureError propagates (400). Replays, unknown refs and event
    types without a settlement outcome are acknowledged. The event id is
    recorded only after processing succeeds, so a provider retry after a
    500 is processed again.
    """
    provider = _providers().get(provider_name)
    if provider is None:
        raise PaymentError(f"Provider {provider_name} is not configured", details={"provider": provider_name})

    notice = provider.parse_webhook(raw_body, headers)

    seen = (
        db.session.query(WebhookEvent.id)
        .filter_by(provider=notice.provider, event_id=notice.event_id)
        .first()
    )
    if seen:
        logger.warning("Replayed %s webhook %s acknowledged", notice.provider, notice.event_id)
        return {"received": True, "duplicate": True}

    outcome = "ignored"
    if notice.result is not None and notice.provider_ref:
        try:
            reconcile(notice.provider, notice.provider_ref, notice.result, source="webhook")
            outcome = "applied"
        except UnknownPayment:
            logger.warning(
                "%s webhook %s for unknown ref %s acknowledged",
                notice.provider, notice.event_id, notice.provider_ref,
            )
            outcome = "unknown_payment"

    try:
        with db.session.begin_nested():
            db.session.add(WebhookEvent(
                provider=notice.provider,
                event_id=notice.event_id,
                event_type=notice.event_type,
                provider_ref=notice.provider_ref,
            ))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning("Concurrent delivery of %s webhook %s", notice.provider, notice.event_id)

    return {"received": True, "outcome": outcome}


def refresh_status(payment_id: int) -> Payment:
    """
    Poll the provider for a payment still in processing.

    Provider errors are logged and the stored status returned.
    """
    payment = get_payment(payment_id)
    if payment.status != STATUS_PROCESSING or not payment.provider_ref:
        return payment

    provider = _providers().get(payment.provider)
    if provider is None:
        return payment

    try:
        result = provider.retrieve_status(payment.provider_ref)
    except ProviderError as exc:
        logger.warning("Status poll for payment %s failed: %s", payment_id, exc)
        return payment

    if not isinstance(result, Pending):
        _apply_result(payment_id, result, source="poll")
    return reload(Payment, payment_id)


def processing_timeout(provider_name: str) -> timedelta:
    """
    How long a payment may stay in processing before the sweep looks at it.

    PAYMENT_PROCESSING_TIMEOUT_BY_PROVIDER overrides the global
    PAYMENT_PROCESSING_TIMEOUT_MINUTES for a named provider.
    """
    per_provider = current_app.config.get("PAYMENT_PROCESSING_TIMEOUT_BY_PROVIDER") or {}
    minutes = per_provider.get(provider_name)
    if minutes is None:
        minutes = current_app.config.get("PAYMENT_PROCESSING_TIMEOUT_MINUTES", 30)
    return timedelta(minutes=int(minutes))


def _sweep_outcome(payment_id: int, provider_name: str, provider_ref: str | None) -> ProviderResult | None:
    """Last word from the provider before timing a payment out; None if unreachable."""
    provider = _providers().get(provider_name)
    if provider is None or not provider_ref:
        return None
    try:
        return provider.retrieve_status(provider_ref)
    except ProviderError as exc:
        logger.warning("Sweep could not poll payment %s: %s", payment_id, exc)
        return None


def expire_stale_payments(older_than_minutes: int | None = None, now=None) -> list[int]:
    """
    Reconciliation sweep for payments stuck in processing.

    Each stale payment is polled once first, since its webhook may simply
    have been lost. Completed and Failed answers go through reconciliation
    like any other signal. Only payments the provider still reports as
    Pending, or cannot answer for, are failed with reason "timeout", using
    the same guarded transition, so a payment that completes concurrently
    is left alone.

    Returns the ids that were timed out.
    """
    from .reconciliation_service import fail_payment

    now = now or utcnow()
    stale = []
    for pid, provider_name, provider_ref, created_at in (
        db.session.query(Payment.id, Payment.provider, Payment.provider_ref, Payment.created_at)
        .filter(Payment.status == STATUS_PROCESSING)
        .order_by(Payment.id)
        .all()
    ):
        if older_than_minutes is not None:
            timeout = timedelta(minutes=older_than_minutes)
        else:
            timeout = processing_timeout(provider_name)
        if created_at < now - timeout:
            stale.append((pid, provider_name, provider_ref))

    expired = []
    for pid, provider_name, provider_ref in stale:
        result = _sweep_outcome(pid, provider_name, provider_ref)
        if isinstance(result, (Completed, Failed)):
            logger.info("Sweep found payment %s already %s at %s", pid, result.status, provider_name)
            _apply_result(pid, result, source="sweep")
            continue
        if fail_payment(pid, "timeout", source="sweep", event_type="expired"):
            expired.append(pid)

    if expired:
        logger.info("Expired %s stale payments", len(expired))
    return expired


# =============================================================================
# QUERIES
# =============================================================================

def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise PaymentNotFound(f"Payment {payment_id} not found", details={"payment_id": payment_id})
    return payment


def get_payment_details(payment_id: int) -> dict:
    payment = get_payment(payment_id)
    data = payment.to_dict()
    data["events"] = [event.to_dict() for event in payment.events]
    data["order"] = payment.order.to_dict(include_lines=True)
    return data


def list_payments(
    *,
    status: str | None = None,
    provider: str | None = None,
    method: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Payment], int]:
    query = db.session.query(Payment)
    if status:
        query = query.filter(Payment.status == status)
    if provider:
        query = query.filter(Payment.provider == provider)
    if method:
        query = query.filter(Payment.payment_method == method)

    total = query.count()
    limit = max(1, min(limit, 200))
    payments = (
        query.order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset(max(0, offset))
        .limit(limit)
        .all()
    )
    return payments, total


def get_payments_by_provider(provider: str, limit: int = 50, offset: int = 0) -> tuple[list[Payment], int]:
    return list_payments(provider=provider, limit=limit, offset=offset)


def get_payment_stats(timeframe: str = "daily") -> dict:
    """Count and amount grouped by day, status and method within the window."""
    start = timeframe_start(timeframe)
    base = db.session.query(Payment).filter(Payment.created_at >= start)
    completed_amount = db.case((Payment.status == STATUS_COMPLETED, Payment.amount_cents), else_=0)

    period = func.date(Payment.created_at)
    by_period = (
        base.with_entities(period, func.count(Payment.id), func.coalesce(func.sum(completed_amount), 0))
        .group_by(period)
        .order_by(period)
        .all()
    )
    by_status = (
        base.with_entities(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount_cents), 0))
        .group_by(Payment.status)
        .all()
    )
    by_method = (
        base.with_entities(Payment.payment_method, func.count(Payment.id), func.coalesce(func.sum(completed_amount), 0))
        .group_by(Payment.payment_method)
        .all()
    )

    total_count = sum(int(n) for _, n, _ in by_status)
    completed = next((int(n) for status, n, _ in by_status if status == STATUS_COMPLETED), 0)

    return {
        "timeframe": timeframe,
        "since": start.isoformat(),
        "by_period": [
            {"period": str(day), "payments": int(n), "completed_amount_cents": int(amount)}
            for day, n, amount in by_period
        ],
        "by_status": {
            status: {"count": int(n), "amount_cents": int(amount)}
            for status, n, amount in by_status
        },
        "by_method": {
            method: {"count": int(n), "completed_amount_cents": int(amount)}
            for method, n, amount in by_method
        },
        "overview": {
            "total_payments": total_count,
            "completed_payments": completed,
            "success_rate": round(completed / total_count, 4) if total_count else 0.0,
            "completed_amount_cents": sum(int(a) for _, _, a in by_method),
        },
    }
