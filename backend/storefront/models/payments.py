from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class Payment(db.Model):
    """
    One attempt to settle an order through an external provider.

    WHY: Payments are separate from orders (many-to-one). Every attempt is
    persisted, including ones the provider rejected, so the history of an
    order's settlement can be audited.

    STATUS:
    - processing: provider accepted the request, outcome not yet known
    - completed: provider reported success (terminal, never regresses)
    - failed: provider rejected, errored, or the attempt timed out

    PROVIDER CORRELATION:
    provider_ref is the provider's id for the attempt (Stripe PaymentIntent id,
    Paypack transaction ref). Webhooks and polls look payments up by
    (provider, provider_ref).
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("provider", "provider_ref", name="uq_payments_provider_ref"),
        db.Index("ix_payments_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Method tag as chosen by the buyer (stripe, paypack-mtn, ...)
    payment_method = db.Column(db.String(32), nullable=False, index=True)
    # Adapter that handled the attempt (stripe, paypack)
    provider = db.Column(db.String(32), nullable=False, index=True)
    provider_ref = db.Column(db.String(128), nullable=True)

    # Continuation data for the client (Stripe client_secret)
    client_secret = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="processing", index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)

    failure_reason = db.Column(db.String(255), nullable=True)

    # Method-specific details kept for support
    mobile_number = db.Column(db.String(32), nullable=True)
    card_holder = db.Column(db.String(128), nullable=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship(
        "Order",
        foreign_keys=[order_id],
        backref=db.backref("payments", lazy=True, order_by="Payment.id"),
    )
    user = db.relationship("User", backref=db.backref("payments", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "payment_method": self.payment_method,
            "provider": self.provider,
            "provider_ref": self.provider_ref,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "failure_reason": self.failure_reason,
            "mobile_number": self.mobile_number,
            "card_holder": self.card_holder,
            "completed_at": to_utc_z(self.completed_at),
            "failed_at": to_utc_z(self.failed_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class PaymentEvent(db.Model):
    """
    Append-only ledger of payment events.

    EVENT TYPES:
    - initiated: attempt created
    - completed: first transition into completed
    - failed: transition into failed
    - status_changed: provider reported a non-terminal change
    - duplicate_completion: success reported again for a completed payment
    - expired: failed by the processing-timeout sweep

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "payment_events"
    __table_args__ = (
        db.Index("ix_payment_events_payment_occurred", "payment_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    event_type = db.Column(db.String(32), nullable=False, index=True)
    from_status = db.Column(db.String(16), nullable=True)
    to_status = db.Column(db.String(16), nullable=True)

    # Where the signal came from: sync, webhook, poll, sweep
    source = db.Column(db.String(16), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    payment = db.relationship("Payment", backref=db.backref("events", lazy=True, order_by="PaymentEvent.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "event_type": self.event_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "source": self.source,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class WebhookEvent(db.Model):
    """Provider event ids already processed; replays are acknowledged and skipped."""
    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False)
    event_id = db.Column(db.String(128), nullable=False)
    event_type = db.Column(db.String(64), nullable=True)
    provider_ref = db.Column(db.String(128), nullable=True, index=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "provider_ref": self.provider_ref,
            "received_at": to_utc_z(self.received_at),
        }
