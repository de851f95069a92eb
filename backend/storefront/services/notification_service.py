# Overview: Service-layer notification dispatch; payment confirmations over console or SMTP.

"""
Best-effort customer notifications.

Sending happens after the paid transition has committed. A notifier failure
is logged and swallowed here: it must never turn a settled payment back into
an error for the caller or the provider.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Mapping, Optional

import aiosmtplib


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    to: str
    subject: str
    body: str
    kind: str = "payment_confirmation"
    reference: Optional[str] = None


class ConsoleNotifier:
    """Writes notifications to the log instead of sending them (development)."""

    name = "console"

    def send(self, notification: Notification) -> None:
        logger.info(
            "Notification (not sent) to=%s subject=%r\n%s",
            notification.to,
            notification.subject,
            notification.body,
        )


class SmtpNotifier:
    """Plain-text email over SMTP (aiosmtplib) with optional STARTTLS."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_email: str = "no-reply@localhost",
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email
        self.timeout = timeout

    def _build_message(self, notification: Notification) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.from_email
        msg["To"] = notification.to
        msg["Subject"] = notification.subject
        msg.set_content(notification.body)
        return msg

    async def _send_async(self, msg: EmailMessage) -> None:
        login = bool(self.username and self.password)
        await aiosmtplib.send(
            msg,
            hostname=self.host,
            port=self.port,
            start_tls=self.use_tls,
            username=self.username if login else None,
            password=self.password if login else None,
            timeout=self.timeout,
        )

    def send(self, notification: Notification) -> None:
        # Called from synchronous request handlers; no loop is running here
        asyncio.run(self._send_async(self._build_message(notification)))
        logger.info("Sent %s email to %s", notification.kind, notification.to)


def build_notifier(config: Mapping[str, Any]):
    backend = (config.get("MAIL_BACKEND") or "console").lower()
    if backend == "smtp":
        if not config.get("MAIL_HOST"):
            raise ValueError("MAIL_HOST is required when MAIL_BACKEND=smtp")
        return SmtpNotifier(
            host=config["MAIL_HOST"],
            port=int(config.get("MAIL_PORT") or 587),
            username=config.get("MAIL_USERNAME"),
            password=config.get("MAIL_PASSWORD"),
            use_tls=bool(config.get("MAIL_USE_TLS", True)),
            from_email=config.get("MAIL_FROM") or "no-reply@localhost",
        )
    return ConsoleNotifier()


def _format_amount(amount_cents: int, currency: str) -> str:
    return f"{amount_cents / 100:,.2f} {currency}"


def build_payment_confirmation(order, payment) -> Notification:
    lines = [
        f"Hello {order.user.name},",
        "",
        f"We received your payment for order {order.order_number}.",
        "",
    ]
    for line in order.lines:
        lines.append(
            f"  {line.quantity} x {line.product_name} ({line.sku})"
            f"  {_format_amount(line.line_total_cents, order.currency)}"
        )
    lines += [
        "",
        f"Subtotal: {_format_amount(order.subtotal_cents, order.currency)}",
        f"Tax:      {_format_amount(order.tax_cents, order.currency)}",
        f"Shipping: {_format_amount(order.shipping_cents, order.currency)}",
        f"Discount: {_format_amount(order.discount_cents, order.currency)}",
        f"Total:    {_format_amount(order.total_cents, order.currency)}",
        "",
        f"Paid with: {payment.payment_method}",
        f"Transaction: {payment.provider_ref or payment.id}",
    ]
    return Notification(
        to=order.user.email,
        subject=f"Payment received for order {order.order_number}",
        body="\n".join(lines),
        reference=order.order_number,
    )


def send_payment_confirmation(notifier, order, payment) -> bool:
    """Returns True when the notifier accepted the message."""
    if notifier is None:
        return False
    try:
        notifier.send(build_payment_confirmation(order, payment))
    except Exception:
        logger.exception(
            "Payment confirmation for order %s could not be sent",
            order.order_number,
        )
        return False
    return True
