# Overview: Stripe card adapter built on the stripe library (PaymentIntents + signed webhooks).

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import stripe

from . import (
    Completed,
    Failed,
    Pending,
    PaymentProvider,
    ProviderError,
    ProviderResult,
    WebhookNotice,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)

# PaymentIntent.status -> result kind
COMPLETED_STATUSES = {"succeeded"}
PENDING_STATUSES = {"processing", "requires_action", "requires_confirmation", "requires_capture"}
FAILED_STATUSES = {"canceled", "requires_payment_method"}


def _last_error_message(intent) -> str:
    error = getattr(intent, "last_payment_error", None)
    message = getattr(error, "message", None) if error else None
    return message or f"Payment intent {getattr(intent, 'status', 'unknown')}"


def intent_to_result(intent) -> ProviderResult:
    status = intent.status
    if status in COMPLETED_STATUSES:
        return Completed(provider_ref=intent.id)
    if status in PENDING_STATUSES:
        return Pending(provider_ref=intent.id, client_secret=getattr(intent, "client_secret", None))
    if status in FAILED_STATUSES:
        return Failed(reason=_last_error_message(intent), provider_ref=intent.id)
    logger.warning("Unrecognized PaymentIntent status %r for %s", status, intent.id)
    return Pending(provider_ref=intent.id, client_secret=getattr(intent, "client_secret", None))


class StripeProvider(PaymentProvider):
    name = "stripe"
    methods = ("stripe",)

    def __init__(self, secret_key: str, webhook_secret: Optional[str] = None, return_url: Optional[str] = None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.return_url = return_url

    def charge(self, amount_cents: int, currency: str, payload: Any, metadata: Mapping[str, str]) -> ProviderResult:
        params = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "payment_method": payload.payment_method_id,
            "confirm": True,
            "metadata": dict(metadata),
            "api_key": self.secret_key,
        }
        if self.return_url:
            params["return_url"] = self.return_url
        else:
            params["automatic_payment_methods"] = {"enabled": True, "allow_redirects": "never"}

        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.CardError as exc:
            # Declines are an outcome, not a transport failure
            error = getattr(exc, "error", None)
            intent = getattr(error, "payment_intent", None) if error else None
            ref = getattr(intent, "id", None) if intent else None
            return Failed(reason=exc.user_message or str(exc), provider_ref=ref)
        except stripe.StripeError as exc:
            logger.exception("Stripe charge failed")
            raise ProviderError(
                exc.user_message or "Card provider error",
                details={"provider": self.name, "code": getattr(exc, "code", None)},
            ) from exc

        return intent_to_result(intent)

    def retrieve_status(self, provider_ref: str) -> ProviderResult:
        try:
            intent = stripe.PaymentIntent.retrieve(provider_ref, api_key=self.secret_key)
        except stripe.StripeError as exc:
            raise ProviderError(
                exc.user_message or "Card provider error",
                details={"provider": self.name, "provider_ref": provider_ref},
            ) from exc
        return intent_to_result(intent)

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookNotice:
        if not self.webhook_secret:
            raise WebhookSignatureError("Stripe webhook secret is not configured")

        signature = headers.get("Stripe-Signature")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret)
        except ValueError as exc:
            raise WebhookSignatureError("Invalid webhook payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError("Invalid webhook signature") from exc

        event_type = event["type"]
        intent = event["data"]["object"]
        provider_ref = intent["id"] if event_type.startswith("payment_intent.") else None

        result: Optional[ProviderResult] = None
        if event_type == "payment_intent.succeeded":
            result = Completed(provider_ref=provider_ref)
        elif event_type in ("payment_intent.payment_failed", "payment_intent.canceled"):
            result = Failed(reason=_last_error_message(intent), provider_ref=provider_ref)
        elif event_type == "payment_intent.processing":
            result = Pending(provider_ref=provider_ref)

        return WebhookNotice(
            provider=self.name,
            event_id=event["id"],
            event_type=event_type,
            provider_ref=provider_ref,
            result=result,
        )
