# Overview: Payment provider adapters; capability interface, result variants and registry.

"""
Payment provider capability interface.

The core never talks to a vendor SDK directly. Each adapter turns vendor
responses into one of three ProviderResult variants:

- Completed(provider_ref): the provider reports the money as captured
- Pending(provider_ref): accepted, outcome arrives later (webhook or poll)
- Failed(reason): rejected; nothing to wait for

Transport problems (network errors, 5xx, auth failures) are raised as
ProviderError instead of being folded into Failed, so callers can tell
"the card was declined" apart from "we could not reach the provider".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union


@dataclass(frozen=True)
class Completed:
    provider_ref: str
    raw: dict = field(default_factory=dict, compare=False)

    status = "completed"


@dataclass(frozen=True)
class Pending:
    provider_ref: str
    client_secret: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False)

    status = "processing"


@dataclass(frozen=True)
class Failed:
    reason: str
    provider_ref: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False)

    status = "failed"


ProviderResult = Union[Completed, Pending, Failed]


class ProviderError(Exception):
    """Provider could not be reached or answered with an error."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class WebhookSignatureError(ProviderError):
    """Webhook body failed signature verification."""
    pass


@dataclass(frozen=True)
class WebhookNotice:
    """
    Provider-neutral view of an authenticated webhook.

    result is None for event types that carry no settlement outcome; those
    are acknowledged and ignored.
    """
    provider: str
    event_id: str
    event_type: str
    provider_ref: Optional[str]
    result: Optional[ProviderResult]


class PaymentProvider:
    """Base class for provider adapters."""

    name: str = ""
    methods: tuple[str, ...] = ()

    def charge(
        self,
        amount_cents: int,
        currency: str,
        payload: Any,
        metadata: Mapping[str, str],
    ) -> ProviderResult:
        raise NotImplementedError

    def retrieve_status(self, provider_ref: str) -> ProviderResult:
        raise NotImplementedError

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookNotice:
        raise NotImplementedError


def build_providers(config: Mapping[str, Any]) -> dict[str, PaymentProvider]:
    """
    Construct adapters for every provider that has credentials configured.

    Called once by create_app; the result lives on
    app.extensions["payment_providers"].
    """
    providers: dict[str, PaymentProvider] = {}

    if config.get("STRIPE_SECRET_KEY"):
        from .stripe_provider import StripeProvider

        frontend = (config.get("FRONTEND_URL") or "").rstrip("/")
        providers["stripe"] = StripeProvider(
            secret_key=config["STRIPE_SECRET_KEY"],
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            return_url=f"{frontend}/payment/success" if frontend else None,
        )

    if config.get("PAYPACK_CLIENT_ID") and config.get("PAYPACK_CLIENT_SECRET"):
        from .paypack_provider import PaypackProvider

        providers["paypack"] = PaypackProvider(
            client_id=config["PAYPACK_CLIENT_ID"],
            client_secret=config["PAYPACK_CLIENT_SECRET"],
            webhook_secret=config.get("PAYPACK_WEBHOOK_SECRET"),
            base_url=config.get("PAYPACK_BASE_URL") or "https://payments.paypack.rw/api",
        )

    return providers


def provider_for_method(providers: Mapping[str, PaymentProvider], method: str) -> Optional[PaymentProvider]:
    for provider in providers.values():
        if method in provider.methods:
            return provider
    return None
