# Overview: Paypack mobile-money adapter (MTN, Airtel, Tigo cash-in) over httpx.

"""
Paypack mobile money adapter.

Flow:
- POST /auth/agents/authorize exchanges client credentials for a bearer
  token (cached until shortly before it expires)
- POST /transactions/cashin asks the subscriber's network to debit their
  wallet; the subscriber confirms on the handset, so the result is always
  Pending with the transaction ref
- The outcome arrives as a signed webhook (transaction:processed) or is
  polled via GET /events/transactions?ref=...

Webhooks are authenticated with base64(HMAC-SHA256(secret, raw body)) in the
X-Paypack-Signature header.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Mapping, Optional

import httpx

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

PAYPACK_BASE_URL = "https://payments.paypack.rw/api"
SIGNATURE_HEADER = "X-Paypack-Signature"

# Refresh the token this many seconds before Paypack says it expires
TOKEN_EXPIRY_MARGIN = 60


def sign_body(secret: str, raw_body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def transaction_to_result(ref: str, status: Optional[str], raw: Optional[dict] = None) -> ProviderResult:
    status = (status or "").lower()
    if status in ("successful", "success"):
        return Completed(provider_ref=ref, raw=raw or {})
    if status == "failed":
        return Failed(reason="Mobile money transaction failed", provider_ref=ref, raw=raw or {})
    return Pending(provider_ref=ref, raw=raw or {})


class PaypackProvider(PaymentProvider):
    name = "paypack"
    methods = ("paypack-mtn", "paypack-airtel", "paypack-tigo")

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_secret: Optional[str] = None,
        *,
        base_url: str = PAYPACK_BASE_URL,
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_secret = webhook_secret
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json"},
            transport=transport,
        )
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    def close(self) -> None:
        self._client.close()

    # -- HTTP ------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(
                "Mobile money provider unreachable",
                details={"provider": self.name, "path": path},
            ) from exc

        if response.status_code >= 400:
            raise ProviderError(
                f"Mobile money provider returned {response.status_code}",
                details={"provider": self.name, "path": path, "status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                "Mobile money provider returned invalid JSON",
                details={"provider": self.name, "path": path},
            ) from exc

    def _token(self) -> str:
        if self._access_token and time.time() < self._token_expires_at - TOKEN_EXPIRY_MARGIN:
            return self._access_token

        data = self._request(
            "POST",
            "/auth/agents/authorize",
            json={"client_id": self.client_id, "client_secret": self.client_secret},
        )
        token = data.get("access")
        if not token:
            raise ProviderError("Mobile money authorization failed", details={"provider": self.name})

        self._access_token = token
        expires = data.get("expires")
        self._token_expires_at = float(expires) if expires else time.time() + 15 * 60
        return token

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self._token()}"}

    # -- Capability interface -------------------------------------------

    def charge(self, amount_cents: int, currency: str, payload: Any, metadata: Mapping[str, str]) -> ProviderResult:
        # Paypack amounts are whole currency units
        amount = max(1, round(amount_cents / 100))
        data = self._request(
            "POST",
            "/transactions/cashin",
            json={"amount": amount, "number": payload.mobile_number},
            headers=self._auth_headers(),
        )
        ref = data.get("ref")
        if not ref:
            raise ProviderError("Mobile money provider returned no reference", details={"provider": self.name})

        logger.info("Paypack cash-in %s requested for order %s", ref, metadata.get("order_id"))
        return Pending(provider_ref=ref, raw=data)

    def retrieve_status(self, provider_ref: str) -> ProviderResult:
        data = self._request(
            "GET",
            "/events/transactions",
            params={"ref": provider_ref},
            headers=self._auth_headers(),
        )
        events = data.get("transactions") or []
        processed = [e for e in events if e.get("event_kind") == "transaction:processed"]
        if not processed:
            return Pending(provider_ref=provider_ref)
        latest = processed[-1].get("data") or {}
        return transaction_to_result(provider_ref, latest.get("status"), latest)

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookNotice:
        if not self.webhook_secret:
            raise WebhookSignatureError("Paypack webhook secret is not configured")

        signature = headers.get(SIGNATURE_HEADER)
        if not signature:
            raise WebhookSignatureError(f"Missing {SIGNATURE_HEADER} header")

        expected = sign_body(self.webhook_secret, raw_body)
        if not hmac.compare_digest(expected, signature):
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            event = json.loads(raw_body)
        except ValueError as exc:
            raise WebhookSignatureError("Invalid webhook payload") from exc
        if not isinstance(event, dict):
            raise WebhookSignatureError("Invalid webhook payload")

        data = event.get("data")
        if not isinstance(data, dict):
            data = {}
        event_type = event.get("kind") or ""
        ref = data.get("ref")
        event_id = event.get("event_id") or f"{ref}:{data.get('status')}"

        result: Optional[ProviderResult] = None
        if event_type == "transaction:processed" and ref:
            result = transaction_to_result(ref, data.get("status"), data)

        return WebhookNotice(
            provider=self.name,
            event_id=str(event_id),
            event_type=event_type,
            provider_ref=ref,
            result=result,
        )
