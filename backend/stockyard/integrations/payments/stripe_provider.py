from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime

import requests

from stockyard.integrations.common import ProviderRequestError
from stockyard.integrations.payments.base import (
    CheckoutSessionInfo,
    PaymentsProvider,
    RefundResult,
    TransferResult,
    WebhookEventPayload,
)

_API_BASE = "https://api.stripe.com/v1"
_SIGNATURE_TOLERANCE_SECONDS = 300


def _flatten_metadata(metadata: dict | None) -> dict:
    out = {}
    for key, value in (metadata or {}).items():
        if value is None:
            continue
        out[f"metadata[{key}]"] = str(value)[:500]
    return out


class StripePaymentsProvider(PaymentsProvider):
    name = "stripe"

    def __init__(self, secret_key: str, *, webhook_secret: str = "", timeout: int = 25):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout

    def _headers(self, idempotency_key: str | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key[:255]
        return headers

    def _request(self, method: str, path: str, *, data: dict | None = None, idempotency_key: str | None = None) -> dict:
        try:
            r = requests.request(
                method,
                f"{_API_BASE}{path}",
                headers=self._headers(idempotency_key),
                data=data,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderRequestError(f"STRIPE_UNREACHABLE:{type(exc).__name__}") from exc
        j = r.json() if r.content else {}
        if r.status_code < 200 or r.status_code >= 300:
            err = (j.get("error") or {}) if isinstance(j, dict) else {}
            msg = (err.get("message") or f"HTTP {r.status_code}").strip()
            raise ProviderRequestError(
                f"STRIPE_REQUEST_FAILED:{msg}",
                status_code=r.status_code,
                retryable=r.status_code == 429 or r.status_code >= 500,
            )
        return j if isinstance(j, dict) else {"payload": j}

    def create_transfer(self, *, amount_minor: int, currency: str, destination: str, idempotency_key: str, metadata: dict | None = None) -> TransferResult:
        payload = {
            "amount": int(amount_minor),
            "currency": (currency or "usd").lower(),
            "destination": destination,
        }
        payload.update(_flatten_metadata(metadata))
        j = self._request("POST", "/transfers", data=payload, idempotency_key=idempotency_key)
        return TransferResult(
            id=str(j.get("id") or "").strip(),
            amount_minor=int(j.get("amount") or amount_minor),
            currency=str(j.get("currency") or currency),
            destination=str(j.get("destination") or destination),
            raw=j,
        )

    def create_refund(self, *, payment_intent_id: str, amount_minor: int | None, idempotency_key: str, metadata: dict | None = None) -> RefundResult:
        payload = {"payment_intent": payment_intent_id}
        if amount_minor is not None:
            payload["amount"] = int(amount_minor)
        payload.update(_flatten_metadata(metadata))
        j = self._request("POST", "/refunds", data=payload, idempotency_key=idempotency_key)
        return RefundResult(
            id=str(j.get("id") or "").strip(),
            amount_minor=int(j["amount"]) if j.get("amount") is not None else amount_minor,
            status=str(j.get("status") or "").strip().lower(),
            raw=j,
        )

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        j = self._request("GET", f"/checkout/sessions/{(session_id or '').strip()}")
        expires_at = None
        try:
            if j.get("expires_at"):
                expires_at = datetime.utcfromtimestamp(int(j["expires_at"]))
        except Exception:
            expires_at = None
        return CheckoutSessionInfo(
            id=str(j.get("id") or session_id),
            status=str(j.get("status") or "").strip().lower(),
            payment_status=str(j.get("payment_status") or "").strip().lower(),
            expires_at=expires_at,
            raw=j,
        )

    def verify_signature(self, raw: bytes, signature: str | None, *, now: int | None = None) -> bool:
        if not self.webhook_secret or not signature:
            return False
        timestamp = ""
        candidates = []
        for part in signature.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                candidates.append(value)
        if not timestamp or not candidates:
            return False
        try:
            ts = int(timestamp)
        except Exception:
            return False
        current = int(now if now is not None else time.time())
        if abs(current - ts) > _SIGNATURE_TOLERANCE_SECONDS:
            return False
        signed = f"{timestamp}.".encode("utf-8") + (raw or b"")
        expected = hmac.new(self.webhook_secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(expected, c) for c in candidates)

    def parse_webhook(self, raw: bytes, signature: str | None) -> WebhookEventPayload:
        if not self.verify_signature(raw, signature):
            raise PermissionError("INVALID_SIGNATURE")
        try:
            payload = json.loads((raw or b"{}").decode("utf-8"))
        except Exception as exc:
            raise ValueError("INVALID_PAYLOAD") from exc
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ValueError("INVALID_PAYLOAD")
        data = payload.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        return WebhookEventPayload(
            id=str(payload["id"]),
            type=str(payload.get("type") or "").strip(),
            data=obj if isinstance(obj, dict) else {},
            raw=payload,
        )
