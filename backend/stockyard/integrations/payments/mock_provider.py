from __future__ import annotations

import hashlib
import json
from datetime import datetime

from stockyard.integrations.common import ProviderRequestError
from stockyard.integrations.payments.base import (
    CheckoutSessionInfo,
    PaymentsProvider,
    RefundResult,
    TransferResult,
    WebhookEventPayload,
)


def _mock_id(prefix: str, key: str) -> str:
    return f"{prefix}_mock_{hashlib.sha256(key.encode('utf-8')).hexdigest()[:16]}"


class MockPaymentsProvider(PaymentsProvider):
    """Deterministic in-process processor for dev and tests.

    Ids derive from the idempotency key, so retries return the same object.
    Checkout sessions whose id contains ``expired`` (or ``complete``) report
    that status; any other id reports ``open``.
    """

    name = "mock"

    def __init__(self):
        self.transfers: dict[str, TransferResult] = {}
        self.refunds: dict[str, RefundResult] = {}
        self.sessions: dict[str, CheckoutSessionInfo] = {}

    def create_transfer(self, *, amount_minor: int, currency: str, destination: str, idempotency_key: str, metadata: dict | None = None) -> TransferResult:
        if int(amount_minor) <= 0:
            raise ProviderRequestError("MOCK_TRANSFER_FAILED:amount must be positive", status_code=400, retryable=False)
        if not destination:
            raise ProviderRequestError("MOCK_TRANSFER_FAILED:destination required", status_code=400, retryable=False)
        existing = self.transfers.get(idempotency_key)
        if existing:
            return existing
        result = TransferResult(
            id=_mock_id("tr", idempotency_key),
            amount_minor=int(amount_minor),
            currency=(currency or "usd").lower(),
            destination=destination,
            raw={"metadata": metadata or {}, "provider": self.name},
        )
        self.transfers[idempotency_key] = result
        return result

    def create_refund(self, *, payment_intent_id: str, amount_minor: int | None, idempotency_key: str, metadata: dict | None = None) -> RefundResult:
        existing = self.refunds.get(idempotency_key)
        if existing:
            return existing
        result = RefundResult(
            id=_mock_id("re", idempotency_key),
            amount_minor=int(amount_minor) if amount_minor is not None else None,
            status="succeeded",
            raw={"payment_intent": payment_intent_id, "metadata": metadata or {}},
        )
        self.refunds[idempotency_key] = result
        return result

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        known = self.sessions.get(session_id)
        if known:
            return known
        sid = (session_id or "").strip()
        if "expired" in sid:
            status, payment_status = "expired", "unpaid"
        elif "complete" in sid:
            status, payment_status = "complete", "paid"
        else:
            status, payment_status = "open", "unpaid"
        return CheckoutSessionInfo(id=sid, status=status, payment_status=payment_status, expires_at=None, raw={"provider": self.name})

    def parse_webhook(self, raw: bytes, signature: str | None) -> WebhookEventPayload:
        try:
            payload = json.loads((raw or b"{}").decode("utf-8"))
        except Exception as exc:
            raise ValueError("INVALID_PAYLOAD") from exc
        if not isinstance(payload, dict):
            raise ValueError("INVALID_PAYLOAD")
        data = payload.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        event_id = str(payload.get("id") or "").strip()
        if not event_id:
            event_id = hashlib.sha256(raw or b"").hexdigest()[:32]
        return WebhookEventPayload(
            id=event_id,
            type=str(payload.get("type") or "").strip(),
            data=obj if isinstance(obj, dict) else {},
            raw={"received_at": datetime.utcnow().isoformat()},
        )
