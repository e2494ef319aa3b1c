from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class TransferResult:
    id: str
    amount_minor: int
    currency: str
    destination: str
    raw: dict | None = None


@dataclass
class RefundResult:
    id: str
    amount_minor: int | None
    status: str
    raw: dict | None = None


@dataclass
class CheckoutSessionInfo:
    id: str
    status: str  # open | complete | expired
    payment_status: str  # paid | unpaid | no_payment_required
    expires_at: datetime | None = None
    raw: dict | None = None

    @property
    def is_expired(self) -> bool:
        return self.status == "expired"


@dataclass
class WebhookEventPayload:
    id: str
    type: str
    data: dict
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"

    def create_transfer(self, *, amount_minor: int, currency: str, destination: str, idempotency_key: str, metadata: dict | None = None) -> TransferResult:
        raise NotImplementedError

    def create_refund(self, *, payment_intent_id: str, amount_minor: int | None, idempotency_key: str, metadata: dict | None = None) -> RefundResult:
        raise NotImplementedError

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        raise NotImplementedError

    def parse_webhook(self, raw: bytes, signature: str | None) -> WebhookEventPayload:
        raise NotImplementedError
