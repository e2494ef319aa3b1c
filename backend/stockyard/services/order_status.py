"""Order status vocabulary and the effective-status reconciler.

Orders carry two overlapping status fields: the coarse legacy ``status`` and
the canonical ``transaction_status``. Everything else in the engine reads
order state through :func:`effective_status` so that both schema
generations resolve to one value.
"""
from __future__ import annotations

from enum import Enum


class LegacyStatus(str, Enum):
    PENDING = "pending"
    AWAITING_BANK_TRANSFER = "awaiting_bank_transfer"
    AWAITING_WIRE = "awaiting_wire"
    PAID = "paid"
    PAID_HELD = "paid_held"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    ACCEPTED = "accepted"
    BUYER_CONFIRMED = "buyer_confirmed"
    READY_TO_RELEASE = "ready_to_release"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    FULFILLMENT_REQUIRED = "FULFILLMENT_REQUIRED"
    DELIVERY_PROPOSED = "DELIVERY_PROPOSED"
    DELIVERY_SCHEDULED = "DELIVERY_SCHEDULED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    PICKUP_PROPOSED = "PICKUP_PROPOSED"
    PICKUP_SCHEDULED = "PICKUP_SCHEDULED"
    PICKED_UP = "PICKED_UP"
    DELIVERED_PENDING_CONFIRMATION = "DELIVERED_PENDING_CONFIRMATION"
    SELLER_NONCOMPLIANT = "SELLER_NONCOMPLIANT"
    DISPUTE_OPENED = "DISPUTE_OPENED"
    AWAITING_TRANSFER_COMPLIANCE = "AWAITING_TRANSFER_COMPLIANCE"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class TransportOption(str, Enum):
    BUYER_TRANSPORT = "BUYER_TRANSPORT"
    SELLER_TRANSPORT = "SELLER_TRANSPORT"


class PayoutHoldReason(str, Enum):
    NONE = "none"
    PROTECTION_WINDOW = "protection_window"
    DISPUTE_OPEN = "dispute_open"
    ADMIN_HOLD = "admin_hold"
    CHARGEBACK = "chargeback"
    # Review holds set from listing policy at payment time
    OTHER_EXOTIC_REVIEW_REQUIRED = "OTHER_EXOTIC_REVIEW_REQUIRED"
    ESA_REVIEW_REQUIRED = "ESA_REVIEW_REQUIRED"
    EXOTIC_CERVID_REVIEW_REQUIRED = "EXOTIC_CERVID_REVIEW_REQUIRED"
    MISSING_TAHC_CVI = "MISSING_TAHC_CVI"


# Hold reasons that a marketplace payout approval may clear. Anything else
# (document holds such as a missing CVI) needs the underlying requirement met.
MARKETPLACE_CLEARABLE_HOLD_REASONS = frozenset(
    {
        PayoutHoldReason.OTHER_EXOTIC_REVIEW_REQUIRED.value,
        PayoutHoldReason.ESA_REVIEW_REQUIRED.value,
        PayoutHoldReason.EXOTIC_CERVID_REVIEW_REQUIRED.value,
    }
)

REGULATORY_HOLD_REASONS = frozenset(MARKETPLACE_CLEARABLE_HOLD_REASONS | {PayoutHoldReason.MISSING_TAHC_CVI.value})


class DisputeStatus(str, Enum):
    NONE = "none"
    OPEN = "open"
    NEEDS_EVIDENCE = "needs_evidence"
    UNDER_REVIEW = "under_review"
    RESOLVED_RELEASE = "resolved_release"
    RESOLVED_REFUND = "resolved_refund"
    RESOLVED_PARTIAL_REFUND = "resolved_partial_refund"
    CANCELLED = "cancelled"


ACTIVE_DISPUTE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.NEEDS_EVIDENCE, DisputeStatus.UNDER_REVIEW})
RESOLVED_DISPUTE_STATUSES = frozenset(
    {DisputeStatus.RESOLVED_RELEASE, DisputeStatus.RESOLVED_REFUND, DisputeStatus.RESOLVED_PARTIAL_REFUND}
)

AWAITING_PAYMENT_STATUSES = frozenset(
    {LegacyStatus.PENDING, LegacyStatus.AWAITING_BANK_TRANSFER, LegacyStatus.AWAITING_WIRE}
)
TERMINAL_LEGACY_STATUSES = frozenset({LegacyStatus.COMPLETED, LegacyStatus.REFUNDED, LegacyStatus.CANCELLED})

TERMINAL_STATUSES = frozenset(
    {TransactionStatus.COMPLETED, TransactionStatus.REFUNDED, TransactionStatus.CANCELLED}
)
FULFILLMENT_STATUSES = frozenset(
    {
        TransactionStatus.FULFILLMENT_REQUIRED,
        TransactionStatus.DELIVERY_PROPOSED,
        TransactionStatus.DELIVERY_SCHEDULED,
        TransactionStatus.OUT_FOR_DELIVERY,
        TransactionStatus.READY_FOR_PICKUP,
        TransactionStatus.PICKUP_PROPOSED,
        TransactionStatus.PICKUP_SCHEDULED,
        TransactionStatus.PICKED_UP,
        TransactionStatus.DELIVERED_PENDING_CONFIRMATION,
    }
)

# Stored values from older writers that have since been folded into others.
_SUPERSEDED_ALIASES = {
    "READY_TO_RELEASE": TransactionStatus.COMPLETED,
    "RELEASED": TransactionStatus.COMPLETED,
}


def _enum_value(enum_cls, raw, default=None):
    if isinstance(raw, enum_cls):
        return raw
    value = str(raw or "").strip()
    if not value:
        return default
    try:
        return enum_cls(value)
    except ValueError:
        return default


def legacy_status(order) -> LegacyStatus | None:
    return _enum_value(LegacyStatus, getattr(order, "status", None))


def transport_option(order) -> TransportOption:
    return _enum_value(
        TransportOption,
        getattr(order, "transport_option", None),
        TransportOption.SELLER_TRANSPORT,
    )


def dispute_status(order) -> DisputeStatus:
    return _enum_value(DisputeStatus, getattr(order, "dispute_status", None), DisputeStatus.NONE)


def hold_reason(order) -> str:
    return str(getattr(order, "payout_hold_reason", None) or PayoutHoldReason.NONE.value)


def compliance_confirmed(order) -> bool:
    return bool(
        getattr(order, "compliance_buyer_confirmed_at", None)
        and getattr(order, "compliance_seller_confirmed_at", None)
    )


def _stored_status(order) -> TransactionStatus | None:
    raw = str(getattr(order, "transaction_status", None) or "").strip()
    if not raw:
        return None
    if raw in _SUPERSEDED_ALIASES:
        return _SUPERSEDED_ALIASES[raw]
    return _enum_value(TransactionStatus, raw)


def effective_status(order) -> TransactionStatus:
    """Return the single reconciled transaction status for ``order``."""
    stored = _stored_status(order)
    if stored is not None:
        if stored == TransactionStatus.AWAITING_TRANSFER_COMPLIANCE and compliance_confirmed(order):
            return TransactionStatus.FULFILLMENT_REQUIRED
        return stored

    legacy = legacy_status(order)
    paid_at = getattr(order, "paid_at", None)

    if legacy in AWAITING_PAYMENT_STATUSES:
        return TransactionStatus.PENDING_PAYMENT

    if legacy in (LegacyStatus.PAID, LegacyStatus.PAID_HELD):
        if not paid_at:
            return TransactionStatus.PENDING_PAYMENT
        if getattr(order, "requires_transfer_compliance", False) and not compliance_confirmed(order):
            return TransactionStatus.AWAITING_TRANSFER_COMPLIANCE
        return TransactionStatus.FULFILLMENT_REQUIRED

    if legacy == LegacyStatus.IN_TRANSIT:
        if transport_option(order) == TransportOption.BUYER_TRANSPORT:
            pickup = getattr(order, "pickup", None) or {}
            if pickup.get("location") and pickup.get("windows"):
                if pickup.get("selected_window"):
                    return TransactionStatus.PICKUP_SCHEDULED
            return TransactionStatus.READY_FOR_PICKUP
        return TransactionStatus.OUT_FOR_DELIVERY

    if legacy == LegacyStatus.DELIVERED:
        return TransactionStatus.DELIVERED_PENDING_CONFIRMATION

    if legacy in (
        LegacyStatus.BUYER_CONFIRMED,
        LegacyStatus.ACCEPTED,
        LegacyStatus.READY_TO_RELEASE,
        LegacyStatus.COMPLETED,
    ):
        return TransactionStatus.COMPLETED

    if legacy == LegacyStatus.DISPUTED:
        return TransactionStatus.DISPUTE_OPENED
    if legacy == LegacyStatus.REFUNDED:
        return TransactionStatus.REFUNDED
    if legacy == LegacyStatus.CANCELLED:
        return TransactionStatus.CANCELLED

    return TransactionStatus.FULFILLMENT_REQUIRED if paid_at else TransactionStatus.PENDING_PAYMENT


def is_terminal(status: TransactionStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_fulfillment(status: TransactionStatus) -> bool:
    return status in FULFILLMENT_STATUSES


def is_closed(order) -> bool:
    """Terminal for money purposes: released, refunded or cancelled."""
    if getattr(order, "transfer_id", None):
        return True
    return legacy_status(order) in TERMINAL_LEGACY_STATUSES


def requires_seller_action(order) -> bool:
    status = effective_status(order)
    if status == TransactionStatus.AWAITING_TRANSFER_COMPLIANCE:
        return not getattr(order, "compliance_seller_confirmed_at", None)
    if status == TransactionStatus.FULFILLMENT_REQUIRED:
        return True
    if transport_option(order) == TransportOption.SELLER_TRANSPORT:
        return status == TransactionStatus.DELIVERY_SCHEDULED
    return status in (TransactionStatus.READY_FOR_PICKUP, TransactionStatus.PICKUP_PROPOSED)


def requires_buyer_action(order) -> bool:
    status = effective_status(order)
    if status == TransactionStatus.AWAITING_TRANSFER_COMPLIANCE:
        return not getattr(order, "compliance_buyer_confirmed_at", None)
    if transport_option(order) == TransportOption.BUYER_TRANSPORT:
        return status in (TransactionStatus.READY_FOR_PICKUP, TransactionStatus.PICKUP_SCHEDULED)
    return status in (TransactionStatus.DELIVERY_PROPOSED, TransactionStatus.DELIVERED_PENDING_CONFIRMATION)


def delivery_marked(order) -> bool:
    """True once delivery or pickup has been marked by either side or confirmed by an admin."""
    if getattr(order, "delivered_at", None) or getattr(order, "delivery_confirmed_at", None):
        return True
    if (getattr(order, "pickup", None) or {}).get("confirmed_at"):
        return True
    if (getattr(order, "delivery", None) or {}).get("confirmed_at"):
        return True
    return effective_status(order) in (
        TransactionStatus.DELIVERED_PENDING_CONFIRMATION,
        TransactionStatus.PICKED_UP,
    )


def explicitly_confirmed(order) -> bool:
    return bool(getattr(order, "buyer_confirmed_at", None) or getattr(order, "accepted_at", None))


def buyer_confirmed(order) -> bool:
    """Buyer accepted, or the order advanced to a confirmed state by policy or dispute ruling."""
    if explicitly_confirmed(order):
        return True
    if dispute_status(order) in (DisputeStatus.RESOLVED_RELEASE, DisputeStatus.RESOLVED_PARTIAL_REFUND):
        return True
    return legacy_status(order) in (
        LegacyStatus.BUYER_CONFIRMED,
        LegacyStatus.ACCEPTED,
        LegacyStatus.READY_TO_RELEASE,
    )
