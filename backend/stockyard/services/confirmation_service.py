from __future__ import annotations

import logging
from datetime import timedelta

from stockyard.models import Listing, User
from stockyard.services.engine_context import EngineContext
from stockyard.services.fulfillment_service import load_order, party_role
from stockyard.services.order_errors import Forbidden, InvalidTransition, ValidationError
from stockyard.services.order_status import (
    ACTIVE_DISPUTE_STATUSES,
    LegacyStatus,
    PayoutHoldReason,
    TransactionStatus,
    delivery_marked,
    dispute_status,
    effective_status,
    hold_reason,
    legacy_status,
)
from stockyard.services.timeline_service import record_timeline

logger = logging.getLogger(__name__)

CONFIRMABLE_LEGACY_STATUSES = frozenset(
    {LegacyStatus.PAID, LegacyStatus.PAID_HELD, LegacyStatus.IN_TRANSIT, LegacyStatus.DELIVERED}
)
CONFIRMABLE_STATUSES = frozenset(
    {TransactionStatus.DELIVERED_PENDING_CONFIRMATION, TransactionStatus.PICKED_UP}
)
ALLOWED_PROTECTION_DAYS = (7, 14)
UNDELIVERABLE_STATUSES = frozenset(
    {
        TransactionStatus.PENDING_PAYMENT,
        TransactionStatus.REFUNDED,
        TransactionStatus.CANCELLED,
        TransactionStatus.COMPLETED,
    }
)


def _snapshot_window_ended(order, now) -> bool:
    ends_at = order.protection_ends_at
    return ends_at is None or now >= ends_at


def confirm_receipt(ctx: EngineContext, order_id: int, actor: User | None):
    """Buyer acceptance of the delivered or picked-up goods.

    Returns ``(order, changed)``. A replay on an already confirmed order is a
    success that leaves the row untouched.
    """
    order = load_order(order_id, lock=True)
    if party_role(order, actor) != "buyer":
        raise Forbidden("Only the buyer of record may confirm receipt")

    if order.buyer_confirmed_at and legacy_status(order) in (
        LegacyStatus.BUYER_CONFIRMED,
        LegacyStatus.READY_TO_RELEASE,
        LegacyStatus.COMPLETED,
    ):
        return order, False

    current = effective_status(order)
    if legacy_status(order) not in CONFIRMABLE_LEGACY_STATUSES and current not in CONFIRMABLE_STATUSES:
        raise InvalidTransition(
            "Receipt can only be confirmed after delivery or pickup",
            current_status=current.value,
            allowed_statuses=[s.value for s in CONFIRMABLE_STATUSES],
        )
    if not delivery_marked(order):
        raise InvalidTransition(
            "Delivery or pickup has not been marked yet",
            current_status=current.value,
            allowed_statuses=[s.value for s in CONFIRMABLE_STATUSES],
        )

    now = ctx.now()
    order.accepted_at = order.accepted_at or now
    order.buyer_confirmed_at = order.buyer_confirmed_at or now
    order.delivered_at = order.delivered_at or now
    order.status = LegacyStatus.BUYER_CONFIRMED.value

    no_dispute = dispute_status(order) not in ACTIVE_DISPUTE_STATUSES
    if no_dispute and (order.protection_days in (None, 0) or _snapshot_window_ended(order, now)):
        order.status = LegacyStatus.READY_TO_RELEASE.value
        # Regulatory and admin reasons survive acceptance
        if hold_reason(order) == PayoutHoldReason.PROTECTION_WINDOW.value:
            order.payout_hold_reason = PayoutHoldReason.NONE.value
    order.last_updated_by_role = "buyer"
    order.updated_at = now
    ctx.session.commit()

    record_timeline(order.id, "BUYER_CONFIRMED", "Buyer confirmed receipt", actor="buyer")
    ctx.notify(
        "Order.BuyerConfirmed",
        user_id=int(order.seller_id),
        order_id=order.id,
        dedupe_key=f"buyer-confirmed:{order.id}",
    )
    return order, True


def confirm_delivery(ctx: EngineContext, order_id: int, admin: User, *, note: str = ""):
    """Admin confirmation of delivery; fixes the buyer-protection snapshot.

    The snapshot is taken from the listing's protection offer at this moment
    and never recomputed.
    """
    order = load_order(order_id, lock=True)
    if order.delivery_confirmed_at:
        return order, False

    current = effective_status(order)
    if current in UNDELIVERABLE_STATUSES or order.transfer_id:
        raise InvalidTransition(
            "Delivery cannot be confirmed for this order",
            current_status=current.value,
            allowed_statuses=[s.value for s in TransactionStatus if s not in UNDELIVERABLE_STATUSES],
        )

    now = ctx.now()
    order.delivery_confirmed_at = now
    order.delivered_at = order.delivered_at or now
    if legacy_status(order) in CONFIRMABLE_LEGACY_STATUSES or legacy_status(order) is None:
        order.status = LegacyStatus.DELIVERED.value
    if current not in (TransactionStatus.PICKED_UP, TransactionStatus.DISPUTE_OPENED):
        order.transaction_status = TransactionStatus.DELIVERED_PENDING_CONFIRMATION.value

    listing = ctx.session.get(Listing, int(order.listing_id)) if order.listing_id else None
    days = int(listing.protection_days or 0) if listing is not None and listing.protection_enabled else 0
    if days in ALLOWED_PROTECTION_DAYS and order.protection_days is None:
        order.protection_days = days
        order.protection_start_at = now
        order.protection_ends_at = now + timedelta(days=days)
        if hold_reason(order) == PayoutHoldReason.NONE.value:
            order.payout_hold_reason = PayoutHoldReason.PROTECTION_WINDOW.value
    elif order.protection_days is None:
        order.protection_days = 0

    order.admin_reviewed_at = now
    order.last_updated_by_role = "admin"
    order.updated_at = now
    ctx.session.commit()

    record_timeline(
        order.id,
        "DELIVERY_CONFIRMED",
        "Delivery confirmed by marketplace",
        actor="admin",
        meta={"protection_days": order.protection_days, "admin_id": int(admin.id), "note": (note or "")[:240]},
    )
    if order.protection_ends_at:
        ctx.notify(
            "Order.ProtectionStarted",
            user_id=int(order.buyer_id),
            order_id=order.id,
            payload={"protection_ends_at": order.protection_ends_at.isoformat()},
            dedupe_key=f"protection-started:{order.id}",
        )
    return order, True


def confirm_compliance(ctx: EngineContext, order_id: int, actor: User | None):
    """Buyer or seller attests the regulated-species transfer paperwork."""
    order = load_order(order_id, lock=True)
    role = party_role(order, actor)
    if role is None:
        raise Forbidden("Only the buyer or seller of record may confirm compliance")
    if not order.requires_transfer_compliance:
        raise ValidationError("This order does not require transfer compliance", code="COMPLIANCE_NOT_REQUIRED")

    field = "compliance_buyer_confirmed_at" if role == "buyer" else "compliance_seller_confirmed_at"
    if getattr(order, field):
        return order, False

    now = ctx.now()
    setattr(order, field, now)
    both = bool(order.compliance_buyer_confirmed_at and order.compliance_seller_confirmed_at)
    if both and order.transaction_status == TransactionStatus.AWAITING_TRANSFER_COMPLIANCE.value:
        order.transaction_status = TransactionStatus.FULFILLMENT_REQUIRED.value
    order.last_updated_by_role = role
    order.updated_at = now
    ctx.session.commit()

    record_timeline(
        order.id,
        "COMPLIANCE_CONFIRMED",
        f"Transfer compliance confirmed by {role}",
        actor=role,
        event_id=f"COMPLIANCE_CONFIRMED:{int(order.id)}:{role}",
    )
    if both:
        record_timeline(order.id, "COMPLIANCE_COMPLETE", "Both parties confirmed transfer compliance", actor="system")
        ctx.notify(
            "Order.ComplianceComplete",
            user_id=int(order.seller_id),
            order_id=order.id,
            dedupe_key=f"compliance-complete:{order.id}",
        )
    return order, True
