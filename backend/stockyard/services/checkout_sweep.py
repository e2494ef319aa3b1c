from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from stockyard.integrations.common import ProviderRequestError
from stockyard.models import Listing, ListingReservation, Order
from stockyard.services.audit_service import add_audit
from stockyard.services.engine_context import EngineContext
from stockyard.services.fulfillment_service import load_order
from stockyard.services.order_errors import InvalidTransition
from stockyard.services.order_queries import OrderFilter, find_orders
from stockyard.services.order_status import (
    AWAITING_PAYMENT_STATUSES,
    LegacyStatus,
    PayoutHoldReason,
    TransactionStatus,
    effective_status,
    is_closed,
)
from stockyard.services.timeline_service import record_timeline

logger = logging.getLogger(__name__)

SWEEP_LIMIT_MAX = 500
SWEEP_LIMIT_DEFAULT = 50


def _restore_reservation(ctx: EngineContext, order: Order) -> int:
    """Give reserved stock back to the listing; returns the quantity restored."""
    restored = 0
    reservation = ListingReservation.query.filter_by(order_id=int(order.id)).first()
    listing_id = reservation.listing_id if reservation is not None else order.listing_id
    listing = (
        Listing.query.filter_by(id=int(listing_id)).with_for_update().populate_existing().first()
        if listing_id
        else None
    )
    if reservation is not None:
        restored = int(reservation.quantity or 0)
        if listing is not None and restored > 0:
            listing.quantity_available = int(listing.quantity_available or 0) + restored
            if listing.status == "sold" and listing.quantity_available > 0:
                listing.status = "active"
                listing.sold_at = None
        ctx.session.delete(reservation)
    if listing is not None and listing.purchase_reserved_by_order_id == int(order.id):
        listing.purchase_reserved_by_order_id = None
    return restored


def cancel_order(ctx: EngineContext, order_id: int, *, reason: str, actor_id: int | None = None, actor: str = "system") -> Order:
    """Cancel an unpaid order and release its stock reservation in one transaction."""
    order = load_order(order_id, lock=True)
    if (order.status or "") == LegacyStatus.CANCELLED.value:
        return order
    if order.paid_at or is_closed(order):
        raise InvalidTransition(
            "Only unpaid orders can be cancelled",
            current_status=effective_status(order).value,
            allowed_statuses=[TransactionStatus.PENDING_PAYMENT.value],
        )
    now = ctx.now()
    try:
        restored = _restore_reservation(ctx, order)
        order.status = LegacyStatus.CANCELLED.value
        order.transaction_status = TransactionStatus.CANCELLED.value
        order.payout_hold_reason = PayoutHoldReason.NONE.value
        order.cancelled_at = now
        order.updated_at = now
        add_audit(actor_id, "order_cancelled", order.id, {"reason": reason, "restored_quantity": restored})
        ctx.session.commit()
    except SQLAlchemyError:
        # stock and order state move together or not at all
        ctx.session.rollback()
        raise

    record_timeline(order.id, "ORDER_CANCELLED", f"Order cancelled ({reason})", actor=actor, meta={"restored_quantity": restored})
    ctx.notify(
        "Order.Cancelled",
        user_id=int(order.buyer_id),
        order_id=order.id,
        payload={"reason": reason},
        dedupe_key=f"order-cancelled:{order.id}",
    )
    return order


def _session_expired(ctx: EngineContext, order: Order) -> bool:
    if ctx.payments_configured:
        info = ctx.payments().retrieve_checkout_session(order.checkout_session_id)
        if info.is_expired:
            return True
    return bool(order.checkout_expires_at and ctx.now() >= order.checkout_expires_at)


def cancel_abandoned_checkouts(ctx: EngineContext, *, limit: int = SWEEP_LIMIT_DEFAULT, dry_run: bool = False, force: bool = False) -> dict:
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = SWEEP_LIMIT_DEFAULT
    limit = max(1, min(limit, SWEEP_LIMIT_MAX))

    candidates = find_orders(
        OrderFilter(statuses=tuple(s.value for s in AWAITING_PAYMENT_STATUSES), without_transfer=True),
        limit=limit,
    )
    results = []
    cancelled = 0
    for order in candidates:
        item = {"order_id": int(order.id), "status": order.status}
        try:
            if is_closed(order) or order.paid_at:
                item["action"] = "skipped_terminal"
            elif not order.checkout_session_id:
                item["action"] = "skipped_no_session"
            elif not force and not _session_expired(ctx, order):
                item["action"] = "skipped_not_expired"
            elif dry_run:
                item["action"] = "would_cancel"
            else:
                cancel_order(ctx, order.id, reason="checkout_abandoned")
                item["action"] = "cancelled"
                cancelled += 1
        except (ProviderRequestError, InvalidTransition, SQLAlchemyError) as exc:
            ctx.session.rollback()
            logger.warning("abandoned_checkout_item_failed order_id=%s err=%s", order.id, exc)
            item["action"] = "error"
            item["error"] = str(exc)
        results.append(item)

    return {
        "ok": True,
        "dry_run": bool(dry_run),
        "force": bool(force),
        "limit": limit,
        "total_scanned": len(candidates),
        "cancelled": cancelled,
        "results": results,
    }
