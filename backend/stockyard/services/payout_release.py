"""Release of custody funds to the seller.

The saga runs in three steps: lock the row and evaluate eligibility, ask the
processor for the transfer (keyed ``release:{order_id}`` so a retry can never
pay twice), then re-read the locked row, re-evaluate and write the transfer id.
The timeline entry, audit row and seller notification follow the commit.
"""
from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

from stockyard.integrations.common import ProviderRequestError
from stockyard.models import Order, User
from stockyard.services.audit_service import add_audit, record_audit
from stockyard.services.engine_context import EngineContext
from stockyard.services.fulfillment_service import load_order
from stockyard.services.order_errors import (
    ConflictAlreadyApplied,
    DependencyUnavailable,
    InvalidTransition,
    OrderEngineError,
    ValidationError,
)
from stockyard.services.order_status import LegacyStatus, PayoutHoldReason, TransactionStatus, effective_status
from stockyard.services.release_eligibility import RELEASE_READY_STATUSES, can_release
from stockyard.services.timeline_service import record_timeline, timeline_event_id

logger = logging.getLogger(__name__)


def to_minor(amount) -> int:
    return int((Decimal(str(amount or 0)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def release_idempotency_key(order_id: int) -> str:
    return f"release:{int(order_id)}"


def _ensure_releasable(ctx: EngineContext, order: Order) -> None:
    if order.transfer_id:
        raise ConflictAlreadyApplied("Funds were already released", order=order)
    decision = can_release(order, ctx.now())
    if not decision.eligible:
        raise InvalidTransition(
            decision.explanation or "Order is not eligible for release",
            code="RELEASE_NOT_ELIGIBLE",
            current_status=effective_status(order).value,
            allowed_statuses=[s.value for s in RELEASE_READY_STATUSES],
            details={
                "reason": decision.reason,
                "earliest_release_at": decision.earliest_release_at.isoformat() if decision.earliest_release_at else None,
                "blockers": decision.blockers,
            },
        )


def _refuse_unapplied_transfer(ctx: EngineContext, locked: Order, decision, transfer_id: str, amount_minor: int, actor_id) -> None:
    """The order changed while the transfer was in flight; keep its state and flag the transfer."""
    order_id = int(locked.id)
    current = effective_status(locked).value
    ctx.session.rollback()
    logger.error(
        "release_payout_unapplied order_id=%s transfer_id=%s reason=%s",
        order_id,
        transfer_id,
        decision.reason,
    )
    meta = {"transfer_id": transfer_id, "amount_minor": amount_minor, "reason": decision.reason}
    record_audit(actor_id, "payout_transfer_unapplied", order_id, meta)
    record_timeline(
        order_id,
        "PAYOUT_TRANSFER_UNAPPLIED",
        "Transfer created but the order changed before release was recorded",
        actor="system",
        visibility="admin",
        meta=meta,
        event_id=timeline_event_id("PAYOUT_TRANSFER_UNAPPLIED", order_id, transfer_id),
    )
    raise InvalidTransition(
        decision.explanation or "Order is no longer eligible for release",
        code="RELEASE_NOT_ELIGIBLE",
        current_status=current,
        allowed_statuses=[s.value for s in RELEASE_READY_STATUSES],
        details={"reason": decision.reason, "unapplied_transfer_id": transfer_id},
    )


def release_payout(
    ctx: EngineContext,
    order_id: int,
    *,
    actor_id: int | None = None,
    release_type: str = "manual",
    released_by: str = "admin",
) -> Order:
    provider = ctx.payments()
    order = load_order(order_id, lock=True)
    try:
        _ensure_releasable(ctx, order)
    except OrderEngineError:
        ctx.session.rollback()
        raise

    seller = ctx.session.get(User, int(order.seller_id))
    destination = (getattr(seller, "payout_account_id", None) or "").strip() if seller is not None else ""
    if not destination:
        ctx.session.rollback()
        raise ValidationError("Seller has no payout account connected", code="SELLER_PAYOUT_ACCOUNT_MISSING")
    amount_minor = to_minor(order.seller_amount)
    if amount_minor <= 0:
        ctx.session.rollback()
        raise ValidationError("Seller amount must be positive to release", code="NOTHING_TO_RELEASE")

    try:
        transfer = provider.create_transfer(
            amount_minor=amount_minor,
            currency=order.currency or "usd",
            destination=destination,
            idempotency_key=release_idempotency_key(order.id),
            metadata={
                "order_id": str(order.id),
                "released_by": str(actor_id if actor_id is not None else released_by),
                "release_type": release_type,
            },
        )
    except ProviderRequestError as exc:
        ctx.session.rollback()
        logger.exception("release_payout_failed order_id=%s release_type=%s", order_id, release_type)
        if exc.retryable:
            raise DependencyUnavailable("Payment processor did not complete the transfer", code="TRANSFER_FAILED")
        raise OrderEngineError(str(exc), code="TRANSFER_REJECTED", http_status=502)

    # Stores without row locks let a hold, refund or cancel commit during the
    # processor call; the write below only happens if the fresh row still allows it.
    locked = load_order(order_id, lock=True)
    if locked.transfer_id:
        ctx.session.rollback()
        if locked.transfer_id == transfer.id:
            raise ConflictAlreadyApplied("Funds were already released", order=locked)
        logger.error(
            "release_payout_conflict order_id=%s stored_transfer=%s new_transfer=%s",
            locked.id,
            locked.transfer_id,
            transfer.id,
        )
        raise OrderEngineError("Order carries a different transfer", code="TRANSFER_CONFLICT", http_status=409)
    decision = can_release(locked, ctx.now())
    if not decision.eligible:
        _refuse_unapplied_transfer(ctx, locked, decision, transfer.id, amount_minor, actor_id)

    now = ctx.now()
    locked.transfer_id = transfer.id
    locked.status = LegacyStatus.COMPLETED.value
    locked.transaction_status = TransactionStatus.COMPLETED.value
    locked.payout_hold_reason = PayoutHoldReason.NONE.value
    locked.completed_at = now
    locked.released_at = now
    locked.released_by = str(actor_id if actor_id is not None else released_by)[:64]
    locked.updated_at = now
    add_audit(
        actor_id,
        "payout_released",
        locked.id,
        {"transfer_id": transfer.id, "amount_minor": amount_minor, "release_type": release_type},
    )
    seller = ctx.session.get(User, int(locked.seller_id))
    if seller is not None:
        seller.completed_sales_count = int(seller.completed_sales_count or 0) + 1
    ctx.session.commit()

    logger.info("payout_released order_id=%s transfer_id=%s release_type=%s", locked.id, transfer.id, release_type)
    record_timeline(
        locked.id,
        "PAYOUT_RELEASED",
        "Funds released to the seller",
        actor="admin" if release_type in ("manual", "bulk") else "system",
        meta={"transfer_id": transfer.id, "amount_minor": amount_minor, "release_type": release_type},
        event_id=timeline_event_id("PAYOUT_RELEASED", locked.id),
    )
    ctx.notify(
        "Order.PayoutReleased",
        user_id=int(locked.seller_id),
        order_id=locked.id,
        payload={"transfer_id": transfer.id, "amount_minor": amount_minor},
        dedupe_key=f"payout-released:{locked.id}",
    )
    return locked
