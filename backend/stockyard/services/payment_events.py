"""Payment milestones driven by processor webhooks and client confirmation.

Each processor event is recorded once in ``webhook_events`` keyed by
``(provider, event_id)``; replays of a processed event are acknowledged
without touching the order. Milestone fields (``paid_at``, chargeback state)
are checked before writing so a late duplicate never moves money state.
"""
from __future__ import annotations

import hashlib
import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from stockyard.integrations.payments.base import WebhookEventPayload
from stockyard.models import Listing, ListingReservation, Order, WebhookEvent
from stockyard.services.audit_service import add_audit, record_audit
from stockyard.services.checkout_sweep import cancel_order
from stockyard.services.engine_context import EngineContext
from stockyard.services.fulfillment_service import load_order, party_role
from stockyard.services.order_errors import (
    ConflictAlreadyApplied,
    Forbidden,
    InvalidTransition,
    ValidationError,
)
from stockyard.services.order_status import (
    AWAITING_PAYMENT_STATUSES,
    REGULATORY_HOLD_REASONS,
    LegacyStatus,
    PayoutHoldReason,
    TransactionStatus,
    effective_status,
    hold_reason,
    is_closed,
    legacy_status,
)
from stockyard.services.release_eligibility import derive_hold_reason
from stockyard.services.timeline_service import record_timeline, timeline_event_id

logger = logging.getLogger(__name__)

PROVIDER = "stripe"

PAYMENT_SUCCEEDED_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
PAYMENT_FAILED_EVENTS = ("checkout.session.async_payment_failed", "checkout.session.expired")
CHARGEBACK_OPENED_EVENTS = ("charge.dispute.created",)
CHARGEBACK_CLOSED_EVENTS = ("charge.dispute.closed",)

MANUAL_PAYMENT_METHODS = ("bank_transfer", "wire")


def apply_paid_milestone(ctx: EngineContext, order: Order, *, source: str, payment_intent_id: str | None = None) -> bool:
    """Stage the paid milestone on ``order`` in the caller's transaction.

    Returns ``False`` when ``paid_at`` is already set.
    """
    if order.paid_at:
        return False
    if is_closed(order):
        raise InvalidTransition(
            "Order is closed and cannot be marked paid",
            current_status=effective_status(order).value,
            allowed_statuses=[TransactionStatus.PENDING_PAYMENT.value],
        )
    now = ctx.now()
    order.paid_at = now
    if payment_intent_id:
        order.payment_intent_id = payment_intent_id
    manual = (order.payment_method or "") in MANUAL_PAYMENT_METHODS or source == "admin"
    order.status = (LegacyStatus.PAID_HELD if manual else LegacyStatus.PAID).value
    order.dispute_deadline_at = now + timedelta(hours=int(ctx.settings.escrow_dispute_window_hours))

    listing = None
    if order.listing_id:
        listing = Listing.query.filter_by(id=int(order.listing_id)).with_for_update().populate_existing().first()
    if listing is not None:
        if listing.requires_transfer_compliance:
            order.requires_transfer_compliance = True
        code = (listing.payout_hold_code or "").strip()
        if code in REGULATORY_HOLD_REASONS:
            order.compliance_hold_code = code
        if int(listing.quantity_available or 0) <= 0:
            listing.status = "sold"
            listing.sold_at = listing.sold_at or now
        if listing.purchase_reserved_by_order_id == int(order.id):
            listing.purchase_reserved_by_order_id = None
    reservation = ListingReservation.query.filter_by(order_id=int(order.id)).first()
    if reservation is not None:
        ctx.session.delete(reservation)

    order.transaction_status = (
        TransactionStatus.AWAITING_TRANSFER_COMPLIANCE
        if order.requires_transfer_compliance
        else TransactionStatus.FULFILLMENT_REQUIRED
    ).value
    if hold_reason(order) == PayoutHoldReason.NONE.value:
        order.payout_hold_reason = derive_hold_reason(order, now)
    order.updated_at = now
    return True


def _after_paid(ctx: EngineContext, order: Order, source: str) -> None:
    record_timeline(order.id, "PAYMENT_CONFIRMED", "Payment received and held in custody", actor="system", meta={"source": source})
    for user_id, event in ((order.seller_id, "Order.PaymentReceived"), (order.buyer_id, "Order.PaymentConfirmed")):
        ctx.notify(event, user_id=int(user_id), order_id=order.id, dedupe_key=f"{event.lower()}:{order.id}")


def confirm_payment(ctx: EngineContext, order_id: int, actor) -> Order:
    """Buyer-side confirmation after checkout; checks the session with the processor."""
    order = load_order(order_id, lock=True)
    if party_role(order, actor) != "buyer":
        raise Forbidden("Only the buyer of record may confirm payment")
    if order.paid_at:
        raise ConflictAlreadyApplied("Payment already confirmed", order=order)
    if not order.checkout_session_id:
        raise ValidationError("Order has no checkout session", code="CHECKOUT_SESSION_MISSING")
    info = ctx.payments().retrieve_checkout_session(order.checkout_session_id)
    if info.payment_status != "paid":
        raise InvalidTransition(
            "Checkout session is not paid yet",
            code="PAYMENT_NOT_COMPLETE",
            current_status=effective_status(order).value,
            allowed_statuses=[TransactionStatus.PENDING_PAYMENT.value],
            details={"session_status": info.status, "payment_status": info.payment_status},
        )
    intent = (info.raw or {}).get("payment_intent") if isinstance(info.raw, dict) else None
    apply_paid_milestone(ctx, order, source="client", payment_intent_id=intent)
    ctx.session.commit()
    _after_paid(ctx, order, "client")
    return order


def force_mark_paid(ctx: EngineContext, order_id: int, admin, *, note: str = "") -> Order:
    """Admin confirmation that a bank transfer or wire arrived."""
    order = load_order(order_id, lock=True)
    if order.paid_at:
        raise ConflictAlreadyApplied("Order already marked paid", order=order)
    if legacy_status(order) not in (LegacyStatus.AWAITING_BANK_TRANSFER, LegacyStatus.AWAITING_WIRE):
        raise InvalidTransition(
            "Only orders awaiting a bank transfer or wire can be marked paid",
            current_status=(order.status or ""),
            allowed_statuses=[LegacyStatus.AWAITING_BANK_TRANSFER.value, LegacyStatus.AWAITING_WIRE.value],
        )
    apply_paid_milestone(ctx, order, source="admin")
    order.last_updated_by_role = "admin"
    add_audit(admin.id, "order_mark_paid", order.id, {"note": (note or "")[:500], "payment_method": order.payment_method})
    ctx.session.commit()
    _after_paid(ctx, order, "admin")
    return order


def _object(event: WebhookEventPayload) -> dict:
    return event.data if isinstance(event.data, dict) else {}


def _order_for_session(obj: dict) -> Order | None:
    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    raw_id = str(metadata.get("order_id") or "").strip()
    if raw_id.isdigit():
        order = Order.query.filter_by(id=int(raw_id)).first()
        if order is not None:
            return order
    session_id = str(obj.get("id") or "").strip()
    if session_id:
        return Order.query.filter_by(checkout_session_id=session_id).first()
    return None


def _order_for_charge(obj: dict) -> Order | None:
    intent = str(obj.get("payment_intent") or "").strip()
    if not intent:
        return None
    return Order.query.filter_by(payment_intent_id=intent).first()


def _flag_payment_after_close(ctx: EngineContext, order: Order, event: WebhookEventPayload, obj: dict) -> None:
    """Leave a closed order as it is but surface the captured funds to admins."""
    order_id = int(order.id)
    meta = {
        "event_id": event.id,
        "status": effective_status(order).value,
        "payment_intent": obj.get("payment_intent"),
        "checkout_session_id": obj.get("id"),
    }
    ctx.session.rollback()
    logger.warning("payment_after_close order_id=%s event_id=%s status=%s", order_id, event.id, meta["status"])
    record_audit(None, "payment_after_close", order_id, meta)
    record_timeline(
        order_id,
        "PAYMENT_AFTER_CLOSE",
        "Payment captured after the order was closed; refund or reconcile manually",
        actor="system",
        visibility="admin",
        meta=meta,
        event_id=timeline_event_id("PAYMENT_AFTER_CLOSE", order_id, event.id),
    )


def _handle_payment_succeeded(ctx: EngineContext, event: WebhookEventPayload) -> tuple[str, Order | None]:
    obj = _object(event)
    order = _order_for_session(obj)
    if order is None:
        return "ignored_unknown_order", None
    if event.type == "checkout.session.completed" and (obj.get("payment_status") or "paid") != "paid":
        # Async methods complete later through async_payment_succeeded
        return "ignored_payment_pending", order
    order = load_order(order.id, lock=True)
    if not order.paid_at and is_closed(order):
        _flag_payment_after_close(ctx, order, event, obj)
        return "ignored_order_closed", order
    if not apply_paid_milestone(ctx, order, source="webhook", payment_intent_id=obj.get("payment_intent")):
        return "already_applied", order
    ctx.session.commit()
    _after_paid(ctx, order, "webhook")
    return "paid", order


def _handle_payment_failed(ctx: EngineContext, event: WebhookEventPayload) -> tuple[str, Order | None]:
    order = _order_for_session(_object(event))
    if order is None:
        return "ignored_unknown_order", None
    if order.paid_at or legacy_status(order) not in AWAITING_PAYMENT_STATUSES:
        return "ignored_not_pending", order
    reason = "checkout_expired" if event.type.endswith("expired") else "payment_failed"
    return "cancelled", cancel_order(ctx, order.id, reason=reason)


def _handle_chargeback_opened(ctx: EngineContext, event: WebhookEventPayload) -> tuple[str, Order | None]:
    order = _order_for_charge(_object(event))
    if order is None:
        return "ignored_unknown_order", None
    order = load_order(order.id, lock=True)
    if (order.chargeback_status or "none") == "open":
        return "already_applied", order
    now = ctx.now()
    order.chargeback_status = "open"
    order.admin_hold = True
    order.admin_hold_reason = "Chargeback opened by card issuer"
    order.payout_hold_reason = PayoutHoldReason.CHARGEBACK.value
    order.updated_at = now
    ctx.session.commit()
    record_timeline(order.id, "CHARGEBACK_OPENED", "Card issuer opened a chargeback", actor="system", visibility="admin")
    ctx.notify("Order.ChargebackOpened", user_id=int(order.seller_id), order_id=order.id, dedupe_key=f"chargeback-opened:{order.id}")
    return "chargeback_opened", order


def _handle_chargeback_closed(ctx: EngineContext, event: WebhookEventPayload) -> tuple[str, Order | None]:
    obj = _object(event)
    order = _order_for_charge(obj)
    if order is None:
        return "ignored_unknown_order", None
    order = load_order(order.id, lock=True)
    outcome = "won" if str(obj.get("status") or "").lower() == "won" else "lost"
    if (order.chargeback_status or "none") == outcome:
        return "already_applied", order
    order.chargeback_status = outcome
    # The admin hold placed on open stays until an admin clears it
    order.payout_hold_reason = derive_hold_reason(order, ctx.now())
    order.updated_at = ctx.now()
    ctx.session.commit()
    record_timeline(
        order.id,
        "CHARGEBACK_CLOSED",
        f"Chargeback closed ({outcome})",
        actor="system",
        visibility="admin",
        meta={"outcome": outcome},
    )
    return f"chargeback_{outcome}", order


HANDLERS = {}
HANDLERS.update({name: _handle_payment_succeeded for name in PAYMENT_SUCCEEDED_EVENTS})
HANDLERS.update({name: _handle_payment_failed for name in PAYMENT_FAILED_EVENTS})
HANDLERS.update({name: _handle_chargeback_opened for name in CHARGEBACK_OPENED_EVENTS})
HANDLERS.update({name: _handle_chargeback_closed for name in CHARGEBACK_CLOSED_EVENTS})


def payload_hash(raw: bytes) -> str:
    return hashlib.sha256(raw or b"").hexdigest()


def _claim_event(ctx: EngineContext, event: WebhookEventPayload, *, request_id: str | None, body_hash: str | None) -> tuple[WebhookEvent, bool]:
    existing = WebhookEvent.query.filter_by(provider=PROVIDER, event_id=event.id).first()
    if existing is not None:
        return existing, existing.status not in ("processed", "ignored")
    row = WebhookEvent(
        provider=PROVIDER,
        event_id=event.id[:128],
        event_type=(event.type or "")[:80],
        status="received",
        request_id=(request_id or "")[:64] or None,
        payload_hash=body_hash,
    )
    try:
        with ctx.session.begin_nested():
            ctx.session.add(row)
            ctx.session.flush()
    except IntegrityError:
        existing = WebhookEvent.query.filter_by(provider=PROVIDER, event_id=event.id).first()
        if existing is None:
            raise
        return existing, False
    ctx.session.commit()
    return row, True


def process_webhook_event(ctx: EngineContext, event: WebhookEventPayload, *, request_id: str | None = None, body_hash: str | None = None) -> dict:
    if not event.id:
        raise ValidationError("Webhook event id missing", code="INVALID_PAYLOAD")
    row, fresh = _claim_event(ctx, event, request_id=request_id, body_hash=body_hash)
    if not fresh:
        return {"ok": True, "duplicate": True, "event_id": event.id, "status": row.status}

    handler = HANDLERS.get(event.type)
    if handler is None:
        row.status = "ignored"
        row.processed_at = ctx.now()
        ctx.session.commit()
        return {"ok": True, "event_id": event.id, "result": "ignored_event_type"}

    event_row_id = row.id
    try:
        result, order = handler(ctx, event)
    except Exception as exc:
        ctx.session.rollback()
        failed = ctx.session.get(WebhookEvent, event_row_id)
        if failed is not None:
            failed.status = "failed"
            failed.error = f"{type(exc).__name__}: {exc}"[:2000]
            ctx.session.commit()
        logger.exception("stripe_webhook_failed event_id=%s type=%s", event.id, event.type)
        raise

    row = ctx.session.get(WebhookEvent, event_row_id)
    row.status = "ignored" if result.startswith("ignored") else "processed"
    row.order_id = int(order.id) if order is not None else None
    row.processed_at = ctx.now()
    ctx.session.commit()
    logger.info("stripe_webhook_processed event_id=%s type=%s result=%s", event.id, event.type, result)
    return {
        "ok": True,
        "event_id": event.id,
        "result": result,
        "order_id": int(order.id) if order is not None else None,
    }
