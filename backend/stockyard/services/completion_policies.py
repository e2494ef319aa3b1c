"""Policies for stalled orders: auto-completion, admin escalation and reminders.

The predicates are pure and take the clock explicitly. ``run_completion_policies``
applies them to the open orders in one bounded pass.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from stockyard.models import Order
from stockyard.services.audit_service import add_audit
from stockyard.services.engine_context import EngineContext
from stockyard.services.fulfillment_service import load_order
from stockyard.services.order_errors import OrderEngineError
from stockyard.services.order_queries import OrderFilter, find_orders
from stockyard.services.order_status import (
    DisputeStatus,
    LegacyStatus,
    TransactionStatus,
    dispute_status,
    effective_status,
)
from stockyard.services.release_eligibility import derive_hold_reason
from stockyard.services.timeline_service import record_timeline, timeline_event_id
from stockyard.settings import EngineSettings

logger = logging.getLogger(__name__)

ESCALATION_STATUSES = frozenset(
    {
        TransactionStatus.FULFILLMENT_REQUIRED,
        TransactionStatus.DELIVERY_SCHEDULED,
        TransactionStatus.DELIVERED_PENDING_CONFIRMATION,
        TransactionStatus.READY_FOR_PICKUP,
        TransactionStatus.PICKUP_SCHEDULED,
    }
)
OPEN_LEGACY_STATUSES = (
    LegacyStatus.PAID.value,
    LegacyStatus.PAID_HELD.value,
    LegacyStatus.IN_TRANSIT.value,
    LegacyStatus.DELIVERED.value,
)


def _disputed(order) -> bool:
    return dispute_status(order) not in (DisputeStatus.NONE, DisputeStatus.CANCELLED)


def _days_since(ts: datetime | None, now: datetime) -> float:
    if ts is None:
        return 0.0
    return max(0.0, (now - ts).total_seconds() / 86400.0)


def should_auto_complete(order, now: datetime, settings: EngineSettings) -> bool:
    if effective_status(order) != TransactionStatus.DELIVERED_PENDING_CONFIRMATION:
        return False
    if _disputed(order) or getattr(order, "admin_hold", False):
        return False
    if getattr(order, "buyer_confirmed_at", None):
        return False
    delivered_at = getattr(order, "delivered_at", None)
    if delivered_at is None:
        return False
    return _days_since(delivered_at, now) >= settings.auto_complete_delivered_days


def should_escalate_to_admin(order, now: datetime, settings: EngineSettings) -> bool:
    if effective_status(order) not in ESCALATION_STATUSES:
        return False
    if _disputed(order) or getattr(order, "admin_hold", False):
        return False
    if getattr(order, "escalated_at", None):
        return False
    paid_at = getattr(order, "paid_at", None)
    if paid_at is None:
        return False
    return _days_since(paid_at, now) >= settings.escalate_to_admin_days


def _reminder_plan(order) -> tuple[str, str, datetime | None]:
    """``(kind, audience, anchor)`` for the order's current stage."""
    status = effective_status(order)
    if status == TransactionStatus.FULFILLMENT_REQUIRED:
        return "fulfillment", "seller", getattr(order, "paid_at", None)
    if status == TransactionStatus.DELIVERED_PENDING_CONFIRMATION:
        return "receipt", "buyer", getattr(order, "delivered_at", None)
    if status in (TransactionStatus.READY_FOR_PICKUP, TransactionStatus.PICKUP_SCHEDULED):
        return "pickup", "buyer", getattr(order, "paid_at", None)
    return "", "", None


def reminder_schedule(order, settings: EngineSettings) -> list[tuple[int, datetime]]:
    kind, _audience, anchor = _reminder_plan(order)
    if not kind or anchor is None:
        return []
    return [(hours, anchor + timedelta(hours=hours)) for hours in sorted(settings.reminder_hours)]


def due_reminders(order, now: datetime, settings: EngineSettings) -> list[dict]:
    """Reminders whose time has come; the dedupe key keeps each one single-shot."""
    kind, audience, _anchor = _reminder_plan(order)
    if _disputed(order):
        return []
    out = []
    for hours, at in reminder_schedule(order, settings):
        if at <= now:
            out.append(
                {
                    "kind": kind,
                    "audience": audience,
                    "hours": hours,
                    "due_at": at,
                    "dedupe_key": f"reminder:{int(order.id)}:{kind}:{hours}",
                }
            )
    return out


def _auto_complete(ctx: EngineContext, order_id: int) -> bool:
    order = load_order(order_id, lock=True)
    now = ctx.now()
    if not should_auto_complete(order, now, ctx.settings):
        ctx.session.rollback()
        return False
    order.status = LegacyStatus.READY_TO_RELEASE.value
    order.payout_hold_reason = derive_hold_reason(order, now)
    order.last_updated_by_role = "system"
    order.updated_at = now
    add_audit(None, "order_auto_completed", order.id, {"delivered_at": order.delivered_at})
    ctx.session.commit()

    record_timeline(
        order.id,
        "ORDER_AUTO_COMPLETED",
        f"No response {ctx.settings.auto_complete_delivered_days} days after delivery; order completed",
        event_id=timeline_event_id("ORDER_AUTO_COMPLETED", order.id),
    )
    ctx.notify(
        "Order.AutoCompleted",
        user_id=int(order.buyer_id),
        order_id=order.id,
        dedupe_key=f"order-auto-completed:{order.id}",
    )
    return True


def _escalate(ctx: EngineContext, order_id: int) -> bool:
    order = load_order(order_id, lock=True)
    now = ctx.now()
    if not should_escalate_to_admin(order, now, ctx.settings):
        ctx.session.rollback()
        return False
    status = effective_status(order).value
    order.escalated_at = now
    notes = order.admin_action_notes
    notes.append(
        {
            "at": now.isoformat(),
            "admin_id": None,
            "kind": "escalation",
            "note": f"Stalled in {status} for {ctx.settings.escalate_to_admin_days}+ days since payment",
        }
    )
    order.admin_action_notes = notes
    order.updated_at = now
    add_audit(None, "order_escalated", order.id, {"effective_status": status})
    ctx.session.commit()

    record_timeline(
        order.id,
        "ORDER_ESCALATED",
        "Order escalated for marketplace review",
        visibility="admin",
        meta={"effective_status": status},
        event_id=timeline_event_id("ORDER_ESCALATED", order.id),
    )
    return True


def _send_reminders(ctx: EngineContext, order: Order) -> int:
    sent = 0
    for reminder in due_reminders(order, ctx.now(), ctx.settings):
        user_id = order.seller_id if reminder["audience"] == "seller" else order.buyer_id
        ctx.notify(
            "Order.Reminder",
            user_id=int(user_id),
            order_id=order.id,
            payload={"kind": reminder["kind"], "hours": reminder["hours"]},
            dedupe_key=reminder["dedupe_key"],
        )
        sent += 1
    return sent


def run_completion_policies(ctx: EngineContext, *, limit: int = 200) -> dict:
    counters = {"scanned": 0, "auto_completed": 0, "escalated": 0, "reminders": 0, "errors": 0}
    candidates = find_orders(
        OrderFilter(statuses=OPEN_LEGACY_STATUSES, without_transfer=True),
        limit=max(1, min(int(limit), 1000)),
    )
    for order in candidates:
        counters["scanned"] += 1
        order_id = int(order.id)
        try:
            now = ctx.now()
            if should_auto_complete(order, now, ctx.settings):
                if _auto_complete(ctx, order_id):
                    counters["auto_completed"] += 1
                continue
            if should_escalate_to_admin(order, now, ctx.settings) and _escalate(ctx, order_id):
                counters["escalated"] += 1
            counters["reminders"] += _send_reminders(ctx, order)
        except (OrderEngineError, SQLAlchemyError):
            ctx.session.rollback()
            counters["errors"] += 1
            logger.exception("completion_policy_failed order_id=%s", order_id)
    return counters
