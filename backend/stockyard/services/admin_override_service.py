"""Admin controls over custody: holds, payout approval, notes and bulk actions."""
from __future__ import annotations

import logging
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from stockyard.integrations.common import ProviderRequestError
from stockyard.models import Order, User
from stockyard.services.audit_service import add_audit
from stockyard.services.engine_context import EngineContext
from stockyard.services.fulfillment_service import load_order
from stockyard.services.order_errors import (
    ConflictAlreadyApplied,
    InvalidTransition,
    OrderEngineError,
    PartialBulkFailure,
    ValidationError,
)
from stockyard.services.order_queries import OrderFilter, find_orders
from stockyard.services.order_status import (
    ACTIVE_DISPUTE_STATUSES,
    MARKETPLACE_CLEARABLE_HOLD_REASONS,
    PayoutHoldReason,
    dispute_status,
    effective_status,
    hold_reason,
)
from stockyard.services.payout_release import release_payout
from stockyard.services.release_eligibility import derive_hold_reason
from stockyard.services.timeline_service import record_timeline, timeline_event_id

logger = logging.getLogger(__name__)

NOTES_KEPT = 50


class BulkAction(str, Enum):
    HOLD = "hold"
    UNHOLD = "unhold"
    RELEASE = "release"


def _ensure_not_released(order: Order) -> None:
    if order.transfer_id:
        raise InvalidTransition(
            "Funds were already released; holds no longer apply",
            code="ORDER_ALREADY_RELEASED",
            current_status=effective_status(order).value,
            allowed_statuses=[],
        )


def _append_note(order: Order, admin: User, kind: str, text: str, now) -> None:
    text = (text or "").strip()
    if not text:
        return
    notes = order.admin_action_notes
    notes.append({"at": now.isoformat(), "admin_id": int(admin.id), "kind": kind, "note": text[:1000]})
    order.admin_action_notes = notes[-NOTES_KEPT:]


def set_admin_hold(ctx: EngineContext, order_id: int, admin: User, *, hold: bool, reason: str = "", notes: str = "") -> Order:
    order = load_order(order_id, lock=True)
    _ensure_not_released(order)
    reason = (reason or "").strip()
    if hold and not reason:
        raise ValidationError("A reason is required to place an admin hold", code="HOLD_REASON_REQUIRED")
    if bool(order.admin_hold) == bool(hold) and (not hold or (order.admin_hold_reason or "") == reason[:240]):
        ctx.session.rollback()
        raise ConflictAlreadyApplied("Admin hold already in that state", order=order)

    now = ctx.now()
    previous = hold_reason(order)
    order.admin_hold = bool(hold)
    order.admin_hold_reason = reason[:240] if hold else None
    order.payout_hold_reason = PayoutHoldReason.ADMIN_HOLD.value if hold else derive_hold_reason(order, now)
    _append_note(order, admin, "hold" if hold else "unhold", notes or reason, now)
    order.last_updated_by_role = "admin"
    order.updated_at = now
    audit = add_audit(
        admin.id,
        "admin_hold_set" if hold else "admin_hold_cleared",
        order.id,
        {"reason": reason, "previous_hold_reason": previous, "hold_reason": order.payout_hold_reason},
    )
    ctx.session.flush()
    audit_id = int(audit.id)
    ctx.session.commit()

    event_type = "ADMIN_HOLD_PLACED" if hold else "ADMIN_HOLD_CLEARED"
    record_timeline(
        order.id,
        event_type,
        "Payout placed on hold by the marketplace" if hold else "Marketplace hold removed",
        actor="admin",
        meta={"reason": reason} if hold else {},
        event_id=timeline_event_id(event_type, order.id, audit_id),
    )
    return order


def _only_clearable_hold(order: Order) -> bool:
    if order.admin_hold:
        return False
    if dispute_status(order) in ACTIVE_DISPUTE_STATUSES:
        return False
    if (order.chargeback_status or "none") == "open":
        return False
    return hold_reason(order) in MARKETPLACE_CLEARABLE_HOLD_REASONS


def set_payout_approval(ctx: EngineContext, order_id: int, admin: User, *, approved: bool, note: str = "") -> Order:
    """Record the marketplace review decision for species-policy holds.

    Approval clears the stored hold reason only when a review code is the
    sole thing holding the payout. Revoking recomputes the reason, which
    brings the review code back.
    """
    order = load_order(order_id, lock=True)
    _ensure_not_released(order)
    if order.admin_payout_approval is bool(approved):
        ctx.session.rollback()
        raise ConflictAlreadyApplied("Payout approval already recorded", order=order)

    now = ctx.now()
    previous = hold_reason(order)
    clearable = _only_clearable_hold(order)
    order.admin_payout_approval = bool(approved)
    order.admin_payout_approved_by = int(admin.id) if approved else None
    order.admin_payout_approved_at = now if approved else None
    if not approved or clearable:
        order.payout_hold_reason = derive_hold_reason(order, now)
    _append_note(order, admin, "approval" if approved else "approval_revoked", note, now)
    order.admin_reviewed_at = now
    order.last_updated_by_role = "admin"
    order.updated_at = now
    audit = add_audit(
        admin.id,
        "payout_approved" if approved else "payout_approval_revoked",
        order.id,
        {"previous_hold_reason": previous, "hold_reason": order.payout_hold_reason, "note": (note or "")[:500]},
    )
    ctx.session.flush()
    audit_id = int(audit.id)
    ctx.session.commit()

    event_type = "PAYOUT_APPROVED" if approved else "PAYOUT_APPROVAL_REVOKED"
    record_timeline(
        order.id,
        event_type,
        "Marketplace review approved" if approved else "Marketplace review approval revoked",
        actor="admin",
        visibility="admin",
        event_id=timeline_event_id(event_type, order.id, audit_id),
    )
    return order


def add_admin_note(ctx: EngineContext, order_id: int, admin: User, note: str) -> Order:
    note = (note or "").strip()
    if not note:
        raise ValidationError("Note text is required", code="NOTE_REQUIRED")
    order = load_order(order_id, lock=True)
    now = ctx.now()
    _append_note(order, admin, "note", note, now)
    order.updated_at = now
    add_audit(admin.id, "admin_note_added", order.id, {"note": note[:500]})
    ctx.session.commit()
    return order


def _bulk_targets(ctx: EngineContext, order_ids, filters) -> list[int]:
    cap = ctx.settings.bulk_max_items
    if order_ids:
        seen: list[int] = []
        for raw in order_ids:
            try:
                oid = int(raw)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid order id: {raw!r}", code="INVALID_ORDER_ID")
            if oid not in seen:
                seen.append(oid)
        if len(seen) > cap:
            raise ValidationError(
                f"Bulk actions are limited to {cap} orders",
                code="BULK_LIMIT_EXCEEDED",
                details={"max_items": cap, "requested": len(seen)},
            )
        return seen
    if filters:
        return [int(o.id) for o in find_orders(OrderFilter.from_dict(filters), limit=cap)]
    raise ValidationError("Provide order_ids or a filter", code="BULK_TARGETS_REQUIRED")


def _bulk_one(ctx: EngineContext, admin: User, action: BulkAction, order_id: int, reason: str) -> Order:
    if action == BulkAction.HOLD:
        return set_admin_hold(ctx, order_id, admin, hold=True, reason=reason or "bulk hold")
    if action == BulkAction.UNHOLD:
        return set_admin_hold(ctx, order_id, admin, hold=False)
    return release_payout(ctx, order_id, actor_id=int(admin.id), release_type="bulk")


def bulk_action(ctx: EngineContext, admin: User, *, action: str, order_ids=None, filters: dict | None = None, reason: str = "") -> dict:
    """Apply one action to many orders; a failing order never stops the rest."""
    try:
        step = BulkAction(str(action or "").strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown bulk action: {action}",
            code="INVALID_BULK_ACTION",
            details={"allowed": [a.value for a in BulkAction]},
        )
    targets = _bulk_targets(ctx, order_ids, filters)
    batch = ctx.settings.bulk_batch_size

    results: list[dict] = []
    for start in range(0, len(targets), batch):
        for order_id in targets[start:start + batch]:
            item = {"order_id": order_id, "ok": True}
            try:
                order = _bulk_one(ctx, admin, step, order_id, reason)
                item["effective_status"] = effective_status(order).value
            except ConflictAlreadyApplied:
                item["already_applied"] = True
            except OrderEngineError as exc:
                ctx.session.rollback()
                item.update(ok=False, error=exc.code, message=exc.message)
                if exc.details.get("reason"):
                    item["reason"] = exc.details["reason"]
            except (ProviderRequestError, SQLAlchemyError) as exc:
                ctx.session.rollback()
                logger.exception("bulk_order_action_failed action=%s order_id=%s", step.value, order_id)
                item.update(ok=False, error="INTERNAL_ERROR", message=str(exc)[:240])
            results.append(item)

    succeeded = sum(1 for r in results if r["ok"])
    failed = len(results) - succeeded
    logger.info("bulk_order_action action=%s requested=%s succeeded=%s failed=%s", step.value, len(targets), succeeded, failed)
    summary = {"action": step.value, "requested": len(targets), "succeeded": succeeded, "failed": failed}
    if failed:
        return PartialBulkFailure(
            f"{failed} of {len(targets)} orders could not be processed",
            results=results,
            details=summary,
        ).to_dict()
    return {"ok": True, **summary, "results": results}
