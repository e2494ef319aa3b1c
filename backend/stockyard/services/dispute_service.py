"""Buyer-protection disputes.

Dispute state moves ``none -> open -> (needs_evidence <-> under_review) ->
resolved_*`` or ``-> cancelled``. Resolution is admin-only, needs a written
note and is final for the dispute.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum

from stockyard.integrations.common import ProviderRequestError
from stockyard.models import Order, User
from stockyard.services.audit_service import add_audit
from stockyard.services.engine_context import EngineContext
from stockyard.services.fulfillment_service import load_order, party_role
from stockyard.services.order_errors import (
    DependencyUnavailable,
    Forbidden,
    InvalidTransition,
    OrderEngineError,
    ValidationError,
)
from stockyard.services.order_status import (
    ACTIVE_DISPUTE_STATUSES,
    DisputeStatus,
    LegacyStatus,
    PayoutHoldReason,
    TransactionStatus,
    delivery_marked,
    dispute_status,
    effective_status,
    is_closed,
)
from stockyard.services.payout_release import release_payout, to_minor
from stockyard.services.release_eligibility import derive_hold_reason
from stockyard.services.timeline_service import record_timeline, timeline_event_id

logger = logging.getLogger(__name__)

D = DisputeStatus


class DisputeReason(str, Enum):
    DEATH = "death"
    SERIOUS_ILLNESS = "serious_illness"
    INJURY = "injury"
    ESCAPE = "escape"
    WRONG_ANIMAL = "wrong_animal"


class EvidenceType(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"
    VET_REPORT = "vet_report"
    DELIVERY_DOC = "delivery_doc"
    TAG_MICROCHIP = "tag_microchip"


class DisputeAction(str, Enum):
    REVIEW = "review"
    REQUEST_EVIDENCE = "request_evidence"
    EVIDENCE_COMPLETE = "evidence_complete"
    CANCEL = "cancel"


class Resolution(str, Enum):
    RELEASE = "release"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"


# Hours after delivery a claim may be filed; reasons not listed run to the end
# of the protection window.
CLAIM_DEADLINE_HOURS = {
    DisputeReason.DEATH: 48,
    DisputeReason.WRONG_ANIMAL: 24,
    DisputeReason.INJURY: 72,
    DisputeReason.ESCAPE: 72,
}
VET_REPORT_REASONS = frozenset({DisputeReason.DEATH, DisputeReason.SERIOUS_ILLNESS})

DISPUTE_TRANSITIONS: dict[tuple[DisputeStatus, DisputeAction], DisputeStatus] = {
    (D.OPEN, DisputeAction.REVIEW): D.UNDER_REVIEW,
    (D.NEEDS_EVIDENCE, DisputeAction.REVIEW): D.UNDER_REVIEW,
    (D.OPEN, DisputeAction.REQUEST_EVIDENCE): D.NEEDS_EVIDENCE,
    (D.UNDER_REVIEW, DisputeAction.REQUEST_EVIDENCE): D.NEEDS_EVIDENCE,
    (D.NEEDS_EVIDENCE, DisputeAction.EVIDENCE_COMPLETE): D.OPEN,
    (D.OPEN, DisputeAction.CANCEL): D.CANCELLED,
    (D.NEEDS_EVIDENCE, DisputeAction.CANCEL): D.CANCELLED,
    (D.UNDER_REVIEW, DisputeAction.CANCEL): D.CANCELLED,
}

RESOLVED_BY = {
    Resolution.RELEASE: D.RESOLVED_RELEASE,
    Resolution.REFUND: D.RESOLVED_REFUND,
    Resolution.PARTIAL_REFUND: D.RESOLVED_PARTIAL_REFUND,
}

FRAUD_RISK_INCREMENT = 20
FRAUD_LIMIT = 2


def _dispute_step(order: Order, action: DisputeAction) -> DisputeStatus:
    current = dispute_status(order)
    target = DISPUTE_TRANSITIONS.get((current, action))
    if target is None:
        allowed = sorted(s.value for (s, a) in DISPUTE_TRANSITIONS if a == action)
        raise InvalidTransition(
            f"Cannot {action.value.replace('_', ' ')} a dispute that is {current.value}",
            code="INVALID_DISPUTE_TRANSITION",
            current_status=current.value,
            allowed_statuses=allowed,
        )
    return target


def _parse_evidence(items, now) -> list[dict]:
    if not isinstance(items, list):
        raise ValidationError("evidence must be a list", code="INVALID_EVIDENCE")
    out = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("Each evidence item needs a type and url", code="INVALID_EVIDENCE")
        try:
            kind = EvidenceType(str(item.get("type") or "").strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown evidence type: {item.get('type')}", code="INVALID_EVIDENCE")
        url = str(item.get("url") or "").strip()
        if not url:
            raise ValidationError("Evidence url required", code="INVALID_EVIDENCE")
        entry = {"type": kind.value, "url": url[:500], "uploaded_at": now.isoformat()}
        if item.get("description"):
            entry["description"] = str(item["description"]).strip()[:500]
        out.append(entry)
    return out


def _has(evidence: list[dict], *types: EvidenceType) -> bool:
    wanted = {t.value for t in types}
    return any(e.get("type") in wanted for e in evidence)


def _delivery_reference(order: Order):
    return order.delivery_confirmed_at or order.delivered_at


def claim_window_end(order: Order):
    """End of the buyer's claim window: the protection snapshot, else the payment dispute deadline."""
    return order.protection_ends_at or order.dispute_deadline_at


def _post_dispute_status(order: Order) -> TransactionStatus:
    if (order.pickup or {}).get("confirmed_at"):
        return TransactionStatus.PICKED_UP
    return TransactionStatus.DELIVERED_PENDING_CONFIRMATION


def open_dispute(
    ctx: EngineContext,
    order_id: int,
    actor: User | None,
    *,
    reason,
    evidence,
    notes: str = "",
    admin_override: bool = False,
) -> Order:
    order = load_order(order_id, lock=True)
    is_admin = actor is not None and (actor.role or "") == "admin"
    if party_role(order, actor) != "buyer" and not (is_admin and admin_override):
        raise Forbidden("Only the buyer of record may open a dispute")
    try:
        claim = DisputeReason(str(reason or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown dispute reason: {reason}", code="INVALID_DISPUTE_REASON")

    current = dispute_status(order)
    if current != D.NONE:
        raise InvalidTransition(
            "A dispute already exists for this order",
            code="DISPUTE_EXISTS",
            current_status=current.value,
            allowed_statuses=[D.NONE.value],
        )
    if is_closed(order):
        raise InvalidTransition(
            "Order is closed; disputes are no longer accepted",
            current_status=effective_status(order).value,
            allowed_statuses=[TransactionStatus.DELIVERED_PENDING_CONFIRMATION.value, TransactionStatus.PICKED_UP.value],
        )
    if not delivery_marked(order):
        raise InvalidTransition(
            "Delivery has not been marked or confirmed yet",
            current_status=effective_status(order).value,
            allowed_statuses=[TransactionStatus.DELIVERED_PENDING_CONFIRMATION.value, TransactionStatus.PICKED_UP.value],
        )

    now = ctx.now()
    buyer = ctx.session.get(User, int(order.buyer_id))
    if not (is_admin and admin_override):
        if buyer is not None and not buyer.protection_eligible:
            raise Forbidden("Buyer is no longer eligible for protected transactions", code="PROTECTION_INELIGIBLE")
        window_end = claim_window_end(order)
        if window_end is None:
            raise ValidationError("This order has no buyer protection window", code="PROTECTION_NOT_AVAILABLE")
        if now >= window_end:
            raise ValidationError("Protection window has ended", code="PROTECTION_WINDOW_ENDED")
        delivered = _delivery_reference(order)
        limit = CLAIM_DEADLINE_HOURS.get(claim)
        if limit is not None and delivered is not None and now > delivered + timedelta(hours=limit):
            raise ValidationError(
                f"{claim.value.replace('_', ' ').capitalize()} claims must be filed within {limit} hours of delivery",
                code="CLAIM_DEADLINE_PASSED",
            )

    items = _parse_evidence(evidence, now)
    if not _has(items, EvidenceType.PHOTO, EvidenceType.VIDEO):
        raise ValidationError("At least one photo or video is required", code="EVIDENCE_REQUIRED")
    status = D.NEEDS_EVIDENCE if claim in VET_REPORT_REASONS and not _has(items, EvidenceType.VET_REPORT) else D.OPEN

    order.dispute_status = status.value
    order.dispute_reason = claim.value
    order.dispute_notes = (notes or "").strip()[:4000] or None
    order.dispute_evidence = items
    order.dispute_opened_at = now
    order.transaction_status = TransactionStatus.DISPUTE_OPENED.value
    order.status = LegacyStatus.DISPUTED.value
    order.payout_hold_reason = derive_hold_reason(order, now)
    order.last_updated_by_role = "admin" if is_admin else "buyer"
    order.updated_at = now
    if buyer is not None:
        buyer.claims_count = int(buyer.claims_count or 0) + 1
    ctx.session.commit()

    record_timeline(
        order.id,
        "DISPUTE_OPENED",
        f"Buyer opened a dispute ({claim.value})",
        actor="admin" if is_admin else "buyer",
        meta={"reason": claim.value, "evidence_count": len(items), "status": status.value},
    )
    ctx.notify(
        "Order.DisputeOpened",
        user_id=int(order.seller_id),
        order_id=order.id,
        payload={"reason": claim.value},
        dedupe_key=f"dispute-opened:{order.id}",
    )
    return order


def add_evidence(ctx: EngineContext, order_id: int, actor: User | None, evidence) -> Order:
    order = load_order(order_id, lock=True)
    if party_role(order, actor) != "buyer":
        raise Forbidden("Only the buyer of record may add dispute evidence")
    current = dispute_status(order)
    if current not in ACTIVE_DISPUTE_STATUSES:
        raise InvalidTransition(
            "Evidence can only be added to an active dispute",
            code="INVALID_DISPUTE_TRANSITION",
            current_status=current.value,
            allowed_statuses=[s.value for s in ACTIVE_DISPUTE_STATUSES],
        )
    now = ctx.now()
    items = _parse_evidence(evidence, now)
    if not items:
        raise ValidationError("At least one evidence item is required", code="EVIDENCE_REQUIRED")

    stored = order.dispute_evidence + items
    order.dispute_evidence = stored
    if current == D.NEEDS_EVIDENCE and _has(stored, EvidenceType.VET_REPORT):
        order.dispute_status = _dispute_step(order, DisputeAction.EVIDENCE_COMPLETE).value
    order.last_updated_by_role = "buyer"
    order.updated_at = now
    ctx.session.commit()

    record_timeline(
        order.id,
        "DISPUTE_EVIDENCE_ADDED",
        f"Buyer added {len(items)} evidence item(s)",
        actor="buyer",
        visibility="admin",
        event_id=timeline_event_id("DISPUTE_EVIDENCE_ADDED", order.id, len(stored)),
    )
    return order


def review_dispute(ctx: EngineContext, order_id: int, admin: User, *, action: str = "review", note: str = "") -> Order:
    order = load_order(order_id, lock=True)
    try:
        step = DisputeAction(str(action or "review").strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown review action: {action}", code="INVALID_ACTION")
    if step not in (DisputeAction.REVIEW, DisputeAction.REQUEST_EVIDENCE):
        raise ValidationError(f"Unknown review action: {action}", code="INVALID_ACTION")
    target = _dispute_step(order, step)

    now = ctx.now()
    order.dispute_status = target.value
    order.admin_reviewed_at = now
    order.last_updated_by_role = "admin"
    order.updated_at = now
    audit = add_audit(admin.id, f"dispute_{step.value}", order.id, {"note": (note or "")[:500]})
    ctx.session.flush()
    step_seq = int(audit.id)
    ctx.session.commit()

    record_timeline(
        order.id,
        "DISPUTE_" + target.value.upper(),
        "Dispute under review" if target == D.UNDER_REVIEW else "More evidence requested",
        actor="admin",
        event_id=timeline_event_id("DISPUTE_" + target.value.upper(), order.id, step_seq),
    )
    if target == D.NEEDS_EVIDENCE:
        ctx.notify(
            "Order.DisputeEvidenceRequested",
            user_id=int(order.buyer_id),
            order_id=order.id,
            payload={"note": (note or "")[:500]},
            dedupe_key=f"dispute-evidence-requested:{order.id}:{step_seq}",
        )
    return order


def cancel_dispute(ctx: EngineContext, order_id: int, actor: User | None) -> Order:
    order = load_order(order_id, lock=True)
    if party_role(order, actor) != "buyer":
        raise Forbidden("Only the buyer of record may cancel a dispute")
    target = _dispute_step(order, DisputeAction.CANCEL)

    now = ctx.now()
    order.dispute_status = target.value
    order.dispute_resolved_at = now
    order.transaction_status = _post_dispute_status(order).value
    order.status = (LegacyStatus.BUYER_CONFIRMED if order.buyer_confirmed_at else LegacyStatus.DELIVERED).value
    order.payout_hold_reason = derive_hold_reason(order, now)
    order.last_updated_by_role = "buyer"
    order.updated_at = now
    ctx.session.commit()

    record_timeline(order.id, "DISPUTE_CANCELLED", "Buyer withdrew the dispute", actor="buyer")
    ctx.notify(
        "Order.DisputeCancelled",
        user_id=int(order.seller_id),
        order_id=order.id,
        dedupe_key=f"dispute-cancelled:{order.id}",
    )
    return order


def _refund(ctx: EngineContext, order: Order, amount_minor: int | None, key: str, resolution: Resolution):
    provider = ctx.payments()
    if not order.payment_intent_id:
        raise ValidationError("Order has no captured payment to refund", code="PAYMENT_NOT_FOUND")
    try:
        return provider.create_refund(
            payment_intent_id=order.payment_intent_id,
            amount_minor=amount_minor,
            idempotency_key=key,
            metadata={"order_id": str(order.id), "resolution": f"dispute_{resolution.value}"},
        )
    except ProviderRequestError as exc:
        ctx.session.rollback()
        logger.exception("dispute_refund_failed order_id=%s resolution=%s", order.id, resolution.value)
        if exc.retryable:
            raise DependencyUnavailable("Payment processor did not complete the refund", code="REFUND_FAILED")
        raise OrderEngineError(str(exc), code="REFUND_REJECTED", http_status=502)


def _apply_fraud_flag(ctx: EngineContext, order: Order) -> None:
    buyer = ctx.session.get(User, int(order.buyer_id))
    if buyer is None:
        return
    buyer.fraud_count = int(buyer.fraud_count or 0) + 1
    buyer.risk_score = int(buyer.risk_score or 0) + FRAUD_RISK_INCREMENT
    if buyer.fraud_count >= FRAUD_LIMIT:
        buyer.protection_eligible = False


def resolve_dispute(
    ctx: EngineContext,
    order_id: int,
    admin: User,
    *,
    resolution,
    note: str,
    refund_amount=None,
    mark_fraudulent: bool = False,
) -> tuple[Order, dict | None]:
    """Apply the admin ruling.

    Returns ``(order, release)`` where ``release`` describes the follow-up
    seller release for a partial refund (``None`` otherwise).
    """
    order = load_order(order_id, lock=True)
    try:
        outcome = Resolution(str(resolution or "").strip().lower())
    except ValueError:
        raise ValidationError("resolution must be release, refund or partial_refund", code="INVALID_RESOLUTION")
    text = (note or "").strip()
    if not text:
        raise ValidationError("A resolution note is required", code="NOTE_REQUIRED")
    current = dispute_status(order)
    if current not in ACTIVE_DISPUTE_STATUSES:
        raise InvalidTransition(
            "Dispute is not in a resolvable state",
            code="INVALID_DISPUTE_TRANSITION",
            current_status=current.value,
            allowed_statuses=[s.value for s in ACTIVE_DISPUTE_STATUSES],
        )

    refund = None
    refund_value = None
    if outcome == Resolution.REFUND:
        refund = _refund(ctx, order, None, f"dispute-resolve:refund:{order.id}", outcome)
        refund_value = float(order.amount or 0.0)
    elif outcome == Resolution.PARTIAL_REFUND:
        try:
            refund_value = round(float(refund_amount), 2)
        except (TypeError, ValueError):
            raise ValidationError("refund_amount is required for a partial refund", code="INVALID_REFUND_AMOUNT")
        if refund_value <= 0 or refund_value >= float(order.amount or 0.0):
            raise ValidationError("Partial refund must be more than zero and less than the order amount", code="INVALID_REFUND_AMOUNT")
        cents = to_minor(refund_value)
        refund = _refund(ctx, order, cents, f"dispute-resolve:partial:{order.id}:{cents}", outcome)

    now = ctx.now()
    order.dispute_status = RESOLVED_BY[outcome].value
    order.dispute_resolved_at = now
    order.dispute_resolution = {
        "outcome": outcome.value,
        "admin_id": int(admin.id),
        "note": text[:2000],
        "refund_amount": refund_value,
        "refund_id": refund.id if refund is not None else None,
        "mark_fraudulent": bool(mark_fraudulent),
        "resolved_at": now.isoformat(),
    }
    order.admin_reviewed_at = now
    order.last_updated_by_role = "admin"
    order.updated_at = now

    if outcome == Resolution.REFUND:
        order.status = LegacyStatus.REFUNDED.value
        order.transaction_status = TransactionStatus.REFUNDED.value
        order.refunded_amount = refund_value
        order.refund_id = refund.id
        order.refunded_at = now
        order.payout_hold_reason = PayoutHoldReason.NONE.value
    else:
        # The ruling concludes the buyer's claim; the remaining window no longer holds funds.
        order.protection_waived_at = now
        order.status = LegacyStatus.READY_TO_RELEASE.value
        order.transaction_status = _post_dispute_status(order).value
        if outcome == Resolution.PARTIAL_REFUND:
            order.refunded_amount = refund_value
            order.refund_id = refund.id
            order.refunded_at = now
            order.seller_amount = max(0.0, round(float(order.seller_amount or 0.0) - refund_value, 2))
        order.payout_hold_reason = derive_hold_reason(order, now)

    if mark_fraudulent:
        _apply_fraud_flag(ctx, order)
    add_audit(
        admin.id,
        f"dispute_resolved_{outcome.value}",
        order.id,
        {"note": text[:500], "refund_amount": refund_value, "mark_fraudulent": bool(mark_fraudulent)},
    )
    ctx.session.commit()

    record_timeline(
        order.id,
        "DISPUTE_RESOLVED",
        f"Dispute resolved: {outcome.value.replace('_', ' ')}",
        actor="admin",
        meta={"outcome": outcome.value, "refund_amount": refund_value},
    )
    for user_id in (order.buyer_id, order.seller_id):
        ctx.notify(
            "Order.DisputeResolved",
            user_id=int(user_id),
            order_id=order.id,
            payload={"outcome": outcome.value, "refund_amount": refund_value},
            dedupe_key=f"dispute-resolved:{order.id}:{int(user_id)}",
        )

    release = None
    if outcome == Resolution.PARTIAL_REFUND and float(order.seller_amount or 0.0) > 0:
        try:
            order = release_payout(
                ctx,
                order.id,
                actor_id=int(admin.id),
                release_type="dispute_partial",
            )
            release = {"released": True, "transfer_id": order.transfer_id}
        except OrderEngineError as exc:
            # Left for the auto-release sweep
            logger.warning("dispute_partial_release_deferred order_id=%s code=%s", order.id, exc.code)
            release = {"released": False, "error": exc.code, "message": exc.message}
            order = load_order(order_id)
    return order, release
