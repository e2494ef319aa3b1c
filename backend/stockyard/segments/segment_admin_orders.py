from __future__ import annotations

from flask import Blueprint, jsonify, request

from stockyard.services import admin_override_service, checkout_sweep, confirmation_service, payment_events
from stockyard.services.audit_service import audit_trail
from stockyard.services.engine_context import current_engine
from stockyard.services.fulfillment_service import load_order
from stockyard.services.order_errors import ConflictAlreadyApplied, OrderEngineError, ValidationError
from stockyard.services.order_queries import OrderFilter, find_orders
from stockyard.services.payout_release import release_payout
from stockyard.services.release_eligibility import hold_info, payout_explanation
from stockyard.services.timeline_service import list_timeline
from stockyard.utils.auth import require_admin
from stockyard.utils.idempotency import lookup_response, release_key, store_response
from stockyard.utils.order_payloads import ok_order, order_envelope, order_payload

admin_orders_bp = Blueprint("admin_orders_bp", __name__, url_prefix="/api/admin")


def _body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object", code="INVALID_BODY")
    return payload


def _flag(data: dict, name: str, default: bool = False) -> bool:
    if name not in data:
        return default
    value = data.get(name)
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@admin_orders_bp.post("/orders/<int:order_id>/confirm-delivery")
def admin_confirm_delivery(order_id: int):
    admin = require_admin()
    data = _body()
    order, changed = confirmation_service.confirm_delivery(current_engine(), order_id, admin, note=str(data.get("note") or ""))
    return ok_order(order, admin, already_applied=not changed)


@admin_orders_bp.post("/orders/<int:order_id>/admin-hold")
def admin_set_hold(order_id: int):
    admin = require_admin()
    data = _body()
    order = admin_override_service.set_admin_hold(
        current_engine(),
        order_id,
        admin,
        hold=_flag(data, "hold", True),
        reason=str(data.get("reason") or ""),
        notes=str(data.get("notes") or ""),
    )
    return ok_order(order, admin)


@admin_orders_bp.post("/orders/<int:order_id>/payout-approval")
def admin_payout_approval(order_id: int):
    admin = require_admin()
    data = _body()
    order = admin_override_service.set_payout_approval(
        current_engine(),
        order_id,
        admin,
        approved=_flag(data, "approved", True),
        note=str(data.get("note") or ""),
    )
    return ok_order(order, admin)


@admin_orders_bp.post("/orders/<int:order_id>/mark-paid")
def admin_mark_paid(order_id: int):
    admin = require_admin()
    data = _body()
    order = payment_events.force_mark_paid(current_engine(), order_id, admin, note=str(data.get("note") or ""))
    return ok_order(order, admin)


@admin_orders_bp.post("/orders/<int:order_id>/notes")
def admin_add_note(order_id: int):
    admin = require_admin()
    data = _body()
    order = admin_override_service.add_admin_note(current_engine(), order_id, admin, str(data.get("note") or ""))
    return ok_order(order, admin, status=201)


@admin_orders_bp.post("/orders/<int:order_id>/release")
def admin_release(order_id: int):
    admin = require_admin()
    data = _body()
    idem = lookup_response(int(admin.id), f"admin_release:{int(order_id)}", data)
    row = None
    if idem is not None:
        kind, found, status = idem
        if kind != "miss":
            return jsonify(found), status
        row = found

    try:
        order = release_payout(current_engine(), order_id, actor_id=int(admin.id), release_type="manual")
        body = order_envelope(order, admin, transfer_id=order.transfer_id)
    except ConflictAlreadyApplied as exc:
        order = exc.order or load_order(order_id)
        body = order_envelope(order, admin, already_applied=True, transfer_id=order.transfer_id)
    except OrderEngineError:
        if row is not None:
            release_key(row)
        raise
    if row is not None:
        store_response(row, body, 200)
    return jsonify(body), 200


@admin_orders_bp.get("/orders/<int:order_id>/payout-debug")
def admin_payout_debug(order_id: int):
    admin = require_admin()
    ctx = current_engine()
    order = load_order(order_id)
    now = ctx.now()
    return jsonify(
        {
            "ok": True,
            "order": order_payload(order, admin),
            "eligibility": hold_info(order, now),
            "explanation": payout_explanation(order, now),
            "payments_configured": ctx.payments_configured,
            "audit": audit_trail(order.id),
            "timeline": list_timeline(order.id),
        }
    ), 200


@admin_orders_bp.post("/orders/bulk")
def admin_bulk_action():
    admin = require_admin()
    data = _body()
    result = admin_override_service.bulk_action(
        current_engine(),
        admin,
        action=data.get("action"),
        order_ids=data.get("order_ids"),
        filters=data.get("filter") if isinstance(data.get("filter"), dict) else None,
        reason=str(data.get("reason") or ""),
    )
    return jsonify(result), 200


@admin_orders_bp.post("/orders/cancel-abandoned-checkouts")
def admin_cancel_abandoned_checkouts():
    require_admin()
    data = _body()
    result = checkout_sweep.cancel_abandoned_checkouts(
        current_engine(),
        limit=data.get("limit", checkout_sweep.SWEEP_LIMIT_DEFAULT),
        dry_run=_flag(data, "dry_run"),
        force=_flag(data, "force"),
    )
    return jsonify(result), 200


@admin_orders_bp.get("/orders/protected")
def admin_protected_orders():
    admin = require_admin()
    ctx = current_engine()
    try:
        limit = max(1, min(int(request.args.get("limit", 100)), 500))
    except (TypeError, ValueError):
        limit = 100
    now = ctx.now()
    rows = find_orders(OrderFilter(protected_only=True, without_transfer=True), limit=limit)
    items = []
    for order in rows:
        info = hold_info(order, now)
        items.append(
            {
                "order": order_payload(order, admin),
                "can_release": info["can_release"],
                "reason": info["reason"],
                "earliest_release_at": info["earliest_release_at"],
                "effective_status": info["effective_status"],
            }
        )
    return jsonify({"ok": True, "count": len(items), "items": items}), 200
