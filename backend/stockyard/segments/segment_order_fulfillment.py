from __future__ import annotations

from flask import Blueprint, jsonify, request

from stockyard.services import confirmation_service, fulfillment_service, payment_events
from stockyard.services.engine_context import current_engine
from stockyard.services.fulfillment_service import load_order, party_role
from stockyard.services.order_errors import Forbidden, ValidationError
from stockyard.services.release_eligibility import hold_info
from stockyard.services.timeline_service import list_timeline
from stockyard.utils.auth import is_admin, require_user
from stockyard.utils.order_payloads import ok_order

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object", code="INVALID_BODY")
    return payload


def _viewable_order(order_id: int):
    user = require_user()
    order = load_order(order_id)
    role = party_role(order, user)
    if role is None and not is_admin(user):
        raise Forbidden("Not a party to this order")
    return user, order, role or "admin"


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    user, order, _role = _viewable_order(order_id)
    return ok_order(order, user)


@orders_bp.get("/orders/<int:order_id>/timeline")
def get_order_timeline(order_id: int):
    _user, order, role = _viewable_order(order_id)
    items = list_timeline(order.id, audience=role)
    return jsonify({"ok": True, "order_id": int(order.id), "items": items}), 200


@orders_bp.get("/orders/<int:order_id>/release-eligibility")
def get_release_eligibility(order_id: int):
    _user, order, _role = _viewable_order(order_id)
    info = hold_info(order, current_engine().now())
    return jsonify({"ok": True, **info}), 200


@orders_bp.post("/orders/<int:order_id>/transport-option")
def set_transport_option(order_id: int):
    user = require_user()
    data = _body()
    order = fulfillment_service.choose_transport(current_engine(), order_id, user, data.get("transport_option"))
    return ok_order(order, user)


@orders_bp.post("/orders/<int:order_id>/set-delivery-address")
def set_delivery_address(order_id: int):
    user = require_user()
    data = _body()
    order = fulfillment_service.set_delivery_address(current_engine(), order_id, user, data.get("address"))
    return ok_order(order, user)


@orders_bp.post("/orders/<int:order_id>/fulfillment/schedule-delivery")
def schedule_delivery(order_id: int):
    user = require_user()
    data = _body()
    ctx = current_engine()
    transporter = data.get("transporter")
    if data.get("windows") is None and data.get("eta"):
        order = fulfillment_service.schedule_eta(ctx, order_id, user, data.get("eta"), transporter=transporter)
    else:
        order = fulfillment_service.propose_delivery(ctx, order_id, user, data.get("windows"), transporter=transporter)
    return ok_order(order, user)


@orders_bp.post("/orders/<int:order_id>/fulfillment/agree-delivery")
def agree_delivery(order_id: int):
    user = require_user()
    data = _body()
    order = fulfillment_service.agree_delivery(current_engine(), order_id, user, data.get("window_index", 0))
    return ok_order(order, user)


@orders_bp.post("/orders/<int:order_id>/start-delivery-tracking")
def start_delivery_tracking(order_id: int):
    user = require_user()
    order = fulfillment_service.start_tracking(current_engine(), order_id, user)
    return ok_order(order, user)


@orders_bp.post("/orders/<int:order_id>/stop-delivery-tracking")
def stop_delivery_tracking(order_id: int):
    user = require_user()
    order = fulfillment_service.stop_tracking(current_engine(), order_id, user)
    return ok_order(order, user)


@orders_bp.post("/orders/<int:order_id>/mark-delivered")
def mark_delivered(order_id: int):
    user = require_user()
    data = _body()
    order = fulfillment_service.mark_delivered(current_engine(), order_id, user, signature_url=data.get("signature_url"))
    return ok_order(order, user)


@orders_bp.post("/orders/<int:order_id>/fulfillment/set-pickup-info")
def set_pickup_info(order_id: int):
    user = require_user()
    data = _body()
    order = fulfillment_service.set_pickup_info(current_engine(), order_id, user, data.get("location"), data.get("windows"))
    return ok_order(order, user)


@orders_bp.post("/orders/<int:order_id>/fulfillment/select-pickup-window")
def select_pickup_window(order_id: int):
    user = require_user()
    data = _body()
    order = fulfillment_service.select_pickup_window(current_engine(), order_id, user, data.get("window_index", 0))
    return ok_order(order, user)


@orders_bp.post("/orders/<int:order_id>/fulfillment/agree-pickup-window")
def agree_pickup_window(order_id: int):
    user = require_user()
    order = fulfillment_service.agree_pickup_window(current_engine(), order_id, user)
    return ok_order(order, user)


@orders_bp.post("/orders/<int:order_id>/fulfillment/confirm-pickup")
def confirm_pickup(order_id: int):
    user = require_user()
    data = _body()
    order = fulfillment_service.confirm_pickup(current_engine(), order_id, user, data.get("pickup_code"))
    return ok_order(order, user)


@orders_bp.post("/orders/<int:order_id>/confirm-receipt")
def confirm_receipt(order_id: int):
    user = require_user()
    order, changed = confirmation_service.confirm_receipt(current_engine(), order_id, user)
    return ok_order(order, user, already_applied=not changed)


@orders_bp.post("/orders/<int:order_id>/compliance-transfer/confirm")
def confirm_compliance_transfer(order_id: int):
    user = require_user()
    order, changed = confirmation_service.confirm_compliance(current_engine(), order_id, user)
    return ok_order(order, user, already_applied=not changed)


@orders_bp.post("/orders/<int:order_id>/confirm-payment")
def confirm_payment(order_id: int):
    user = require_user()
    order = payment_events.confirm_payment(current_engine(), order_id, user)
    return ok_order(order, user)
