from __future__ import annotations

from flask import Blueprint, request

from stockyard.services import dispute_service
from stockyard.services.engine_context import current_engine
from stockyard.services.order_errors import ValidationError
from stockyard.utils.auth import require_admin, require_user
from stockyard.utils.order_payloads import ok_order

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api")


def _body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object", code="INVALID_BODY")
    return payload


def _truthy(value) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@disputes_bp.post("/orders/<int:order_id>/disputes/open")
def open_dispute(order_id: int):
    user = require_user()
    data = _body()
    order = dispute_service.open_dispute(
        current_engine(),
        order_id,
        user,
        reason=data.get("reason"),
        evidence=data.get("evidence"),
        notes=str(data.get("notes") or ""),
        admin_override=_truthy(data.get("admin_override", False)),
    )
    return ok_order(order, user, status=201)


@disputes_bp.post("/orders/<int:order_id>/disputes/evidence")
def add_dispute_evidence(order_id: int):
    user = require_user()
    data = _body()
    order = dispute_service.add_evidence(current_engine(), order_id, user, data.get("evidence"))
    return ok_order(order, user)


@disputes_bp.post("/orders/<int:order_id>/disputes/cancel")
def cancel_dispute(order_id: int):
    user = require_user()
    order = dispute_service.cancel_dispute(current_engine(), order_id, user)
    return ok_order(order, user)


@disputes_bp.post("/orders/<int:order_id>/disputes/review")
def review_dispute(order_id: int):
    admin = require_admin()
    data = _body()
    order = dispute_service.review_dispute(
        current_engine(),
        order_id,
        admin,
        action=str(data.get("action") or "review"),
        note=str(data.get("note") or ""),
    )
    return ok_order(order, admin)


@disputes_bp.post("/orders/<int:order_id>/disputes/resolve")
def resolve_dispute(order_id: int):
    admin = require_admin()
    data = _body()
    order, release = dispute_service.resolve_dispute(
        current_engine(),
        order_id,
        admin,
        resolution=data.get("resolution"),
        note=str(data.get("note") or data.get("admin_notes") or ""),
        refund_amount=data.get("refund_amount"),
        mark_fraudulent=_truthy(data.get("mark_fraudulent", False)),
    )
    return ok_order(order, admin, release=release)
