from __future__ import annotations

from flask import jsonify

from stockyard.models import Order, User
from stockyard.services.order_status import effective_status
from stockyard.utils.auth import is_admin


def order_payload(order: Order, viewer: User | None) -> dict:
    """Order JSON as ``viewer`` may see it.

    The pickup code is proof of handover, so only the seller and admins see it.
    """
    data = order.to_dict()
    seller_view = viewer is not None and (int(viewer.id) == int(order.seller_id) or is_admin(viewer))
    if not seller_view and data.get("pickup"):
        pickup = dict(data["pickup"])
        pickup.pop("pickup_code", None)
        data["pickup"] = pickup
    if not is_admin(viewer):
        data.pop("admin_action_notes", None)
    return data


def order_envelope(order: Order, viewer: User | None, **extra) -> dict:
    body = {"ok": True, "order": order_payload(order, viewer), "effective_status": effective_status(order).value}
    body.update(extra)
    return body


def ok_order(order: Order, viewer: User | None, status: int = 200, **extra):
    return jsonify(order_envelope(order, viewer, **extra)), status
