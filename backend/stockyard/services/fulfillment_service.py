"""Seller-delivery and buyer-pickup state machines.

Each transport has its own transition table keyed by
``(current status, action)``. Operations load the order under a row lock,
validate the actor and the table, mutate, commit, and only then append the
timeline entry and emit the notification.
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from enum import Enum

from stockyard.models import Order, User
from stockyard.services.engine_context import EngineContext
from stockyard.services.order_errors import Forbidden, InvalidTransition, NotFound, ValidationError
from stockyard.services.order_status import (
    LegacyStatus,
    TransactionStatus,
    TransportOption,
    effective_status,
    transport_option,
)
from stockyard.services.timeline_service import record_timeline, timeline_event_id

logger = logging.getLogger(__name__)

S = TransactionStatus


class FulfillmentAction(str, Enum):
    PROPOSE_DELIVERY = "propose_delivery"
    AGREE_DELIVERY = "agree_delivery"
    SCHEDULE_ETA = "schedule_eta"
    START_TRACKING = "start_tracking"
    MARK_DELIVERED = "mark_delivered"
    SET_PICKUP_INFO = "set_pickup_info"
    SELECT_PICKUP_WINDOW = "select_pickup_window"
    AGREE_PICKUP_WINDOW = "agree_pickup_window"
    CONFIRM_PICKUP = "confirm_pickup"


A = FulfillmentAction

SELLER_DELIVERY_TRANSITIONS: dict[tuple[TransactionStatus, FulfillmentAction], TransactionStatus] = {
    (S.FULFILLMENT_REQUIRED, A.PROPOSE_DELIVERY): S.DELIVERY_PROPOSED,
    (S.DELIVERY_PROPOSED, A.PROPOSE_DELIVERY): S.DELIVERY_PROPOSED,
    (S.DELIVERY_PROPOSED, A.AGREE_DELIVERY): S.DELIVERY_SCHEDULED,
    (S.FULFILLMENT_REQUIRED, A.SCHEDULE_ETA): S.DELIVERY_SCHEDULED,
    (S.DELIVERY_SCHEDULED, A.START_TRACKING): S.OUT_FOR_DELIVERY,
    (S.OUT_FOR_DELIVERY, A.MARK_DELIVERED): S.DELIVERED_PENDING_CONFIRMATION,
}

BUYER_PICKUP_TRANSITIONS: dict[tuple[TransactionStatus, FulfillmentAction], TransactionStatus] = {
    (S.FULFILLMENT_REQUIRED, A.SET_PICKUP_INFO): S.READY_FOR_PICKUP,
    (S.READY_FOR_PICKUP, A.SET_PICKUP_INFO): S.READY_FOR_PICKUP,
    (S.READY_FOR_PICKUP, A.SELECT_PICKUP_WINDOW): S.PICKUP_PROPOSED,
    (S.PICKUP_PROPOSED, A.SELECT_PICKUP_WINDOW): S.PICKUP_PROPOSED,
    (S.PICKUP_PROPOSED, A.AGREE_PICKUP_WINDOW): S.PICKUP_SCHEDULED,
    (S.PICKUP_SCHEDULED, A.CONFIRM_PICKUP): S.PICKED_UP,
}

TRANSITION_TABLES = {
    TransportOption.SELLER_TRANSPORT: SELLER_DELIVERY_TRANSITIONS,
    TransportOption.BUYER_TRANSPORT: BUYER_PICKUP_TRANSITIONS,
}

ADDRESS_EDITABLE_STATUSES = frozenset({S.FULFILLMENT_REQUIRED, S.AWAITING_TRANSFER_COMPLIANCE})


def allowed_from(transport: TransportOption, action: FulfillmentAction) -> set[TransactionStatus]:
    table = TRANSITION_TABLES[transport]
    return {state for (state, act) in table if act == action}


def next_status(transport: TransportOption, current: TransactionStatus, action: FulfillmentAction) -> TransactionStatus:
    target = TRANSITION_TABLES[transport].get((current, action))
    if target is None:
        allowed = allowed_from(transport, action)
        raise InvalidTransition(
            f"Cannot {action.value.replace('_', ' ')} while order is {current.value}",
            current_status=current.value,
            allowed_statuses=[s.value for s in allowed],
        )
    return target


def _now_iso(ctx: EngineContext) -> str:
    return ctx.now().replace(microsecond=0).isoformat()


def parse_ts(raw) -> datetime:
    """Parse an ISO-8601 timestamp into a naive UTC datetime."""
    if isinstance(raw, datetime):
        value = raw
    else:
        text = str(raw or "").strip()
        if not text:
            raise ValidationError("Timestamp required", code="INVALID_TIMESTAMP")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {raw}", code="INVALID_TIMESTAMP")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_windows(raw_windows) -> list[dict]:
    if not isinstance(raw_windows, list) or not raw_windows:
        raise ValidationError("At least one window is required", code="WINDOWS_REQUIRED")
    windows = []
    for raw in raw_windows:
        if not isinstance(raw, dict):
            raise ValidationError("Each window needs start and end", code="INVALID_WINDOW")
        start = parse_ts(raw.get("start"))
        end = parse_ts(raw.get("end"))
        if end <= start:
            raise ValidationError("Window end must be after its start", code="INVALID_WINDOW")
        windows.append({"start": start.isoformat(), "end": end.isoformat()})
    return windows


def _window_at(windows: list, index) -> dict:
    try:
        idx = int(index)
    except (TypeError, ValueError):
        raise ValidationError("Window index must be an integer", code="INVALID_WINDOW_INDEX")
    if idx < 0 or idx >= len(windows or []):
        raise ValidationError(f"No window at index {idx}", code="INVALID_WINDOW_INDEX")
    return dict(windows[idx])


def load_order(order_id: int, *, lock: bool = False) -> Order:
    query = Order.query.filter_by(id=int(order_id))
    if lock:
        query = query.with_for_update().populate_existing()
    order = query.first()
    if order is None:
        raise NotFound("Order not found", code="ORDER_NOT_FOUND")
    return order


def party_role(order: Order, actor: User | None) -> str | None:
    if actor is None:
        return None
    if int(actor.id) == int(order.seller_id):
        return "seller"
    if int(actor.id) == int(order.buyer_id):
        return "buyer"
    return None


def _require_role(order: Order, actor: User | None, *roles: str) -> str:
    role = party_role(order, actor)
    if role not in roles:
        raise Forbidden(f"Only the {' or '.join(roles)} of record may do this")
    return role


def _require_transport(order: Order, expected: TransportOption) -> None:
    if transport_option(order) != expected:
        raise ValidationError(
            f"Order uses {transport_option(order).value}; this step needs {expected.value}",
            code="TRANSPORT_MISMATCH",
        )


def fulfillment_started(order: Order) -> bool:
    if order.pickup or order.delivery:
        return True
    return effective_status(order) not in (
        S.PENDING_PAYMENT,
        S.FULFILLMENT_REQUIRED,
        S.AWAITING_TRANSFER_COMPLIANCE,
    )


def _commit(ctx: EngineContext, order: Order, status: TransactionStatus | None, role: str) -> None:
    if status is not None:
        order.transaction_status = status.value
    order.last_updated_by_role = role
    order.updated_at = ctx.now()
    ctx.session.commit()


def _other_party(order: Order, role: str) -> int:
    return int(order.buyer_id) if role == "seller" else int(order.seller_id)


def choose_transport(ctx: EngineContext, order_id: int, actor: User | None, option: str) -> Order:
    order = load_order(order_id, lock=True)
    role = _require_role(order, actor, "buyer", "seller")
    try:
        wanted = TransportOption(str(option or "").strip().upper())
    except ValueError:
        raise ValidationError("transport_option must be BUYER_TRANSPORT or SELLER_TRANSPORT", code="INVALID_TRANSPORT")
    if wanted == transport_option(order):
        return order
    if fulfillment_started(order):
        raise ValidationError("Transport option is fixed once fulfillment has started", code="TRANSPORT_LOCKED")
    order.transport_option = wanted.value
    _commit(ctx, order, None, role)
    record_timeline(
        order.id,
        "TRANSPORT_SELECTED",
        f"Transport set to {wanted.value}",
        actor=role,
        event_id=timeline_event_id("TRANSPORT_SELECTED", order.id, wanted.value),
    )
    return order


# Seller delivery


def set_delivery_address(ctx: EngineContext, order_id: int, actor: User | None, address) -> Order:
    order = load_order(order_id, lock=True)
    _require_role(order, actor, "buyer")
    _require_transport(order, TransportOption.SELLER_TRANSPORT)
    current = effective_status(order)
    if current not in ADDRESS_EDITABLE_STATUSES:
        raise InvalidTransition(
            "Delivery address can only be set before the seller proposes delivery",
            current_status=current.value,
            allowed_statuses=[s.value for s in ADDRESS_EDITABLE_STATUSES],
        )
    if isinstance(address, dict):
        cleaned = {str(k): str(v).strip() for k, v in address.items() if v is not None and str(v).strip()}
    else:
        text = str(address or "").strip()
        cleaned = {"line1": text} if text else {}
    if not cleaned:
        raise ValidationError("Delivery address required", code="ADDRESS_REQUIRED")

    delivery = order.delivery
    delivery["buyer_address"] = cleaned
    order.delivery = delivery
    _commit(ctx, order, None, "buyer")

    record_timeline(
        order.id,
        "DELIVERY_ADDRESS_SET",
        "Buyer set the delivery address",
        actor="buyer",
        visibility="both",
    )
    return order


def propose_delivery(ctx: EngineContext, order_id: int, actor: User | None, windows, *, transporter: str | None = None) -> Order:
    order = load_order(order_id, lock=True)
    _require_role(order, actor, "seller")
    _require_transport(order, TransportOption.SELLER_TRANSPORT)
    target = next_status(TransportOption.SELLER_TRANSPORT, effective_status(order), A.PROPOSE_DELIVERY)

    delivery = order.delivery
    if not delivery.get("buyer_address"):
        raise ValidationError("Buyer has not set a delivery address yet", code="ADDRESS_REQUIRED")
    parsed = parse_windows(windows)

    proposals = int(delivery.get("proposal_count") or 0) + 1
    delivery.update(
        {
            "windows": parsed,
            "agreed_window": None,
            "agreed_at": None,
            "proposed_at": _now_iso(ctx),
            "proposal_count": proposals,
        }
    )
    if transporter:
        delivery["transporter"] = str(transporter).strip()[:120]
    order.delivery = delivery
    _commit(ctx, order, target, "seller")

    record_timeline(
        order.id,
        "DELIVERY_PROPOSED",
        f"Seller proposed {len(parsed)} delivery window(s)",
        actor="seller",
        meta={"windows": parsed},
        event_id=timeline_event_id("DELIVERY_PROPOSED", order.id, proposals),
    )
    ctx.notify(
        "Order.DeliveryProposed",
        user_id=int(order.buyer_id),
        order_id=order.id,
        payload={"windows": parsed},
        dedupe_key=f"delivery-proposed:{order.id}:{proposals}",
    )
    return order


def schedule_eta(ctx: EngineContext, order_id: int, actor: User | None, eta, *, transporter: str | None = None) -> Order:
    """Older single-ETA scheduling; goes straight to DELIVERY_SCHEDULED."""
    order = load_order(order_id, lock=True)
    _require_role(order, actor, "seller")
    _require_transport(order, TransportOption.SELLER_TRANSPORT)
    target = next_status(TransportOption.SELLER_TRANSPORT, effective_status(order), A.SCHEDULE_ETA)
    eta_at = parse_ts(eta)

    delivery = order.delivery
    delivery["eta"] = eta_at.isoformat()
    delivery["agreed_at"] = _now_iso(ctx)
    if transporter:
        delivery["transporter"] = str(transporter).strip()[:120]
    order.delivery = delivery
    _commit(ctx, order, target, "seller")

    record_timeline(order.id, "DELIVERY_SCHEDULED", f"Delivery scheduled for {eta_at.isoformat()}", actor="seller")
    ctx.notify(
        "Order.DeliveryScheduled",
        user_id=int(order.buyer_id),
        order_id=order.id,
        payload={"eta": eta_at.isoformat()},
        dedupe_key=f"delivery-scheduled:{order.id}",
    )
    return order


def agree_delivery(ctx: EngineContext, order_id: int, actor: User | None, index) -> Order:
    order = load_order(order_id, lock=True)
    _require_role(order, actor, "buyer")
    _require_transport(order, TransportOption.SELLER_TRANSPORT)
    target = next_status(TransportOption.SELLER_TRANSPORT, effective_status(order), A.AGREE_DELIVERY)

    delivery = order.delivery
    window = _window_at(delivery.get("windows") or [], index)
    delivery["agreed_window"] = window
    delivery["agreed_at"] = _now_iso(ctx)
    order.delivery = delivery
    _commit(ctx, order, target, "buyer")

    record_timeline(
        order.id,
        "DELIVERY_SCHEDULED",
        "Buyer agreed to a delivery window",
        actor="buyer",
        meta={"window": window},
    )
    ctx.notify(
        "Order.DeliveryScheduled",
        user_id=int(order.seller_id),
        order_id=order.id,
        payload={"window": window},
        dedupe_key=f"delivery-scheduled:{order.id}",
    )
    return order


def start_tracking(ctx: EngineContext, order_id: int, actor: User | None) -> Order:
    order = load_order(order_id, lock=True)
    _require_role(order, actor, "seller")
    _require_transport(order, TransportOption.SELLER_TRANSPORT)
    current = effective_status(order)
    delivery = order.delivery
    if current == S.OUT_FOR_DELIVERY and delivery.get("tracking_enabled"):
        return order
    target = next_status(TransportOption.SELLER_TRANSPORT, current, A.START_TRACKING)

    delivery["tracking_enabled"] = True
    delivery["tracking_started_at"] = _now_iso(ctx)
    delivery["tracking_session"] = int(delivery.get("tracking_session") or 0) + 1
    order.delivery = delivery
    order.status = LegacyStatus.IN_TRANSIT.value
    order.in_transit_at = order.in_transit_at or ctx.now()
    _commit(ctx, order, target, "seller")

    record_timeline(order.id, "OUT_FOR_DELIVERY", "Seller started delivery tracking", actor="seller")
    ctx.notify(
        "Order.OutForDelivery",
        user_id=int(order.buyer_id),
        order_id=order.id,
        dedupe_key=f"out-for-delivery:{order.id}",
    )
    return order


def stop_tracking(ctx: EngineContext, order_id: int, actor: User | None) -> Order:
    order = load_order(order_id, lock=True)
    _require_role(order, actor, "seller")
    _require_transport(order, TransportOption.SELLER_TRANSPORT)
    delivery = order.delivery
    if not delivery.get("tracking_enabled"):
        return order
    delivery["tracking_enabled"] = False
    delivery["tracking_stopped_at"] = _now_iso(ctx)
    order.delivery = delivery
    _commit(ctx, order, None, "seller")
    record_timeline(
        order.id,
        "TRACKING_STOPPED",
        "Seller stopped delivery tracking",
        actor="seller",
        event_id=timeline_event_id("TRACKING_STOPPED", order.id, int(delivery.get("tracking_session") or 1)),
    )
    return order


def mark_delivered(ctx: EngineContext, order_id: int, actor: User | None, *, signature_url: str | None = None) -> Order:
    order = load_order(order_id, lock=True)
    role = _require_role(order, actor, "seller", "buyer")
    _require_transport(order, TransportOption.SELLER_TRANSPORT)
    target = next_status(TransportOption.SELLER_TRANSPORT, effective_status(order), A.MARK_DELIVERED)

    now = ctx.now()
    delivery = order.delivery
    delivery["tracking_enabled"] = False
    delivery["marked_delivered_by"] = role
    if signature_url:
        delivery["signature_url"] = str(signature_url).strip()[:500]
    order.delivery = delivery
    order.delivered_at = order.delivered_at or now
    order.status = LegacyStatus.DELIVERED.value
    _commit(ctx, order, target, role)

    record_timeline(order.id, "DELIVERED", f"Marked delivered by {role}", actor=role)
    ctx.notify(
        "Order.Delivered",
        user_id=_other_party(order, role),
        order_id=order.id,
        dedupe_key=f"delivered:{order.id}",
    )
    return order


# Buyer pickup


def _pickup_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def set_pickup_info(ctx: EngineContext, order_id: int, actor: User | None, location, windows) -> Order:
    order = load_order(order_id, lock=True)
    _require_role(order, actor, "seller")
    _require_transport(order, TransportOption.BUYER_TRANSPORT)
    target = next_status(TransportOption.BUYER_TRANSPORT, effective_status(order), A.SET_PICKUP_INFO)

    where = str(location or "").strip()
    if not where:
        raise ValidationError("Pickup location required", code="LOCATION_REQUIRED")
    parsed = parse_windows(windows)

    pickup = order.pickup
    first_time = not pickup.get("pickup_code")
    if not first_time and pickup.get("location") == where[:300] and pickup.get("windows") == parsed:
        ctx.session.rollback()
        return order
    revision = int(pickup.get("revision") or 0) + 1
    pickup.update(
        {
            "location": where[:300],
            "windows": parsed,
            "selected_window": None,
            "pickup_code": pickup.get("pickup_code") or _pickup_code(),
            "revision": revision,
            "updated_at": _now_iso(ctx),
        }
    )
    order.pickup = pickup
    _commit(ctx, order, target, "seller")

    if first_time:
        record_timeline(order.id, "READY_FOR_PICKUP", "Seller posted pickup details", actor="seller", meta={"location": where})
        ctx.notify(
            "Order.ReadyForPickup",
            user_id=int(order.buyer_id),
            order_id=order.id,
            payload={"location": where, "windows": parsed},
            dedupe_key=f"ready-for-pickup:{order.id}",
        )
    else:
        record_timeline(
            order.id,
            "PICKUP_INFO_UPDATED",
            "Seller updated pickup details",
            actor="seller",
            event_id=timeline_event_id("PICKUP_INFO_UPDATED", order.id, revision),
        )
    return order


def select_pickup_window(ctx: EngineContext, order_id: int, actor: User | None, index) -> Order:
    order = load_order(order_id, lock=True)
    _require_role(order, actor, "buyer")
    _require_transport(order, TransportOption.BUYER_TRANSPORT)
    target = next_status(TransportOption.BUYER_TRANSPORT, effective_status(order), A.SELECT_PICKUP_WINDOW)

    pickup = order.pickup
    window = _window_at(pickup.get("windows") or [], index)
    pickup["selected_window"] = window
    pickup["selected_at"] = _now_iso(ctx)
    pickup["agreed_at"] = None
    order.pickup = pickup
    _commit(ctx, order, target, "buyer")

    record_timeline(
        order.id,
        "PICKUP_PROPOSED",
        "Buyer selected a pickup window",
        actor="buyer",
        meta={"window": window},
        event_id=timeline_event_id("PICKUP_PROPOSED", order.id, window["start"]),
    )
    ctx.notify(
        "Order.PickupWindowSelected",
        user_id=int(order.seller_id),
        order_id=order.id,
        payload={"window": window},
        dedupe_key=f"pickup-selected:{order.id}:{window['start']}",
    )
    return order


def agree_pickup_window(ctx: EngineContext, order_id: int, actor: User | None) -> Order:
    order = load_order(order_id, lock=True)
    _require_role(order, actor, "seller")
    _require_transport(order, TransportOption.BUYER_TRANSPORT)
    target = next_status(TransportOption.BUYER_TRANSPORT, effective_status(order), A.AGREE_PICKUP_WINDOW)

    pickup = order.pickup
    if not pickup.get("selected_window"):
        raise ValidationError("Buyer has not selected a pickup window", code="WINDOW_NOT_SELECTED")
    pickup["agreed_at"] = _now_iso(ctx)
    order.pickup = pickup
    order.status = LegacyStatus.IN_TRANSIT.value
    _commit(ctx, order, target, "seller")

    record_timeline(
        order.id,
        "PICKUP_SCHEDULED",
        "Seller agreed to the pickup window",
        actor="seller",
        meta={"window": pickup["selected_window"]},
    )
    ctx.notify(
        "Order.PickupScheduled",
        user_id=int(order.buyer_id),
        order_id=order.id,
        payload={"window": pickup["selected_window"]},
        dedupe_key=f"pickup-scheduled:{order.id}",
    )
    return order


def confirm_pickup(ctx: EngineContext, order_id: int, actor: User | None, code) -> Order:
    order = load_order(order_id, lock=True)
    _require_role(order, actor, "buyer")
    _require_transport(order, TransportOption.BUYER_TRANSPORT)
    target = next_status(TransportOption.BUYER_TRANSPORT, effective_status(order), A.CONFIRM_PICKUP)

    pickup = order.pickup
    expected = str(pickup.get("pickup_code") or "")
    supplied = str(code or "").strip()
    if not expected or not secrets.compare_digest(expected, supplied):
        raise ValidationError("Pickup code does not match", code="INVALID_PICKUP_CODE")

    now = ctx.now()
    pickup["confirmed_at"] = now.replace(microsecond=0).isoformat()
    order.pickup = pickup
    order.delivered_at = order.delivered_at or now
    order.buyer_confirmed_at = order.buyer_confirmed_at or now
    order.status = LegacyStatus.BUYER_CONFIRMED.value
    _commit(ctx, order, target, "buyer")

    record_timeline(order.id, "PICKED_UP", "Buyer confirmed pickup", actor="buyer")
    ctx.notify(
        "Order.PickedUp",
        user_id=int(order.seller_id),
        order_id=order.id,
        dedupe_key=f"picked-up:{order.id}",
    )
    return order
