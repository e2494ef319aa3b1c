from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError

from stockyard.extensions import db
from stockyard.models import OrderTimelineEvent

logger = logging.getLogger(__name__)

_ACTORS = ("buyer", "seller", "admin", "system")
_VISIBILITY = ("buyer", "seller", "both", "admin")


def timeline_event_id(event_type: str, order_id: int, *parts) -> str:
    """Deterministic id: ``{TYPE}:{order_id}[:part...]``; never derived from wall-clock time."""
    tail = ":".join(str(p) for p in parts if p is not None and str(p) != "")
    base = f"{(event_type or 'EVENT').strip().upper()}:{int(order_id)}"
    return f"{base}:{tail}"[:160] if tail else base[:160]


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def append_timeline_event(
    order_id: int,
    *,
    event_id: str,
    event_type: str,
    label: str,
    actor: str = "system",
    visibility: str = "both",
    meta: dict | None = None,
    commit: bool = True,
) -> tuple[OrderTimelineEvent, bool]:
    """Append an event to an order's timeline.

    Returns ``(event, created)``. Re-appending an existing ``event_id`` is a
    no-op that returns the stored entry with ``created=False``.
    """
    key = (event_id or "").strip()[:160]
    if not key:
        raise ValueError("event_id required")

    existing = OrderTimelineEvent.query.filter_by(order_id=int(order_id), event_id=key).first()
    if existing:
        return existing, False

    row = OrderTimelineEvent(
        order_id=int(order_id),
        event_id=key,
        event_type=(event_type or "EVENT").strip().upper()[:64],
        label=(label or "")[:240],
        actor=actor if actor in _ACTORS else "system",
        visibility=visibility if visibility in _VISIBILITY else "both",
        meta_json=json.dumps(_safe_value(meta or {}), separators=(",", ":")),
    )
    try:
        # Duplicate inserts from a concurrent writer roll back only this savepoint.
        with db.session.begin_nested():
            db.session.add(row)
            db.session.flush()
    except IntegrityError:
        existing = OrderTimelineEvent.query.filter_by(order_id=int(order_id), event_id=key).first()
        if existing is None:
            raise
        return existing, False
    if commit:
        db.session.commit()
    return row, True


def record_timeline(order_id: int, event_type: str, label: str, *, actor: str = "system", visibility: str = "both", meta: dict | None = None, event_id: str | None = None) -> OrderTimelineEvent | None:
    """Best-effort append used after the primary write committed."""
    try:
        row, _created = append_timeline_event(
            order_id,
            event_id=event_id or timeline_event_id(event_type, order_id),
            event_type=event_type,
            label=label,
            actor=actor,
            visibility=visibility,
            meta=meta,
        )
        return row
    except Exception:
        try:
            db.session.rollback()
        except Exception:
            pass
        logger.exception("order_timeline_append_failed order_id=%s event_type=%s", order_id, event_type)
        return None


def list_timeline(order_id: int, *, audience: str | None = None) -> list[dict]:
    rows = (
        OrderTimelineEvent.query.filter_by(order_id=int(order_id))
        .order_by(OrderTimelineEvent.created_at.asc(), OrderTimelineEvent.id.asc())
        .all()
    )
    items = []
    for row in rows:
        if audience in ("buyer", "seller") and row.visibility not in (audience, "both"):
            continue
        items.append(row.to_dict())
    return items
