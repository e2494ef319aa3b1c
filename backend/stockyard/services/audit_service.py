from __future__ import annotations

import json
import logging

from stockyard.extensions import db
from stockyard.models import AuditLog

logger = logging.getLogger(__name__)


def add_audit(actor_id: int | None, action: str, order_id: int | None, meta: dict | None = None) -> AuditLog:
    """Stage an audit row in the caller's transaction."""
    row = AuditLog(
        actor_user_id=int(actor_id) if actor_id is not None else None,
        action=(action or "order_action")[:120],
        target_type="order",
        target_id=int(order_id) if order_id is not None else None,
        meta=json.dumps(meta or {}, default=str)[:3000],
    )
    db.session.add(row)
    return row


def record_audit(actor_id: int | None, action: str, order_id: int | None, meta: dict | None = None) -> None:
    """Write an audit row on its own after the primary change has committed."""
    try:
        add_audit(actor_id, action, order_id, meta)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("order_audit_failed action=%s order_id=%s", action, order_id)


def audit_trail(order_id: int, limit: int = 50) -> list[dict]:
    rows = (
        AuditLog.query.filter_by(target_type="order", target_id=int(order_id))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(max(1, min(int(limit), 200)))
        .all()
    )
    return [row.to_dict() for row in rows]
