"""Order candidate queries with an in-memory fallback.

An :class:`OrderFilter` states the criteria once and renders them two ways:
as SQL clauses for the narrow query, and as a Python predicate. When the
store rejects the narrow query for lack of a matching index, the broad
status-only query runs and the same predicate is applied in memory.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import OperationalError, ProgrammingError

from stockyard.extensions import db
from stockyard.models import Order

logger = logging.getLogger(__name__)

_MISSING_INDEX_MARKERS = ("requires an index", "failed-precondition", "failed_precondition", "no such index")


def is_missing_index_error(exc: BaseException) -> bool:
    text = str(exc).lower()
    orig = getattr(exc, "orig", None)
    if orig is not None:
        text = f"{text} {orig}".lower()
    return any(marker in text for marker in _MISSING_INDEX_MARKERS)


def _as_tuple(value) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(v.strip() for v in value.split(",") if v.strip())
    return tuple(str(v).strip() for v in value if str(v).strip())


@dataclass(frozen=True)
class OrderFilter:
    statuses: tuple[str, ...] = ()
    transaction_statuses: tuple[str, ...] = ()
    order_ids: tuple[int, ...] = ()
    seller_id: int | None = None
    buyer_id: int | None = None
    admin_hold: bool | None = None
    without_transfer: bool = False
    with_checkout_session: bool = False
    protected_only: bool = False
    created_before: datetime | None = None
    delivered_before: datetime | None = None
    after_id: int | None = None

    @classmethod
    def from_dict(cls, raw: dict | None) -> "OrderFilter":
        data = dict(raw or {})
        hold = data.get("admin_hold")
        return cls(
            statuses=_as_tuple(data.get("status") or data.get("statuses")),
            transaction_statuses=_as_tuple(data.get("transaction_status") or data.get("transaction_statuses")),
            seller_id=int(data["seller_id"]) if data.get("seller_id") not in (None, "") else None,
            buyer_id=int(data["buyer_id"]) if data.get("buyer_id") not in (None, "") else None,
            admin_hold=None if hold is None else str(hold).strip().lower() in ("1", "true", "yes", "on"),
            without_transfer=bool(data.get("without_transfer", False)),
            protected_only=bool(data.get("protected_only", False)),
        )

    def broad_clauses(self) -> list:
        if self.order_ids:
            return [Order.id.in_([int(i) for i in self.order_ids])]
        if self.statuses:
            return [Order.status.in_(list(self.statuses))]
        return []

    def clauses(self) -> list:
        out = self.broad_clauses()
        if self.order_ids and self.statuses:
            out.append(Order.status.in_(list(self.statuses)))
        if self.transaction_statuses:
            out.append(Order.transaction_status.in_(list(self.transaction_statuses)))
        if self.seller_id is not None:
            out.append(Order.seller_id == int(self.seller_id))
        if self.buyer_id is not None:
            out.append(Order.buyer_id == int(self.buyer_id))
        if self.admin_hold is not None:
            out.append(Order.admin_hold == bool(self.admin_hold))
        if self.without_transfer:
            out.append(Order.transfer_id.is_(None))
        if self.with_checkout_session:
            out.append(Order.checkout_session_id.isnot(None))
        if self.protected_only:
            out.append(Order.protection_ends_at.isnot(None))
        if self.created_before is not None:
            out.append(Order.created_at < self.created_before)
        if self.delivered_before is not None:
            out.append(Order.delivered_at < self.delivered_before)
        if self.after_id is not None:
            out.append(Order.id > int(self.after_id))
        return out

    def matches(self, order: Order) -> bool:
        if self.order_ids and int(order.id) not in {int(i) for i in self.order_ids}:
            return False
        if self.statuses and (order.status or "") not in self.statuses:
            return False
        if self.transaction_statuses and (order.transaction_status or "") not in self.transaction_statuses:
            return False
        if self.seller_id is not None and int(order.seller_id) != int(self.seller_id):
            return False
        if self.buyer_id is not None and int(order.buyer_id) != int(self.buyer_id):
            return False
        if self.admin_hold is not None and bool(order.admin_hold) != bool(self.admin_hold):
            return False
        if self.without_transfer and order.transfer_id:
            return False
        if self.with_checkout_session and not order.checkout_session_id:
            return False
        if self.protected_only and order.protection_ends_at is None:
            return False
        if self.created_before is not None and not (order.created_at and order.created_at < self.created_before):
            return False
        if self.delivered_before is not None and not (order.delivered_at and order.delivered_at < self.delivered_before):
            return False
        if self.after_id is not None and int(order.id) <= int(self.after_id):
            return False
        return True


def _run_narrow(order_filter: OrderFilter, limit: int) -> list[Order]:
    return Order.query.filter(*order_filter.clauses()).order_by(Order.id.asc()).limit(int(limit)).all()


def _run_broad(order_filter: OrderFilter) -> list[Order]:
    return Order.query.filter(*order_filter.broad_clauses()).order_by(Order.id.asc()).all()


def find_orders(order_filter: OrderFilter, *, limit: int = 100) -> list[Order]:
    limit = max(1, int(limit))
    try:
        return _run_narrow(order_filter, limit)
    except (OperationalError, ProgrammingError) as exc:
        if not is_missing_index_error(exc):
            raise
        db.session.rollback()
        logger.warning("order_query_index_fallback filter=%s err=%s", order_filter, exc)
    rows = _run_broad(order_filter)
    return [row for row in rows if order_filter.matches(row)][:limit]
