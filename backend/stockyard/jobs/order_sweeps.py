"""Scheduled order sweeps: auto-release, abandoned checkouts, completion policies.

Each sweep is bounded, processes orders one at a time so a failure on one
order never blocks the rest, and records a ``JobRun`` with its counters.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from stockyard.integrations.common import ProviderRequestError
from stockyard.services.checkout_sweep import cancel_abandoned_checkouts
from stockyard.services.completion_policies import run_completion_policies
from stockyard.services.engine_context import EngineContext
from stockyard.services.fulfillment_service import load_order
from stockyard.services.order_errors import ConflictAlreadyApplied, OrderEngineError
from stockyard.services.order_queries import OrderFilter, find_orders
from stockyard.services.order_status import (
    ACTIVE_DISPUTE_STATUSES,
    LegacyStatus,
    PayoutHoldReason,
    dispute_status,
    hold_reason,
    legacy_status,
)
from stockyard.services.payout_release import release_payout
from stockyard.services.release_eligibility import can_release, derive_hold_reason, protection_active
from stockyard.utils.job_runs import last_job_run, record_job_run

logger = logging.getLogger(__name__)

AUTO_RELEASE_STATUSES = (
    LegacyStatus.BUYER_CONFIRMED.value,
    LegacyStatus.ACCEPTED.value,
    LegacyStatus.READY_TO_RELEASE.value,
    LegacyStatus.DELIVERED.value,
)


def _settle_expired_protection(ctx: EngineContext, order_id: int) -> None:
    order = load_order(order_id, lock=True)
    now = ctx.now()
    if hold_reason(order) != PayoutHoldReason.PROTECTION_WINDOW.value or protection_active(order, now):
        ctx.session.rollback()
        return
    order.payout_hold_reason = derive_hold_reason(order, now)
    if legacy_status(order) == LegacyStatus.BUYER_CONFIRMED and dispute_status(order) not in ACTIVE_DISPUTE_STATUSES:
        order.status = LegacyStatus.READY_TO_RELEASE.value
    order.updated_at = now
    ctx.session.commit()
    logger.info("protection_window_expired order_id=%s hold_reason=%s", order.id, order.payout_hold_reason)


def _auto_release_cursor() -> int:
    run = last_job_run("order_auto_release")
    if run is None:
        return 0
    try:
        return int(run.to_dict()["counters"].get("cursor") or 0)
    except (TypeError, ValueError):
        return 0


def _auto_release_batch(limit: int) -> tuple[list, int]:
    """Next page of candidates after the previous run's cursor.

    Each run resumes after the last id the previous run saw and wraps to
    the start once the end is reached, so a long-held order is revisited
    only once per pass over the candidates.
    """
    after_id = _auto_release_cursor()
    rows = find_orders(
        OrderFilter(statuses=AUTO_RELEASE_STATUSES, without_transfer=True, after_id=after_id or None),
        limit=limit,
    )
    if not rows and after_id:
        rows = find_orders(OrderFilter(statuses=AUTO_RELEASE_STATUSES, without_transfer=True), limit=limit)
    cursor = int(rows[-1].id) if len(rows) >= limit else 0
    return rows, cursor


def run_auto_release(ctx: EngineContext, *, limit: int = 200) -> dict:
    started_at = datetime.utcnow()
    counters = {"processed": 0, "released": 0, "skipped": 0, "errors": 0}
    if not ctx.payments_configured:
        result = {"ok": False, "disabled": True, "reason": "payments_unavailable", **counters}
        record_job_run(job_name="order_auto_release", ok=False, started_at=started_at, counters=counters, error="payments_unavailable")
        return result

    limit = max(1, min(int(limit), 500))
    rows, cursor = _auto_release_batch(limit)
    counters["cursor"] = cursor
    for row in rows:
        order_id = int(row.id)
        counters["processed"] += 1
        try:
            _settle_expired_protection(ctx, order_id)
            order = load_order(order_id)
            if not can_release(order, ctx.now()).eligible:
                counters["skipped"] += 1
                continue
            release_payout(ctx, order_id, release_type="auto", released_by="system")
            counters["released"] += 1
        except ConflictAlreadyApplied:
            counters["skipped"] += 1
        except (OrderEngineError, ProviderRequestError, SQLAlchemyError):
            ctx.session.rollback()
            counters["errors"] += 1
            logger.exception("auto_release_failed order_id=%s", order_id)

    record_job_run(
        job_name="order_auto_release",
        ok=counters["errors"] == 0,
        started_at=started_at,
        counters=counters,
        error=None if counters["errors"] == 0 else f"errors={counters['errors']}",
    )
    logger.info("auto_release_sweep %s", " ".join(f"{k}={v}" for k, v in counters.items()))
    return {"ok": True, **counters, "ts": datetime.utcnow().isoformat()}


def run_abandoned_checkout_sweep(ctx: EngineContext, *, limit: int = 50, dry_run: bool = False) -> dict:
    started_at = datetime.utcnow()
    result = cancel_abandoned_checkouts(ctx, limit=limit, dry_run=dry_run)
    errors = sum(1 for item in result["results"] if item.get("action") == "error")
    record_job_run(
        job_name="abandoned_checkout_sweep",
        ok=errors == 0,
        started_at=started_at,
        counters={"scanned": result["total_scanned"], "cancelled": result["cancelled"], "errors": errors},
        error=None if errors == 0 else f"errors={errors}",
    )
    return result


def run_completion_sweep(ctx: EngineContext, *, limit: int = 200) -> dict:
    started_at = datetime.utcnow()
    counters = run_completion_policies(ctx, limit=limit)
    record_job_run(
        job_name="order_completion_policies",
        ok=counters["errors"] == 0,
        started_at=started_at,
        counters=counters,
        error=None if counters["errors"] == 0 else f"errors={counters['errors']}",
    )
    return {"ok": True, **counters}


def run_order_sweeps(ctx: EngineContext, *, limit: int = 200) -> dict:
    """All three sweeps in dependency order: cancel, complete, then release."""
    return {
        "abandoned_checkouts": run_abandoned_checkout_sweep(ctx, limit=min(limit, 500)),
        "completion": run_completion_sweep(ctx, limit=limit),
        "auto_release": run_auto_release(ctx, limit=limit),
    }
