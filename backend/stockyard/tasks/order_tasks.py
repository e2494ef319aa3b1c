from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from stockyard.integrations.payments.base import WebhookEventPayload
from stockyard.services.engine_context import current_engine
from stockyard.services.order_errors import DependencyUnavailable


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": int(max(0.0, time.perf_counter() - float(started_at)) * 1000.0),
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(bind=True, name="stockyard.tasks.order_tasks.run_order_sweeps", max_retries=3)
def run_order_sweeps_task(self, *, limit: int = 200, trace_id: str = ""):
    from stockyard.jobs.order_sweeps import run_order_sweeps

    started = time.perf_counter()
    try:
        result = run_order_sweeps(current_engine(), limit=max(1, min(int(limit), 500)))
    except Exception as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log("run_order_sweeps", status="retrying", started_at=started, trace_id=trace_id, detail=str(exc), countdown=countdown)
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("run_order_sweeps", status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise
    _task_log(
        "run_order_sweeps",
        status="ok",
        started_at=started,
        trace_id=trace_id,
        released=result["auto_release"].get("released", 0),
        cancelled=result["abandoned_checkouts"].get("cancelled", 0),
    )
    return result


@shared_task(bind=True, name="stockyard.tasks.order_tasks.process_stripe_webhook", max_retries=5)
def process_stripe_webhook_task(
    self,
    *,
    event_id: str,
    event_type: str,
    data: dict,
    body_hash: str = "",
    trace_id: str = "",
):
    """Apply a signature-verified processor event off the request path."""
    from stockyard.services.payment_events import process_webhook_event

    started = time.perf_counter()
    event = WebhookEventPayload(id=str(event_id), type=str(event_type or ""), data=dict(data or {}))
    try:
        result = process_webhook_event(current_engine(), event, request_id=trace_id, body_hash=body_hash or None)
    except DependencyUnavailable as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log("process_stripe_webhook", status="retrying", started_at=started, trace_id=trace_id, event_id=event_id, detail=exc.code, countdown=countdown)
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("process_stripe_webhook", status="failed", started_at=started, trace_id=trace_id, event_id=event_id, detail=exc.code)
        raise
    _task_log(
        "process_stripe_webhook",
        status="ok",
        started_at=started,
        trace_id=trace_id,
        event_id=event_id,
        result=result.get("result") or ("duplicate" if result.get("duplicate") else ""),
    )
    return result
