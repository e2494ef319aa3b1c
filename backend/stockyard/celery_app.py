from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry


_SIGNALS_BOUND = False

WEBHOOK_QUEUE = "payments"
SWEEP_QUEUE = "sweeps"


def _broker_url() -> str:
    return (
        (os.getenv("CELERY_BROKER_URL") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or "redis://localhost:6379/0"
    )


def _result_backend(broker_url: str) -> str:
    return (
        (os.getenv("CELERY_RESULT_BACKEND") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or broker_url
    )


def _task_context(kwargs) -> dict:
    """Pull the correlation fields the order tasks carry in their kwargs."""
    if not isinstance(kwargs, dict):
        return {"trace_id": ""}
    context = {"trace_id": str(kwargs.get("trace_id") or "").strip()}
    if kwargs.get("event_id"):
        context["event_id"] = str(kwargs["event_id"])
    if kwargs.get("event_type"):
        context["event_type"] = str(kwargs["event_type"])
    return context


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, einfo=None, **extra):
        payload = {
            "event": "celery_task_failure",
            "task_name": getattr(sender, "name", "") if sender is not None else "",
            "task_id": str(task_id or ""),
            "error_code": getattr(exception, "code", "") or type(exception).__name__,
            "exception": str(exception or ""),
            "timestamp": datetime.utcnow().isoformat(),
        }
        payload.update(_task_context(kwargs))
        if einfo is not None:
            payload["einfo"] = str(einfo)
        flask_app.logger.error(json.dumps(payload))

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, einfo=None, **extra):
        payload = {
            "event": "celery_task_retry",
            "task_name": str(getattr(request, "task", "") or ""),
            "task_id": str(getattr(request, "id", "") or ""),
            "reason": str(reason or ""),
            "retry_count": int(getattr(request, "retries", 0) or 0),
            "timestamp": datetime.utcnow().isoformat(),
        }
        payload.update(_task_context(getattr(request, "kwargs", None)))
        flask_app.logger.warning(json.dumps(payload))

    _SIGNALS_BOUND = True


def create_celery_app(flask_app) -> Celery:
    """Worker app sharing the Flask app's engine settings.

    Webhook processing and scheduled sweeps run on separate queues so a
    backlog of processor events never delays payouts, and the reverse.
    """
    broker = _broker_url()
    celery = Celery(flask_app.import_name, broker=broker, backend=_result_backend(broker))
    settings = flask_app.extensions["order_engine"].settings
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        task_default_queue=SWEEP_QUEUE,
        task_routes={
            "stockyard.tasks.order_tasks.process_stripe_webhook": {"queue": WEBHOOK_QUEUE},
            "stockyard.tasks.order_tasks.run_order_sweeps": {"queue": SWEEP_QUEUE},
        },
        beat_schedule={
            "order-sweeps": {
                "task": "stockyard.tasks.order_tasks.run_order_sweeps",
                "schedule": float(settings.order_sweep_interval_seconds),
                "kwargs": {"limit": 200, "trace_id": "beat_order_sweeps"},
                # A sweep that sat in the queue past the next tick is superseded by it
                "options": {"expires": float(settings.order_sweep_interval_seconds)},
            },
        },
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.autodiscover_tasks(["stockyard.tasks"], related_name="order_tasks")
    _bind_task_observers(flask_app)
    return celery
