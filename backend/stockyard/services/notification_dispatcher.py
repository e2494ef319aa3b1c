from __future__ import annotations

import json
import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from stockyard.extensions import db
from stockyard.models import Notification

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Detached emitter for order notifications.

    ``emit`` never raises and never blocks the caller on delivery. Failures
    land on an error channel (``errors``) that is drained as each task
    finishes: every failure is logged and, when Sentry is configured,
    captured.
    """

    def __init__(self, app=None, *, mode: str = "thread", max_workers: int = 2, error_buffer: int = 200):
        self._app = app
        self.mode = mode if mode in ("thread", "inline") else "thread"
        self._executor = (
            ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="order-notify")
            if self.mode == "thread"
            else None
        )
        self.errors: deque = deque(maxlen=max(1, int(error_buffer)))

    def bind(self, app) -> None:
        self._app = app

    def emit(self, event_type: str, *, user_id: int | None, order_id: int | None = None, payload: dict | None = None, dedupe_key: str | None = None) -> Future | None:
        if user_id is None:
            return None
        job = {
            "event_type": (event_type or "").strip()[:80],
            "user_id": int(user_id),
            "order_id": int(order_id) if order_id is not None else None,
            "payload": dict(payload or {}),
            "dedupe_key": (dedupe_key or "").strip()[:200] or None,
        }
        if self._executor is None:
            try:
                self._write(job)
            except Exception as exc:
                try:
                    db.session.rollback()
                except Exception:
                    pass
                self._record_failure(job, exc)
            return None
        try:
            future = self._executor.submit(self._run_detached, job)
        except RuntimeError as exc:
            # Executor already shut down
            self._record_failure(job, exc)
            return None
        future.add_done_callback(lambda f, j=job: self._drain(f, j))
        return future

    def _run_detached(self, job: dict) -> None:
        if self._app is None:
            raise RuntimeError("notification dispatcher has no app bound")
        with self._app.app_context():
            try:
                self._write(job)
            except Exception:
                db.session.rollback()
                raise
            finally:
                db.session.remove()

    def _write(self, job: dict) -> Notification | None:
        key = job.get("dedupe_key")
        if key:
            existing = Notification.query.filter_by(dedupe_key=key).first()
            if existing:
                return existing
        row = Notification(
            user_id=job["user_id"],
            order_id=job.get("order_id"),
            event_type=job["event_type"],
            dedupe_key=key,
            status="queued",
            payload_json=json.dumps(job.get("payload") or {}, default=str),
            created_at=datetime.utcnow(),
        )
        try:
            with db.session.begin_nested():
                db.session.add(row)
                db.session.flush()
        except IntegrityError:
            if key:
                return Notification.query.filter_by(dedupe_key=key).first()
            raise
        db.session.commit()
        return row

    def _drain(self, future: Future, job: dict) -> None:
        exc = future.exception()
        if exc is not None:
            self._record_failure(job, exc)

    def _record_failure(self, job: dict, exc: BaseException) -> None:
        self.errors.append(
            {
                "event_type": job.get("event_type"),
                "user_id": job.get("user_id"),
                "order_id": job.get("order_id"),
                "error": f"{type(exc).__name__}: {exc}",
                "at": datetime.utcnow().isoformat(),
            }
        )
        logger.error(
            "order_notification_failed event_type=%s user_id=%s order_id=%s err=%s",
            job.get("event_type"),
            job.get("user_id"),
            job.get("order_id"),
            exc,
        )
        try:
            import sentry_sdk

            sentry_sdk.capture_exception(exc)
        except Exception:
            pass

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
