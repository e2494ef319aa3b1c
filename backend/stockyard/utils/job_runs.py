from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from stockyard.extensions import db
from stockyard.models import JobRun

logger = logging.getLogger(__name__)


def record_job_run(
    *,
    job_name: str,
    ok: bool,
    started_at: datetime,
    counters: dict | None = None,
    error: str | None = None,
) -> JobRun | None:
    duration_ms = max(0, int((datetime.utcnow() - started_at).total_seconds() * 1000))
    try:
        row = JobRun(
            job_name=(job_name or "unknown").strip()[:64],
            ran_at=datetime.utcnow(),
            ok=bool(ok),
            duration_ms=duration_ms,
            counters_json=json.dumps(counters or {}, default=str),
            error=(error or "")[:1000] or None,
        )
        db.session.add(row)
        db.session.commit()
        return row
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("job_run_record_failed job_name=%s", job_name)
        return None


def last_job_run(job_name: str) -> JobRun | None:
    return JobRun.query.filter_by(job_name=job_name).order_by(JobRun.ran_at.desc(), JobRun.id.desc()).first()
