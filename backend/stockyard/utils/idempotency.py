from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from flask import has_request_context, request
from sqlalchemy.exc import IntegrityError

from stockyard.extensions import db
from stockyard.models import IdempotencyKey


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _hash_request(*, method: str, path: str, payload: Any) -> str:
    raw = f"{method.strip().upper()}|{path.strip()}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def _reuse_conflict_response() -> tuple[str, dict, int]:
    return (
        "conflict",
        {
            "ok": False,
            "error": "IDEMPOTENCY_KEY_REUSE",
            "message": "This Idempotency-Key was already used with a different request payload.",
            "status": 409,
        },
        409,
    )


def lookup_response(user_id: int | None, scope: str, payload: Any, *, idempotency_key: str | None = None):
    """Check the key for ``scope``.

    Returns None without a key; ``("hit", body, status)`` for a stored answer;
    ``("conflict", body, 409)`` when the key was used with another payload;
    ``("miss", row, 0)`` after reserving the key for this request.
    """
    k = (idempotency_key or get_idempotency_key() or "").strip()[:128]
    if not k:
        return None
    path = request.path if has_request_context() else scope
    method = request.method if has_request_context() else "POST"
    req_hash = _hash_request(method=method, path=path, payload=payload)

    row = IdempotencyKey.query.filter_by(scope=scope, key=k).first()
    if row is None:
        row = IdempotencyKey(
            key=k,
            scope=scope,
            user_id=int(user_id) if user_id is not None else None,
            request_hash=req_hash,
            created_at=datetime.utcnow(),
        )
        try:
            with db.session.begin_nested():
                db.session.add(row)
            db.session.commit()
            return ("miss", row, 0)
        except IntegrityError:
            db.session.rollback()
            row = IdempotencyKey.query.filter_by(scope=scope, key=k).first()
            if row is None:
                raise

    if (row.request_hash or "") != req_hash:
        return _reuse_conflict_response()
    if row.response_json:
        return ("hit", json.loads(row.response_json), int(row.status_code or 200))
    # Reserved by a request that has not finished yet
    return (
        "conflict",
        {
            "ok": False,
            "error": "IDEMPOTENCY_IN_PROGRESS",
            "message": "A request with this Idempotency-Key is still in progress.",
            "status": 409,
        },
        409,
    )


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    row.status_code = int(status_code or 200)
    db.session.add(row)
    db.session.commit()


def release_key(row: IdempotencyKey) -> None:
    """Drop a reservation whose request failed so the client can retry."""
    db.session.delete(row)
    db.session.commit()
