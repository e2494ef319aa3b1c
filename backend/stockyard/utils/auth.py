from __future__ import annotations

from flask import abort, g, request

from stockyard.extensions import db
from stockyard.models import User
from stockyard.services.order_errors import Forbidden
from stockyard.utils.jwt_utils import decode_token, get_bearer_token


def current_user() -> User | None:
    """Resolve the bearer token's ``sub`` to a user, or None."""
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    user = db.session.get(User, uid)
    if user is not None:
        g.auth_user_id = int(user.id)
        g.auth_role = role_of(user)
    return user


def role_of(user: User | None) -> str:
    if not user:
        return "guest"
    return (getattr(user, "role", None) or "buyer").strip().lower()


def is_admin(user: User | None) -> bool:
    return role_of(user) == "admin"


def require_user() -> User:
    user = current_user()
    if user is None:
        abort(401, description="Authentication required")
    return user


def require_admin() -> User:
    user = require_user()
    if not is_admin(user):
        raise Forbidden("Admin access required", code="ADMIN_REQUIRED")
    return user
