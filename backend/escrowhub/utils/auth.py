from __future__ import annotations

from flask import g, request

from escrowhub.errors import Forbidden, Unauthorized
from escrowhub.extensions import db
from escrowhub.models import User
from escrowhub.utils.jwt_utils import decode_token, get_bearer_token


def current_user() -> User | None:
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
    if user is None or not user.is_active:
        return None
    g.auth_user_id = user.id
    g.auth_role = role_of(user)
    return user


def role_of(user: User | None) -> str:
    if not user:
        return "guest"
    return (user.role or "buyer").strip().lower()


def require_user(*roles: str) -> User:
    user = current_user()
    if user is None:
        raise Unauthorized("Authentication required")
    if roles and role_of(user) not in roles:
        raise Forbidden(f"Requires role: {', '.join(roles)}")
    return user
