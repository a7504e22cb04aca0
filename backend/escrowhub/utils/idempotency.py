from __future__ import annotations

import hashlib
import json
from typing import Any

from flask import has_request_context, request
from sqlalchemy.exc import IntegrityError

from escrowhub.errors import BadRequest, ConflictError, IdempotencyKeyReuse
from escrowhub.extensions import db
from escrowhub.models import IdempotencyKey
from escrowhub.utils.config import env_bool


def idempotency_enforced() -> bool:
    return env_bool("ENABLE_IDEMPOTENCY_ENFORCEMENT", False)


def request_key() -> str | None:
    if not has_request_context():
        return None
    raw = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key") or ""
    return raw.strip()[:128] or None


def fingerprint(scope: str, payload: Any) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{scope}|{canonical}".encode("utf-8")).hexdigest()


def _insert_claim(scope: str, key: str, user_id: int | None, digest: str) -> IdempotencyKey:
    row = IdempotencyKey(scope=scope, key=key, user_id=user_id, request_fingerprint=digest)
    try:
        with db.session.begin_nested():
            db.session.add(row)
        db.session.commit()
        return row
    except IntegrityError:
        # Lost the insert race; the other request's row decides.
        existing = IdempotencyKey.query.filter_by(scope=scope, key=key).first()
        if existing is None:
            raise
        return existing


def claim_request_key(scope: str, payload: Any, *, user_id: int | None = None, require_header: bool | None = None):
    """Claim the request's Idempotency-Key for `scope`.

    Returns ``(row, replay)``. ``row`` is None when the client sent no key.
    ``replay`` is the stored ``(body, status)`` of an earlier identical
    request, in which case the caller must not redo the work.
    """
    key = request_key()
    required = idempotency_enforced() if require_header is None else bool(require_header)
    if not key:
        if required:
            raise BadRequest(f"Idempotency-Key header is required for {scope}", code="IDEMPOTENCY_KEY_REQUIRED")
        return None, None

    digest = fingerprint(scope, payload)
    row = IdempotencyKey.query.filter_by(scope=scope, key=key).first()
    if row is None:
        row = _insert_claim(scope, key, int(user_id) if user_id is not None else None, digest)
        if row.request_fingerprint == digest and not row.is_complete:
            return row, None

    if (row.request_fingerprint or "") != digest:
        raise IdempotencyKeyReuse("This Idempotency-Key was already used with a different request payload")
    if not row.is_complete:
        raise ConflictError("A request with this Idempotency-Key is still being processed", code="IDEMPOTENCY_IN_PROGRESS")
    return row, row.replay()


def complete_key(row: IdempotencyKey, body: Any, status: int) -> None:
    row.complete(body, status)
    db.session.add(row)
    db.session.commit()


def release_key(row: IdempotencyKey) -> None:
    """Forget a key whose request failed so the client can retry with it."""
    db.session.delete(row)
    db.session.commit()
