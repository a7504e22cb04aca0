from __future__ import annotations

import json

from escrowhub.extensions import db
from escrowhub.models import Notification


def queue_in_app(
    user_id: int,
    *,
    kind: str,
    title: str,
    message: str,
    order_id: int | None = None,
    order_item_id: int | None = None,
    meta: dict | None = None,
    dedupe_key: str | None = None,
) -> Notification:
    """Add an in-app notification to the current session.

    With a dedupe_key, an existing row for the same key is returned instead of
    queueing a second copy (payment replays, sweep reruns).
    """
    key = (dedupe_key or "").strip()[:160] or None
    if key:
        existing = Notification.query.filter_by(dedupe_key=key).first()
        if existing:
            return existing
    row = Notification(
        user_id=int(user_id),
        kind=kind[:48],
        title=(title or "")[:160],
        message=message,
        order_id=int(order_id) if order_id is not None else None,
        order_item_id=int(order_item_id) if order_item_id is not None else None,
        dedupe_key=key,
        meta=json.dumps(meta or {}, separators=(",", ":"), default=str),
    )
    db.session.add(row)
    return row
