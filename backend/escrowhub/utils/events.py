from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from escrowhub.extensions import db
from escrowhub.models import PlatformEvent
from escrowhub.utils.observability import get_request_id


def _jsonable(value: Any):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, set):
        return sorted(value)
    return str(value)


def _optional_id(value) -> int | None:
    return int(value) if value is not None else None


def log_event(
    event_type: str,
    *,
    actor_user_id: int | None = None,
    order_id: int | None = None,
    order_item_id: int | None = None,
    escrow_record_id: int | None = None,
    severity: str = "INFO",
    dedupe_key: str | None = None,
    payload: dict | None = None,
) -> PlatformEvent | None:
    """Append a milestone to the platform event feed.

    Best effort: the row is added inside a SAVEPOINT and commits with the
    caller, and a failure here never aborts the caller's unit of work.
    A repeated ``dedupe_key`` returns the existing row.
    """
    key = (dedupe_key or "").strip()[:180] or None
    try:
        if key:
            existing = PlatformEvent.query.filter_by(dedupe_key=key).first()
            if existing is not None:
                return existing
        event = PlatformEvent(
            event_type=(event_type or "unknown").strip()[:80],
            severity=(severity or "INFO").strip().upper()[:16],
            actor_user_id=_optional_id(actor_user_id),
            order_id=_optional_id(order_id),
            order_item_id=_optional_id(order_item_id),
            escrow_record_id=_optional_id(escrow_record_id),
            request_id=get_request_id()[:80] or None,
            dedupe_key=key,
            payload_json=json.dumps(payload or {}, separators=(",", ":"), default=_jsonable),
        )
        with db.session.begin_nested():
            db.session.add(event)
        return event
    except (SQLAlchemyError, TypeError, ValueError) as e:
        current_app.logger.warning("platform_event_dropped type=%s err=%s", event_type, e)
        return None


def events_for_order(order_id: int) -> list[PlatformEvent]:
    return (
        PlatformEvent.query.filter(PlatformEvent.order_id == int(order_id))
        .order_by(PlatformEvent.created_at.asc(), PlatformEvent.id.asc())
        .all()
    )
