from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request

from escrowhub.errors import NotFound
from escrowhub.extensions import db
from escrowhub.models import Notification
from escrowhub.utils.auth import require_user
from escrowhub.utils.pagination import clamp_page

notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api")


@notifications_bp.get("/notifications")
def list_notifications():
    user = require_user()
    limit, offset = clamp_page(request.args.get("limit"), request.args.get("offset"), default_limit=80)
    q = Notification.query.filter_by(user_id=int(user.id))
    if (request.args.get("unread") or "").strip().lower() in ("1", "true", "yes"):
        q = q.filter(Notification.read_at.is_(None))
    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit).all()
    return jsonify({"ok": True, "items": [n.to_dict() for n in rows], "limit": limit, "offset": offset}), 200


@notifications_bp.post("/notifications/<int:notification_id>/read")
def mark_notification_read(notification_id: int):
    user = require_user()
    row = db.session.get(Notification, notification_id)
    if row is None or int(row.user_id) != int(user.id):
        raise NotFound("notification not found")
    if row.read_at is None:
        row.read_at = datetime.utcnow()
        db.session.commit()
    return jsonify({"ok": True, "notification": row.to_dict()}), 200
