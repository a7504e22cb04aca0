from datetime import datetime
import json

from escrowhub.extensions import db


class PlatformEvent(db.Model):
    """Business milestone feed: order placed, paid, picked up, escrow moved."""

    __tablename__ = "platform_events"

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    severity = db.Column(db.String(16), nullable=False, default="INFO")

    actor_user_id = db.Column(db.Integer, nullable=True, index=True)
    order_id = db.Column(db.Integer, nullable=True, index=True)
    order_item_id = db.Column(db.Integer, nullable=True, index=True)
    escrow_record_id = db.Column(db.Integer, nullable=True)

    request_id = db.Column(db.String(80), nullable=True)
    # one row per milestone, e.g. "order_paid:42"
    dedupe_key = db.Column(db.String(180), nullable=True, unique=True)
    payload_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def payload(self) -> dict:
        if not self.payload_json:
            return {}
        try:
            data = json.loads(self.payload_json)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "event_type": self.event_type or "",
            "severity": self.severity or "INFO",
            "actor_user_id": int(self.actor_user_id) if self.actor_user_id is not None else None,
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "order_item_id": int(self.order_item_id) if self.order_item_id is not None else None,
            "escrow_record_id": int(self.escrow_record_id) if self.escrow_record_id is not None else None,
            "request_id": self.request_id or "",
            "payload": self.payload(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
