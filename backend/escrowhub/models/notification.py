from datetime import datetime
import json

from escrowhub.extensions import db


class Notification(db.Model):
    """In-app message to a buyer or seller about one of their orders."""

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    kind = db.Column(db.String(48), nullable=False)  # new_order | escrow_released | item_delivered
    title = db.Column(db.String(160), nullable=True)
    message = db.Column(db.Text, nullable=False)

    order_id = db.Column(db.Integer, nullable=True, index=True)
    order_item_id = db.Column(db.Integer, nullable=True)

    dedupe_key = db.Column(db.String(160), nullable=True, unique=True)
    meta = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    read_at = db.Column(db.DateTime, nullable=True)

    def meta_dict(self) -> dict:
        try:
            data = json.loads(self.meta or "{}")
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "kind": self.kind,
            "title": self.title or "",
            "message": self.message or "",
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "order_item_id": int(self.order_item_id) if self.order_item_id is not None else None,
            "is_read": self.read_at is not None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "meta": self.meta_dict(),
        }
