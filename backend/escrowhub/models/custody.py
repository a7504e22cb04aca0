from datetime import datetime
import json

from escrowhub.extensions import db


def _load_urls(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(u) for u in parsed]


class PickupTransaction(db.Model):
    """Proof that a shipper took custody of an item from its seller."""

    __tablename__ = "pickup_transactions"

    id = db.Column(db.Integer, primary_key=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, unique=True)
    shipper_id = db.Column(db.Integer, nullable=True, index=True)
    qr_verified = db.Column(db.Boolean, nullable=False, default=False)
    photo_urls_json = db.Column(db.Text, nullable=False, default="[]")
    picked_up_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def photo_urls(self) -> list[str]:
        return _load_urls(self.photo_urls_json)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_item_id": int(self.order_item_id),
            "shipper_id": int(self.shipper_id) if self.shipper_id is not None else None,
            "qr_verified": bool(self.qr_verified),
            "photo_urls": self.photo_urls,
            "picked_up_at": self.picked_up_at.isoformat() if self.picked_up_at else None,
        }


class DeliveryTransaction(db.Model):
    """Proof that an item reached its buyer."""

    __tablename__ = "delivery_transactions"

    id = db.Column(db.Integer, primary_key=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, unique=True)
    shipper_id = db.Column(db.Integer, nullable=True, index=True)
    photo_urls_json = db.Column(db.Text, nullable=False, default="[]")
    delivered_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    buyer_protection_eligible = db.Column(db.Boolean, nullable=False, default=False)
    protection_until = db.Column(db.DateTime, nullable=True)

    @property
    def photo_urls(self) -> list[str]:
        return _load_urls(self.photo_urls_json)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_item_id": int(self.order_item_id),
            "shipper_id": int(self.shipper_id) if self.shipper_id is not None else None,
            "photo_urls": self.photo_urls,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "buyer_protection_eligible": bool(self.buyer_protection_eligible),
            "protection_until": self.protection_until.isoformat() if self.protection_until else None,
        }
