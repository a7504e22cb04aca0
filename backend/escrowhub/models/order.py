from datetime import datetime

from escrowhub.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    # Gateway correlation key; defaults to the order id once the row exists.
    order_code = db.Column(db.String(32), nullable=True, unique=True, index=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    shipping_address_id = db.Column(db.Integer, nullable=False)

    total_amount = db.Column(db.BigInteger, nullable=False, default=0)
    total_shipping_fee = db.Column(db.BigInteger, nullable=False, default=0)
    total_platform_fee = db.Column(db.BigInteger, nullable=False, default=0)
    total_items = db.Column(db.Integer, nullable=False, default=0)
    unique_sellers = db.Column(db.Integer, nullable=False, default=0)

    # Convenience flag only: PENDING | PAID | CANCELLED | EXPIRED.
    # Fulfilment progress is derived from the items on read.
    status = db.Column(db.String(24), nullable=False, default="PENDING", index=True)

    payment_method = db.Column(db.String(24), nullable=False, default="PAYOS")
    payment_intent_ref = db.Column(db.String(128), nullable=True)
    checkout_url = db.Column(db.String(1024), nullable=True)
    notes = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    paid_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "order_id": int(self.id),
            "order_code": self.order_code or "",
            "buyer_id": int(self.buyer_id),
            "shipping_address_id": int(self.shipping_address_id),
            "total_amount": int(self.total_amount or 0),
            "total_shipping_fee": int(self.total_shipping_fee or 0),
            "total_platform_fee": int(self.total_platform_fee or 0),
            "total_items": int(self.total_items or 0),
            "unique_sellers": int(self.unique_sellers or 0),
            "order_status": self.status or "PENDING",
            "payment_method": self.payment_method or "",
            "payment_intent_ref": self.payment_intent_ref or "",
            "checkout_url": self.checkout_url or "",
            "notes": self.notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }
