from datetime import datetime

from escrowhub.extensions import db


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = (
        db.Index("ix_order_items_status_updated", "status", "updated_at"),
        db.Index("ix_order_items_seller_status", "seller_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    product_id = db.Column(db.Integer, nullable=False)
    product_name = db.Column(db.String(200), nullable=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    price = db.Column(db.BigInteger, nullable=False, default=0)
    platform_fee = db.Column(db.BigInteger, nullable=False, default=0)
    # Snapshot of the fee policy at checkout; never recomputed.
    fee_percentage = db.Column(db.Numeric(6, 4), nullable=False, default=0)

    status = db.Column(db.String(24), nullable=False, default="PENDING")
    notes = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self, *, escrow_status: str | None = None) -> dict:
        return {
            "order_item_id": int(self.id),
            "order_id": int(self.order_id),
            "product_id": int(self.product_id),
            "product_name": self.product_name or "",
            "seller_id": int(self.seller_id),
            "buyer_id": int(self.buyer_id),
            "price": int(self.price or 0),
            "platform_fee": int(self.platform_fee or 0),
            "fee_percentage": float(self.fee_percentage or 0),
            "status": self.status or "PENDING",
            "escrow_status": escrow_status,
            "notes": self.notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
