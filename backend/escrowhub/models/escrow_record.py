from datetime import datetime

from escrowhub.extensions import db


class EscrowRecord(db.Model):
    __tablename__ = "escrow_records"
    __table_args__ = (
        db.Index("ix_escrow_records_status_created", "status", "created_at"),
    )

    # Exposed to admins as the transaction id.
    id = db.Column(db.Integer, primary_key=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, unique=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, nullable=False, index=True)
    buyer_id = db.Column(db.Integer, nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="HOLDING")
    held_amount = db.Column(db.BigInteger, nullable=False, default=0)
    platform_fee = db.Column(db.BigInteger, nullable=False, default=0)

    release_reason = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.String(500), nullable=True)
    released_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "transaction_id": int(self.id),
            "order_item_id": int(self.order_item_id),
            "order_id": int(self.order_id),
            "seller_id": int(self.seller_id),
            "buyer_id": int(self.buyer_id),
            "escrow_status": self.status or "",
            "held_amount": int(self.held_amount or 0),
            "platform_fee": int(self.platform_fee or 0),
            "release_reason": self.release_reason or "",
            "notes": self.notes or "",
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
