from datetime import datetime

from escrowhub.extensions import db


class PaymentCallback(db.Model):
    __tablename__ = "payment_callbacks"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="payos")
    source = db.Column(db.String(32), nullable=False, default="redirect")  # redirect | webhook
    order_code = db.Column(db.String(32), nullable=True, index=True)
    code = db.Column(db.String(16), nullable=True)
    status = db.Column(db.String(32), nullable=True)
    # received | paid | replayed | failed | failed_after_paid | mismatch
    outcome = db.Column(db.String(24), nullable=False, default="received")
    request_id = db.Column(db.String(64), nullable=True)
    payload_json = db.Column(db.Text, nullable=True)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider,
            "source": self.source,
            "order_code": self.order_code or "",
            "code": self.code or "",
            "status": self.status or "",
            "outcome": self.outcome or "",
            "request_id": self.request_id or "",
            "error": self.error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
