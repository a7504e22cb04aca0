from datetime import datetime
import json

from escrowhub.extensions import db


class IdempotencyKey(db.Model):
    """Client Idempotency-Key claimed by a checkout (or other mutating) request.

    The row is inserted before the work runs and completed with the response
    once it succeeds; a failed request deletes it so the key can be reused.
    """

    __tablename__ = "idempotency_keys"
    __table_args__ = (
        db.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(128), nullable=False, default="")
    key = db.Column(db.String(128), nullable=False)
    user_id = db.Column(db.Integer, nullable=True, index=True)
    request_fingerprint = db.Column(db.String(64), nullable=False, default="")

    response_body = db.Column(db.Text, nullable=True)
    response_status = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None and self.response_body is not None

    def complete(self, body, status: int) -> None:
        self.response_body = json.dumps(body, separators=(",", ":"), default=str)
        self.response_status = int(status or 200)
        self.completed_at = datetime.utcnow()

    def replay(self) -> tuple[dict, int]:
        return json.loads(self.response_body or "{}"), int(self.response_status or 200)
