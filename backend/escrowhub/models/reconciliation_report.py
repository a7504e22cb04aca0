from datetime import datetime
import json

from escrowhub.extensions import db


class ReconciliationReport(db.Model):
    """One persisted run of the escrow ledger audit."""

    __tablename__ = "reconciliation_reports"

    id = db.Column(db.Integer, primary_key=True)
    trigger = db.Column(db.String(16), nullable=False, default="cli")  # cli | admin | task
    requested_by = db.Column(db.Integer, nullable=True)

    since = db.Column(db.DateTime, nullable=True)
    order_count = db.Column(db.Integer, nullable=False, default=0)
    drift_count = db.Column(db.Integer, nullable=False, default=0, index=True)
    summary_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    @property
    def has_drift(self) -> bool:
        return int(self.drift_count or 0) > 0

    def drift_items(self) -> list:
        if not self.summary_json:
            return []
        try:
            summary = json.loads(self.summary_json)
        except ValueError:
            return []
        items = summary.get("drift_items") if isinstance(summary, dict) else None
        return items if isinstance(items, list) else []

    def to_dict(self, *, include_items: bool = False):
        data = {
            "id": int(self.id),
            "trigger": self.trigger or "cli",
            "requested_by": int(self.requested_by) if self.requested_by is not None else None,
            "since": self.since.isoformat() if self.since else None,
            "order_count": int(self.order_count or 0),
            "drift_count": int(self.drift_count or 0),
            "has_drift": self.has_drift,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_items:
            data["drift_items"] = self.drift_items()
        return data
