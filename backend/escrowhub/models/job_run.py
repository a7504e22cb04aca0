from datetime import datetime

from escrowhub.extensions import db


class JobRun(db.Model):
    """Outcome of one release or expiry sweep."""

    __tablename__ = "job_runs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(64), nullable=False, index=True)
    started_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    finished_at = db.Column(db.DateTime, nullable=True)

    ok = db.Column(db.Boolean, nullable=False, default=True)
    # rows moved to a new state / rows left alone because another writer won
    processed = db.Column(db.Integer, nullable=False, default=0)
    skipped = db.Column(db.Integer, nullable=False, default=0)
    error = db.Column(db.Text, nullable=True)

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return max(0, int((self.finished_at - self.started_at).total_seconds() * 1000))

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "job_name": self.job_name or "",
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "ok": bool(self.ok),
            "processed": int(self.processed or 0),
            "skipped": int(self.skipped or 0),
            "error": self.error or "",
        }
