from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from escrowhub.extensions import db
from escrowhub.models import JobRun


def record_job_run(
    job_name: str,
    *,
    started_at: datetime,
    ok: bool = True,
    processed: int = 0,
    skipped: int = 0,
    error: str | None = None,
) -> JobRun | None:
    """Persist a sweep outcome. A failure to write it is logged, not raised."""
    row = JobRun(
        job_name=(job_name or "unknown").strip()[:64],
        started_at=started_at,
        finished_at=datetime.utcnow(),
        ok=bool(ok),
        processed=int(processed or 0),
        skipped=int(skipped or 0),
        error=(error or "")[:1000] or None,
    )
    try:
        db.session.add(row)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.warning("job_run_not_recorded job=%s err=%s", job_name, e)
        return None
    return row


def last_run(job_name: str) -> JobRun | None:
    return (
        JobRun.query.filter_by(job_name=job_name)
        .order_by(JobRun.started_at.desc(), JobRun.id.desc())
        .first()
    )


def recent_runs(job_name: str | None = None, *, limit: int = 20) -> list[JobRun]:
    q = JobRun.query
    if job_name:
        q = q.filter_by(job_name=job_name)
    return q.order_by(JobRun.started_at.desc(), JobRun.id.desc()).limit(max(1, int(limit))).all()
