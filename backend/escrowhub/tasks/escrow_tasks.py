from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from escrowhub.jobs.escrow_runner import run_expiry_sweep, run_release_sweep
from escrowhub.services.reconciliation_service import persist_report, reconcile_escrow_ledger


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": int(max(0.0, time.perf_counter() - float(started_at)) * 1000.0),
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


@shared_task(name="escrowhub.tasks.escrow_tasks.release_sweep")
def release_sweep_task(limit: int = 200, trace_id: str = ""):
    started = time.perf_counter()
    result = run_release_sweep(limit=int(limit))
    _task_log("release_sweep", status="ok", started_at=started, trace_id=trace_id, released=len(result["released"]))
    return result


@shared_task(name="escrowhub.tasks.escrow_tasks.expiry_sweep")
def expiry_sweep_task(limit: int = 200, trace_id: str = ""):
    started = time.perf_counter()
    result = run_expiry_sweep(limit=int(limit))
    _task_log(
        "expiry_sweep",
        status="ok",
        started_at=started,
        trace_id=trace_id,
        expired_orders=len(result["expired_orders"]),
        expired_items=len(result["expired_items"]),
    )
    return result


@shared_task(name="escrowhub.tasks.escrow_tasks.reconcile_ledger")
def reconcile_ledger_task(trace_id: str = ""):
    started = time.perf_counter()
    summary = reconcile_escrow_ledger()
    report = persist_report(summary, trigger="task")
    _task_log("reconcile_ledger", status="ok", started_at=started, trace_id=trace_id, drift_count=summary["drift_count"])
    return {"report_id": int(report.id), "drift_count": int(summary["drift_count"])}
