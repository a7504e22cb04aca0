from __future__ import annotations

from datetime import datetime

from flask import Blueprint, Response, jsonify, request

from escrowhub.errors import BadRequest, NotFound
from escrowhub.extensions import db
from escrowhub.jobs.escrow_runner import run_expiry_sweep, run_release_sweep
from escrowhub.models import ReconciliationReport
from escrowhub.services import admin_reporting_service as reports
from escrowhub.services.escrow_service import admin_release, escrow_statuses_for
from escrowhub.services.order_item_service import admin_refund
from escrowhub.services.reconciliation_service import persist_report, reconcile_escrow_ledger
from escrowhub.utils.auth import require_user
from escrowhub.utils.job_runs import recent_runs
from escrowhub.utils.pagination import clamp_page

admin_ops_bp = Blueprint("admin_ops_bp", __name__, url_prefix="/api/admin")


def _require_admin():
    return require_user("admin")


def _page_args() -> dict:
    return {"limit": request.args.get("limit"), "offset": request.args.get("offset")}


def _int_arg(name: str) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise BadRequest(f"{name} must be an integer")


def _date_arg(name: str) -> datetime | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise BadRequest(f"{name} must be an ISO date")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _sweep_limit() -> int:
    raw = _json_body().get("limit") or 200
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        raise BadRequest("limit must be an integer")
    return max(1, min(limit, 1000))


@admin_ops_bp.get("/orders")
def admin_orders():
    _require_admin()
    result = reports.list_orders(
        order_status=(request.args.get("order_status") or "").strip() or None,
        buyer_id=_int_arg("buyer_id"),
        **_page_args(),
    )
    return jsonify({"ok": True, **result}), 200


@admin_ops_bp.get("/orders/<int:order_id>/timeline")
def admin_order_timeline(order_id: int):
    _require_admin()
    return jsonify({"ok": True, **reports.order_timeline(order_id)}), 200


@admin_ops_bp.get("/orders/export-csv")
def admin_orders_export_csv():
    _require_admin()
    body = reports.export_orders_csv(
        order_status=(request.args.get("order_status") or "").strip() or None,
        since=_date_arg("since"),
    )
    return Response(
        body,
        mimetype="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="escrowhub-orders.csv"',
            "Cache-Control": "no-store",
        },
    )


@admin_ops_bp.get("/transactions")
def admin_transactions():
    _require_admin()
    result = reports.list_transactions(
        escrow_status=(request.args.get("escrow_status") or "").strip() or None,
        seller_id=_int_arg("seller_id"),
        **_page_args(),
    )
    return jsonify({"ok": True, **result}), 200


@admin_ops_bp.get("/transactions/problems")
def admin_problem_transactions():
    _require_admin()
    return jsonify({"ok": True, **reports.problem_transactions(**_page_args())}), 200


@admin_ops_bp.get("/transactions/awaiting-release")
def admin_awaiting_release():
    _require_admin()
    return jsonify({"ok": True, **reports.awaiting_release(**_page_args())}), 200


@admin_ops_bp.post("/transactions/<int:transaction_id>/release")
def admin_release_transaction(transaction_id: int):
    admin = _require_admin()
    result = admin_release(transaction_id, admin=admin, notes=_json_body().get("notes"))
    return jsonify({"ok": True, **result}), 200


@admin_ops_bp.post("/order-items/<int:item_id>/refund")
def admin_refund_item(item_id: int):
    admin = _require_admin()
    item = admin_refund(item_id, admin=admin, reason=_json_body().get("reason") or "")
    escrow = escrow_statuses_for([item.id])
    return jsonify({"ok": True, "item": item.to_dict(escrow_status=escrow.get(int(item.id)))}), 200


@admin_ops_bp.get("/analytics/sellers")
def admin_seller_analytics():
    _require_admin()
    return jsonify({"ok": True, **reports.seller_analytics(**_page_args())}), 200


@admin_ops_bp.get("/analytics/buyers")
def admin_buyer_analytics():
    _require_admin()
    return jsonify({"ok": True, **reports.buyer_analytics(**_page_args())}), 200


@admin_ops_bp.post("/jobs/release-sweep")
def admin_run_release_sweep():
    _require_admin()
    return jsonify(run_release_sweep(limit=_sweep_limit())), 200


@admin_ops_bp.post("/jobs/expiry-sweep")
def admin_run_expiry_sweep():
    _require_admin()
    return jsonify(run_expiry_sweep(limit=_sweep_limit())), 200


@admin_ops_bp.post("/reconciliation/run")
def admin_run_reconciliation():
    admin = _require_admin()
    since = _date_arg("since")
    summary = reconcile_escrow_ledger(since=since)
    report = persist_report(summary, trigger="admin", since=since, requested_by=int(admin.id))
    return jsonify({"ok": True, "report": report.to_dict(), "summary": summary}), 200


@admin_ops_bp.get("/reconciliation/reports")
def admin_reconciliation_reports():
    _require_admin()
    limit, offset = clamp_page(request.args.get("limit"), request.args.get("offset"), default_limit=20)
    q = ReconciliationReport.query
    if (request.args.get("drift") or "").strip().lower() in ("1", "true", "yes"):
        q = q.filter(ReconciliationReport.drift_count > 0)
    total = q.count()
    rows = q.order_by(ReconciliationReport.created_at.desc(), ReconciliationReport.id.desc()).offset(offset).limit(limit).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows], "total": total, "limit": limit, "offset": offset}), 200


@admin_ops_bp.get("/reconciliation/reports/<int:report_id>")
def admin_reconciliation_report(report_id: int):
    _require_admin()
    report = db.session.get(ReconciliationReport, report_id)
    if report is None:
        raise NotFound("reconciliation report not found")
    return jsonify({"ok": True, "report": report.to_dict(include_items=True)}), 200


@admin_ops_bp.get("/jobs/runs")
def admin_job_runs():
    _require_admin()
    limit, _offset = clamp_page(request.args.get("limit"), None, default_limit=20)
    job = (request.args.get("job") or "").strip() or None
    return jsonify({"ok": True, "items": [r.to_dict() for r in recent_runs(job, limit=limit)]}), 200
