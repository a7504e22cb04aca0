from __future__ import annotations

import json
from datetime import datetime

from flask import current_app

from escrowhub.extensions import db
from escrowhub.models import EscrowRecord, Order, ReconciliationReport
from escrowhub.services.escrow_service import EscrowStatus
from escrowhub.services.order_item_service import OrderItemStatus
from escrowhub.services.order_service import check_totals, items_for
from escrowhub.utils.fees import seller_amount

# Item status -> escrow states that are consistent with it.
_EXPECTED_ESCROW = {
    OrderItemStatus.PENDING: {None, EscrowStatus.CANCELLED},
    OrderItemStatus.PAID: {EscrowStatus.HOLDING},
    OrderItemStatus.PROCESSING: {EscrowStatus.HOLDING},
    OrderItemStatus.AWAITING_PICKUP: {EscrowStatus.HOLDING},
    OrderItemStatus.IN_WAREHOUSE: {EscrowStatus.HOLDING},
    OrderItemStatus.OUT_FOR_DELIVERY: {EscrowStatus.HOLDING},
    OrderItemStatus.DELIVERED: {EscrowStatus.HOLDING, EscrowStatus.RELEASED},
    OrderItemStatus.CANCELLED: {None, EscrowStatus.REFUNDED, EscrowStatus.CANCELLED},
    OrderItemStatus.REFUNDED: {EscrowStatus.REFUNDED},
    OrderItemStatus.EXPIRED: {None, EscrowStatus.REFUNDED, EscrowStatus.CANCELLED},
}


def reconcile_escrow_ledger(*, since: datetime | None = None) -> dict:
    """Audit paid orders against their items and escrow records. Read-only."""
    q = Order.query.filter(Order.paid_at.isnot(None))
    if since is not None:
        q = q.filter(Order.paid_at >= since)
    orders = q.order_by(Order.id.asc()).all()
    drift_items = []

    for order in orders:
        items = items_for(order.id)
        for problem in check_totals(order, items):
            drift_items.append({"order_id": int(order.id), "order_item_id": None, "problem": problem})
        records = {
            int(r.order_item_id): r
            for r in EscrowRecord.query.filter(EscrowRecord.order_id == int(order.id)).all()
        }
        for item in items:
            record = records.get(int(item.id))
            escrow_status = record.status if record is not None else None
            if escrow_status not in _EXPECTED_ESCROW.get(item.status, set()):
                drift_items.append(
                    {
                        "order_id": int(order.id),
                        "order_item_id": int(item.id),
                        "problem": f"item {item.status} with escrow {escrow_status or 'missing'}",
                    }
                )
            if record is not None:
                expected = seller_amount(item.price, item.platform_fee)
                if int(record.held_amount or 0) != expected:
                    drift_items.append(
                        {
                            "order_id": int(order.id),
                            "order_item_id": int(item.id),
                            "problem": f"held_amount {int(record.held_amount or 0)} != {expected}",
                        }
                    )

    return {
        "ok": True,
        "scope": "escrow_ledger",
        "since": since.isoformat() if since else "",
        "order_count": len(orders),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }


def persist_report(
    summary: dict,
    *,
    trigger: str = "cli",
    since: datetime | None = None,
    requested_by: int | None = None,
) -> ReconciliationReport:
    report = ReconciliationReport(
        trigger=(trigger or "cli")[:16],
        requested_by=int(requested_by) if requested_by is not None else None,
        since=since,
        order_count=int(summary.get("order_count") or 0),
        drift_count=int(summary.get("drift_count") or 0),
        summary_json=json.dumps(summary, default=str),
    )
    db.session.add(report)
    db.session.commit()
    if report.has_drift:
        current_app.logger.warning(
            "escrow_ledger_drift report_id=%s drift_count=%s trigger=%s",
            report.id,
            report.drift_count,
            report.trigger,
        )
    return report
