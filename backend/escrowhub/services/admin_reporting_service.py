from __future__ import annotations

import csv
import io
from datetime import datetime, timedelta

from sqlalchemy import and_, case, func, or_

from escrowhub.extensions import db
from escrowhub.models import (
    DeliveryTransaction,
    EscrowRecord,
    EscrowTransition,
    Order,
    OrderEvent,
    OrderItem,
    PaymentCallback,
    PickupTransaction,
    User,
)
from escrowhub.services.escrow_service import EscrowStatus, escrow_statuses_for
from escrowhub.services.order_item_service import OrderItemStatus
from escrowhub.services.order_service import get_order, items_by_order, order_summary
from escrowhub.utils.config import problem_stuck_hours, release_grace_hours
from escrowhub.utils.events import events_for_order
from escrowhub.utils.fees import seller_amount
from escrowhub.utils.pagination import clamp_page

MAX_EXPORT_ROWS = 5000


def _iso(value):
    return value.isoformat() if value else None


def list_orders(*, order_status: str | None = None, buyer_id: int | None = None, limit=50, offset=0) -> dict:
    limit, offset = clamp_page(limit, offset)
    q = Order.query
    if order_status:
        q = q.filter(Order.status == order_status.strip().upper())
    if buyer_id is not None:
        q = q.filter(Order.buyer_id == int(buyer_id))
    total = q.count()
    orders = q.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
    items = items_by_order([o.id for o in orders])
    escrow = escrow_statuses_for([i.id for rows in items.values() for i in rows])
    return {
        "items": [order_summary(o, items.get(int(o.id), []), escrow) for o in orders],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


def _transaction_row(record: EscrowRecord, item: OrderItem | None, delivered_at) -> dict:
    return {
        "transaction_id": int(record.id),
        "order_id": int(record.order_id),
        "order_item_id": int(record.order_item_id),
        "product_title": (item.product_name if item is not None else "") or "",
        "seller_id": int(record.seller_id),
        "buyer_id": int(record.buyer_id),
        "amount": int(item.price or 0) if item is not None else 0,
        "platform_fee": int(record.platform_fee or 0),
        "seller_amount": int(record.held_amount or 0),
        "escrow_status": record.status,
        "item_status": item.status if item is not None else None,
        "delivered_at": _iso(delivered_at),
        "released_at": _iso(record.released_at),
        "refunded_at": _iso(record.refunded_at),
        "release_reason": record.release_reason or "",
        "notes": record.notes or "",
        "created_at": _iso(record.created_at),
    }


def _transaction_query():
    return (
        db.session.query(EscrowRecord, OrderItem, DeliveryTransaction.delivered_at, DeliveryTransaction.protection_until)
        .join(OrderItem, OrderItem.id == EscrowRecord.order_item_id)
        .outerjoin(DeliveryTransaction, DeliveryTransaction.order_item_id == EscrowRecord.order_item_id)
    )


def list_transactions(*, escrow_status: str | None = None, seller_id: int | None = None, limit=50, offset=0) -> dict:
    limit, offset = clamp_page(limit, offset)
    q = _transaction_query()
    if escrow_status:
        q = q.filter(EscrowRecord.status == escrow_status.strip().upper())
    if seller_id is not None:
        q = q.filter(EscrowRecord.seller_id == int(seller_id))
    total = q.count()
    rows = q.order_by(EscrowRecord.id.desc()).offset(offset).limit(limit).all()
    return {
        "items": [_transaction_row(r, item, delivered_at) for r, item, delivered_at, _until in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


def _release_due(delivered_at, protection_until, grace: timedelta):
    if protection_until is not None:
        return protection_until
    if delivered_at is None:
        return None
    return delivered_at + grace


def awaiting_release(*, limit=50, offset=0, now: datetime | None = None) -> dict:
    """Delivered items whose funds are still held, oldest delivery first."""
    limit, offset = clamp_page(limit, offset)
    now = now or datetime.utcnow()
    grace = timedelta(hours=release_grace_hours())
    q = _transaction_query().filter(
        EscrowRecord.status == EscrowStatus.HOLDING,
        OrderItem.status == OrderItemStatus.DELIVERED,
    )
    total = q.count()
    rows = q.order_by(DeliveryTransaction.delivered_at.asc(), EscrowRecord.id.asc()).offset(offset).limit(limit).all()
    out = []
    for record, item, delivered_at, protection_until in rows:
        row = _transaction_row(record, item, delivered_at)
        due = _release_due(delivered_at, protection_until, grace)
        row["release_due_at"] = _iso(due)
        row["overdue"] = bool(due is not None and due <= now)
        out.append(row)
    return {"items": out, "total": total, "limit": limit, "offset": offset}


def problem_transactions(*, limit=50, offset=0, now: datetime | None = None) -> dict:
    """Records an operator should look at.

    overdue_release: delivered, still HOLDING past its release window.
    stuck_logistics: no custody progress for PROBLEM_STUCK_HOURS.
    missing_escrow: item of a paid order that has no escrow record.
    """
    limit, offset = clamp_page(limit, offset)
    now = now or datetime.utcnow()
    grace_cutoff = now - timedelta(hours=release_grace_hours())
    stuck_cutoff = now - timedelta(hours=problem_stuck_hours())
    window = limit + offset
    problems = []

    overdue = (
        _transaction_query()
        .filter(
            EscrowRecord.status == EscrowStatus.HOLDING,
            OrderItem.status == OrderItemStatus.DELIVERED,
            or_(
                DeliveryTransaction.protection_until <= now,
                and_(DeliveryTransaction.protection_until.is_(None), DeliveryTransaction.delivered_at <= grace_cutoff),
            ),
        )
        .order_by(DeliveryTransaction.delivered_at.asc())
        .limit(window)
        .all()
    )
    for record, item, delivered_at, _until in overdue:
        problems.append(
            {
                "kind": "overdue_release",
                "order_id": int(record.order_id),
                "order_item_id": int(record.order_item_id),
                "transaction_id": int(record.id),
                "status": item.status,
                "escrow_status": record.status,
                "since": _iso(delivered_at),
                "detail": "Delivered but funds still held past the release window",
            }
        )

    stuck = (
        OrderItem.query.filter(
            OrderItem.status.in_(sorted(OrderItemStatus.LOGISTICS)),
            OrderItem.updated_at <= stuck_cutoff,
        )
        .order_by(OrderItem.updated_at.asc())
        .limit(window)
        .all()
    )
    escrow = escrow_statuses_for([i.id for i in stuck])
    for item in stuck:
        problems.append(
            {
                "kind": "stuck_logistics",
                "order_id": int(item.order_id),
                "order_item_id": int(item.id),
                "transaction_id": None,
                "status": item.status,
                "escrow_status": escrow.get(int(item.id)),
                "since": _iso(item.updated_at),
                "detail": f"No custody progress since {item.status}",
            }
        )

    missing = (
        db.session.query(OrderItem, Order.paid_at)
        .join(Order, Order.id == OrderItem.order_id)
        .outerjoin(EscrowRecord, EscrowRecord.order_item_id == OrderItem.id)
        .filter(Order.paid_at.isnot(None), EscrowRecord.id.is_(None))
        .order_by(Order.paid_at.asc())
        .limit(window)
        .all()
    )
    for item, paid_at in missing:
        problems.append(
            {
                "kind": "missing_escrow",
                "order_id": int(item.order_id),
                "order_item_id": int(item.id),
                "transaction_id": None,
                "status": item.status,
                "escrow_status": None,
                "since": _iso(paid_at),
                "detail": "Order is paid but this item holds no escrow record",
            }
        )

    problems.sort(key=lambda p: p["since"] or "")
    counts = {}
    for p in problems:
        counts[p["kind"]] = counts.get(p["kind"], 0) + 1
    return {
        "items": problems[offset:offset + limit],
        "counts": counts,
        "limit": limit,
        "offset": offset,
    }


def order_timeline(order_id: int) -> dict:
    """Every recorded fact about one order, oldest first."""
    order = get_order(order_id)
    entries = []
    for e in OrderEvent.query.filter_by(order_id=int(order.id)).all():
        entries.append({**e.to_dict(), "at": e.created_at, "source": "order_event"})
    for t in EscrowTransition.query.filter_by(order_id=int(order.id)).all():
        entries.append({**t.to_dict(), "at": t.created_at, "source": "escrow_transition"})
    item_ids = [i.id for i in OrderItem.query.filter_by(order_id=int(order.id)).all()]
    if item_ids:
        for p in PickupTransaction.query.filter(PickupTransaction.order_item_id.in_(item_ids)).all():
            entries.append({**p.to_dict(), "at": p.picked_up_at, "source": "pickup"})
        for d in DeliveryTransaction.query.filter(DeliveryTransaction.order_item_id.in_(item_ids)).all():
            entries.append({**d.to_dict(), "at": d.delivered_at, "source": "delivery"})
    for c in PaymentCallback.query.filter_by(order_code=order.order_code).all():
        entries.append({**c.to_dict(), "callback_source": c.source, "at": c.created_at, "source": "payment_callback"})
    for ev in events_for_order(order.id):
        entries.append({**ev.to_dict(), "at": ev.created_at, "source": "platform_event"})
    entries.sort(key=lambda e: (e["at"] or datetime.min, e["source"]))
    for e in entries:
        e["at"] = _iso(e["at"])
    return {"order": order_summary(order), "timeline": entries}


EXPORT_COLUMNS = [
    "order_id",
    "order_code",
    "buyer_id",
    "order_status",
    "status",
    "total_amount",
    "total_shipping_fee",
    "total_platform_fee",
    "total_items",
    "unique_sellers",
    "created_at",
    "paid_at",
    "delivered_at",
]


def export_orders_csv(*, order_status: str | None = None, since: datetime | None = None, max_rows: int = MAX_EXPORT_ROWS) -> str:
    q = Order.query
    if order_status:
        q = q.filter(Order.status == order_status.strip().upper())
    if since is not None:
        q = q.filter(Order.created_at >= since)
    orders = q.order_by(Order.id.asc()).limit(max(1, min(int(max_rows), MAX_EXPORT_ROWS))).all()
    items = items_by_order([o.id for o in orders])
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_COLUMNS)
    for order in orders:
        summary = order_summary(order, items.get(int(order.id), []), {})
        writer.writerow([summary.get(col) if summary.get(col) is not None else "" for col in EXPORT_COLUMNS])
    return output.getvalue()


def seller_analytics(*, limit=50, offset=0) -> dict:
    limit, offset = clamp_page(limit, offset)
    sold = OrderItem.status.notin_([OrderItemStatus.PENDING, OrderItemStatus.CANCELLED, OrderItemStatus.EXPIRED])
    item_stats = (
        db.session.query(
            OrderItem.seller_id,
            func.count(OrderItem.id),
            func.coalesce(func.sum(case((sold, OrderItem.price), else_=0)), 0),
            func.coalesce(func.sum(case((sold, OrderItem.platform_fee), else_=0)), 0),
            func.sum(case((OrderItem.status == OrderItemStatus.DELIVERED, 1), else_=0)),
        )
        .group_by(OrderItem.seller_id)
        .order_by(OrderItem.seller_id.asc())
    )
    total = item_stats.count()
    rows = item_stats.offset(offset).limit(limit).all()
    seller_ids = [int(r[0]) for r in rows]
    money: dict[int, dict[str, int]] = {sid: {} for sid in seller_ids}
    if seller_ids:
        for sid, status, amount in (
            db.session.query(EscrowRecord.seller_id, EscrowRecord.status, func.coalesce(func.sum(EscrowRecord.held_amount), 0))
            .filter(EscrowRecord.seller_id.in_(seller_ids))
            .group_by(EscrowRecord.seller_id, EscrowRecord.status)
            .all()
        ):
            money[int(sid)][status] = int(amount or 0)
    names = {u.id: u.name for u in User.query.filter(User.id.in_(seller_ids)).all()} if seller_ids else {}
    out = []
    for sid, item_count, gross, fees, delivered in rows:
        m = money.get(int(sid), {})
        out.append(
            {
                "seller_id": int(sid),
                "seller_name": names.get(int(sid), ""),
                "items": int(item_count or 0),
                "items_delivered": int(delivered or 0),
                "gross_sales": int(gross or 0),
                "platform_fees": int(fees or 0),
                "net_sales": seller_amount(int(gross or 0), int(fees or 0)),
                "holding_amount": m.get(EscrowStatus.HOLDING, 0),
                "released_amount": m.get(EscrowStatus.RELEASED, 0),
                "refunded_amount": m.get(EscrowStatus.REFUNDED, 0),
            }
        )
    return {"items": out, "total": total, "limit": limit, "offset": offset}


def buyer_analytics(*, limit=50, offset=0) -> dict:
    limit, offset = clamp_page(limit, offset)
    paid = Order.paid_at.isnot(None)
    q = (
        db.session.query(
            Order.buyer_id,
            func.count(Order.id),
            func.sum(case((paid, 1), else_=0)),
            func.coalesce(func.sum(case((paid, Order.total_amount + Order.total_shipping_fee), else_=0)), 0),
            func.max(Order.created_at),
        )
        .group_by(Order.buyer_id)
        .order_by(Order.buyer_id.asc())
    )
    total = q.count()
    rows = q.offset(offset).limit(limit).all()
    buyer_ids = [int(r[0]) for r in rows]
    names = {u.id: u.name for u in User.query.filter(User.id.in_(buyer_ids)).all()} if buyer_ids else {}
    return {
        "items": [
            {
                "buyer_id": int(bid),
                "buyer_name": names.get(int(bid), ""),
                "orders": int(count or 0),
                "paid_orders": int(paid_count or 0),
                "total_spent": int(spent or 0),
                "last_order_at": _iso(last_at),
            }
            for bid, count, paid_count, spent, last_at in rows
        ],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
