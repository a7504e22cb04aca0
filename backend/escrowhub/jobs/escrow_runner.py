from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import and_, or_

from escrowhub.errors import DomainError
from escrowhub.extensions import db
from escrowhub.models import DeliveryTransaction, EscrowRecord, Order, OrderItem
from escrowhub.services.escrow_service import EscrowStatus, claim_and_transition
from escrowhub.services.order_item_service import OrderItemStatus, expire_item
from escrowhub.services.order_service import OrderFlag, items_for, set_flag
from escrowhub.utils.config import logistics_expiry_hours, payment_expiry_minutes, release_grace_hours
from escrowhub.utils.events import log_event
from escrowhub.utils.job_runs import record_job_run

_SWEEP_ACTOR = {"type": "system", "id": None}


def _now():
    return datetime.utcnow()


def due_for_release(*, now: datetime | None = None, limit: int = 200) -> list[EscrowRecord]:
    now = now or _now()
    grace_cutoff = now - timedelta(hours=release_grace_hours())
    return (
        db.session.query(EscrowRecord)
        .join(OrderItem, OrderItem.id == EscrowRecord.order_item_id)
        .join(DeliveryTransaction, DeliveryTransaction.order_item_id == EscrowRecord.order_item_id)
        .filter(
            EscrowRecord.status == EscrowStatus.HOLDING,
            OrderItem.status == OrderItemStatus.DELIVERED,
            or_(
                and_(DeliveryTransaction.buyer_protection_eligible.is_(True), DeliveryTransaction.protection_until <= now),
                and_(DeliveryTransaction.buyer_protection_eligible.is_(False), DeliveryTransaction.delivered_at <= grace_cutoff),
            ),
        )
        .order_by(DeliveryTransaction.delivered_at.asc(), EscrowRecord.id.asc())
        .limit(max(1, int(limit)))
        .all()
    )


def run_release_sweep(*, limit: int = 200, now: datetime | None = None) -> dict:
    """Release HOLDING funds for delivered items whose window has elapsed."""
    started = _now()
    released: list[int] = []
    skipped: list[dict] = []
    try:
        for record in due_for_release(now=now, limit=limit):
            try:
                claim_and_transition(
                    record,
                    EscrowStatus.RELEASED,
                    actor=_SWEEP_ACTOR,
                    reason="release_sweep",
                    idempotency_key=f"release_sweep:{int(record.id)}",
                )
                db.session.commit()
                released.append(int(record.id))
            except DomainError as e:
                db.session.rollback()
                skipped.append({"transaction_id": int(record.id), "error": e.code})
    except Exception as e:
        db.session.rollback()
        record_job_run("escrow_release_sweep", started_at=started, ok=False, processed=len(released), skipped=len(skipped), error=str(e))
        raise
    record_job_run("escrow_release_sweep", started_at=started, processed=len(released), skipped=len(skipped))
    if released:
        current_app.logger.info("release_sweep released=%s skipped=%s", len(released), len(skipped))
    return {"ok": True, "released": released, "skipped": skipped}


def _expire_unpaid_orders(now: datetime, limit: int) -> tuple[list[int], list[dict]]:
    cutoff = now - timedelta(minutes=payment_expiry_minutes())
    orders = (
        Order.query.filter(Order.status == OrderFlag.PENDING, Order.created_at <= cutoff)
        .order_by(Order.created_at.asc())
        .limit(limit)
        .all()
    )
    expired: list[int] = []
    skipped: list[dict] = []
    for order in orders:
        try:
            set_flag(order, OrderFlag.PENDING, OrderFlag.EXPIRED)
            for item in items_for(order.id):
                if item.status == OrderItemStatus.PENDING:
                    expire_item(item, reason="payment_window_elapsed")
            log_event(
                "order_expired",
                order_id=int(order.id),
                dedupe_key=f"order_expired:{int(order.id)}",
            )
            db.session.commit()
            expired.append(int(order.id))
        except DomainError as e:
            # Typically a payment confirmation won the race for this order.
            db.session.rollback()
            skipped.append({"order_id": int(order.id), "error": e.code})
    return expired, skipped


def _expire_idle_logistics(now: datetime, limit: int) -> tuple[list[int], list[dict]]:
    cutoff = now - timedelta(hours=logistics_expiry_hours())
    items = (
        OrderItem.query.filter(
            OrderItem.status.in_(sorted(OrderItemStatus.LOGISTICS)),
            OrderItem.updated_at <= cutoff,
        )
        .order_by(OrderItem.updated_at.asc())
        .limit(limit)
        .all()
    )
    expired: list[int] = []
    skipped: list[dict] = []
    for item in items:
        if item.updated_at is not None and item.updated_at > cutoff:
            continue
        try:
            expire_item(item, reason="logistics_inactive")
            db.session.commit()
            expired.append(int(item.id))
        except DomainError as e:
            db.session.rollback()
            skipped.append({"order_item_id": int(item.id), "error": e.code})
    return expired, skipped


def run_expiry_sweep(*, limit: int = 200, now: datetime | None = None) -> dict:
    """Expire unpaid orders and logistics items with no custody progress."""
    started = _now()
    now = now or started
    limit = max(1, int(limit))
    try:
        orders, order_skips = _expire_unpaid_orders(now, limit)
        items, item_skips = _expire_idle_logistics(now, limit)
    except Exception as e:
        db.session.rollback()
        record_job_run("order_expiry_sweep", started_at=started, ok=False, error=str(e))
        raise
    record_job_run(
        "order_expiry_sweep",
        started_at=started,
        processed=len(orders) + len(items),
        skipped=len(order_skips) + len(item_skips),
    )
    if orders or items:
        current_app.logger.info("expiry_sweep orders=%s items=%s", len(orders), len(items))
    return {
        "ok": True,
        "expired_orders": orders,
        "expired_items": items,
        "skipped": order_skips + item_skips,
    }
