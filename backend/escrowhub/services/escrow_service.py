from __future__ import annotations

import json
from datetime import datetime

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.orm.attributes import set_committed_value

from escrowhub.errors import BadRequest, ConflictError, InvalidTransition, NotFound, PreconditionMissing
from escrowhub.extensions import db
from escrowhub.models import EscrowRecord, EscrowTransition, Order, OrderItem
from escrowhub.services.order_item_service import OrderItemStatus, record_order_event
from escrowhub.utils.actors import actor_for, parse_actor
from escrowhub.utils.events import log_event
from escrowhub.utils.fees import seller_amount
from escrowhub.utils.notify import queue_in_app


class EscrowStatus:
    HOLDING = "HOLDING"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"

    TERMINAL = frozenset({RELEASED, REFUNDED, CANCELLED})

    ALLOWED = {
        HOLDING: {RELEASED, REFUNDED, CANCELLED},
        RELEASED: set(),
        REFUNDED: set(),
        CANCELLED: set(),
    }


def escrow_for_item(order_item_id: int) -> EscrowRecord | None:
    return EscrowRecord.query.filter_by(order_item_id=int(order_item_id)).first()


def escrow_statuses_for(order_item_ids) -> dict[int, str]:
    ids = sorted({int(i) for i in order_item_ids or []})
    if not ids:
        return {}
    rows = db.session.execute(
        select(EscrowRecord.order_item_id, EscrowRecord.status).where(EscrowRecord.order_item_id.in_(ids))
    ).all()
    return {int(r[0]): r[1] for r in rows}


def get_record(record_id: int) -> EscrowRecord:
    record = db.session.get(EscrowRecord, int(record_id))
    if record is None:
        raise NotFound(f"Escrow transaction {record_id} not found")
    return record


def _audit(record: EscrowRecord, from_status: str, to_status: str, *, actor, key: str, reason: str, metadata: dict | None) -> EscrowTransition:
    actor_type, actor_id = parse_actor(actor)
    row = EscrowTransition(
        escrow_record_id=int(record.id),
        order_id=int(record.order_id),
        order_item_id=int(record.order_item_id),
        from_status=from_status,
        to_status=to_status,
        actor_type=actor_type,
        actor_id=actor_id,
        idempotency_key=key[:160],
        reason=(reason or "")[:240],
        metadata_json=json.dumps(metadata or {}, default=str)[:4000],
        created_at=datetime.utcnow(),
    )
    db.session.add(row)
    return row


def open_escrow(item: OrderItem, *, actor=None) -> EscrowRecord:
    """Create the HOLDING record for a freshly paid item. Flushes, never commits."""
    existing = escrow_for_item(item.id)
    if existing is not None:
        return existing
    record = EscrowRecord(
        order_item_id=int(item.id),
        order_id=int(item.order_id),
        seller_id=int(item.seller_id),
        buyer_id=int(item.buyer_id),
        status=EscrowStatus.HOLDING,
        held_amount=seller_amount(item.price, item.platform_fee),
        platform_fee=int(item.platform_fee or 0),
    )
    db.session.add(record)
    db.session.flush()
    _audit(
        record,
        "",
        EscrowStatus.HOLDING,
        actor=actor,
        key=f"escrow:{int(record.id)}:open",
        reason="payment_confirmed",
        metadata={"held_amount": int(record.held_amount)},
    )
    return record


def claim_and_transition(
    record: EscrowRecord,
    to_status: str,
    *,
    idempotency_key: str,
    actor=None,
    reason: str = "",
    notes: str | None = None,
    metadata: dict | None = None,
) -> EscrowTransition:
    """Atomically move a HOLDING record to a terminal state.

    Exactly one caller can win: the UPDATE is conditional on the row still
    being HOLDING. A replay of the winning idempotency key returns the
    original audit row; any other caller finding the record terminal gets
    ConflictError. Flushes, never commits.
    """
    if record is None:
        raise NotFound("Escrow transaction not found")
    key = (idempotency_key or "").strip()
    if not key:
        raise BadRequest("idempotency_key required")
    target = (to_status or "").strip().upper()
    if target not in EscrowStatus.ALLOWED[EscrowStatus.HOLDING]:
        raise InvalidTransition(f"Escrow cannot move to {target or 'nothing'}", details={"to": target})

    existing = EscrowTransition.query.filter_by(escrow_record_id=int(record.id), idempotency_key=key[:160]).first()
    if existing is not None:
        if existing.to_status != target:
            raise ConflictError(
                f"Escrow transaction {int(record.id)} key {key} was used for {existing.to_status}",
                details={"transaction_id": int(record.id), "escrow_status": existing.to_status},
            )
        return existing

    now = datetime.utcnow()
    values = {"status": target, "updated_at": now}
    if target == EscrowStatus.RELEASED:
        values["released_at"] = now
        values["release_reason"] = (reason or "released")[:64]
    elif target == EscrowStatus.REFUNDED:
        values["refunded_at"] = now
        values["release_reason"] = (reason or "refunded")[:64]
    else:
        values["release_reason"] = (reason or "voided")[:64]
    if notes:
        values["notes"] = notes[:500]

    result = db.session.execute(
        update(EscrowRecord)
        .where(EscrowRecord.id == record.id, EscrowRecord.status == EscrowStatus.HOLDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.refresh(record)
        current_app.logger.warning(
            "escrow_claim_lost transaction_id=%s wanted=%s current=%s key=%s",
            record.id,
            target,
            record.status,
            key,
        )
        raise ConflictError(
            f"Escrow transaction {int(record.id)} is already {record.status}",
            details={"transaction_id": int(record.id), "escrow_status": record.status},
        )
    for field, value in values.items():
        set_committed_value(record, field, value)

    row = _audit(record, EscrowStatus.HOLDING, target, actor=actor, key=key, reason=reason, metadata=metadata)
    actor_type, actor_id = parse_actor(actor)
    record_order_event(
        record.order_id,
        f"escrow_{target.lower()}",
        order_item_id=record.order_item_id,
        actor=actor,
        from_status=EscrowStatus.HOLDING,
        to_status=target,
        note=reason,
    )
    log_event(
        f"escrow_{target.lower()}",
        actor_user_id=actor_id,
        order_id=int(record.order_id),
        order_item_id=int(record.order_item_id),
        escrow_record_id=int(record.id),
        dedupe_key=f"escrow_{target.lower()}:{int(record.id)}",
        payload={"amount": int(record.held_amount or 0), "actor_type": actor_type, "reason": reason},
    )
    if target == EscrowStatus.RELEASED:
        queue_in_app(
            record.seller_id,
            kind="escrow_released",
            title="Funds released",
            message=f"{int(record.held_amount or 0)} VND for order item #{int(record.order_item_id)} has been released to you.",
            order_id=int(record.order_id),
            order_item_id=int(record.order_item_id),
            meta={"transaction_id": int(record.id), "amount": int(record.held_amount or 0)},
            dedupe_key=f"escrow_released:{int(record.id)}",
        )
    current_app.logger.info(
        "escrow_claimed transaction_id=%s to=%s actor=%s:%s reason=%s",
        record.id,
        target,
        actor_type,
        actor_id,
        reason,
    )
    return row


def release_for_delivery(item: OrderItem, *, actor=None) -> EscrowTransition | None:
    """Release triggered by a delivery confirmation.

    Returns None when the record is already terminal (for example an admin
    released it first); the delivery itself is still valid in that case.
    """
    record = escrow_for_item(item.id)
    if record is None:
        current_app.logger.warning("escrow_missing_on_delivery order_item_id=%s", item.id)
        log_event(
            "escrow_missing_on_delivery",
            order_id=int(item.order_id),
            order_item_id=int(item.id),
            severity="WARN",
            dedupe_key=f"escrow_missing_on_delivery:{int(item.id)}",
        )
        return None
    if record.status != EscrowStatus.HOLDING:
        return None
    try:
        return claim_and_transition(
            record,
            EscrowStatus.RELEASED,
            actor=actor,
            reason="delivery_confirmed",
            idempotency_key=f"delivery:{int(item.id)}",
        )
    except ConflictError:
        return None


def admin_release(record_id: int, *, admin, notes: str | None = None) -> dict:
    """Manual release from the admin console. Commits."""
    record = get_record(record_id)
    item = db.session.get(OrderItem, int(record.order_item_id))
    clean_notes = (notes or "").strip()
    try:
        if item is not None and item.status in OrderItemStatus.EXITS:
            raise InvalidTransition(
                f"Order item {int(item.id)} is {item.status}; its escrow cannot be released",
                details={"order_item_id": int(item.id), "item_status": item.status},
            )
        if (item is None or item.status != OrderItemStatus.DELIVERED) and not clean_notes:
            raise PreconditionMissing(
                "Notes are required to release escrow before delivery is confirmed",
                details={"missing": ["notes"]},
            )
        row = claim_and_transition(
            record,
            EscrowStatus.RELEASED,
            actor=actor_for(admin),
            reason="admin_release",
            notes=clean_notes or None,
            idempotency_key=f"admin_release:{int(record.id)}",
            metadata={"item_status": item.status if item is not None else None},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return {"transaction": record.to_dict(), "transition": row.to_dict()}


def refund_escrow(record: EscrowRecord, *, actor=None, reason: str = "refund", idempotency_key: str | None = None) -> EscrowTransition:
    return claim_and_transition(
        record,
        EscrowStatus.REFUNDED,
        actor=actor,
        reason=reason,
        idempotency_key=idempotency_key or f"refund:{int(record.order_item_id)}",
    )


def void_escrow(record: EscrowRecord, *, actor=None, reason: str = "voided_before_capture") -> EscrowTransition:
    """CANCELLED is only legal for a record whose order was never captured."""
    order = db.session.get(Order, int(record.order_id))
    if order is not None and order.paid_at is not None:
        raise InvalidTransition(
            f"Escrow transaction {int(record.id)} holds captured funds; refund it instead",
            details={"transaction_id": int(record.id), "paid_at": order.paid_at.isoformat()},
        )
    return claim_and_transition(
        record,
        EscrowStatus.CANCELLED,
        actor=actor,
        reason=reason,
        idempotency_key=f"void:{int(record.id)}",
    )
