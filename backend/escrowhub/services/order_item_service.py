from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value

from escrowhub.errors import BadRequest, ConflictError, Forbidden, InvalidTransition, NotFound, PreconditionMissing
from escrowhub.extensions import db
from escrowhub.models import OrderEvent, OrderItem
from escrowhub.utils.actors import actor_for, parse_actor


class OrderItemStatus:
    PENDING = "PENDING"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    AWAITING_PICKUP = "AWAITING_PICKUP"
    IN_WAREHOUSE = "IN_WAREHOUSE"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    EXPIRED = "EXPIRED"

    SUCCESS_PATH = (
        PENDING,
        PAID,
        PROCESSING,
        AWAITING_PICKUP,
        IN_WAREHOUSE,
        OUT_FOR_DELIVERY,
        DELIVERED,
    )
    EXITS = (CANCELLED, REFUNDED, EXPIRED)
    TERMINAL = frozenset({DELIVERED, CANCELLED, REFUNDED, EXPIRED})

    # Older clients still send CONFIRMED for a paid item.
    ALIASES = {"CONFIRMED": PAID}

    ALLOWED = {
        PENDING: {PAID, CANCELLED, EXPIRED},
        PAID: {PROCESSING, CANCELLED, REFUNDED, EXPIRED},
        PROCESSING: {AWAITING_PICKUP, CANCELLED, REFUNDED, EXPIRED},
        AWAITING_PICKUP: {IN_WAREHOUSE, CANCELLED, REFUNDED, EXPIRED},
        IN_WAREHOUSE: {OUT_FOR_DELIVERY, CANCELLED, REFUNDED, EXPIRED},
        OUT_FOR_DELIVERY: {DELIVERED, CANCELLED, REFUNDED, EXPIRED},
        DELIVERED: set(),
        CANCELLED: set(),
        REFUNDED: set(),
        EXPIRED: set(),
    }

    # Buyer/seller cancellation stops once the package is in platform custody.
    CANCELLABLE = frozenset({PENDING, PAID, PROCESSING, AWAITING_PICKUP})
    SELLER_CANCELLABLE = frozenset({PROCESSING, AWAITING_PICKUP})
    REFUNDABLE = frozenset({PAID, PROCESSING, AWAITING_PICKUP, IN_WAREHOUSE, OUT_FOR_DELIVERY})
    LOGISTICS = frozenset({AWAITING_PICKUP, IN_WAREHOUSE, OUT_FOR_DELIVERY})

    @classmethod
    def rank(cls, status: str) -> int:
        try:
            return cls.SUCCESS_PATH.index(status)
        except ValueError:
            return -1


def normalize_status(value: str | None) -> str:
    raw = (value or "").strip().upper()
    raw = OrderItemStatus.ALIASES.get(raw, raw)
    if raw not in OrderItemStatus.ALLOWED:
        raise BadRequest(f"Unknown order item status: {value!r}", code="INVALID_STATUS")
    return raw


def get_item(item_id: int) -> OrderItem:
    item = db.session.get(OrderItem, int(item_id))
    if item is None:
        raise NotFound(f"Order item {item_id} not found")
    return item


def record_order_event(
    order_id: int,
    event: str,
    *,
    order_item_id: int | None = None,
    actor=None,
    from_status: str | None = None,
    to_status: str | None = None,
    note: str = "",
) -> OrderEvent:
    _actor_type, actor_id = parse_actor(actor)
    row = OrderEvent(
        order_id=int(order_id),
        order_item_id=int(order_item_id) if order_item_id is not None else None,
        actor_user_id=actor_id,
        event=(event or "unknown")[:64],
        from_status=from_status,
        to_status=to_status,
        note=(note or "")[:240] or None,
    )
    db.session.add(row)
    return row


def transition_item(item: OrderItem, to_status: str, *, actor=None, reason: str = "") -> OrderItem:
    """Move one item along a legal edge.

    The UPDATE only matches while the row still holds the status this caller
    observed; a concurrent writer that got there first leaves zero rows and
    this call raises ConflictError. Flushes, never commits.
    """
    if item is None:
        raise NotFound("Order item not found")
    observed = (item.status or OrderItemStatus.PENDING).strip().upper()
    target = normalize_status(to_status)
    if target not in OrderItemStatus.ALLOWED.get(observed, set()):
        raise InvalidTransition(
            f"Order item {int(item.id)} cannot move from {observed} to {target}",
            details={"order_item_id": int(item.id), "from": observed, "to": target},
        )

    now = datetime.utcnow()
    result = db.session.execute(
        update(OrderItem)
        .where(OrderItem.id == item.id, OrderItem.status == observed)
        .values(status=target, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(
            f"Order item {int(item.id)} changed concurrently; refresh and retry",
            details={"order_item_id": int(item.id), "expected": observed},
        )
    set_committed_value(item, "status", target)
    set_committed_value(item, "updated_at", now)

    record_order_event(
        item.order_id,
        f"item_{target.lower()}",
        order_item_id=item.id,
        actor=actor,
        from_status=observed,
        to_status=target,
        note=reason,
    )
    return item


def _escrow_blocking_exit(item: OrderItem):
    """The item's escrow record; ConflictError once it is no longer HOLDING."""
    from escrowhub.services.escrow_service import EscrowStatus, escrow_for_item

    record = escrow_for_item(item.id)
    if record is not None and record.status != EscrowStatus.HOLDING:
        raise ConflictError(
            f"Escrow for order item {int(item.id)} is already {record.status}",
            details={
                "order_item_id": int(item.id),
                "transaction_id": int(record.id),
                "escrow_status": record.status,
            },
        )
    return record


def can_exit(item: OrderItem) -> bool:
    try:
        _escrow_blocking_exit(item)
    except ConflictError:
        return False
    return True


def _refund_holding_escrow(item: OrderItem, record, *, actor, reason: str, key_prefix: str) -> None:
    from escrowhub.services.escrow_service import EscrowStatus, claim_and_transition

    if record is None:
        return
    claim_and_transition(
        record,
        EscrowStatus.REFUNDED,
        actor=actor,
        reason=reason,
        idempotency_key=f"{key_prefix}:{int(item.id)}",
    )


def cancel_item(item: OrderItem, *, actor=None, reason: str = "cancelled") -> OrderItem:
    if item.status not in OrderItemStatus.CANCELLABLE:
        raise InvalidTransition(
            f"Order item {int(item.id)} can no longer be cancelled ({item.status})",
            details={"order_item_id": int(item.id), "from": item.status, "to": OrderItemStatus.CANCELLED},
        )
    record = _escrow_blocking_exit(item)
    transition_item(item, OrderItemStatus.CANCELLED, actor=actor, reason=reason)
    _refund_holding_escrow(item, record, actor=actor, reason=reason, key_prefix="cancel")
    return item


def refund_item(item: OrderItem, *, actor=None, reason: str = "dispute_refund") -> OrderItem:
    if item.status not in OrderItemStatus.REFUNDABLE:
        raise InvalidTransition(
            f"Order item {int(item.id)} cannot be refunded from {item.status}",
            details={"order_item_id": int(item.id), "from": item.status, "to": OrderItemStatus.REFUNDED},
        )
    record = _escrow_blocking_exit(item)
    transition_item(item, OrderItemStatus.REFUNDED, actor=actor, reason=reason)
    _refund_holding_escrow(item, record, actor=actor, reason=reason, key_prefix="refund")
    return item


def expire_item(item: OrderItem, *, reason: str = "expired") -> OrderItem:
    if item.status not in (OrderItemStatus.PENDING,) and item.status not in OrderItemStatus.LOGISTICS:
        raise InvalidTransition(
            f"Order item {int(item.id)} does not expire from {item.status}",
            details={"order_item_id": int(item.id), "from": item.status, "to": OrderItemStatus.EXPIRED},
        )
    actor = {"type": "system", "id": None}
    record = _escrow_blocking_exit(item)
    transition_item(item, OrderItemStatus.EXPIRED, actor=actor, reason=reason)
    _refund_holding_escrow(item, record, actor=actor, reason=reason, key_prefix="expire")
    return item


def seller_cancel(item_id: int, *, seller, reason: str = "seller_cancelled") -> OrderItem:
    """Seller declines a paid item before handing it over. Commits."""
    item = get_item(item_id)
    if int(item.seller_id) != int(seller.id):
        raise Forbidden("This item belongs to another seller")
    if item.status not in OrderItemStatus.SELLER_CANCELLABLE:
        raise InvalidTransition(
            f"Sellers can only cancel paid items before pickup (item is {item.status})",
            details={"order_item_id": int(item.id), "from": item.status, "to": OrderItemStatus.CANCELLED},
        )
    try:
        cancel_item(item, actor=actor_for(seller), reason=reason)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return item


def admin_refund(item_id: int, *, admin, reason: str = "") -> OrderItem:
    """Dispute resolution in the buyer's favour. Commits."""
    item = get_item(item_id)
    clean = (reason or "").strip()
    if not clean:
        raise PreconditionMissing("A reason is required to refund an item", details={"missing": ["reason"]})
    try:
        refund_item(item, actor=actor_for(admin), reason=clean[:200])
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return item
