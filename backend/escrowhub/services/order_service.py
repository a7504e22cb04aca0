from __future__ import annotations

from collections import Counter
from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value

from escrowhub.errors import BadRequest, ConflictError, ExternalDependencyFailure, Forbidden, InvalidTransition, NotFound
from escrowhub.extensions import db
from escrowhub.integrations.common import IntegrationRequestError
from escrowhub.integrations.payments.base import PaymentsProvider
from escrowhub.integrations.payments.factory import build_payments_provider
from escrowhub.models import Order, OrderItem, User
from escrowhub.services.escrow_service import escrow_statuses_for
from escrowhub.services.order_item_service import OrderItemStatus, can_exit, cancel_item, record_order_event
from escrowhub.utils.actors import actor_for
from escrowhub.utils.events import log_event
from escrowhub.utils.fees import compute_platform_fee, platform_fee_percentage


class OrderFlag:
    """Stored convenience flag on ``orders.status``."""

    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


MIXED = "MIXED"
MAX_LINES_PER_ORDER = 100


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    return order


def items_for(order_id: int) -> list[OrderItem]:
    return OrderItem.query.filter_by(order_id=int(order_id)).order_by(OrderItem.id.asc()).all()


def items_by_order(order_ids) -> dict[int, list[OrderItem]]:
    out: dict[int, list[OrderItem]] = {}
    if not order_ids:
        return out
    rows = OrderItem.query.filter(OrderItem.order_id.in_(list(order_ids))).order_by(OrderItem.id.asc()).all()
    for row in rows:
        out.setdefault(int(row.order_id), []).append(row)
    return out


def _int_field(line: dict, name: str, *, minimum: int = 1) -> int:
    raw = line.get(name)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"{name} must be an integer", details={"field": name, "value": raw})
    if value < minimum:
        raise BadRequest(f"{name} must be >= {minimum}", details={"field": name, "value": value})
    return value


def _normalize_lines(buyer: User, lines) -> list[dict]:
    if not isinstance(lines, list) or not lines:
        raise BadRequest("items must be a non-empty list")
    if len(lines) > MAX_LINES_PER_ORDER:
        raise BadRequest(f"An order holds at most {MAX_LINES_PER_ORDER} items")
    out = []
    for idx, line in enumerate(lines):
        if not isinstance(line, dict):
            raise BadRequest("each item must be an object", details={"index": idx})
        seller_id = _int_field(line, "seller_id")
        if seller_id == int(buyer.id):
            raise BadRequest("Buyers cannot purchase their own products", details={"index": idx})
        out.append(
            {
                "product_id": _int_field(line, "product_id"),
                "seller_id": seller_id,
                "price": _int_field(line, "price"),
                "product_name": str(line.get("product_name") or "")[:200] or None,
            }
        )
    sellers = {l["seller_id"] for l in out}
    found = {u.id for u in User.query.filter(User.id.in_(sellers), User.role == "seller").all()}
    missing = sorted(sellers - found)
    if missing:
        raise NotFound("Unknown seller(s)", details={"seller_ids": missing})
    # Group lines by seller while keeping cart order inside each group.
    order_of_first = {}
    for l in out:
        order_of_first.setdefault(l["seller_id"], len(order_of_first))
    return sorted(out, key=lambda l: order_of_first[l["seller_id"]])


def create_order(
    buyer: User,
    lines,
    *,
    shipping_address_id: int,
    shipping_fee: int = 0,
    payment_method: str = "PAYOS",
    notes: str | None = None,
    provider: PaymentsProvider | None = None,
) -> Order:
    """Checkout: persist the order with one item per cart line and open a payment link."""
    if buyer is None:
        raise Forbidden("Buyer required")
    try:
        address_id = int(shipping_address_id)
    except (TypeError, ValueError):
        raise BadRequest("shipping_address_id is required")
    try:
        shipping = max(0, int(shipping_fee or 0))
    except (TypeError, ValueError):
        raise BadRequest("shipping_fee must be an integer")
    normalized = _normalize_lines(buyer, lines)
    pct = platform_fee_percentage()

    try:
        order = Order(
            buyer_id=int(buyer.id),
            shipping_address_id=address_id,
            total_shipping_fee=shipping,
            status=OrderFlag.PENDING,
            payment_method=(payment_method or "PAYOS").strip().upper()[:24],
            notes=(notes or "").strip()[:500] or None,
        )
        db.session.add(order)
        db.session.flush()
        order.order_code = str(order.id)

        total = 0
        total_fee = 0
        for line in normalized:
            fee, used_pct = compute_platform_fee(line["price"], pct)
            db.session.add(
                OrderItem(
                    order_id=order.id,
                    product_id=line["product_id"],
                    product_name=line["product_name"],
                    seller_id=line["seller_id"],
                    buyer_id=int(buyer.id),
                    price=line["price"],
                    platform_fee=fee,
                    fee_percentage=used_pct,
                    status=OrderItemStatus.PENDING,
                )
            )
            total += line["price"]
            total_fee += fee
        order.total_amount = total
        order.total_platform_fee = total_fee
        order.total_items = len(normalized)
        order.unique_sellers = len({l["seller_id"] for l in normalized})
        db.session.flush()

        payments = provider or build_payments_provider()
        try:
            link = payments.create_payment_link(
                order_code=order.order_code,
                amount=int(order.total_amount) + int(order.total_shipping_fee),
                description=f"Order {order.order_code}",
                buyer_email=buyer.email or "",
            )
        except IntegrationRequestError as exc:
            raise ExternalDependencyFailure(f"Payment link could not be created: {exc}") from exc
        order.checkout_url = link.checkout_url
        order.payment_intent_ref = link.reference

        record_order_event(order.id, "order_created", actor=actor_for(buyer), to_status=OrderFlag.PENDING)
        log_event(
            "order_created",
            actor_user_id=int(buyer.id),
            order_id=int(order.id),
            dedupe_key=f"order_created:{int(order.id)}",
            payload={"total_amount": int(order.total_amount), "items": order.total_items, "sellers": order.unique_sellers},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info(
        "order_created order_id=%s buyer_id=%s items=%s total=%s",
        order.id,
        buyer.id,
        order.total_items,
        order.total_amount,
    )
    return order


def derive_order_status(statuses) -> dict:
    """Aggregate view over child item statuses, computed on every read.

    All items agree: that status. Otherwise MIXED, with ``progress_floor``
    naming the least advanced item that is still moving.
    """
    statuses = [s for s in statuses or [] if s]
    breakdown = dict(Counter(statuses))
    if not statuses:
        return {"status": OrderItemStatus.PENDING, "progress_floor": None, "status_breakdown": breakdown}
    if len(breakdown) == 1:
        only = statuses[0]
        return {
            "status": only,
            "progress_floor": None if only in OrderItemStatus.TERMINAL else only,
            "status_breakdown": breakdown,
        }
    moving = [s for s in statuses if s not in OrderItemStatus.TERMINAL]
    floor = min(moving, key=OrderItemStatus.rank) if moving else None
    return {"status": MIXED, "progress_floor": floor, "status_breakdown": breakdown}


def order_summary(order: Order, items: list[OrderItem] | None = None, escrow: dict[int, str] | None = None) -> dict:
    if items is None:
        items = items_for(order.id)
    if escrow is None:
        escrow = escrow_statuses_for([i.id for i in items])
    derived = derive_order_status([i.status for i in items])
    data = order.to_dict()
    data.update(
        {
            "status": derived["status"],
            "progress_floor": derived["progress_floor"],
            "status_breakdown": derived["status_breakdown"],
            "item_summaries": [i.to_dict(escrow_status=escrow.get(int(i.id))) for i in items],
        }
    )
    return data


def check_totals(order: Order, items: list[OrderItem] | None = None) -> list[str]:
    if items is None:
        items = items_for(order.id)
    problems = []
    price_sum = sum(int(i.price or 0) for i in items)
    fee_sum = sum(int(i.platform_fee or 0) for i in items)
    if int(order.total_amount or 0) != price_sum:
        problems.append(f"total_amount {int(order.total_amount or 0)} != sum(price) {price_sum}")
    if int(order.total_platform_fee or 0) != fee_sum:
        problems.append(f"total_platform_fee {int(order.total_platform_fee or 0)} != sum(platform_fee) {fee_sum}")
    if int(order.total_items or 0) != len(items):
        problems.append(f"total_items {int(order.total_items or 0)} != {len(items)}")
    if int(order.unique_sellers or 0) != len({i.seller_id for i in items}):
        problems.append("unique_sellers does not match items")
    return problems


def can_view(order: Order, user: User | None) -> bool:
    if user is None:
        return False
    role = (user.role or "buyer").lower()
    if role == "admin" or int(order.buyer_id) == int(user.id):
        return True
    if role == "seller":
        return OrderItem.query.filter_by(order_id=int(order.id), seller_id=int(user.id)).first() is not None
    return False


def set_flag(order: Order, expected: str, target: str) -> None:
    now = datetime.utcnow()
    result = db.session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == expected)
        .values(status=target, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(
            f"Order {int(order.id)} changed concurrently; refresh and retry",
            details={"order_id": int(order.id), "expected": expected},
        )
    set_committed_value(order, "status", target)
    set_committed_value(order, "updated_at", now)


def cancel_order(order_id: int, *, user: User, reason: str = "buyer_cancelled") -> dict:
    """Cancel every item that is still cancellable. Commits."""
    order = get_order(order_id)
    if (user.role or "").lower() != "admin" and int(order.buyer_id) != int(user.id):
        raise Forbidden("Only the buyer can cancel this order")
    actor = actor_for(user)
    items = items_for(order.id)
    targets = [i for i in items if i.status in OrderItemStatus.CANCELLABLE and can_exit(i)]
    if not targets:
        raise InvalidTransition(
            f"Order {int(order.id)} has no items that can still be cancelled",
            details={"order_id": int(order.id), "status_breakdown": dict(Counter(i.status for i in items))},
        )
    try:
        if order.status == OrderFlag.PENDING:
            # Claim the order first so a racing payment confirmation loses cleanly.
            set_flag(order, OrderFlag.PENDING, OrderFlag.CANCELLED)
        for item in targets:
            cancel_item(item, actor=actor, reason=reason)
        record_order_event(order.id, "order_cancel_requested", actor=actor, note=reason)
        log_event(
            "order_cancelled",
            actor_user_id=int(user.id),
            order_id=int(order.id),
            payload={"items": [int(i.id) for i in targets], "reason": reason},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return {"cancelled_items": [int(i.id) for i in targets], "order": order_summary(order)}


def mark_delivered_if_complete(order: Order, items: list[OrderItem] | None = None) -> bool:
    """Stamp delivered_at once every item that is still live has been delivered."""
    if order.delivered_at is not None:
        return False
    if items is None:
        items = items_for(order.id)
    live = [i for i in items if i.status not in OrderItemStatus.EXITS]
    if not live or any(i.status != OrderItemStatus.DELIVERED for i in live):
        return False
    order.delivered_at = datetime.utcnow()
    record_order_event(order.id, "order_delivered", to_status=OrderItemStatus.DELIVERED)
    return True
