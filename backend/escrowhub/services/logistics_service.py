from __future__ import annotations

import json
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from escrowhub.errors import BadRequest, DomainError, Forbidden, InvalidTransition, NotFound, PreconditionMissing
from escrowhub.extensions import db
from escrowhub.integrations.proofs.base import ProofVerifier
from escrowhub.integrations.proofs.factory import build_proof_verifier
from escrowhub.models import DeliveryTransaction, OrderItem, PickupTransaction, User
from escrowhub.services.escrow_service import escrow_statuses_for, release_for_delivery
from escrowhub.services.order_item_service import OrderItemStatus, get_item, transition_item
from escrowhub.services.order_service import get_order, mark_delivered_if_complete
from escrowhub.utils.actors import actor_for
from escrowhub.utils.config import buyer_protection_hours
from escrowhub.utils.events import log_event
from escrowhub.utils.jwt_utils import create_pickup_qr_token, pickup_qr_binds
from escrowhub.utils.notify import queue_in_app
from escrowhub.utils.pagination import clamp_page

QUEUE_STATUSES = (
    OrderItemStatus.AWAITING_PICKUP,
    OrderItemStatus.IN_WAREHOUSE,
    OrderItemStatus.OUT_FOR_DELIVERY,
)
MAX_PHOTOS = 10
MAX_BULK_DISPATCH = 200


def _clean_photos(photo_urls) -> list[str]:
    if photo_urls is None:
        return []
    if isinstance(photo_urls, str):
        photo_urls = [photo_urls]
    if not isinstance(photo_urls, (list, tuple)):
        raise BadRequest("photo_urls must be a list of URLs")
    out = []
    for url in photo_urls:
        u = str(url or "").strip()
        if u and u not in out:
            out.append(u)
    if len(out) > MAX_PHOTOS:
        raise BadRequest(f"At most {MAX_PHOTOS} photos per proof")
    return out


def _require_status(item: OrderItem, expected: str, action: str) -> None:
    if item.status != expected:
        raise InvalidTransition(
            f"Cannot {action} order item {int(item.id)} while it is {item.status}",
            details={"order_item_id": int(item.id), "from": item.status, "expected": expected},
        )


def issue_pickup_qr(item_id: int, *, seller: User) -> dict:
    item = get_item(item_id)
    if int(item.seller_id) != int(seller.id):
        raise Forbidden("This item belongs to another seller")
    if item.status not in (OrderItemStatus.PROCESSING, OrderItemStatus.AWAITING_PICKUP):
        raise InvalidTransition(
            f"Pickup labels are only available before pickup (item is {item.status})",
            details={"order_item_id": int(item.id), "from": item.status},
        )
    return {
        "order_item_id": int(item.id),
        "qr_token": create_pickup_qr_token(order_item_id=item.id, seller_id=item.seller_id),
    }


def verify_pickup_qr(token: str | None, item: OrderItem) -> bool:
    return pickup_qr_binds(token, order_item_id=item.id, seller_id=item.seller_id)


def request_pickup(order_id: int, item_id: int, *, seller: User) -> dict:
    """Seller hands an item to logistics: PROCESSING -> AWAITING_PICKUP. Commits."""
    order = get_order(order_id)
    item = get_item(item_id)
    if int(item.order_id) != int(order.id):
        raise NotFound(f"Order item {item_id} is not part of order {order_id}")
    if int(item.seller_id) != int(seller.id):
        raise Forbidden("This item belongs to another seller")
    try:
        transition_item(item, OrderItemStatus.AWAITING_PICKUP, actor=actor_for(seller), reason="seller_requested_pickup")
        log_event(
            "pickup_requested",
            actor_user_id=int(seller.id),
            order_id=int(item.order_id),
            order_item_id=int(item.id),
            dedupe_key=f"pickup_requested:{int(item.id)}",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("pickup_requested order_item_id=%s seller_id=%s", item.id, seller.id)
    return {
        "item": item.to_dict(),
        "qr_token": create_pickup_qr_token(order_item_id=item.id, seller_id=item.seller_id),
    }


def confirm_pickup(
    item_id: int,
    *,
    photo_urls,
    qr_token: str | None,
    shipper: User,
    verifier: ProofVerifier | None = None,
) -> dict:
    """Shipper takes custody. QR and photo proof are both checked before any write. Commits."""
    item = get_item(item_id)
    _require_status(item, OrderItemStatus.AWAITING_PICKUP, "confirm pickup of")
    photos = _clean_photos(photo_urls)
    missing = []
    if not verify_pickup_qr(qr_token, item):
        missing.append("qr_verification")
    if not photos:
        missing.append("photo_urls")
    if missing:
        raise PreconditionMissing(
            "Pickup requires a verified QR code and at least one photo",
            details={"order_item_id": int(item.id), "missing": missing},
        )
    (verifier or build_proof_verifier()).verify_photos(photos)

    try:
        pickup = PickupTransaction(
            order_item_id=int(item.id),
            shipper_id=int(shipper.id),
            qr_verified=True,
            photo_urls_json=json.dumps(photos),
            picked_up_at=datetime.utcnow(),
        )
        db.session.add(pickup)
        transition_item(item, OrderItemStatus.IN_WAREHOUSE, actor=actor_for(shipper), reason="pickup_confirmed")
        log_event(
            "pickup_confirmed",
            actor_user_id=int(shipper.id),
            order_id=int(item.order_id),
            order_item_id=int(item.id),
            dedupe_key=f"pickup_confirmed:{int(item.id)}",
            payload={"photos": len(photos)},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("pickup_confirmed order_item_id=%s shipper_id=%s photos=%s", item.id, shipper.id, len(photos))
    return {"item": item.to_dict(), "pickup": pickup.to_dict()}


def dispatch_item(item_id: int, *, shipper: User) -> OrderItem:
    """IN_WAREHOUSE -> OUT_FOR_DELIVERY for one item. Commits."""
    item = get_item(item_id)
    _require_status(item, OrderItemStatus.IN_WAREHOUSE, "dispatch")
    try:
        transition_item(item, OrderItemStatus.OUT_FOR_DELIVERY, actor=actor_for(shipper), reason="dispatched")
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return item


def dispatch_all(*, shipper: User, item_ids=None, limit: int = MAX_BULK_DISPATCH) -> dict:
    """Dispatch a batch one item at a time.

    Each item commits on its own; a failure is recorded in the report and the
    loop moves on, so earlier dispatches stay in place.
    """
    if item_ids is None:
        rows = (
            db.session.query(OrderItem.id)
            .filter(OrderItem.status == OrderItemStatus.IN_WAREHOUSE)
            .order_by(OrderItem.updated_at.asc(), OrderItem.id.asc())
            .limit(max(1, min(int(limit), MAX_BULK_DISPATCH)))
            .all()
        )
        ids = [int(r[0]) for r in rows]
    else:
        if not isinstance(item_ids, (list, tuple)):
            raise BadRequest("order_item_ids must be a list")
        try:
            ids = [int(i) for i in item_ids]
        except (TypeError, ValueError):
            raise BadRequest("order_item_ids must contain integers")
        if len(ids) > MAX_BULK_DISPATCH:
            raise BadRequest(f"At most {MAX_BULK_DISPATCH} items per batch")

    dispatched: list[int] = []
    failed: list[dict] = []
    for item_id in ids:
        try:
            dispatch_item(item_id, shipper=shipper)
            dispatched.append(item_id)
        except DomainError as e:
            failed.append({"order_item_id": item_id, "error": e.code, "message": e.message})
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.exception("dispatch_item_db_error order_item_id=%s", item_id)
            failed.append({"order_item_id": item_id, "error": "DATABASE_ERROR", "message": e.__class__.__name__})
    log_event(
        "bulk_dispatch",
        actor_user_id=int(shipper.id),
        payload={"dispatched": dispatched, "failed": [f["order_item_id"] for f in failed]},
    )
    db.session.commit()
    current_app.logger.info(
        "bulk_dispatch shipper_id=%s requested=%s dispatched=%s failed=%s",
        shipper.id,
        len(ids),
        len(dispatched),
        len(failed),
    )
    return {"requested": len(ids), "dispatched": dispatched, "failed": failed}


def confirm_delivery(item_id: int, *, photo_urls, shipper: User, verifier: ProofVerifier | None = None) -> dict:
    """Item reaches the buyer; escrow is released (or deferred). Commits."""
    item = get_item(item_id)
    _require_status(item, OrderItemStatus.OUT_FOR_DELIVERY, "confirm delivery of")
    photos = _clean_photos(photo_urls)
    if not photos:
        raise PreconditionMissing(
            "Delivery requires at least one photo",
            details={"order_item_id": int(item.id), "missing": ["photo_urls"]},
        )
    (verifier or build_proof_verifier()).verify_photos(photos)

    actor = actor_for(shipper)
    protection = buyer_protection_hours()
    now = datetime.utcnow()
    try:
        delivery = DeliveryTransaction(
            order_item_id=int(item.id),
            shipper_id=int(shipper.id),
            photo_urls_json=json.dumps(photos),
            delivered_at=now,
            buyer_protection_eligible=protection > 0,
            protection_until=now + timedelta(hours=protection) if protection > 0 else None,
        )
        db.session.add(delivery)
        transition_item(item, OrderItemStatus.DELIVERED, actor=actor, reason="delivery_confirmed")
        released = None
        if protection <= 0:
            released = release_for_delivery(item, actor=actor)
        order = get_order(item.order_id)
        mark_delivered_if_complete(order)
        queue_in_app(
            item.buyer_id,
            kind="item_delivered",
            title="Item delivered",
            message=f"Order item #{int(item.id)} of order #{int(item.order_id)} was delivered.",
            order_id=int(item.order_id),
            order_item_id=int(item.id),
            dedupe_key=f"item_delivered:{int(item.id)}",
        )
        log_event(
            "delivery_confirmed",
            actor_user_id=int(shipper.id),
            order_id=int(item.order_id),
            order_item_id=int(item.id),
            dedupe_key=f"delivery_confirmed:{int(item.id)}",
            payload={"photos": len(photos), "released": released is not None, "protection_hours": protection},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    escrow_status = escrow_statuses_for([item.id]).get(int(item.id))
    current_app.logger.info(
        "delivery_confirmed order_item_id=%s shipper_id=%s escrow=%s",
        item.id,
        shipper.id,
        escrow_status,
    )
    return {
        "item": item.to_dict(escrow_status=escrow_status),
        "delivery": delivery.to_dict(),
        "escrow_status": escrow_status,
        "released_by_delivery": released is not None,
    }


def queue_for(status: str, *, limit=50, offset=0) -> dict:
    target = (status or "").strip().upper()
    if target not in QUEUE_STATUSES:
        raise BadRequest(
            f"status must be one of {', '.join(QUEUE_STATUSES)}",
            details={"status": status},
        )
    limit, offset = clamp_page(limit, offset)
    q = OrderItem.query.filter(OrderItem.status == target)
    total = q.count()
    rows = q.order_by(OrderItem.updated_at.asc(), OrderItem.id.asc()).offset(offset).limit(limit).all()
    escrow = escrow_statuses_for([r.id for r in rows])
    return {
        "status": target,
        "items": [r.to_dict(escrow_status=escrow.get(int(r.id))) for r in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


def seller_items(seller: User, *, status: str | None = None, limit=50, offset=0) -> dict:
    limit, offset = clamp_page(limit, offset)
    q = OrderItem.query.filter(OrderItem.seller_id == int(seller.id))
    if status:
        q = q.filter(OrderItem.status == status.strip().upper())
    total = q.count()
    rows = q.order_by(OrderItem.created_at.desc(), OrderItem.id.desc()).offset(offset).limit(limit).all()
    escrow = escrow_statuses_for([r.id for r in rows])
    return {
        "items": [r.to_dict(escrow_status=escrow.get(int(r.id))) for r in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
