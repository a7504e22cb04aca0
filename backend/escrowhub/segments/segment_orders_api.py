from __future__ import annotations

from flask import Blueprint, jsonify, request

from escrowhub.errors import DomainError, Forbidden
from escrowhub.models import Order
from escrowhub.services.escrow_service import escrow_statuses_for
from escrowhub.services.logistics_service import issue_pickup_qr, request_pickup, seller_items
from escrowhub.services.order_item_service import seller_cancel
from escrowhub.services.order_service import can_view, cancel_order, create_order, get_order, items_by_order, order_summary
from escrowhub.utils.auth import require_user
from escrowhub.utils.idempotency import claim_request_key, complete_key, release_key
from escrowhub.utils.pagination import clamp_page

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@orders_bp.post("/orders")
def create_order_route():
    buyer = require_user("buyer", "admin")
    payload = _json_body()

    row, replay = claim_request_key("checkout", payload, user_id=int(buyer.id))
    if replay is not None:
        body, status = replay
        return jsonify(body), status

    try:
        order = create_order(
            buyer,
            payload.get("items"),
            shipping_address_id=payload.get("shipping_address_id"),
            shipping_fee=payload.get("shipping_fee") or 0,
            payment_method=payload.get("payment_method") or "PAYOS",
            notes=payload.get("notes"),
        )
    except DomainError:
        if row is not None:
            release_key(row)
        raise
    body = {"ok": True, "order": order_summary(order)}
    if row is not None:
        complete_key(row, body, 201)
    return jsonify(body), 201


@orders_bp.get("/orders/my")
def my_orders():
    buyer = require_user()
    limit, offset = clamp_page(request.args.get("limit"), request.args.get("offset"))
    q = Order.query.filter(Order.buyer_id == int(buyer.id))
    total = q.count()
    orders = q.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
    items = items_by_order([o.id for o in orders])
    escrow = escrow_statuses_for([i.id for rows in items.values() for i in rows])
    return jsonify(
        {
            "ok": True,
            "items": [order_summary(o, items.get(int(o.id), []), escrow) for o in orders],
            "total": total,
            "limit": limit,
            "offset": offset,
        }
    ), 200


@orders_bp.get("/orders/<int:order_id>")
def get_order_route(order_id: int):
    user = require_user()
    order = get_order(order_id)
    if not can_view(order, user):
        raise Forbidden("You cannot view this order")
    return jsonify({"ok": True, "order": order_summary(order)}), 200


@orders_bp.post("/orders/<int:order_id>/cancel")
def cancel_order_route(order_id: int):
    user = require_user("buyer", "admin")
    payload = _json_body()
    reason = (payload.get("reason") or "").strip()[:200] or "buyer_cancelled"
    result = cancel_order(order_id, user=user, reason=reason)
    return jsonify({"ok": True, **result}), 200


@orders_bp.get("/seller/order-items")
def seller_order_items():
    seller = require_user("seller")
    result = seller_items(
        seller,
        status=(request.args.get("status") or "").strip() or None,
        limit=request.args.get("limit"),
        offset=request.args.get("offset"),
    )
    return jsonify({"ok": True, **result}), 200


@orders_bp.post("/seller/orders/<int:order_id>/items/<int:item_id>/request-pickup")
def seller_request_pickup(order_id: int, item_id: int):
    seller = require_user("seller")
    result = request_pickup(order_id, item_id, seller=seller)
    return jsonify({"ok": True, **result}), 200


@orders_bp.get("/seller/order-items/<int:item_id>/pickup-qr")
def seller_pickup_qr(item_id: int):
    seller = require_user("seller")
    return jsonify({"ok": True, **issue_pickup_qr(item_id, seller=seller)}), 200


@orders_bp.post("/seller/order-items/<int:item_id>/cancel")
def seller_cancel_item(item_id: int):
    seller = require_user("seller")
    reason = (_json_body().get("reason") or "").strip()[:200] or "seller_cancelled"
    item = seller_cancel(item_id, seller=seller, reason=reason)
    escrow = escrow_statuses_for([item.id])
    return jsonify({"ok": True, "item": item.to_dict(escrow_status=escrow.get(int(item.id)))}), 200
