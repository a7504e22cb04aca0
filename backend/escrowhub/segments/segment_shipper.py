from __future__ import annotations

from flask import Blueprint, jsonify, request

from escrowhub.services.escrow_service import escrow_statuses_for
from escrowhub.services.logistics_service import confirm_delivery, confirm_pickup, dispatch_all, dispatch_item, queue_for
from escrowhub.utils.auth import require_user

shipper_bp = Blueprint("shipper_bp", __name__, url_prefix="/api/shipper")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@shipper_bp.get("/items")
def shipper_queue():
    require_user("shipper", "admin")
    result = queue_for(
        request.args.get("status") or "",
        limit=request.args.get("limit"),
        offset=request.args.get("offset"),
    )
    return jsonify({"ok": True, **result}), 200


@shipper_bp.post("/items/<int:item_id>/pickup")
def shipper_pickup(item_id: int):
    shipper = require_user("shipper")
    payload = _json_body()
    result = confirm_pickup(
        item_id,
        photo_urls=payload.get("photo_urls"),
        qr_token=payload.get("qr_token"),
        shipper=shipper,
    )
    return jsonify({"ok": True, **result}), 200


@shipper_bp.post("/items/<int:item_id>/dispatch")
def shipper_dispatch(item_id: int):
    shipper = require_user("shipper")
    item = dispatch_item(item_id, shipper=shipper)
    escrow = escrow_statuses_for([item.id])
    return jsonify({"ok": True, "item": item.to_dict(escrow_status=escrow.get(int(item.id)))}), 200


@shipper_bp.post("/items/dispatch-all")
def shipper_dispatch_all():
    shipper = require_user("shipper")
    payload = _json_body()
    report = dispatch_all(shipper=shipper, item_ids=payload.get("order_item_ids"))
    return jsonify({"ok": True, **report}), 200


@shipper_bp.post("/items/<int:item_id>/deliver")
def shipper_deliver(item_id: int):
    shipper = require_user("shipper")
    payload = _json_body()
    result = confirm_delivery(item_id, photo_urls=payload.get("photo_urls"), shipper=shipper)
    return jsonify({"ok": True, **result}), 200
