from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from escrowhub.errors import Forbidden
from escrowhub.models import Order
from escrowhub.services.payment_reconciliation_service import confirm_payment, process_payos_webhook
from escrowhub.utils.auth import require_user

payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api")


def _callback_params() -> dict:
    """Gateway redirect params may arrive on the query string or as JSON."""
    params = {k: v for k, v in request.args.items()}
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        params.update({k: v for k, v in body.items() if v is not None})
    return params


@payments_bp.route("/payments/confirm", methods=["GET", "POST"])
def payments_confirm():
    user = require_user()
    params = _callback_params()
    order_code = str(params.get("orderCode") or params.get("order_code") or "").strip()
    if order_code:
        order = Order.query.filter_by(order_code=order_code).first()
        if order is not None and int(order.buyer_id) != int(user.id) and (user.role or "") != "admin":
            raise Forbidden("This order belongs to another buyer")
    result = confirm_payment(
        code=params.get("code"),
        status=params.get("status"),
        order_code=order_code,
        cancel=params.get("cancel"),
        source="redirect",
    )
    return jsonify(result), 200


@payments_bp.post("/webhooks/payos")
def payos_webhook():
    payload = request.get_json(silent=True) or {}
    result = process_payos_webhook(payload)
    current_app.logger.info(
        "payos_webhook_processed order_code=%s already_paid=%s",
        (payload.get("data") or {}).get("orderCode") if isinstance(payload, dict) else None,
        result.get("already_paid"),
    )
    return jsonify({"ok": True, "already_paid": bool(result.get("already_paid"))}), 200
