from __future__ import annotations

import json
from datetime import datetime

from flask import current_app
from sqlalchemy import update

from escrowhub.errors import (
    BadRequest,
    ExternalDependencyFailure,
    PaymentNotConfirmed,
    ReconciliationMismatch,
    Unauthorized,
)
from escrowhub.extensions import db
from escrowhub.integrations.common import IntegrationRequestError
from escrowhub.integrations.payments.base import PaymentsProvider
from escrowhub.integrations.payments.factory import build_payments_provider, configured_provider_name
from escrowhub.models import Order, PaymentCallback
from escrowhub.services.escrow_service import open_escrow
from escrowhub.services.order_item_service import OrderItemStatus, record_order_event, transition_item
from escrowhub.services.order_service import OrderFlag, items_for, order_summary
from escrowhub.utils.config import env_bool
from escrowhub.utils.events import log_event
from escrowhub.utils.notify import queue_in_app
from escrowhub.utils.observability import get_request_id

GATEWAY_SUCCESS_CODE = "00"
GATEWAY_PAID_STATUS = "PAID"

_SYSTEM = {"type": "payment_gateway", "id": None}


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes")


def amount_verification_enabled() -> bool:
    return env_bool("PAYMENTS_VERIFY_AMOUNT", False)


def expected_amount(order: Order) -> int:
    return int(order.total_amount or 0) + int(order.total_shipping_fee or 0)


def _journal(
    *,
    provider: str,
    source: str,
    order_code: str,
    code: str,
    status: str,
    outcome: str,
    payload: dict | None = None,
    error: str | None = None,
) -> PaymentCallback:
    row = PaymentCallback(
        provider=(provider or "unknown")[:32],
        source=(source or "redirect")[:32],
        order_code=(order_code or "")[:32] or None,
        code=(code or "")[:16] or None,
        status=(status or "")[:32] or None,
        outcome=outcome,
        request_id=get_request_id()[:64] or None,
        payload_json=json.dumps(payload or {}, default=str)[:8000],
        error=(error or "")[:1000] or None,
    )
    db.session.add(row)
    return row


def _journal_and_commit(**kwargs) -> None:
    _journal(**kwargs)
    db.session.commit()


def claim_paid(order_id: int, *, paid_at: datetime | None = None) -> bool:
    """Compare-and-set PENDING -> PAID on the order row.

    Concurrent confirmations for the same order serialize on this row; only
    one of them sees rowcount == 1.
    """
    now = paid_at or datetime.utcnow()
    result = db.session.execute(
        update(Order)
        .where(Order.id == int(order_id), Order.status == OrderFlag.PENDING)
        .values(status=OrderFlag.PAID, paid_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _fan_out(order: Order) -> None:
    sellers: dict[int, list[int]] = {}
    for item in items_for(order.id):
        if item.status in OrderItemStatus.EXITS:
            continue
        transition_item(item, OrderItemStatus.PAID, actor=_SYSTEM, reason="payment_confirmed")
        transition_item(item, OrderItemStatus.PROCESSING, actor=_SYSTEM, reason="awaiting_seller_shipment")
        open_escrow(item, actor=_SYSTEM)
        sellers.setdefault(int(item.seller_id), []).append(int(item.id))
    for seller_id, item_ids in sellers.items():
        queue_in_app(
            seller_id,
            kind="new_order",
            title="New paid order",
            message=f"Order #{int(order.id)} is paid. Prepare {len(item_ids)} item(s) and request pickup.",
            order_id=int(order.id),
            meta={"order_item_ids": item_ids},
            dedupe_key=f"new_order:{int(order.id)}:{seller_id}",
        )


def confirm_payment(
    *,
    code: str | None,
    status: str | None,
    order_code: str | None,
    cancel=False,
    source: str = "redirect",
    provider: PaymentsProvider | None = None,
    reported_amount: int | None = None,
    payload: dict | None = None,
) -> dict:
    """Apply one gateway callback to its order.

    Safe to call any number of times for the same ``order_code``: only the
    first successful confirmation marks the order paid, fans items out to
    PROCESSING and opens their escrow records. Commits.
    """
    order_code = str(order_code or "").strip()
    code = str(code or "").strip()
    status = str(status or "").strip().upper()
    if _truthy(cancel):
        # User abandoned the checkout page; nothing to reconcile.
        return {"ok": True, "cancelled": True, "order_code": order_code}
    if not order_code:
        raise BadRequest("orderCode is required", code="MISSING_ORDER_CODE")

    payments = provider
    provider_name = payments.name if payments is not None else configured_provider_name()
    callback = {"code": code, "status": status, "orderCode": order_code}
    if payload:
        callback["payload"] = payload

    order = Order.query.filter_by(order_code=order_code).first()
    if order is None:
        _journal_and_commit(provider=provider_name, source=source, order_code=order_code, code=code, status=status, outcome="mismatch", payload=callback, error="unknown order")
        current_app.logger.warning("payment_confirm_unknown_order order_code=%s source=%s", order_code, source)
        raise ReconciliationMismatch(f"No order matches orderCode {order_code}", details={"order_code": order_code})

    if order.status == OrderFlag.PAID:
        succeeded = code == GATEWAY_SUCCESS_CODE and status == GATEWAY_PAID_STATUS
        _journal_and_commit(
            provider=provider_name,
            source=source,
            order_code=order_code,
            code=code,
            status=status,
            outcome="replayed" if succeeded else "failed_after_paid",
            payload=callback,
            error=None if succeeded else "failure reported for a paid order",
        )
        if not succeeded:
            current_app.logger.warning("payment_failure_after_paid order_id=%s code=%s status=%s", order.id, code, status)
        return {"ok": True, "already_paid": True, "order": order_summary(order)}

    if code != GATEWAY_SUCCESS_CODE or status != GATEWAY_PAID_STATUS:
        _journal_and_commit(provider=provider_name, source=source, order_code=order_code, code=code, status=status, outcome="failed", payload=callback, error="gateway reported failure")
        current_app.logger.info("payment_confirm_failed order_id=%s code=%s status=%s", order.id, code, status)
        raise PaymentNotConfirmed(
            "Payment confirmation failed",
            details={"order_id": int(order.id), "order_code": order_code, "code": code, "status": status},
        )

    if order.status != OrderFlag.PENDING:
        _journal_and_commit(provider=provider_name, source=source, order_code=order_code, code=code, status=status, outcome="mismatch", payload=callback, error=f"order is {order.status}")
        raise ReconciliationMismatch(
            f"Order {int(order.id)} is {order.status} and can no longer be paid",
            details={"order_id": int(order.id), "order_status": order.status},
        )

    expected = expected_amount(order)
    if reported_amount is not None and int(reported_amount) != expected:
        _journal_and_commit(provider=provider_name, source=source, order_code=order_code, code=code, status=status, outcome="mismatch", payload=callback, error=f"amount {reported_amount} != {expected}")
        raise ReconciliationMismatch(
            "Paid amount does not match the order",
            details={"order_id": int(order.id), "expected": expected, "reported": int(reported_amount)},
        )
    if amount_verification_enabled():
        payments = payments or build_payments_provider()
        provider_name = payments.name
        try:
            verified = payments.verify(order_code)
        except IntegrationRequestError as exc:
            raise ExternalDependencyFailure(f"Payment verification unavailable: {exc}") from exc
        if not verified.paid or int(verified.amount) != expected:
            _journal_and_commit(provider=provider_name, source=source, order_code=order_code, code=code, status=status, outcome="mismatch", payload=callback, error=f"verify status={verified.status} amount={verified.amount} expected={expected}")
            raise ReconciliationMismatch(
                "Gateway verification does not match the order",
                details={"order_id": int(order.id), "expected": expected, "verified_amount": int(verified.amount), "verified_status": verified.status},
            )

    try:
        if not claim_paid(order.id):
            db.session.rollback()
            db.session.refresh(order)
            if order.status == OrderFlag.PAID:
                _journal_and_commit(provider=provider_name, source=source, order_code=order_code, code=code, status=status, outcome="replayed", payload=callback)
                return {"ok": True, "already_paid": True, "order": order_summary(order)}
            _journal_and_commit(provider=provider_name, source=source, order_code=order_code, code=code, status=status, outcome="mismatch", payload=callback, error=f"order is {order.status}")
            raise ReconciliationMismatch(
                f"Order {int(order.id)} is {order.status} and can no longer be paid",
                details={"order_id": int(order.id), "order_status": order.status},
            )
        db.session.refresh(order)
        _fan_out(order)
        record_order_event(order.id, "payment_confirmed", actor=_SYSTEM, from_status=OrderFlag.PENDING, to_status=OrderFlag.PAID, note=f"{source}:{code}")
        _journal(provider=provider_name, source=source, order_code=order_code, code=code, status=status, outcome="paid", payload=callback)
        log_event(
            "order_paid",
            order_id=int(order.id),
            dedupe_key=f"order_paid:{int(order.id)}",
            payload={"order_code": order_code, "amount": expected, "source": source},
        )
        db.session.commit()
    except ReconciliationMismatch:
        raise
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception("payment_confirm_error order_code=%s", order_code)
        _journal_and_commit(provider=provider_name, source=source, order_code=order_code, code=code, status=status, outcome="failed", payload=callback, error=str(exc))
        raise

    current_app.logger.info("order_paid order_id=%s order_code=%s source=%s", order.id, order_code, source)
    return {"ok": True, "already_paid": False, "order": order_summary(order)}


def process_payos_webhook(payload: dict, *, provider: PaymentsProvider | None = None) -> dict:
    """Verify a PayOS webhook body and feed it through confirm_payment."""
    if not isinstance(payload, dict):
        raise BadRequest("JSON body required")
    payments = provider or build_payments_provider()
    try:
        data = payments.verify_webhook(payload)
    except ValueError as exc:
        current_app.logger.warning("payos_webhook_rejected err=%s", exc)
        raise Unauthorized("Invalid webhook signature", code="INVALID_SIGNATURE")

    code = str(data.get("code") or payload.get("code") or "").strip()
    success = payload.get("success")
    status = GATEWAY_PAID_STATUS if code == GATEWAY_SUCCESS_CODE and success is not False else "FAILED"
    amount = data.get("amount")
    try:
        reported = int(amount) if amount is not None else None
    except (TypeError, ValueError):
        reported = None
    return confirm_payment(
        code=code,
        status=status,
        order_code=str(data.get("orderCode") or ""),
        source="webhook",
        provider=payments,
        reported_amount=reported,
        payload={"reference": data.get("reference"), "paymentLinkId": data.get("paymentLinkId")},
    )
