from __future__ import annotations

import unittest

from escrowhub.errors import BadRequest, InvalidTransition, PaymentNotConfirmed, ReconciliationMismatch, Unauthorized
from escrowhub.extensions import db
from escrowhub.integrations.payments.mock_provider import MockPaymentsProvider
from escrowhub.integrations.payments.payos_provider import PayOSPaymentsProvider, sign_fields
from escrowhub.models import EscrowRecord, Notification, Order, OrderItem, PaymentCallback, PlatformEvent
from escrowhub.services.order_item_service import cancel_item, seller_cancel
from escrowhub.services.order_service import cancel_order
from escrowhub.services.payment_reconciliation_service import claim_paid, confirm_payment, process_payos_webhook

from factories import AppTestCase, auth_headers, items_of, line, make_user, place_order


def _payos() -> PayOSPaymentsProvider:
    return PayOSPaymentsProvider(
        client_id="client",
        api_key="api-key",
        checksum_key="checksum-key",
        return_url="http://localhost/return",
        cancel_url="http://localhost/cancel",
    )


class PaymentReconciliationTestCase(AppTestCase):
    def _two_seller_order(self):
        buyer = make_user("buyer")
        seller_a = make_user("seller")
        seller_b = make_user("seller")
        order = place_order(buyer, [line(seller_a, 500_000), line(seller_b, 300_000)])
        return buyer, seller_a, seller_b, order

    def test_duplicate_confirmation_pays_once(self):
        _buyer, seller_a, seller_b, order = self._two_seller_order()
        self.assertEqual(order.total_amount, 800_000)

        first = confirm_payment(code="00", status="PAID", order_code=order.order_code)
        second = confirm_payment(code="00", status="PAID", order_code=order.order_code)

        self.assertFalse(first["already_paid"])
        self.assertTrue(second["already_paid"])
        paid = db.session.get(Order, order.id)
        self.assertEqual(paid.status, "PAID")
        self.assertIsNotNone(paid.paid_at)
        self.assertEqual([i.status for i in items_of(order)], ["PROCESSING", "PROCESSING"])
        records = EscrowRecord.query.filter_by(order_id=order.id).all()
        self.assertEqual(len(records), 2)
        self.assertTrue(all(r.status == "HOLDING" for r in records))
        self.assertEqual(Notification.query.filter_by(kind="new_order").count(), 2)
        outcomes = [c.outcome for c in PaymentCallback.query.order_by(PaymentCallback.id.asc()).all()]
        self.assertEqual(outcomes, ["paid", "replayed"])
        paid_events = PlatformEvent.query.filter_by(event_type="order_paid").all()
        self.assertEqual(len(paid_events), 1)
        self.assertEqual(paid_events[0].order_id, order.id)
        self.assertEqual(paid_events[0].payload()["amount"], 800_000)
        self.assertEqual({seller_a.id, seller_b.id}, {r.seller_id for r in records})

    def test_second_claim_on_order_row_loses(self):
        _buyer, _a, _b, order = self._two_seller_order()
        self.assertTrue(claim_paid(order.id))
        self.assertFalse(claim_paid(order.id))
        db.session.rollback()

    def test_failed_gateway_code_leaves_order_pending(self):
        _buyer, _a, _b, order = self._two_seller_order()
        with self.assertRaises(PaymentNotConfirmed) as ctx:
            confirm_payment(code="01", status="CANCELLED", order_code=order.order_code)
        self.assertEqual(ctx.exception.code, "PAYMENT_CONFIRMATION_FAILED")
        self.assertEqual(db.session.get(Order, order.id).status, "PENDING")
        self.assertEqual({i.status for i in items_of(order)}, {"PENDING"})
        self.assertEqual(EscrowRecord.query.count(), 0)

    def test_user_cancel_is_not_reconciled(self):
        _buyer, _a, _b, order = self._two_seller_order()
        result = confirm_payment(code="", status="", order_code=order.order_code, cancel="true")
        self.assertTrue(result["cancelled"])
        self.assertEqual(PaymentCallback.query.count(), 0)
        self.assertEqual(db.session.get(Order, order.id).status, "PENDING")

    def test_unknown_order_code_is_a_mismatch(self):
        with self.assertRaises(ReconciliationMismatch):
            confirm_payment(code="00", status="PAID", order_code="987654")
        self.assertEqual(PaymentCallback.query.one().outcome, "mismatch")
        with self.assertRaises(BadRequest):
            confirm_payment(code="00", status="PAID", order_code="")

    def test_amount_mismatch_is_rejected(self):
        _buyer, _a, _b, order = self._two_seller_order()
        with self.assertRaises(ReconciliationMismatch):
            confirm_payment(code="00", status="PAID", order_code=order.order_code, reported_amount=1_000)
        self.assertEqual(db.session.get(Order, order.id).status, "PENDING")

    def test_provider_verification_when_enabled(self):
        self.set_env("PAYMENTS_VERIFY_AMOUNT", "1")
        _buyer, _a, _b, order = self._two_seller_order()

        short = MockPaymentsProvider({order.order_code: 100})
        with self.assertRaises(ReconciliationMismatch):
            confirm_payment(code="00", status="PAID", order_code=order.order_code, provider=short)

        exact = MockPaymentsProvider({order.order_code: 800_000})
        result = confirm_payment(code="00", status="PAID", order_code=order.order_code, provider=exact)
        self.assertFalse(result["already_paid"])

    def test_payment_after_cancel_is_a_mismatch(self):
        buyer, _a, _b, order = self._two_seller_order()
        cancel_order(order.id, user=buyer)
        with self.assertRaises(ReconciliationMismatch):
            confirm_payment(code="00", status="PAID", order_code=order.order_code)
        self.assertEqual(EscrowRecord.query.count(), 0)

    def test_signed_payos_webhook(self):
        _buyer, _a, _b, order = self._two_seller_order()
        provider = _payos()
        data = {"orderCode": int(order.order_code), "amount": 800_000, "code": "00", "reference": "FT123"}
        body = {"code": "00", "success": True, "data": data, "signature": sign_fields(data, "checksum-key")}

        result = process_payos_webhook(body, provider=provider)
        self.assertFalse(result["already_paid"])
        self.assertEqual(PaymentCallback.query.filter_by(source="webhook").first().outcome, "paid")

        tampered = dict(body, data=dict(data, amount=1))
        with self.assertRaises(Unauthorized) as ctx:
            process_payos_webhook(tampered, provider=provider)
        self.assertEqual(ctx.exception.code, "INVALID_SIGNATURE")

    def test_seller_cannot_cancel_before_payment(self):
        _buyer, _seller_a, seller_b, order = self._two_seller_order()
        item_b = next(i for i in items_of(order) if i.seller_id == seller_b.id)
        with self.assertRaises(InvalidTransition):
            seller_cancel(item_b.id, seller=seller_b)

        result = confirm_payment(code="00", status="PAID", order_code=order.order_code)
        self.assertFalse(result["already_paid"])
        self.assertEqual([i.status for i in items_of(order)], ["PROCESSING", "PROCESSING"])
        self.assertEqual(EscrowRecord.query.filter_by(order_id=order.id).count(), 2)

    def test_payment_skips_items_that_already_exited(self):
        _buyer, seller_a, seller_b, order = self._two_seller_order()
        item_a = next(i for i in items_of(order) if i.seller_id == seller_a.id)
        item_b = next(i for i in items_of(order) if i.seller_id == seller_b.id)
        item_a_id, item_b_id = int(item_a.id), int(item_b.id)
        cancel_item(item_b, reason="out_of_stock")
        db.session.commit()

        first = confirm_payment(code="00", status="PAID", order_code=order.order_code)
        self.assertFalse(first["already_paid"])
        self.assertEqual(db.session.get(Order, order.id).status, "PAID")
        self.assertEqual(db.session.get(OrderItem, item_a_id).status, "PROCESSING")
        self.assertEqual(db.session.get(OrderItem, item_b_id).status, "CANCELLED")
        records = EscrowRecord.query.filter_by(order_id=order.id).all()
        self.assertEqual([r.order_item_id for r in records], [item_a_id])
        notified = {n.user_id for n in Notification.query.filter_by(kind="new_order").all()}
        self.assertEqual(notified, {seller_a.id})
        self.assertNotIn(seller_b.id, notified)

        again = confirm_payment(code="00", status="PAID", order_code=order.order_code)
        self.assertTrue(again["already_paid"])

    def test_failure_callback_after_paid_is_journaled(self):
        _buyer, _a, _b, order = self._two_seller_order()
        confirm_payment(code="00", status="PAID", order_code=order.order_code)

        late = confirm_payment(code="01", status="CANCELLED", order_code=order.order_code, source="webhook")
        self.assertTrue(late["already_paid"])
        self.assertEqual(db.session.get(Order, order.id).status, "PAID")
        rows = PaymentCallback.query.order_by(PaymentCallback.id.asc()).all()
        self.assertEqual([r.outcome for r in rows], ["paid", "failed_after_paid"])
        self.assertTrue(rows[1].error)


class PaymentRoutesTestCase(AppTestCase):
    def test_confirm_route_requires_order_owner(self):
        buyer = make_user("buyer")
        other = make_user("buyer")
        seller = make_user("seller")
        order = place_order(buyer, [line(seller, 120_000)])
        code = order.order_code
        buyer_id, other_id, order_id = int(buyer.id), int(other.id), int(order.id)

        res = self.client.get(f"/api/payments/confirm?code=00&status=PAID&orderCode={code}", headers=auth_headers(other_id))
        self.assertEqual(res.status_code, 403)

        res = self.client.get(f"/api/payments/confirm?code=00&status=PAID&orderCode={code}", headers=auth_headers(buyer_id))
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["order"]["status"], "PROCESSING")
        self.assertEqual(db.session.get(Order, order_id).status, "PAID")

    def test_failed_confirmation_maps_to_payment_error(self):
        buyer = make_user("buyer")
        seller = make_user("seller")
        order = place_order(buyer, [line(seller, 120_000)])
        code = order.order_code
        buyer_id = int(buyer.id)

        res = self.client.post(
            "/api/payments/confirm",
            json={"code": "24", "status": "FAILED", "orderCode": code},
            headers=auth_headers(buyer_id),
        )
        self.assertEqual(res.status_code, 402)
        body = res.get_json()
        self.assertEqual(body["error"], "PAYMENT_CONFIRMATION_FAILED")
        self.assertTrue(body["retryable"])

    def test_webhook_route_with_mock_provider(self):
        buyer = make_user("buyer")
        seller = make_user("seller")
        order = place_order(buyer, [line(seller, 120_000)])
        code = order.order_code
        order_id = int(order.id)

        payload = {"code": "00", "success": True, "data": {"orderCode": code, "code": "00", "amount": 120_000}}
        res = self.client.post("/api/webhooks/payos", json=payload)
        self.assertEqual(res.status_code, 200)
        self.assertFalse(res.get_json()["already_paid"])

        res = self.client.post("/api/webhooks/payos", json=payload)
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["already_paid"])
        self.assertEqual(
            {i.status for i in OrderItem.query.filter_by(order_id=order_id).all()},
            {"PROCESSING"},
        )


if __name__ == "__main__":
    unittest.main()
