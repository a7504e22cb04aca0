from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from sqlalchemy import text

from escrowhub.errors import ConflictError, InvalidTransition, PreconditionMissing
from escrowhub.extensions import db
from escrowhub.jobs.escrow_runner import run_expiry_sweep
from escrowhub.models import EscrowRecord, EscrowTransition, Notification, OrderItem
from escrowhub.services.escrow_service import (
    EscrowStatus,
    admin_release,
    claim_and_transition,
    escrow_for_item,
    open_escrow,
    void_escrow,
)
from escrowhub.services.order_item_service import admin_refund, cancel_item
from escrowhub.services.order_service import cancel_order

from factories import AppTestCase, items_of, line, make_user, paid_single_item_order, pay, place_order, to_warehouse


class EscrowLedgerTestCase(AppTestCase):
    def test_payment_opens_one_holding_record_with_seller_share(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order(price=500_000)
        record = escrow_for_item(item.id)

        self.assertEqual(record.status, EscrowStatus.HOLDING)
        self.assertEqual(record.platform_fee, 25_000)
        self.assertEqual(record.held_amount, 475_000)
        opened = EscrowTransition.query.filter_by(escrow_record_id=record.id).all()
        self.assertEqual([t.to_status for t in opened], [EscrowStatus.HOLDING])

    def test_open_escrow_is_idempotent(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        first = escrow_for_item(item.id)
        again = open_escrow(item)
        self.assertEqual(first.id, again.id)
        self.assertEqual(EscrowRecord.query.filter_by(order_item_id=item.id).count(), 1)

    def test_replayed_key_returns_original_transition(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        record = escrow_for_item(item.id)

        first = claim_and_transition(record, EscrowStatus.RELEASED, idempotency_key="delivery:1")
        db.session.commit()
        second = claim_and_transition(record, EscrowStatus.RELEASED, idempotency_key="delivery:1")

        self.assertEqual(first.id, second.id)
        self.assertEqual(
            EscrowTransition.query.filter_by(escrow_record_id=record.id, to_status=EscrowStatus.RELEASED).count(),
            1,
        )
        self.assertEqual(Notification.query.filter_by(kind="escrow_released").count(), 1)

    def test_replayed_key_with_different_target_conflicts(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        record = escrow_for_item(item.id)
        claim_and_transition(record, EscrowStatus.RELEASED, idempotency_key="k-1")
        db.session.commit()

        with self.assertRaises(ConflictError):
            claim_and_transition(record, EscrowStatus.REFUNDED, idempotency_key="k-1")

    def test_terminal_record_rejects_second_claim(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        record = escrow_for_item(item.id)
        claim_and_transition(record, EscrowStatus.REFUNDED, idempotency_key="refund:x")
        db.session.commit()

        with self.assertRaises(ConflictError) as ctx:
            claim_and_transition(record, EscrowStatus.RELEASED, idempotency_key="release:x")
        self.assertEqual(ctx.exception.details["escrow_status"], EscrowStatus.REFUNDED)
        db.session.rollback()
        self.assertEqual(db.session.get(EscrowRecord, record.id).status, EscrowStatus.REFUNDED)

    def test_concurrent_claim_loses_cleanly(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        record = escrow_for_item(item.id)
        # A concurrent worker already released the funds.
        db.session.execute(text("UPDATE escrow_records SET status = 'RELEASED' WHERE id = :id"), {"id": record.id})

        with self.assertRaises(ConflictError):
            claim_and_transition(record, EscrowStatus.REFUNDED, idempotency_key="refund:race")
        self.assertEqual(record.status, EscrowStatus.RELEASED)
        db.session.rollback()

    def test_holding_is_not_a_claim_target(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        with self.assertRaises(InvalidTransition):
            claim_and_transition(escrow_for_item(item.id), EscrowStatus.HOLDING, idempotency_key="x")

    def test_void_rejected_after_capture(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        with self.assertRaises(InvalidTransition):
            void_escrow(escrow_for_item(item.id))

    def test_admin_release_before_delivery_requires_notes(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        admin = make_user("admin")
        record = escrow_for_item(item.id)

        with self.assertRaises(PreconditionMissing):
            admin_release(record.id, admin=admin)

        result = admin_release(record.id, admin=admin, notes="seller verified shipment offline")
        self.assertEqual(result["transaction"]["escrow_status"], EscrowStatus.RELEASED)
        self.assertEqual(result["transaction"]["release_reason"], "admin_release")

        replay = admin_release(record.id, admin=admin, notes="seller verified shipment offline")
        self.assertEqual(replay["transition"]["id"], result["transition"]["id"])

    def test_admin_release_blocked_for_cancelled_item(self):
        buyer = make_user("buyer")
        seller = make_user("seller")
        order = place_order(buyer, [line(seller, 200_000)])
        pay(order)
        item = items_of(order)[0]
        cancel_item(item, reason="buyer_cancelled")
        db.session.commit()

        record = escrow_for_item(item.id)
        with self.assertRaises(InvalidTransition):
            admin_release(record.id, admin=make_user("admin"), notes="please")
        self.assertEqual(db.session.get(EscrowRecord, record.id).status, EscrowStatus.REFUNDED)

    def test_refund_after_release_conflicts(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        admin = make_user("admin")
        record_id = int(escrow_for_item(item.id).id)
        admin_release(record_id, admin=admin, notes="seller vetted")

        with self.assertRaises(ConflictError) as ctx:
            admin_refund(item.id, admin=admin, reason="dispute")
        self.assertEqual(ctx.exception.details["escrow_status"], EscrowStatus.RELEASED)
        self.assertEqual(db.session.get(OrderItem, item.id).status, "PROCESSING")
        self.assertEqual(db.session.get(EscrowRecord, record_id).status, EscrowStatus.RELEASED)
        self.assertEqual(
            EscrowTransition.query.filter_by(escrow_record_id=record_id, to_status=EscrowStatus.REFUNDED).count(),
            0,
        )

    def test_cancel_after_release_conflicts(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        admin_release(escrow_for_item(item.id).id, admin=make_user("admin"), notes="paid out early")

        with self.assertRaises(ConflictError):
            cancel_item(item, reason="buyer_cancelled")
        db.session.rollback()
        self.assertEqual(db.session.get(OrderItem, item.id).status, "PROCESSING")

    def test_order_cancel_leaves_released_items_alone(self):
        buyer = make_user("buyer")
        seller = make_user("seller")
        order = place_order(buyer, [line(seller, 200_000), line(seller, 100_000)])
        pay(order)
        released, kept = items_of(order)
        released_id, kept_id = int(released.id), int(kept.id)
        admin_release(escrow_for_item(released_id).id, admin=make_user("admin"), notes="seller vetted")

        result = cancel_order(order.id, user=buyer)
        self.assertEqual(result["cancelled_items"], [kept_id])
        self.assertEqual(db.session.get(OrderItem, released_id).status, "PROCESSING")
        self.assertEqual(escrow_for_item(released_id).status, EscrowStatus.RELEASED)
        self.assertEqual(escrow_for_item(kept_id).status, EscrowStatus.REFUNDED)

    def test_expiry_sweep_skips_items_whose_funds_were_released(self):
        _buyer, seller, shipper, _order, item = paid_single_item_order()
        item = to_warehouse(item, seller, shipper)
        item_id = int(item.id)
        admin_release(escrow_for_item(item_id).id, admin=make_user("admin"), notes="seller vetted")

        result = run_expiry_sweep(now=datetime.utcnow() + timedelta(hours=24 * 8))
        self.assertEqual(result["expired_items"], [])
        self.assertEqual(result["skipped"], [{"order_item_id": item_id, "error": "CONFLICT"}])
        self.assertEqual(db.session.get(OrderItem, item_id).status, "IN_WAREHOUSE")
        self.assertEqual(escrow_for_item(item_id).status, EscrowStatus.RELEASED)


if __name__ == "__main__":
    unittest.main()
