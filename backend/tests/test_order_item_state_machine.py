from __future__ import annotations

import unittest

from sqlalchemy import text

from escrowhub.errors import BadRequest, ConflictError, Forbidden, InvalidTransition, PreconditionMissing
from escrowhub.extensions import db
from escrowhub.integrations.proofs.mock_verifier import MockProofVerifier
from escrowhub.models import OrderEvent, OrderItem, PickupTransaction
from escrowhub.services.escrow_service import escrow_for_item
from escrowhub.services.logistics_service import confirm_pickup, request_pickup
from escrowhub.services.order_item_service import (
    OrderItemStatus,
    admin_refund,
    cancel_item,
    expire_item,
    normalize_status,
    seller_cancel,
    transition_item,
)

from factories import PHOTO, AppTestCase, items_of, line, make_user, paid_single_item_order, place_order, to_warehouse


class OrderItemStateMachineTestCase(AppTestCase):
    def test_success_path_edges_only_move_forward(self):
        S = OrderItemStatus
        for current, nxt in zip(S.SUCCESS_PATH, S.SUCCESS_PATH[1:]):
            self.assertIn(nxt, S.ALLOWED[current])
        for terminal in S.TERMINAL:
            self.assertEqual(S.ALLOWED[terminal], set())
        self.assertNotIn(S.REFUNDED, S.ALLOWED[S.PENDING])
        self.assertNotIn(S.DELIVERED, S.ALLOWED[S.PROCESSING])

    def test_normalize_status_maps_legacy_alias(self):
        self.assertEqual(normalize_status("confirmed"), OrderItemStatus.PAID)
        self.assertEqual(normalize_status(" processing "), OrderItemStatus.PROCESSING)
        with self.assertRaises(BadRequest):
            normalize_status("SHIPPED")

    def test_skipping_a_state_is_rejected(self):
        buyer = make_user("buyer")
        seller = make_user("seller")
        order = place_order(buyer, [line(seller, 100_000)])
        item = items_of(order)[0]

        with self.assertRaises(InvalidTransition) as ctx:
            transition_item(item, OrderItemStatus.AWAITING_PICKUP)
        self.assertEqual(ctx.exception.details["from"], OrderItemStatus.PENDING)
        db.session.rollback()
        self.assertEqual(db.session.get(OrderItem, item.id).status, OrderItemStatus.PENDING)

    def test_transition_records_order_event(self):
        _buyer, seller, _shipper, order, item = paid_single_item_order()
        transition_item(item, OrderItemStatus.AWAITING_PICKUP, actor={"type": "seller", "id": seller.id}, reason="ready")
        db.session.commit()

        event = (
            OrderEvent.query.filter_by(order_item_id=item.id, to_status=OrderItemStatus.AWAITING_PICKUP)
            .order_by(OrderEvent.id.desc())
            .first()
        )
        self.assertIsNotNone(event)
        self.assertEqual(event.from_status, OrderItemStatus.PROCESSING)
        self.assertEqual(event.actor_user_id, seller.id)
        self.assertEqual(event.order_id, order.id)

    def test_stale_writer_gets_conflict(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        # Another worker cancels the row behind this session's back.
        db.session.execute(text("UPDATE order_items SET status = 'CANCELLED' WHERE id = :id"), {"id": item.id})

        with self.assertRaises(ConflictError):
            transition_item(item, OrderItemStatus.AWAITING_PICKUP)
        db.session.rollback()

    def test_cancel_refunds_holding_escrow(self):
        buyer, _seller, _shipper, _order, item = paid_single_item_order()
        cancel_item(item, actor={"type": "buyer", "id": buyer.id}, reason="changed_mind")
        db.session.commit()

        self.assertEqual(item.status, OrderItemStatus.CANCELLED)
        self.assertEqual(escrow_for_item(item.id).status, "REFUNDED")

    def test_cancel_is_blocked_once_in_platform_custody(self):
        _buyer, seller, shipper, _order, item = paid_single_item_order()
        item = to_warehouse(item, seller, shipper)

        with self.assertRaises(InvalidTransition):
            cancel_item(item)

    def test_seller_cannot_cancel_another_sellers_item(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        intruder = make_user("seller")
        with self.assertRaises(Forbidden):
            seller_cancel(item.id, seller=intruder)

    def test_admin_refund_requires_reason(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        admin = make_user("admin")
        with self.assertRaises(PreconditionMissing):
            admin_refund(item.id, admin=admin, reason="  ")

        refunded = admin_refund(item.id, admin=admin, reason="damaged on arrival")
        self.assertEqual(refunded.status, OrderItemStatus.REFUNDED)
        self.assertEqual(escrow_for_item(item.id).status, "REFUNDED")

    def test_refund_not_allowed_for_unpaid_item(self):
        buyer = make_user("buyer")
        seller = make_user("seller")
        order = place_order(buyer, [line(seller, 100_000)])
        item = items_of(order)[0]
        with self.assertRaises(InvalidTransition):
            admin_refund(item.id, admin=make_user("admin"), reason="no")

    def test_expire_only_from_pending_or_logistics(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        with self.assertRaises(InvalidTransition):
            expire_item(item)

    def test_seller_cancel_only_between_payment_and_pickup(self):
        buyer = make_user("buyer")
        seller = make_user("seller")
        order = place_order(buyer, [line(seller, 100_000)])
        item = items_of(order)[0]
        with self.assertRaises(InvalidTransition):
            seller_cancel(item.id, seller=seller)
        self.assertEqual(db.session.get(OrderItem, item.id).status, OrderItemStatus.PENDING)

        _buyer, seller, _shipper, _order, paid = paid_single_item_order()
        request_pickup(paid.order_id, paid.id, seller=seller)
        cancelled = seller_cancel(paid.id, seller=seller)
        self.assertEqual(cancelled.status, OrderItemStatus.CANCELLED)
        self.assertEqual(escrow_for_item(paid.id).status, "REFUNDED")

    def test_cancel_losing_to_pickup_changes_nothing(self):
        _buyer, seller, _shipper, _order, item = paid_single_item_order()
        request_pickup(item.order_id, item.id, seller=seller)
        item = db.session.get(OrderItem, int(item.id))
        # The shipper's pickup commits while this session still sees AWAITING_PICKUP.
        db.session.execute(text("UPDATE order_items SET status = 'IN_WAREHOUSE' WHERE id = :id"), {"id": item.id})

        with self.assertRaises(ConflictError):
            cancel_item(item, reason="buyer_cancelled")
        db.session.rollback()
        self.assertEqual(escrow_for_item(item.id).status, "HOLDING")

    def test_pickup_after_cancel_is_rejected(self):
        _buyer, seller, shipper, _order, item = paid_single_item_order()
        item_id = int(item.id)
        qr = request_pickup(item.order_id, item_id, seller=seller)["qr_token"]
        seller_cancel(item_id, seller=seller)

        with self.assertRaises(InvalidTransition):
            confirm_pickup(item_id, photo_urls=[PHOTO], qr_token=qr, shipper=shipper, verifier=MockProofVerifier())
        self.assertEqual(PickupTransaction.query.count(), 0)
        self.assertEqual(db.session.get(OrderItem, item_id).status, OrderItemStatus.CANCELLED)


if __name__ == "__main__":
    unittest.main()
