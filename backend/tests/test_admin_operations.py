from __future__ import annotations

import csv
import io
import unittest
from datetime import datetime, timedelta

from escrowhub.extensions import db
from escrowhub.integrations.proofs.mock_verifier import MockProofVerifier
from escrowhub.models import EscrowRecord, ReconciliationReport
from escrowhub.services import admin_reporting_service as reports
from escrowhub.services.escrow_service import escrow_for_item
from escrowhub.services.logistics_service import confirm_delivery
from escrowhub.services.reconciliation_service import reconcile_escrow_ledger

from factories import (
    PHOTO,
    AppTestCase,
    auth_headers,
    line,
    make_user,
    paid_single_item_order,
    pay,
    place_order,
    to_out_for_delivery,
    to_warehouse,
)


class AdminReportingTestCase(AppTestCase):
    ENV = {"BUYER_PROTECTION_HOURS": "24"}

    def test_awaiting_release_flags_overdue_items(self):
        _buyer, seller, shipper, _order, item = paid_single_item_order(price=300_000)
        item = to_out_for_delivery(item, seller, shipper)
        confirm_delivery(item.id, photo_urls=[PHOTO], shipper=shipper, verifier=MockProofVerifier())

        now_view = reports.awaiting_release()
        self.assertEqual(now_view["total"], 1)
        row = now_view["items"][0]
        self.assertEqual(row["order_item_id"], item.id)
        self.assertEqual(row["seller_amount"], 285_000)
        self.assertFalse(row["overdue"])

        later = reports.awaiting_release(now=datetime.utcnow() + timedelta(hours=30))
        self.assertTrue(later["items"][0]["overdue"])
        problems = reports.problem_transactions(now=datetime.utcnow() + timedelta(hours=30))
        self.assertEqual(problems["counts"].get("overdue_release"), 1)

    def test_problem_report_finds_stuck_and_missing_escrow(self):
        _buyer, seller, shipper, _order, item = paid_single_item_order()
        to_warehouse(item, seller, shipper)
        _b2, _s2, _sh2, _order2, orphan = paid_single_item_order()
        db.session.delete(escrow_for_item(orphan.id))
        db.session.commit()

        problems = reports.problem_transactions(now=datetime.utcnow() + timedelta(hours=80))
        kinds = {(p["kind"], p["order_item_id"]) for p in problems["items"]}
        self.assertIn(("stuck_logistics", item.id), kinds)
        self.assertIn(("missing_escrow", orphan.id), kinds)

    def test_transactions_filter_and_timeline(self):
        _buyer, seller, _shipper, order, item = paid_single_item_order()
        listing = reports.list_transactions(escrow_status="holding", seller_id=seller.id)
        self.assertEqual([r["order_item_id"] for r in listing["items"]], [item.id])
        self.assertEqual(reports.list_transactions(escrow_status="RELEASED")["total"], 0)

        timeline = reports.order_timeline(order.id)["timeline"]
        sources = {e["source"] for e in timeline}
        self.assertTrue({"order_event", "escrow_transition", "payment_callback"} <= sources)
        stamps = [e["at"] for e in timeline]
        self.assertEqual(stamps, sorted(stamps))

    def test_csv_export_has_fixed_columns(self):
        buyer = make_user("buyer")
        seller = make_user("seller")
        paid = place_order(buyer, [line(seller, 100_000)])
        pay(paid)
        place_order(buyer, [line(seller, 70_000)])

        rows = list(csv.reader(io.StringIO(reports.export_orders_csv())))
        self.assertEqual(rows[0], reports.EXPORT_COLUMNS)
        self.assertEqual(len(rows), 3)
        only_paid = list(csv.reader(io.StringIO(reports.export_orders_csv(order_status="paid"))))
        self.assertEqual(len(only_paid), 2)
        self.assertEqual(only_paid[1][reports.EXPORT_COLUMNS.index("status")], "PROCESSING")

    def test_seller_and_buyer_analytics(self):
        buyer = make_user("buyer")
        seller = make_user("seller")
        order = place_order(buyer, [line(seller, 200_000), line(seller, 100_000)])
        pay(order)
        place_order(buyer, [line(seller, 999)])

        sellers = reports.seller_analytics()["items"]
        self.assertEqual(len(sellers), 1)
        self.assertEqual(sellers[0]["gross_sales"], 300_000)
        self.assertEqual(sellers[0]["platform_fees"], 15_000)
        self.assertEqual(sellers[0]["holding_amount"], 285_000)

        buyers = reports.buyer_analytics()["items"]
        self.assertEqual(buyers[0]["orders"], 2)
        self.assertEqual(buyers[0]["paid_orders"], 1)
        self.assertEqual(buyers[0]["total_spent"], 300_000)

    def test_reconciliation_detects_drift(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        clean = reconcile_escrow_ledger()
        self.assertEqual(clean["order_count"], 1)
        self.assertEqual(clean["drift_count"], 0)

        record = escrow_for_item(item.id)
        record.held_amount = 1
        db.session.commit()
        drift = reconcile_escrow_ledger()
        self.assertEqual(drift["drift_count"], 1)
        self.assertEqual(drift["drift_items"][0]["order_item_id"], item.id)


class AdminRoutesTestCase(AppTestCase):
    def test_admin_routes_require_admin_role(self):
        buyer_id = int(make_user("buyer").id)
        res = self.client.get("/api/admin/orders")
        self.assertEqual(res.status_code, 401)
        res = self.client.get("/api/admin/orders", headers=auth_headers(buyer_id))
        self.assertEqual(res.status_code, 403)

    def test_manual_release_and_refund_over_http(self):
        _buyer, _seller, _shipper, _order, item = paid_single_item_order()
        _b2, _s2, _sh2, _o2, other = paid_single_item_order()
        admin_id = int(make_user("admin").id)
        item_id, other_id = int(item.id), int(other.id)
        record_id = int(escrow_for_item(item_id).id)

        res = self.client.post(f"/api/admin/transactions/{record_id}/release", json={}, headers=auth_headers(admin_id))
        self.assertEqual(res.status_code, 422)
        self.assertEqual(res.get_json()["details"]["missing"], ["notes"])

        res = self.client.post(
            f"/api/admin/transactions/{record_id}/release",
            json={"notes": "confirmed by phone"},
            headers=auth_headers(admin_id),
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["transaction"]["escrow_status"], "RELEASED")

        res = self.client.post(
            f"/api/admin/order-items/{other_id}/refund",
            json={"reason": "seller unreachable"},
            headers=auth_headers(admin_id),
        )
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body["item"]["status"], "REFUNDED")
        self.assertEqual(body["item"]["escrow_status"], "REFUNDED")

        res = self.client.post(
            f"/api/admin/order-items/{other_id}/refund",
            json={"reason": "again"},
            headers=auth_headers(admin_id),
        )
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "INVALID_TRANSITION")

    def test_reports_and_jobs_over_http(self):
        paid_single_item_order()
        admin_id = int(make_user("admin").id)
        headers = auth_headers(admin_id)

        res = self.client.get("/api/admin/orders?limit=500", headers=headers)
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body["limit"], 200)
        self.assertEqual(body["items"][0]["status"], "PROCESSING")

        res = self.client.get("/api/admin/orders/export-csv", headers=headers)
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.mimetype.startswith("text/csv"))

        res = self.client.get("/api/admin/transactions?seller_id=abc", headers=headers)
        self.assertEqual(res.status_code, 400)

        res = self.client.post("/api/admin/jobs/release-sweep", json={"limit": 10}, headers=headers)
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["ok"])

        res = self.client.post("/api/admin/jobs/expiry-sweep", json={"limit": "many"}, headers=headers)
        self.assertEqual(res.status_code, 400)

        res = self.client.post("/api/admin/reconciliation/run", headers=headers)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["summary"]["drift_count"], 0)
        report_id = res.get_json()["report"]["id"]
        self.assertEqual(res.get_json()["report"]["trigger"], "admin")
        self.assertEqual(ReconciliationReport.query.count(), 1)
        self.assertEqual(EscrowRecord.query.count(), 1)

        res = self.client.get("/api/admin/reconciliation/reports", headers=headers)
        self.assertEqual([r["id"] for r in res.get_json()["items"]], [report_id])
        res = self.client.get("/api/admin/reconciliation/reports?drift=1", headers=headers)
        self.assertEqual(res.get_json()["total"], 0)
        res = self.client.get(f"/api/admin/reconciliation/reports/{report_id}", headers=headers)
        self.assertEqual(res.get_json()["report"]["drift_items"], [])
        self.assertEqual(self.client.get("/api/admin/reconciliation/reports/999", headers=headers).status_code, 404)

        res = self.client.get("/api/admin/jobs/runs?job=escrow_release_sweep", headers=headers)
        runs = res.get_json()["items"]
        self.assertEqual(len(runs), 1)
        self.assertTrue(runs[0]["ok"])
        self.assertIsNotNone(runs[0]["duration_ms"])


if __name__ == "__main__":
    unittest.main()
