from __future__ import annotations

import unittest

from factories import AppTestCase, auth_headers, make_user


class ApiErrorContractTestCase(AppTestCase):
    def _assert_error_shape(self, res, status: int):
        self.assertEqual(res.status_code, status)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), status)
        self.assertIn("retryable", body)
        self.assertTrue(str(body.get("trace_id") or "").strip())
        return body

    def test_unknown_api_route_returns_json_error_shape(self):
        self._assert_error_shape(self.client.get("/api/does-not-exist"), 404)

    def test_missing_token_is_unauthorized(self):
        body = self._assert_error_shape(self.client.get("/api/orders/my"), 401)
        self.assertEqual(body["error"], "UNAUTHORIZED")

    def test_domain_errors_carry_code_and_details(self):
        buyer_id = int(make_user("buyer").id)
        res = self.client.post(
            "/api/orders",
            json={"shipping_address_id": 1, "items": [{"product_id": 1, "seller_id": 424242, "price": 1000}]},
            headers=auth_headers(buyer_id),
        )
        body = self._assert_error_shape(res, 404)
        self.assertEqual(body["error"], "NOT_FOUND")
        self.assertEqual(body["details"]["seller_ids"], [424242])
        self.assertFalse(body["retryable"])

    def test_unknown_order_code_is_reconciliation_mismatch(self):
        buyer_id = int(make_user("buyer").id)
        res = self.client.get("/api/payments/confirm?code=00&status=PAID&orderCode=555", headers=auth_headers(buyer_id))
        body = self._assert_error_shape(res, 409)
        self.assertEqual(body["error"], "RECONCILIATION_MISMATCH")


if __name__ == "__main__":
    unittest.main()
