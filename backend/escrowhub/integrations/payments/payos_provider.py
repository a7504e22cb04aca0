from __future__ import annotations

import hashlib
import hmac

import requests

from escrowhub.integrations.common import IntegrationRequestError
from escrowhub.integrations.payments.base import PaymentLinkResult, PaymentsProvider, PaymentVerifyResult

PAYOS_API_BASE = "https://api-merchant.payos.vn"


def _stringify(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def sign_fields(fields: dict, checksum_key: str) -> str:
    """HMAC-SHA256 over ``k=v&k=v`` with keys in lexical order."""
    message = "&".join(f"{k}={_stringify(fields[k])}" for k in sorted(fields.keys()))
    return hmac.new(checksum_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class PayOSPaymentsProvider(PaymentsProvider):
    name = "payos"

    def __init__(self, *, client_id: str, api_key: str, checksum_key: str, return_url: str, cancel_url: str, base_url: str = PAYOS_API_BASE):
        self.client_id = client_id
        self.api_key = api_key
        self.checksum_key = checksum_key
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> dict:
        return {
            "x-client-id": self.client_id,
            "x-api-key": self.api_key,
            "Content-Type": "application/json",
        }

    def _unwrap(self, r: requests.Response, action: str) -> dict:
        j = r.json() if r.content else {}
        if r.status_code < 200 or r.status_code >= 300 or str(j.get("code")) != "00":
            msg = (j.get("desc") or f"HTTP {r.status_code}").strip()
            raise IntegrationRequestError(f"PAYOS_{action}_FAILED:{msg}")
        return j.get("data") or {}

    def create_payment_link(self, *, order_code: str, amount: int, description: str, buyer_email: str = "") -> PaymentLinkResult:
        signed = {
            "amount": int(amount),
            "cancelUrl": self.cancel_url,
            "description": description[:25],
            "orderCode": int(order_code),
            "returnUrl": self.return_url,
        }
        payload = dict(signed)
        payload["signature"] = sign_fields(signed, self.checksum_key)
        if buyer_email:
            payload["buyerEmail"] = buyer_email
        try:
            r = requests.post(f"{self.base_url}/v2/payment-requests", headers=self._headers(), json=payload, timeout=25)
        except requests.RequestException as exc:
            raise IntegrationRequestError(f"PAYOS_CREATE_FAILED:{exc}") from exc
        data = self._unwrap(r, "CREATE")
        return PaymentLinkResult(
            checkout_url=(data.get("checkoutUrl") or "").strip(),
            reference=str(data.get("paymentLinkId") or order_code),
            provider=self.name,
            raw=data,
        )

    def verify(self, order_code: str) -> PaymentVerifyResult:
        try:
            r = requests.get(f"{self.base_url}/v2/payment-requests/{order_code}", headers=self._headers(), timeout=25)
        except requests.RequestException as exc:
            raise IntegrationRequestError(f"PAYOS_VERIFY_FAILED:{exc}") from exc
        data = self._unwrap(r, "VERIFY")
        try:
            amount = int(data.get("amountPaid") or data.get("amount") or 0)
        except (TypeError, ValueError):
            amount = 0
        return PaymentVerifyResult(
            order_code=str(data.get("orderCode") or order_code),
            status=(data.get("status") or "").strip().upper(),
            amount=amount,
            raw=data,
        )

    def verify_webhook(self, payload: dict) -> dict:
        data = payload.get("data")
        signature = (payload.get("signature") or "").strip()
        if not isinstance(data, dict) or not signature:
            raise ValueError("missing data or signature")
        expected = sign_fields(data, self.checksum_key)
        if not hmac.compare_digest(expected, signature):
            raise ValueError("invalid signature")
        return data
