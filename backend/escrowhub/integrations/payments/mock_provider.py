from __future__ import annotations

from escrowhub.integrations.payments.base import PaymentLinkResult, PaymentsProvider, PaymentVerifyResult


class MockPaymentsProvider(PaymentsProvider):
    """Local provider: links point at a fake checkout, verification echoes a preset amount."""

    name = "mock"

    def __init__(self, amounts: dict[str, int] | None = None):
        self.amounts = dict(amounts or {})

    def create_payment_link(self, *, order_code: str, amount: int, description: str, buyer_email: str = "") -> PaymentLinkResult:
        self.amounts.setdefault(str(order_code), int(amount))
        return PaymentLinkResult(
            checkout_url=f"https://example.com/mock/checkout?orderCode={order_code}",
            reference=f"mock-{order_code}",
            provider=self.name,
            raw={"order_code": order_code, "amount": int(amount), "description": description},
        )

    def verify(self, order_code: str) -> PaymentVerifyResult:
        return PaymentVerifyResult(
            order_code=str(order_code),
            status="PAID",
            amount=int(self.amounts.get(str(order_code), 0)),
            raw={"provider": self.name},
        )

    def verify_webhook(self, payload: dict) -> dict:
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ValueError("missing data")
        return data
