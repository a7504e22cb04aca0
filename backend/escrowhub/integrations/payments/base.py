from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PaymentLinkResult:
    checkout_url: str
    reference: str
    provider: str
    raw: dict | None = None


@dataclass
class PaymentVerifyResult:
    order_code: str
    status: str
    amount: int
    raw: dict | None = None

    @property
    def paid(self) -> bool:
        return (self.status or "").upper() == "PAID"


class PaymentsProvider:
    name = "unknown"

    def create_payment_link(self, *, order_code: str, amount: int, description: str, buyer_email: str = "") -> PaymentLinkResult:
        raise NotImplementedError

    def verify(self, order_code: str) -> PaymentVerifyResult:
        raise NotImplementedError

    def verify_webhook(self, payload: dict) -> dict:
        """Return the trusted ``data`` section of a webhook body or raise ValueError."""
        raise NotImplementedError
