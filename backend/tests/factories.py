from __future__ import annotations

import itertools
import os
import unittest

from escrowhub import create_app
from escrowhub.extensions import db
from escrowhub.integrations.payments.mock_provider import MockPaymentsProvider
from escrowhub.integrations.proofs.mock_verifier import MockProofVerifier
from escrowhub.models import OrderItem, User
from escrowhub.services.logistics_service import confirm_pickup, dispatch_item, request_pickup
from escrowhub.services.order_service import create_order
from escrowhub.services.payment_reconciliation_service import confirm_payment
from escrowhub.utils.jwt_utils import create_access_token

PHOTO = "https://cdn.escrowhub.test/proof/package-1.jpg"

_seq = itertools.count(1)

BASE_ENV = {
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "DATABASE_URL": "sqlite:///:memory:",
    "SECRET_KEY": "escrowhub-test-secret-key",
    "PAYMENTS_PROVIDER": "mock",
    "PROOF_VERIFIER": "mock",
    "PAYMENTS_VERIFY_AMOUNT": "0",
    "BUYER_PROTECTION_HOURS": "0",
    "PLATFORM_FEE_PERCENTAGE": "0.05",
    "ENABLE_IDEMPOTENCY_ENFORCEMENT": "0",
}


class AppTestCase(unittest.TestCase):
    """Fresh in-memory schema per test, one app per test class."""

    ENV: dict = {}

    @classmethod
    def setUpClass(cls):
        cls._prev_env = {}
        for key, value in {**BASE_ENV, **cls.ENV}.items():
            cls._prev_env[key] = os.environ.get(key)
            os.environ[key] = value
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._prev_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.create_all()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()

    def set_env(self, key: str, value: str):
        prev = os.environ.get(key)
        os.environ[key] = value

        def _restore():
            if prev is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = prev

        self.addCleanup(_restore)


def make_user(role: str = "buyer", name: str | None = None) -> User:
    n = next(_seq)
    user = User(
        name=name or f"{role.title()} {n}",
        email=f"{role}-{n}@escrowhub.test",
        phone=f"09{n:08d}",
        role=role,
    )
    db.session.add(user)
    db.session.commit()
    return user


def auth_headers(user_or_id) -> dict:
    uid = user_or_id if isinstance(user_or_id, int) else int(user_or_id.id)
    return {"Authorization": f"Bearer {create_access_token(uid)}"}


def line(seller: User, price: int, product_id: int | None = None, name: str = "") -> dict:
    pid = product_id or next(_seq)
    return {"product_id": pid, "seller_id": int(seller.id), "price": price, "product_name": name or f"Product {pid}"}


def place_order(buyer: User, lines: list[dict], *, shipping_fee: int = 0):
    return create_order(
        buyer,
        lines,
        shipping_address_id=1,
        shipping_fee=shipping_fee,
        provider=MockPaymentsProvider(),
    )


def pay(order) -> dict:
    return confirm_payment(code="00", status="PAID", order_code=order.order_code)


def items_of(order) -> list[OrderItem]:
    return OrderItem.query.filter_by(order_id=int(order.id)).order_by(OrderItem.id.asc()).all()


def to_warehouse(item: OrderItem, seller: User, shipper: User) -> OrderItem:
    result = request_pickup(item.order_id, item.id, seller=seller)
    confirm_pickup(
        item.id,
        photo_urls=[PHOTO],
        qr_token=result["qr_token"],
        shipper=shipper,
        verifier=MockProofVerifier(),
    )
    return db.session.get(OrderItem, int(item.id))


def to_out_for_delivery(item: OrderItem, seller: User, shipper: User) -> OrderItem:
    to_warehouse(item, seller, shipper)
    return dispatch_item(item.id, shipper=shipper)


def paid_single_item_order(price: int = 500_000):
    """Buyer, seller, shipper and one paid item in PROCESSING."""
    buyer = make_user("buyer")
    seller = make_user("seller")
    shipper = make_user("shipper")
    order = place_order(buyer, [line(seller, price)])
    pay(order)
    item = items_of(order)[0]
    return buyer, seller, shipper, order, item
