"""Pytest fixtures for storefront tests."""

import asyncio
import tempfile
from decimal import Decimal
from pathlib import Path

import pytest

from storefront.checkout import CheckoutStateMachine
from storefront.collaborators import InMemoryCart, StaticAddressResolver, StaticUserAccessor
from storefront.models import Address, CartLine, Order, PaymentSessionState, User
from storefront.payment import PaymentSession
from storefront.purchase_history import InMemoryPurchaseHistory


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_line(
    product_id: str = "p1",
    quantity: int = 1,
    price: str = "100",
    original: str | None = None,
    stock: int | None = 5,
    size: str | None = "L",
    color: str | None = "Black",
) -> CartLine:
    return CartLine(
        product_id=product_id,
        quantity=quantity,
        unit_price=Decimal(price),
        original_unit_price=Decimal(original) if original else None,
        size=size,
        color=color,
        stock=stock,
    )


def make_address(**overrides) -> Address:
    fields = {
        "full_name": "Asha Rao",
        "phone": "9876543210",
        "address_line1": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560001",
    }
    fields.update(overrides)
    return Address(**fields)


class FakeOrderService:
    """Records create calls; optionally blocks until released or fails."""

    def __init__(self):
        self.create_calls = []
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.next_id = 1

    async def create(self, items, delivery_address, payment_method, total_amount):
        self.create_calls.append(
            {
                "items": items,
                "address": delivery_address,
                "method": payment_method,
                "total": total_amount,
            }
        )
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        order_id = f"order-{self.next_id}"
        self.next_id += 1
        return Order(
            id=order_id,
            items=items,
            delivery_address=delivery_address,
            payment_method=payment_method,
            total_amount=total_amount,
        )


class FakePaymentGateway:
    """Stands in for the backend's gateway endpoints."""

    def __init__(self):
        self.created = []
        self.verified = []
        self.create_error: Exception | None = None
        self.verify_error: Exception | None = None

    async def create_order(self, order_id, amount):
        if self.create_error is not None:
            raise self.create_error
        self.created.append((order_id, amount))
        return PaymentSessionState(
            order_id=order_id,
            gateway_order_id=f"gw_{order_id}_{len(self.created)}",
            amount=int(amount * 100),
            currency="INR",
            key="rzp_test_key",
        )

    async def verify(self, order_id, gateway_order_id, gateway_payment_id, signature):
        self.verified.append((order_id, gateway_order_id, gateway_payment_id, signature))
        if self.verify_error is not None:
            raise self.verify_error


class ScriptedGatewayUI:
    """Returns queued outcomes; callables are given the session."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.opened = []

    async def open(self, session):
        self.opened.append(session)
        outcome = self.outcomes.pop(0)
        if callable(outcome):
            outcome = outcome(session)
        return outcome


class CheckoutHarness:
    """A checkout state machine wired to in-memory collaborators."""

    def __init__(self, lines=None, address=None, user=None, outcomes=()):
        self.cart = InMemoryCart(lines if lines is not None else [make_line()])
        self.addresses = StaticAddressResolver(address)
        self.users = StaticUserAccessor(user)
        self.orders = FakeOrderService()
        self.gateway = FakePaymentGateway()
        self.ui = ScriptedGatewayUI(*outcomes)
        self.purchases = InMemoryPurchaseHistory()
        self.machine = CheckoutStateMachine(
            cart=self.cart,
            addresses=self.addresses,
            users=self.users,
            orders=self.orders,
            payments=PaymentSession(self.gateway, self.ui),
            purchases=self.purchases,
        )

    def walk_to_review(self, method="cod"):
        self.machine.start_checkout()
        self.machine.advance_step()
        self.machine.advance_step()
        self.machine.select_payment_method(method)
        self.machine.advance_step()
        return self.machine


@pytest.fixture
def harness():
    """Checkout with a deliverable address, a named user and one in-stock line."""
    return CheckoutHarness(
        lines=[make_line("p1", quantity=2, price="100", original="120")],
        address=make_address(),
        user=User(id="u1", name="Asha"),
    )


@pytest.fixture
def sample_order_dict():
    return {
        "_id": "65f1c2a9e4b0a1b2c3d4e5f6",
        "items": [
            {
                "productId": {"_id": "p1", "name": "Linen Shirt", "originalPrice": 120},
                "quantity": 2,
                "price": 100,
                "size": "L",
                "color": "Black",
            }
        ],
        "deliveryAddress": {
            "fullName": "Asha Rao",
            "phone": "9876543210",
            "addressLine1": "12 MG Road",
            "city": "Bengaluru",
            "state": "Karnataka",
            "pincode": "560001",
        },
        "paymentMethod": "razorpay",
        "totalAmount": 220,
        "orderStatus": "SHIPPED",
        "statusHistory": [
            {"status": "PLACED", "updatedAt": "2024-03-01T10:00:00Z"},
            {"status": "SHIPPED", "updatedAt": "2024-03-03T09:00:00Z"},
            {"status": "CONFIRMED", "updatedAt": "2024-03-01T12:00:00Z"},
            {"status": "SHIPPED", "updatedAt": "2024-03-02T08:00:00Z"},
        ],
        "createdAt": "2024-03-01T10:00:00Z",
    }
