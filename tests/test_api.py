"""Tests for the FastAPI application."""

import pytest
from fastapi.testclient import TestClient

from storefront.api import _sessions, app, get_backend
from storefront.errors import (
    InvoiceFetchError,
    OrderCreationError,
    OrderNotFoundError,
    VerificationError,
)
from storefront.models import Order
from storefront.purchase_history import PurchaseHistoryStore

from .conftest import FakeOrderService, FakePaymentGateway, make_line

CART = [
    {
        "product_id": "p1",
        "quantity": 2,
        "unit_price": 100,
        "original_unit_price": 120,
        "size": "L",
        "color": "Black",
        "stock": 5,
    }
]

ADDRESS = {
    "full_name": "Asha Rao",
    "phone": "9876543210",
    "address_line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}

USER = {"id": "u1", "name": "Asha"}

AUTH = {"Authorization": "Bearer tok"}


class ApiOrderService(FakeOrderService):
    """FakeOrderService that also serves order queries."""

    def __init__(self):
        super().__init__()
        self.stored: dict[str, Order] = {}
        self.invoices: dict[str, bytes] = {}

    async def get_by_id(self, order_id):
        if order_id not in self.stored:
            raise OrderNotFoundError(order_id)
        return self.stored[order_id]

    async def get_all(self):
        return list(self.stored.values())

    async def get_invoice(self, order_id):
        if order_id not in self.invoices:
            raise InvoiceFetchError(status_code=404)
        return self.invoices[order_id]


class FakeBackend:
    def __init__(self, data_dir):
        self.orders = ApiOrderService()
        self.gateway = FakePaymentGateway()
        self.store = PurchaseHistoryStore(data_dir)
        self.tokens = []

    def order_service(self, token=None):
        self.tokens.append(token)
        return self.orders

    def payment_gateway(self, token=None):
        return self.gateway

    def purchase_history(self):
        return self.store


@pytest.fixture
def backend(temp_dir):
    fake = FakeBackend(temp_dir)
    app.dependency_overrides[get_backend] = lambda: fake
    _sessions.clear()
    yield fake
    app.dependency_overrides.clear()
    _sessions.clear()


@pytest.fixture
def client(backend):
    with TestClient(app) as test_client:
        yield test_client


def start(client, address=ADDRESS, user=USER):
    body = {"cart": CART}
    if address is not None:
        body["address"] = address
    if user is not None:
        body["user"] = user
    response = client.post("/api/checkout", json=body)
    assert response.status_code == 201
    return response.json()["session_id"]


def walk_to_review(client, session_id, method="cod"):
    assert client.post(f"/api/checkout/{session_id}/advance").status_code == 200
    assert client.post(f"/api/checkout/{session_id}/advance").status_code == 200
    response = client.post(f"/api/checkout/{session_id}/payment-method", json={"method": method})
    assert response.status_code == 200
    response = client.post(f"/api/checkout/{session_id}/advance")
    assert response.json()["step"] == "REVIEW"
    return response.json()


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestCheckoutEndpoints:
    def test_start_checkout(self, client):
        response = client.post("/api/checkout", json={"cart": CART, "address": ADDRESS})

        assert response.status_code == 201
        data = response.json()
        assert data["step"] == "ADDRESS"
        assert data["delivery_option"] == "standard"
        assert data["order_id"] is None
        assert data["price_breakdown"] == {
            "listingPrice": 240,
            "sellingPrice": 200,
            "totalFees": 0,
            "otherDiscount": 40,
            "totalAmount": 200,
        }

    def test_start_with_empty_cart_rejected(self, client):
        response = client.post("/api/checkout", json={"cart": []})
        assert response.status_code == 422

    def test_unknown_session(self, client):
        response = client.get("/api/checkout/nope")
        assert response.status_code == 404
        assert response.json()["error_type"] == "CheckoutSessionNotFoundError"

    def test_advance_without_address_requests_collection(self, client):
        session_id = start(client, address=None)

        response = client.post(f"/api/checkout/{session_id}/advance")

        assert response.status_code == 422
        assert response.json()["error_type"] == "AddressRequiredError"
        assert response.json()["step"] == "ADDRESS"
        state = client.get(f"/api/checkout/{session_id}").json()
        assert state["step"] == "ADDRESS"
        assert state["side_flow"] == "ADDRESS_COLLECTION"

        response = client.put(f"/api/checkout/{session_id}/address", json=ADDRESS)
        assert response.json()["side_flow"] is None

        response = client.post(f"/api/checkout/{session_id}/advance")
        assert response.json()["step"] == "DELIVERY"

    def test_payment_step_requires_method(self, client):
        session_id = start(client)
        client.post(f"/api/checkout/{session_id}/advance")
        client.post(f"/api/checkout/{session_id}/advance")

        response = client.post(f"/api/checkout/{session_id}/advance")

        assert response.status_code == 422
        assert response.json()["error_type"] == "PaymentMethodRequiredError"

    def test_unknown_payment_method(self, client):
        session_id = start(client)

        response = client.post(
            f"/api/checkout/{session_id}/payment-method", json={"method": "cheque"}
        )

        assert response.status_code == 400

    def test_delivery_option(self, client):
        session_id = start(client)

        response = client.post(
            f"/api/checkout/{session_id}/delivery-option", json={"option": "express"}
        )

        assert response.json()["delivery_option"] == "express"

    def test_goto_earlier_and_later_steps(self, client):
        session_id = start(client)
        walk_to_review(client, session_id)

        response = client.post(f"/api/checkout/{session_id}/goto", json={"step": "DELIVERY"})
        assert response.json()["step"] == "DELIVERY"

        response = client.post(f"/api/checkout/{session_id}/goto", json={"step": "REVIEW"})
        assert response.status_code == 409

    def test_back(self, client):
        session_id = start(client)
        client.post(f"/api/checkout/{session_id}/advance")

        response = client.post(f"/api/checkout/{session_id}/back")

        assert response.json()["step"] == "ADDRESS"
        assert client.post(f"/api/checkout/{session_id}/back").status_code == 409

    def test_abandon(self, client):
        session_id = start(client)

        assert client.delete(f"/api/checkout/{session_id}").status_code == 200
        assert client.get(f"/api/checkout/{session_id}").status_code == 404


class TestPlacement:
    def test_cash_on_delivery(self, client, backend):
        session_id = start(client)
        walk_to_review(client, session_id, "cod")

        response = client.post(f"/api/checkout/{session_id}/place-order")

        assert response.status_code == 200
        data = response.json()
        assert data["step"] == "PLACED"
        assert data["order_id"] == "order-1"
        assert len(backend.orders.create_calls) == 1

        purchases = client.get("/api/purchases/u1", headers=AUTH).json()
        assert purchases["count"] == 1
        assert purchases["items"][0]["quantity"] == 2

    def test_missing_name_requests_profile(self, client, backend):
        session_id = start(client, user={"id": "u1", "name": "  "})
        walk_to_review(client, session_id, "cod")

        response = client.post(f"/api/checkout/{session_id}/place-order")

        assert response.status_code == 422
        assert response.json()["error_type"] == "DisplayNameRequiredError"
        assert client.get(f"/api/checkout/{session_id}").json()["side_flow"] == "PROFILE_COMPLETION"
        assert backend.orders.create_calls == []

        client.put(f"/api/checkout/{session_id}/user", json=USER)
        response = client.post(f"/api/checkout/{session_id}/place-order")
        assert response.json()["step"] == "PLACED"

    def test_creation_failure_is_retryable(self, client, backend):
        backend.orders.fail_with = OrderCreationError("Stock changed, please review")
        session_id = start(client)
        walk_to_review(client, session_id, "cod")

        response = client.post(f"/api/checkout/{session_id}/place-order")

        data = response.json()
        assert data["step"] == "FAILED"
        assert data["can_retry"] is True
        assert data["error"] == {
            "detail": "Stock changed, please review",
            "error_type": "OrderCreationError",
        }
        assert client.get("/api/purchases/u1", headers=AUTH).json()["count"] == 0

        backend.orders.fail_with = None
        response = client.post(f"/api/checkout/{session_id}/place-order")
        assert response.json()["step"] == "PLACED"

    def test_online_payment_verified(self, client, backend):
        session_id = start(client)
        walk_to_review(client, session_id, "online")

        response = client.post(f"/api/checkout/{session_id}/place-order")

        data = response.json()
        assert data["step"] == "AWAITING_PAYMENT"
        assert data["order_id"] == "order-1"
        gateway_order_id = data["payment_session"]["gatewayOrderId"]
        assert gateway_order_id == "gw_order-1_1"
        assert client.get("/api/purchases/u1", headers=AUTH).json()["count"] == 0

        response = client.post(
            f"/api/checkout/{session_id}/payment-outcome",
            json={
                "kind": "success",
                "gateway_order_id": gateway_order_id,
                "gateway_payment_id": "pay_1",
                "signature": "sig_1",
            },
        )

        data = response.json()
        assert data["step"] == "PLACED"
        assert data["payment_session"] is None
        assert backend.gateway.verified == [("order-1", gateway_order_id, "pay_1", "sig_1")]
        assert client.get("/api/purchases/u1", headers=AUTH).json()["count"] == 1

    def test_online_cancel_then_retry_reuses_order(self, client, backend):
        session_id = start(client)
        walk_to_review(client, session_id, "online")
        client.post(f"/api/checkout/{session_id}/place-order")

        response = client.post(
            f"/api/checkout/{session_id}/payment-outcome", json={"kind": "cancelled"}
        )

        assert response.json()["step"] == "REVIEW"
        assert response.json()["order_id"] == "order-1"

        response = client.post(f"/api/checkout/{session_id}/place-order")

        assert response.json()["step"] == "AWAITING_PAYMENT"
        assert response.json()["payment_session"]["gatewayOrderId"] == "gw_order-1_2"
        assert len(backend.orders.create_calls) == 1

        client.post(f"/api/checkout/{session_id}/payment-outcome", json={"kind": "cancelled"})

    def test_gateway_error_returns_to_review(self, client, backend):
        session_id = start(client)
        walk_to_review(client, session_id, "online")
        client.post(f"/api/checkout/{session_id}/place-order")

        response = client.post(
            f"/api/checkout/{session_id}/payment-outcome",
            json={"kind": "error", "message": "Card declined"},
        )

        data = response.json()
        assert data["step"] == "REVIEW"
        assert data["error"]["error_type"] == "GatewayError"
        assert data["error"]["detail"] == "Card declined"

    def test_outcome_without_open_payment(self, client):
        session_id = start(client)

        response = client.post(
            f"/api/checkout/{session_id}/payment-outcome", json={"kind": "cancelled"}
        )

        assert response.status_code == 409

    def test_place_from_address_step_rejected(self, client):
        session_id = start(client)
        response = client.post(f"/api/checkout/{session_id}/place-order")
        assert response.status_code == 409

    def test_user_signed_in_during_checkout_is_credited(self, client, backend):
        session_id = start(client, user=None)
        walk_to_review(client, session_id, "cod")

        response = client.post(f"/api/checkout/{session_id}/place-order")
        assert response.status_code == 422
        assert response.json()["error_type"] == "DisplayNameRequiredError"

        client.put(f"/api/checkout/{session_id}/user", json=USER)
        response = client.post(f"/api/checkout/{session_id}/place-order")

        assert response.json()["step"] == "PLACED"
        assert client.get("/api/purchases/u1", headers=AUTH).json()["count"] == 1
        assert client.get("/api/purchases/anonymous", headers=AUTH).json()["count"] == 0


class TestSessionLifetime:
    def test_placed_session_is_dropped(self, client):
        session_id = start(client)
        walk_to_review(client, session_id, "cod")

        response = client.post(f"/api/checkout/{session_id}/place-order")

        assert response.json()["step"] == "PLACED"
        assert session_id not in _sessions
        assert client.get(f"/api/checkout/{session_id}").status_code == 404

    def test_verified_online_session_is_dropped(self, client):
        session_id = start(client)
        walk_to_review(client, session_id, "online")
        data = client.post(f"/api/checkout/{session_id}/place-order").json()

        response = client.post(
            f"/api/checkout/{session_id}/payment-outcome",
            json={
                "kind": "success",
                "gateway_order_id": data["payment_session"]["gatewayOrderId"],
                "gateway_payment_id": "pay_1",
                "signature": "sig_1",
            },
        )

        assert response.json()["step"] == "PLACED"
        assert client.get(f"/api/checkout/{session_id}").status_code == 404

    def test_terminal_failure_drops_session(self, client, backend):
        backend.gateway.verify_error = VerificationError()
        session_id = start(client)
        walk_to_review(client, session_id, "online")
        data = client.post(f"/api/checkout/{session_id}/place-order").json()

        response = client.post(
            f"/api/checkout/{session_id}/payment-outcome",
            json={
                "kind": "success",
                "gateway_order_id": data["payment_session"]["gatewayOrderId"],
                "gateway_payment_id": "pay_1",
                "signature": "bad",
            },
        )

        assert response.json()["step"] == "FAILED"
        assert response.json()["can_retry"] is False
        assert client.get(f"/api/checkout/{session_id}").status_code == 404

    def test_retryable_failure_keeps_session(self, client, backend):
        backend.orders.fail_with = OrderCreationError()
        session_id = start(client)
        walk_to_review(client, session_id, "cod")

        client.post(f"/api/checkout/{session_id}/place-order")

        response = client.get(f"/api/checkout/{session_id}")
        assert response.status_code == 200
        assert response.json()["step"] == "FAILED"


class TestOrderEndpoints:
    def test_get_order(self, client, backend, sample_order_dict):
        order = Order.from_dict(sample_order_dict)
        backend.orders.stored[order.id] = order

        response = client.get(f"/api/orders/{order.id}", headers={"Authorization": "Bearer abc"})

        assert response.status_code == 200
        data = response.json()
        assert data["order"]["id"] == order.id
        assert data["price_breakdown"]["totalFees"] == 20
        assert data["price_breakdown"]["otherDiscount"] == 20
        assert [e["status"] for e in data["timeline"]] == ["PLACED", "CONFIRMED", "SHIPPED"]
        assert backend.tokens[-1] == "abc"

    def test_get_missing_order(self, client):
        response = client.get("/api/orders/missing")
        assert response.status_code == 404
        assert response.json()["error_type"] == "OrderNotFoundError"

    def test_list_orders(self, client, backend, sample_order_dict):
        order = Order.from_dict(sample_order_dict)
        backend.orders.stored[order.id] = order

        data = client.get("/api/orders").json()

        assert data["count"] == 1
        assert data["orders"][0]["orderStatus"] == "SHIPPED"

    def test_invoice(self, client, backend):
        backend.orders.invoices["65f1c2a9e4b0a1b2c3d4e5f6"] = b"%PDF-1.4"

        response = client.get("/api/orders/65f1c2a9e4b0a1b2c3d4e5f6/invoice")

        assert response.status_code == 200
        assert response.content == b"%PDF-1.4"
        assert response.headers["content-type"] == "application/pdf"
        assert 'filename="invoice-c3d4e5f6.pdf"' in response.headers["content-disposition"]

    def test_invoice_failure(self, client):
        response = client.get("/api/orders/o1/invoice")
        assert response.status_code == 502
        assert response.json()["error_type"] == "InvoiceFetchError"


class TestPurchaseEndpoints:
    def test_requires_token(self, client):
        response = client.get("/api/purchases/u1")

        assert response.status_code == 401
        assert response.json()["error_type"] == "AuthenticationRequiredError"

    def test_lists_stored_items(self, client, backend):
        backend.store.add_purchased_item("u1", make_line("p1"), quantity=3)

        response = client.get("/api/purchases/u1", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["count"] == 1
        assert response.json()["items"][0]["quantity"] == 3
