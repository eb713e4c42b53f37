"""Async REST clients for the storefront backend's order and payment endpoints."""

import logging
from decimal import Decimal
from typing import Any

import httpx

from .errors import (
    GatewayError,
    InvoiceFetchError,
    OrderCreationError,
    OrderNotFoundError,
    ServiceError,
    VerificationError,
)
from .models import Address, Order, OrderLine, PaymentMethod, PaymentSessionState, _money_to_json

logger = logging.getLogger(__name__)

# What a malformed response body raises from the models' from_dict parsers
PARSE_ERRORS = (ValueError, TypeError, KeyError, AttributeError)


class BackendClient:
    """Shared plumbing for calls returning the ``{success, data, message}`` envelope."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Backend API root, e.g. ``http://127.0.0.1:5000/api``.
            token: Bearer token of the signed-in user.
            timeout: Request timeout in seconds.
            client: Pre-built client (tests pass one with a mock transport).
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _call(
        self,
        method: str,
        path: str,
        error_cls: type[ServiceError],
        json: dict[str, Any] | None = None,
    ) -> Any:
        """
        Perform a request and unwrap the envelope's ``data``.

        Raises:
            error_cls: On transport failure, non-JSON body, HTTP error status or
                ``success: false``. The server's message is kept when present.
        """
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(
                method, url, json=json, headers=self._headers()
            )
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise error_cls(f"Network error: {e}")

        try:
            body = response.json()
        except ValueError:
            logger.warning("%s %s returned non-JSON body (HTTP %s)", method, url, response.status_code)
            raise error_cls(status_code=response.status_code)

        if not isinstance(body, dict):
            raise error_cls(status_code=response.status_code)

        if response.is_error or not body.get("success", False):
            message = body.get("message") or body.get("error")
            logger.info("%s %s rejected (HTTP %s): %s", method, url, response.status_code, message)
            raise error_cls(message, status_code=response.status_code)

        return body.get("data")


class OrderService(BackendClient):
    """Client for ``/orders``."""

    async def create(
        self,
        items: list[OrderLine],
        delivery_address: Address,
        payment_method: PaymentMethod,
        total_amount: Decimal,
    ) -> Order:
        """Create an order. Returns the created order (at least its id)."""
        payload = {
            "items": [
                {
                    "productId": item.product_id,
                    "quantity": item.quantity,
                    "price": _money_to_json(item.price),
                    "color": item.color,
                    "size": item.size,
                }
                for item in items
            ],
            "deliveryAddress": delivery_address.to_dict(),
            "paymentMethod": payment_method.wire_value,
            "totalAmount": _money_to_json(total_amount),
        }
        data = await self._call("POST", "/orders", OrderCreationError, json=payload)
        if not isinstance(data, dict) or not (data.get("_id") or data.get("id")):
            raise OrderCreationError("Order service did not return an order id")

        try:
            order = Order.from_dict(data)
        except PARSE_ERRORS as e:
            # The order exists server-side; keep its id so it is never created twice
            order_id = str(data.get("_id") or data.get("id"))
            logger.warning("Created order %s but could not read the response: %s", order_id, e)
            order = Order(
                id=order_id,
                items=list(items),
                delivery_address=delivery_address,
                payment_method=payment_method,
                total_amount=total_amount,
            )
        logger.info("Created order %s (%s)", order.id, payment_method.value)
        return order

    async def get_by_id(self, order_id: str) -> Order:
        """
        Fetch one order.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
            ServiceError: On any other failure.
        """
        try:
            data = await self._call("GET", f"/orders/{order_id}", ServiceError)
        except ServiceError as e:
            if e.status_code == 404:
                raise OrderNotFoundError(order_id)
            raise
        if not isinstance(data, dict):
            raise OrderNotFoundError(order_id)
        try:
            return Order.from_dict(data)
        except PARSE_ERRORS as e:
            logger.warning("Order %s response could not be read: %s", order_id, e)
            raise ServiceError(f"Malformed order {order_id} from order service")

    async def get_all(self) -> list[Order]:
        """List the signed-in user's orders."""
        data = await self._call("GET", "/orders", ServiceError)
        try:
            return [Order.from_dict(o) for o in data or []]
        except PARSE_ERRORS as e:
            logger.warning("Order list response could not be read: %s", e)
            raise ServiceError("Malformed order list from order service")

    async def get_invoice(self, order_id: str) -> bytes:
        """
        Download an order's invoice PDF.

        Raises:
            InvoiceFetchError: If unauthenticated or the download fails.
        """
        if not self.token:
            raise InvoiceFetchError("Please sign in to download the invoice", status_code=401)

        url = f"{self.base_url}/orders/{order_id}/invoice"
        try:
            response = await self._client.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("Invoice download for %s failed: %s", order_id, e)
            raise InvoiceFetchError()

        if response.status_code != 200:
            logger.info("Invoice download for %s returned HTTP %s", order_id, response.status_code)
            raise InvoiceFetchError(status_code=response.status_code)
        return response.content


class PaymentGateway(BackendClient):
    """Client for the backend's gateway endpoints (``/payments/razorpay``)."""

    async def create_order(self, order_id: str, amount: Decimal) -> PaymentSessionState:
        """Request a gateway-side order for a domain order."""
        data = await self._call(
            "POST",
            "/payments/razorpay/create-order",
            GatewayError,
            json={"orderId": order_id, "amount": _money_to_json(amount)},
        )
        if not isinstance(data, dict):
            raise GatewayError()

        try:
            session = PaymentSessionState.from_gateway(order_id, data)
        except PARSE_ERRORS as e:
            logger.warning("Gateway order for %s could not be read: %s", order_id, e)
            raise GatewayError("Gateway returned a malformed order")
        if not session.gateway_order_id:
            raise GatewayError("Gateway did not return an order id")
        return session

    async def verify(
        self,
        order_id: str,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> None:
        """
        Verify a completed gateway payment server-side.

        Raises:
            VerificationError: If the server does not confirm the payment,
                including when it cannot be reached.
        """
        await self._call(
            "POST",
            "/payments/razorpay/verify",
            VerificationError,
            json={
                "orderId": order_id,
                "razorpay_order_id": gateway_order_id,
                "razorpay_payment_id": gateway_payment_id,
                "razorpay_signature": signature,
            },
        )
