"""Data models for storefront."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def to_decimal(value: Any) -> Decimal:
    """Convert a JSON number (or numeric string) to Decimal, treating junk as zero."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def _money_to_json(value: Decimal) -> int | float:
    """Render a Decimal the way the backend sends numbers."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _product_ref(value: Any) -> str:
    """Resolve a productId that may be a plain id or a populated product document."""
    if isinstance(value, dict):
        return str(value.get("_id") or value.get("id") or "")
    return str(value) if value is not None else ""


class PaymentMethod(str, Enum):
    """How the customer pays for an order."""

    ONLINE = "ONLINE"
    COD = "COD"

    @property
    def wire_value(self) -> str:
        return "cod" if self is PaymentMethod.COD else "razorpay"

    @classmethod
    def parse(cls, value: "str | PaymentMethod") -> "PaymentMethod":
        if isinstance(value, PaymentMethod):
            return value
        normalized = str(value).strip().lower()
        if normalized == "cod":
            return cls.COD
        if normalized in ("online", "razorpay"):
            return cls.ONLINE
        raise ValueError(f"Unknown payment method: {value}")


class OrderStatus(str, Enum):
    """Backend order statuses in canonical progression order."""

    PLACED = "PLACED"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.COMPLETED, OrderStatus.CANCELLED}
)


@dataclass
class CartLine:
    """A cart entry as supplied by the cart collaborator."""

    product_id: str
    quantity: int
    unit_price: Decimal
    original_unit_price: Decimal | None = None
    size: str | None = None
    color: str | None = None
    stock: int | None = None  # last known stock, None when unknown
    name: str | None = None

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ValueError(f"Cart quantity must be at least 1, got {self.quantity}")

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def is_out_of_stock(self) -> bool:
        return self.stock is not None and self.stock == 0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "productId": self.product_id,
            "quantity": self.quantity,
            "price": _money_to_json(self.unit_price),
        }
        if self.original_unit_price is not None:
            result["originalPrice"] = _money_to_json(self.original_unit_price)
        if self.size is not None:
            result["size"] = self.size
        if self.color is not None:
            result["color"] = self.color
        if self.stock is not None:
            result["stock"] = self.stock
        if self.name is not None:
            result["name"] = self.name
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CartLine":
        product = data.get("productId")
        original = data.get("originalPrice")
        if original is None and isinstance(product, dict):
            original = product.get("originalPrice")
        stock = data.get("stock")
        return cls(
            product_id=_product_ref(product or data.get("id") or data.get("_id")),
            quantity=int(data.get("quantity") or 1),
            unit_price=to_decimal(data.get("price") or data.get("priceAtAdd")),
            original_unit_price=to_decimal(original) if original is not None else None,
            size=data.get("size"),
            color=data.get("color"),
            stock=int(stock) if stock is not None and stock != "" else None,
            name=data.get("name"),
        )


@dataclass
class Address:
    """A delivery address."""

    full_name: str
    phone: str
    address_line1: str
    city: str
    state: str
    pincode: str
    address_line2: str | None = None
    area: str | None = None
    block: str | None = None
    landmark: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    def missing_fields(self) -> list[str]:
        """Return the hard-required fields that are empty."""
        return [
            name
            for name in ("city", "state", "pincode")
            if not (getattr(self, name) or "").strip()
        ]

    @property
    def is_deliverable(self) -> bool:
        return not self.missing_fields()

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "fullName": self.full_name,
            "phone": self.phone,
            "addressLine1": self.address_line1,
            "city": self.city,
            "state": self.state,
            "pincode": self.pincode,
            # Legacy single-line field still read by older backends
            "address": self.address_line1,
        }
        for key, value in (
            ("addressLine2", self.address_line2),
            ("area", self.area),
            ("block", self.block),
            ("landmark", self.landmark),
            ("latitude", self.latitude),
            ("longitude", self.longitude),
        ):
            if value is not None:
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Address":
        return cls(
            full_name=data.get("fullName") or data.get("name") or "",
            phone=data.get("phone") or "",
            address_line1=data.get("addressLine1") or data.get("address") or "",
            city=data.get("city") or "",
            state=data.get("state") or "",
            pincode=str(data.get("pincode") or ""),
            address_line2=data.get("addressLine2"),
            area=data.get("area"),
            block=data.get("block"),
            landmark=data.get("landmark"),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
        )


@dataclass
class User:
    """The signed-in customer."""

    id: str
    name: str | None = None
    phone: str | None = None
    email: str | None = None

    @property
    def display_name(self) -> str:
        return (self.name or "").strip()

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "phone": self.phone, "email": self.email}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        return cls(
            id=str(data.get("_id") or data.get("id") or ""),
            name=data.get("name"),
            phone=data.get("phone"),
            email=data.get("email"),
        )


@dataclass
class StatusEvent:
    """One entry of an order's raw status history."""

    status: str
    updated_at: str | None = None  # None means not yet reached

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "updatedAt": self.updated_at}

    @classmethod
    def from_dict(cls, data: "dict[str, Any] | str") -> "StatusEvent":
        # Some legacy orders store bare status strings in the history
        if isinstance(data, str):
            return cls(status=data.upper())
        return cls(
            status=str(data.get("status") or "").upper(),
            updated_at=data.get("updatedAt") or data.get("createdAt"),
        )


@dataclass
class OrderLine:
    """A line of a created order."""

    product_id: str
    quantity: int
    price: Decimal
    original_price: Decimal | None = None
    size: str | None = None
    color: str | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "productId": self.product_id,
            "quantity": self.quantity,
            "price": _money_to_json(self.price),
        }
        if self.original_price is not None:
            result["originalPrice"] = _money_to_json(self.original_price)
        if self.size is not None:
            result["size"] = self.size
        if self.color is not None:
            result["color"] = self.color
        if self.name is not None:
            result["name"] = self.name
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderLine":
        product = data.get("productId")
        original = data.get("originalPrice")
        name = data.get("name")
        if isinstance(product, dict):
            if original is None:
                original = product.get("originalPrice")
            name = name or product.get("name")
        return cls(
            product_id=_product_ref(product or data.get("id")),
            quantity=int(data.get("quantity") or 1),
            price=to_decimal(data.get("price") or data.get("priceAtAdd")),
            original_price=to_decimal(original) if original else None,
            size=data.get("size"),
            color=data.get("color"),
            name=name,
        )

    @classmethod
    def from_cart_line(cls, line: CartLine) -> "OrderLine":
        return cls(
            product_id=line.product_id,
            quantity=line.quantity,
            price=line.unit_price,
            original_price=line.original_unit_price,
            size=line.size,
            color=line.color,
            name=line.name,
        )


@dataclass
class Order:
    """An order as returned by the order service."""

    id: str
    items: list[OrderLine]
    delivery_address: Address | None
    payment_method: PaymentMethod | None
    total_amount: Decimal | None
    order_status: str = OrderStatus.PLACED.value
    status_history: list[StatusEvent] = field(default_factory=list)
    created_at: str | None = None
    payment_status: str | None = None

    @property
    def is_terminal(self) -> bool:
        try:
            return OrderStatus(self.order_status).is_terminal
        except ValueError:
            return False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "items": [item.to_dict() for item in self.items],
            "orderStatus": self.order_status,
            "statusHistory": [event.to_dict() for event in self.status_history],
            "createdAt": self.created_at,
        }
        if self.delivery_address is not None:
            result["deliveryAddress"] = self.delivery_address.to_dict()
        if self.payment_method is not None:
            result["paymentMethod"] = self.payment_method.wire_value
        if self.total_amount is not None:
            result["totalAmount"] = _money_to_json(self.total_amount)
        if self.payment_status is not None:
            result["paymentStatus"] = self.payment_status
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        address = data.get("deliveryAddress")
        method = data.get("paymentMethod")
        try:
            payment_method = PaymentMethod.parse(method) if method else None
        except ValueError:
            # Methods this client does not know (e.g. "upi") are left unset
            payment_method = None
        total = data.get("totalAmount", data.get("total"))
        return cls(
            id=str(data.get("_id") or data.get("id") or ""),
            items=[OrderLine.from_dict(i) for i in data.get("items") or []],
            delivery_address=Address.from_dict(address) if address else None,
            payment_method=payment_method,
            total_amount=to_decimal(total) if total else None,
            order_status=str(data.get("orderStatus") or OrderStatus.PLACED.value).upper(),
            status_history=[
                StatusEvent.from_dict(e) for e in data.get("statusHistory") or []
            ],
            created_at=data.get("createdAt"),
            payment_status=data.get("paymentStatus"),
        )


@dataclass
class PaymentSessionState:
    """A gateway-side transaction opened for a domain order."""

    order_id: str  # domain order id
    gateway_order_id: str  # payment provider namespace
    amount: int
    currency: str
    key: str
    name: str | None = None
    description: str | None = None
    prefill: dict[str, Any] = field(default_factory=dict)
    verified: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "gatewayOrderId": self.gateway_order_id,
            "amount": self.amount,
            "currency": self.currency,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "prefill": self.prefill,
            "verified": self.verified,
        }

    @classmethod
    def from_gateway(cls, order_id: str, data: dict[str, Any]) -> "PaymentSessionState":
        """Build from a gateway create-order response body."""
        return cls(
            order_id=order_id,
            gateway_order_id=str(data.get("gatewayOrderId") or data.get("orderId") or ""),
            amount=int(data.get("amount") or 0),
            currency=data.get("currency") or "INR",
            key=data.get("key") or "",
            name=data.get("name"),
            description=data.get("description"),
            prefill=data.get("prefill") or {},
        )


@dataclass
class PurchasedItem:
    """An entry of the user's purchase history (wardrobe)."""

    product_id: str
    size: str
    color: str
    quantity: int = 1
    name: str | None = None
    price: Decimal | None = None
    purchased_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "productId": self.product_id,
            "size": self.size,
            "color": self.color,
            "quantity": self.quantity,
            "purchasedAt": self.purchased_at,
        }
        if self.name is not None:
            result["name"] = self.name
        if self.price is not None:
            result["price"] = _money_to_json(self.price)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PurchasedItem":
        price = data.get("price")
        return cls(
            product_id=str(data["productId"]),
            size=data.get("size", "M"),
            color=data.get("color", "White"),
            quantity=int(data.get("quantity", 1)),
            name=data.get("name"),
            price=to_decimal(price) if price is not None else None,
            purchased_at=data.get("purchasedAt", ""),
        )
