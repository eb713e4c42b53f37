"""FastAPI REST API for storefront checkout sessions and order views."""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Literal, Optional

import httpx
from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .checkout import CheckoutStateMachine, CheckoutStep
from .collaborators import InMemoryCart, StaticAddressResolver, StaticUserAccessor
from .config import Settings, load_settings
from .errors import (
    AuthenticationRequiredError,
    CheckoutSessionNotFoundError,
    CheckoutValidationError,
    ConfigError,
    GatewayError,
    InvalidSchemaVersionError,
    InvalidTransitionError,
    InvoiceFetchError,
    OrderCreationError,
    OrderNotFoundError,
    PurchaseRecordError,
    ServiceError,
    StorefrontError,
    VerificationError,
)
from .models import Address, CartLine, Order, PaymentMethod, User
from .order_service import OrderService, PaymentGateway
from .payment import (
    CallbackGatewayUI,
    PaymentCancelled,
    PaymentFailed,
    PaymentSession,
    PaymentSucceeded,
)
from .pricing import order_price_breakdown
from .purchase_history import PurchaseHistoryStore, SignedInPurchaseHistory
from .timeline import build_status_timeline

logger = logging.getLogger(__name__)


# --- Pydantic Schemas ---


class CartLineSchema(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., ge=0)
    original_unit_price: Optional[Decimal] = Field(default=None, ge=0)
    size: Optional[str] = None
    color: Optional[str] = None
    stock: Optional[int] = None
    name: Optional[str] = None


class AddressSchema(BaseModel):
    full_name: str = ""
    phone: str = ""
    address_line1: str = ""
    address_line2: Optional[str] = None
    area: Optional[str] = None
    block: Optional[str] = None
    landmark: Optional[str] = None
    city: str = ""
    state: str = ""
    pincode: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class UserSchema(BaseModel):
    id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class StartCheckoutRequest(BaseModel):
    """Request body for starting a checkout."""

    cart: list[CartLineSchema] = Field(..., min_length=1)
    address: Optional[AddressSchema] = None
    user: Optional[UserSchema] = None


class PaymentMethodRequest(BaseModel):
    method: str = Field(..., description="'cod' or 'online' ('razorpay' accepted)")


class DeliveryOptionRequest(BaseModel):
    option: str = Field(default="standard")


class GoToStepRequest(BaseModel):
    step: Literal["ADDRESS", "DELIVERY", "PAYMENT", "REVIEW"]


class PaymentOutcomeRequest(BaseModel):
    """What the gateway widget reported."""

    kind: Literal["success", "cancelled", "error"]
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    signature: Optional[str] = None
    message: Optional[str] = None


class ErrorSchema(BaseModel):
    detail: str
    error_type: str


class CheckoutStateResponse(BaseModel):
    session_id: str
    step: str
    side_flow: Optional[str] = None
    payment_method: Optional[str] = None
    delivery_option: str
    order_id: Optional[str] = None
    can_retry: bool = False
    error: Optional[ErrorSchema] = None
    payment_session: Optional[dict[str, Any]] = None
    price_breakdown: dict[str, Any]


class OrderDetailResponse(BaseModel):
    order: dict[str, Any]
    price_breakdown: dict[str, Any]
    timeline: list[dict[str, Any]]


class OrderListResponse(BaseModel):
    orders: list[dict[str, Any]]
    count: int


class PurchaseListResponse(BaseModel):
    items: list[dict[str, Any]]
    count: int


# --- Backend wiring ---


class Backend:
    """Builds backend clients and stores from settings. Shares one HTTP connection pool."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._http: httpx.AsyncClient | None = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.settings.timeout)
        return self._http

    def order_service(self, token: str | None = None) -> OrderService:
        return OrderService(
            self.settings.api_base_url, token or self.settings.api_token, client=self.http
        )

    def payment_gateway(self, token: str | None = None) -> PaymentGateway:
        return PaymentGateway(
            self.settings.api_base_url, token or self.settings.api_token, client=self.http
        )

    def purchase_history(self) -> PurchaseHistoryStore:
        return PurchaseHistoryStore(self.settings.data_dir)

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None


_backend: Backend | None = None


def get_backend() -> Backend:
    """Get the global Backend."""
    global _backend
    if _backend is None:
        _backend = Backend(load_settings())
    return _backend


def bearer_token(authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


# --- Checkout sessions ---


@dataclass
class CheckoutSession:
    id: str
    machine: CheckoutStateMachine
    gateway_ui: CallbackGatewayUI
    cart: InMemoryCart
    addresses: StaticAddressResolver
    users: StaticUserAccessor
    task: asyncio.Task | None = field(default=None, repr=False)


_sessions: dict[str, CheckoutSession] = {}


def get_session(session_id: str) -> CheckoutSession:
    session = _sessions.get(session_id)
    if session is None:
        raise CheckoutSessionNotFoundError(session_id)
    return session


def _address_from_schema(schema: AddressSchema | None) -> Address | None:
    if schema is None:
        return None
    return Address(**schema.model_dump())


def _user_from_schema(schema: UserSchema | None) -> User | None:
    if schema is None:
        return None
    return User(**schema.model_dump())


def session_to_schema(session: CheckoutSession) -> CheckoutStateResponse:
    """Convert a checkout session to its response schema."""
    machine = session.machine
    error = None
    if machine.last_error is not None:
        error = ErrorSchema(
            detail=str(machine.last_error), error_type=type(machine.last_error).__name__
        )
    payment_session = None
    if machine.payment_session is not None and session.gateway_ui.is_open:
        payment_session = machine.payment_session.to_dict()
    return CheckoutStateResponse(
        session_id=session.id,
        step=machine.step.value,
        side_flow=machine.side_flow.value if machine.side_flow else None,
        payment_method=machine.payment_method.value if machine.payment_method else None,
        delivery_option=machine.delivery_option,
        order_id=machine.order_id,
        can_retry=machine.can_retry,
        error=error,
        payment_session=payment_session,
        price_breakdown=machine.get_price_breakdown().to_dict(),
    )


def settle_session(session: CheckoutSession) -> CheckoutStateResponse:
    """Response for a placement step; finished sessions are dropped from memory."""
    response = session_to_schema(session)
    machine = session.machine
    if machine.step is CheckoutStep.PLACED or (
        machine.step is CheckoutStep.FAILED and not machine.can_retry
    ):
        _sessions.pop(session.id, None)
        logger.info("Checkout %s finished at %s", session.id, machine.step.value)
    return response


def order_to_detail(order: Order) -> OrderDetailResponse:
    return OrderDetailResponse(
        order=order.to_dict(),
        price_breakdown=order_price_breakdown(order).to_dict(),
        timeline=[
            entry.to_dict()
            for entry in build_status_timeline(
                order.status_history, order.order_status, order.created_at
            )
        ],
    )


# --- App ---


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _backend is not None:
        await _backend.aclose()


app = FastAPI(
    title="storefront",
    description="Checkout and order-lifecycle API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Exception Handlers ---

ERROR_STATUS_CODES: dict[type, int] = {
    CheckoutValidationError: 422,
    InvalidTransitionError: 409,
    AuthenticationRequiredError: 401,
    CheckoutSessionNotFoundError: 404,
    OrderNotFoundError: 404,
    OrderCreationError: 502,
    GatewayError: 502,
    VerificationError: 502,
    InvoiceFetchError: 502,
    ServiceError: 502,
    ConfigError: 500,
    InvalidSchemaVersionError: 500,
    PurchaseRecordError: 500,
}


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """Map StorefrontError subclasses to appropriate HTTP responses."""
    status_code = next(
        (ERROR_STATUS_CODES[cls] for cls in type(exc).__mro__ if cls in ERROR_STATUS_CODES),
        500,
    )
    content: dict[str, Any] = {"detail": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, CheckoutValidationError):
        content["step"] = exc.step
    return JSONResponse(status_code=status_code, content=content)


# --- Endpoints ---


@app.get("/api/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "active_checkouts": len(_sessions)}


# --- Checkout Endpoints ---


@app.post("/api/checkout", response_model=CheckoutStateResponse, status_code=201)
def start_checkout(
    request: StartCheckoutRequest,
    backend: Backend = Depends(get_backend),
    token: Optional[str] = Depends(bearer_token),
):
    """Start a checkout from a cart snapshot."""
    lines = [CartLine(**line.model_dump()) for line in request.cart]
    cart = InMemoryCart(lines)
    addresses = StaticAddressResolver(_address_from_schema(request.address))
    user = _user_from_schema(request.user)
    users = StaticUserAccessor(user)
    gateway_ui = CallbackGatewayUI()

    machine = CheckoutStateMachine(
        cart=cart,
        addresses=addresses,
        users=users,
        orders=backend.order_service(token),
        payments=PaymentSession(backend.payment_gateway(token), gateway_ui),
        purchases=SignedInPurchaseHistory(backend.purchase_history(), users),
    )
    machine.start_checkout(lines)

    session = CheckoutSession(
        id=str(uuid.uuid4()),
        machine=machine,
        gateway_ui=gateway_ui,
        cart=cart,
        addresses=addresses,
        users=users,
    )
    _sessions[session.id] = session
    return session_to_schema(session)


@app.get("/api/checkout/{session_id}", response_model=CheckoutStateResponse)
def get_checkout(session_id: str):
    return session_to_schema(get_session(session_id))


@app.delete("/api/checkout/{session_id}", response_model=CheckoutStateResponse)
def abandon_checkout(session_id: str):
    """Drop a checkout session. Not allowed while a placement is running."""
    session = get_session(session_id)
    if session.machine.is_placing:
        raise InvalidTransitionError(session.machine.step.value, "abandon", "order placement in progress")
    del _sessions[session_id]
    return session_to_schema(session)


@app.post("/api/checkout/{session_id}/advance", response_model=CheckoutStateResponse)
def advance_checkout(session_id: str):
    session = get_session(session_id)
    session.machine.advance_step()
    return session_to_schema(session)


@app.post("/api/checkout/{session_id}/back", response_model=CheckoutStateResponse)
def back_checkout(session_id: str):
    session = get_session(session_id)
    session.machine.go_back_step()
    return session_to_schema(session)


@app.post("/api/checkout/{session_id}/goto", response_model=CheckoutStateResponse)
def goto_checkout_step(session_id: str, request: GoToStepRequest):
    session = get_session(session_id)
    session.machine.go_to_step(CheckoutStep(request.step))
    return session_to_schema(session)


@app.post("/api/checkout/{session_id}/payment-method", response_model=CheckoutStateResponse)
def select_payment_method(session_id: str, request: PaymentMethodRequest):
    session = get_session(session_id)
    try:
        method = PaymentMethod.parse(request.method)
    except ValueError as e:
        return JSONResponse(
            status_code=400, content={"detail": str(e), "error_type": "ValueError"}
        )
    session.machine.select_payment_method(method)
    return session_to_schema(session)


@app.post("/api/checkout/{session_id}/delivery-option", response_model=CheckoutStateResponse)
def select_delivery_option(session_id: str, request: DeliveryOptionRequest):
    session = get_session(session_id)
    session.machine.select_delivery_option(request.option)
    return session_to_schema(session)


@app.put("/api/checkout/{session_id}/address", response_model=CheckoutStateResponse)
def update_checkout_address(session_id: str, request: AddressSchema):
    """Result of the address-collection flow."""
    session = get_session(session_id)
    session.addresses.address = _address_from_schema(request)
    session.machine.resolve_side_flow()
    return session_to_schema(session)


@app.put("/api/checkout/{session_id}/user", response_model=CheckoutStateResponse)
def update_checkout_user(session_id: str, request: UserSchema):
    """Result of the profile-completion flow."""
    session = get_session(session_id)
    session.users.user = _user_from_schema(request)
    session.machine.resolve_side_flow()
    return session_to_schema(session)


@app.post("/api/checkout/{session_id}/place-order", response_model=CheckoutStateResponse)
async def place_checkout_order(session_id: str):
    """
    Place the order.

    Returns once the order is placed or failed, or once the payment gateway is
    waiting for the customer (step AWAITING_PAYMENT, with ``payment_session``
    carrying what the gateway widget needs).
    """
    session = get_session(session_id)
    if session.task is not None and not session.task.done():
        # Placement already running: no second order
        return session_to_schema(session)

    task = asyncio.create_task(session.machine.place_order())
    session.task = task
    opened = asyncio.create_task(session.gateway_ui.wait_opened())
    try:
        await asyncio.wait({task, opened}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if not opened.done():
            opened.cancel()

    if task.done():
        session.task = None
        task.result()  # re-raises validation errors
        return settle_session(session)
    return session_to_schema(session)


@app.post("/api/checkout/{session_id}/payment-outcome", response_model=CheckoutStateResponse)
async def report_payment_outcome(session_id: str, request: PaymentOutcomeRequest):
    """Deliver the gateway widget's result and wait for checkout to settle."""
    session = get_session(session_id)
    if not session.gateway_ui.is_open:
        raise InvalidTransitionError(
            session.machine.step.value, "payment outcome", "no payment is awaiting a result"
        )
    if request.kind == "success":
        outcome = PaymentSucceeded(
            gateway_order_id=request.gateway_order_id or "",
            gateway_payment_id=request.gateway_payment_id or "",
            signature=request.signature or "",
        )
    elif request.kind == "cancelled":
        outcome = PaymentCancelled()
    else:
        outcome = PaymentFailed(request.message or "Payment failed")

    session.gateway_ui.resolve(outcome)
    if session.task is not None:
        task, session.task = session.task, None
        await task
    return settle_session(session)


# --- Order Endpoints ---


@app.get("/api/orders", response_model=OrderListResponse)
async def list_orders(
    backend: Backend = Depends(get_backend),
    token: Optional[str] = Depends(bearer_token),
):
    """List the caller's orders."""
    orders = await backend.order_service(token).get_all()
    return OrderListResponse(orders=[o.to_dict() for o in orders], count=len(orders))


@app.get("/api/orders/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: str,
    backend: Backend = Depends(get_backend),
    token: Optional[str] = Depends(bearer_token),
):
    """Order with its price breakdown and status timeline."""
    order = await backend.order_service(token).get_by_id(order_id)
    return order_to_detail(order)


@app.get("/api/orders/{order_id}/invoice")
async def download_invoice(
    order_id: str,
    backend: Backend = Depends(get_backend),
    token: Optional[str] = Depends(bearer_token),
):
    content = await backend.order_service(token).get_invoice(order_id)
    filename = f"invoice-{order_id[-8:]}.pdf"
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/purchases/{user_id}", response_model=PurchaseListResponse)
def list_purchases(
    user_id: str,
    backend: Backend = Depends(get_backend),
    token: Optional[str] = Depends(bearer_token),
):
    if token is None:
        raise AuthenticationRequiredError("view purchase history")
    items = backend.purchase_history().list_items(user_id)
    return PurchaseListResponse(items=[i.to_dict() for i in items], count=len(items))
