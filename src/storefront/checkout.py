"""Checkout state machine.

Drives the four user-facing steps (Address, Delivery, Payment, Review) and the
placement of the order. Placement always creates the order before any payment
is collected, and the cart is only cleared (and the purchase recorded) once the
order is confirmed: immediately for cash on delivery, after server-side
verification for online payment.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from .collaborators import AddressResolver, CartAccessor, PurchaseHistory, UserAccessor
from .errors import (
    AddressRequiredError,
    DisplayNameRequiredError,
    EmptyCartError,
    GatewayError,
    InvalidTransitionError,
    OutOfStockError,
    PaymentMethodRequiredError,
    PurchaseRecordError,
    ServiceError,
    StorefrontError,
    VerificationError,
)
from .models import Address, CartLine, Order, OrderLine, PaymentMethod, PaymentSessionState
from .order_service import OrderService
from .payment import PaymentCancelled, PaymentFailed, PaymentSession, PaymentSucceeded
from .pricing import PriceBreakdown, cart_price_breakdown, cart_total, order_price_breakdown
from .timeline import TimelineEntry, build_status_timeline

logger = logging.getLogger(__name__)


class CheckoutStep(str, Enum):
    ADDRESS = "ADDRESS"
    DELIVERY = "DELIVERY"
    PAYMENT = "PAYMENT"
    REVIEW = "REVIEW"
    PLACING = "PLACING"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PLACED = "PLACED"
    FAILED = "FAILED"


NAVIGABLE_STEPS: tuple[CheckoutStep, ...] = (
    CheckoutStep.ADDRESS,
    CheckoutStep.DELIVERY,
    CheckoutStep.PAYMENT,
    CheckoutStep.REVIEW,
)


class SideFlow(str, Enum):
    """A flow the UI should open instead of advancing."""

    ADDRESS_COLLECTION = "ADDRESS_COLLECTION"
    PROFILE_COMPLETION = "PROFILE_COMPLETION"


@dataclass
class PlacementResult:
    """Where a placement attempt ended up."""

    step: CheckoutStep
    order_id: str | None = None
    error: StorefrontError | None = None
    cancelled: bool = False

    @property
    def placed(self) -> bool:
        return self.step is CheckoutStep.PLACED


class CheckoutStateMachine:
    """Owns the checkout steps, their guards and order placement."""

    def __init__(
        self,
        cart: CartAccessor,
        addresses: AddressResolver,
        users: UserAccessor,
        orders: OrderService,
        payments: PaymentSession,
        purchases: PurchaseHistory,
    ):
        self.cart = cart
        self.addresses = addresses
        self.users = users
        self.orders = orders
        self.payments = payments
        self.purchases = purchases

        self.step = CheckoutStep.ADDRESS
        self.cart_snapshot: list[CartLine] = []
        self.payment_method: PaymentMethod | None = None
        self.delivery_option = "standard"
        self.side_flow: SideFlow | None = None
        self.last_error: StorefrontError | None = None

        # Created-but-unpaid order, reused when payment is retried
        self.order_id: str | None = None
        self.order_total: Decimal | None = None
        self.order_method: PaymentMethod | None = None
        self.payment_session: PaymentSessionState | None = None

        self._in_flight = False
        self._retry_allowed = True
        # Orders whose payment is settled (COD, or verified online)
        self._confirmed_orders: set[str] = set()
        self._committed_orders: set[str] = set()

    # --- State ---

    @property
    def is_interactive(self) -> bool:
        return self.step in NAVIGABLE_STEPS

    @property
    def is_placing(self) -> bool:
        return self._in_flight

    @property
    def can_retry(self) -> bool:
        return self.step is CheckoutStep.FAILED and self._retry_allowed

    def _set_step(self, step: CheckoutStep) -> None:
        if step is not self.step:
            logger.debug("Checkout step %s -> %s", self.step.value, step.value)
        self.step = step

    def _require_idle(self, action: str) -> None:
        if self._in_flight:
            raise InvalidTransitionError(self.step.value, action, "order placement in progress")

    # --- Navigation ---

    def start_checkout(self, cart_snapshot: list[CartLine] | None = None) -> CheckoutStep:
        """
        Begin a checkout at the Address step.

        Args:
            cart_snapshot: Lines shown during checkout (defaults to the current cart).
                Placement re-reads the cart regardless.

        Raises:
            EmptyCartError: If there is nothing to check out.
            InvalidTransitionError: If a placement is in flight.
        """
        self._require_idle("ADDRESS")
        snapshot = list(cart_snapshot) if cart_snapshot is not None else self.cart.get_lines()
        if not snapshot:
            raise EmptyCartError()

        self.cart_snapshot = snapshot
        self.payment_method = None
        self.delivery_option = "standard"
        self.side_flow = None
        self.last_error = None
        self.order_id = None
        self.order_total = None
        self.order_method = None
        self.payment_session = None
        self._retry_allowed = True
        self._set_step(CheckoutStep.ADDRESS)
        return self.step

    def advance_step(self) -> CheckoutStep:
        """
        Move to the next step if its guard passes.

        Raises:
            AddressRequiredError: Leaving Address without a deliverable address.
            PaymentMethodRequiredError: Leaving Payment without a method.
            InvalidTransitionError: From Review (use ``place_order``) or a non-interactive step.
        """
        self._require_idle("advance")
        if not self.is_interactive:
            raise InvalidTransitionError(self.step.value, "next step")

        if self.step is CheckoutStep.ADDRESS:
            self._require_address()
        elif self.step is CheckoutStep.PAYMENT:
            if self.payment_method is None:
                raise PaymentMethodRequiredError()
        elif self.step is CheckoutStep.REVIEW:
            raise InvalidTransitionError(
                self.step.value, CheckoutStep.PLACING.value, "use place_order()"
            )

        self.side_flow = None
        self._set_step(NAVIGABLE_STEPS[NAVIGABLE_STEPS.index(self.step) + 1])
        return self.step

    def go_back_step(self) -> CheckoutStep:
        """Move to the previous step. From a retryable failure, returns to Review."""
        self._require_idle("back")
        if self.can_retry:
            self.last_error = None
            self._set_step(CheckoutStep.REVIEW)
            return self.step
        if not self.is_interactive or self.step is CheckoutStep.ADDRESS:
            raise InvalidTransitionError(self.step.value, "previous step")

        self._set_step(NAVIGABLE_STEPS[NAVIGABLE_STEPS.index(self.step) - 1])
        return self.step

    def go_to_step(self, step: CheckoutStep) -> CheckoutStep:
        """Jump back to an earlier (or the current) step."""
        step = CheckoutStep(step)
        self._require_idle(step.value)
        current = CheckoutStep.REVIEW if self.can_retry else self.step
        if (
            step not in NAVIGABLE_STEPS
            or current not in NAVIGABLE_STEPS
            or NAVIGABLE_STEPS.index(step) > NAVIGABLE_STEPS.index(current)
        ):
            raise InvalidTransitionError(self.step.value, step.value, "only earlier steps")
        if self.can_retry:
            self.last_error = None
        self._set_step(step)
        return self.step

    def select_payment_method(self, method: PaymentMethod | str) -> PaymentMethod:
        """
        Choose how to pay.

        Switching method after an order was created for the other method drops
        that pending order, so the next placement creates a fresh one.
        """
        self._require_idle("select payment method")
        if not (self.is_interactive or self.can_retry):
            raise InvalidTransitionError(self.step.value, "select payment method")

        method = PaymentMethod.parse(method)
        if self.order_id in self._confirmed_orders and self.order_method is not method:
            raise InvalidTransitionError(
                self.step.value, "select payment method", f"order {self.order_id} is already confirmed"
            )
        if self.order_id is not None and self.order_method is not method:
            logger.info(
                "Payment method changed to %s; dropping pending order %s",
                method.value,
                self.order_id,
            )
            self._forget_pending_order()
        self.payment_method = method
        return method

    def select_delivery_option(self, option: str) -> str:
        self._require_idle("select delivery option")
        if not self.is_interactive:
            raise InvalidTransitionError(self.step.value, "select delivery option")
        self.delivery_option = option
        return option

    def resolve_side_flow(self) -> None:
        """Called once the address or profile flow has finished."""
        self.side_flow = None

    # --- Guards ---

    def _require_address(self) -> Address:
        address = self.addresses.get_address()
        if address is None or not address.is_deliverable:
            self.side_flow = SideFlow.ADDRESS_COLLECTION
            missing = address.missing_fields() if address else ["city", "state", "pincode"]
            raise AddressRequiredError(missing)
        return address

    def _validate_for_placement(self) -> tuple[Address, PaymentMethod, list[CartLine]]:
        """Re-run every guard for Review -> Placing against fresh data."""
        user = self.users.get_user()
        if user is None or not user.display_name:
            self.side_flow = SideFlow.PROFILE_COMPLETION
            raise DisplayNameRequiredError()

        try:
            address = self._require_address()
        except AddressRequiredError:
            self._set_step(CheckoutStep.ADDRESS)
            raise

        if self.payment_method is None:
            self._set_step(CheckoutStep.PAYMENT)
            raise PaymentMethodRequiredError()

        # Stock can change between steps, so read the cart now
        lines = self.cart.get_lines()
        if not lines:
            raise EmptyCartError()
        out_of_stock = [line.product_id for line in lines if line.is_out_of_stock]
        if out_of_stock:
            raise OutOfStockError(out_of_stock)

        return address, self.payment_method, lines

    # --- Placement ---

    async def place_order(self) -> PlacementResult | None:
        """
        Place the order from the Review step (or retry after a recoverable failure).

        Returns None without doing anything when a placement is already in flight.

        Raises:
            CheckoutValidationError: If a guard rejects; nothing is sent to the backend.
            InvalidTransitionError: If called from a step that cannot place.
        """
        if self._in_flight:
            logger.debug("place_order ignored: placement already in flight")
            return None

        if self.step is CheckoutStep.FAILED:
            if not self._retry_allowed:
                raise InvalidTransitionError(
                    self.step.value, CheckoutStep.PLACING.value, "payment needs support follow-up"
                )
            self.last_error = None
            self._set_step(CheckoutStep.REVIEW)
        elif self.step is not CheckoutStep.REVIEW:
            raise InvalidTransitionError(self.step.value, CheckoutStep.PLACING.value)

        address, method, lines = self._validate_for_placement()

        self._in_flight = True
        self.side_flow = None
        self.last_error = None
        try:
            if self.order_id is None:
                self._set_step(CheckoutStep.PLACING)
                total = cart_total(lines)
                try:
                    order = await self.orders.create(
                        [OrderLine.from_cart_line(line) for line in lines],
                        address,
                        method,
                        total,
                    )
                except ServiceError as e:
                    logger.warning("Order creation failed: %s", e)
                    return self._fail(e, retry_allowed=True)
                self.order_id = order.id
                self.order_total = total
                self.order_method = method
            else:
                logger.info("Retrying pending order %s", self.order_id)

            if method is PaymentMethod.COD:
                self._confirmed_orders.add(self.order_id)

            if self.order_id in self._confirmed_orders:
                return self._complete(lines)

            return await self._collect_payment(lines)
        finally:
            self._in_flight = False
            if self.step in (CheckoutStep.PLACING, CheckoutStep.AWAITING_PAYMENT):
                # Only an unexpected exception leaves placement mid-way
                self.payment_session = None
                self._set_step(CheckoutStep.REVIEW)

    async def _collect_payment(self, lines: list[CartLine]) -> PlacementResult:
        self._set_step(CheckoutStep.AWAITING_PAYMENT)
        try:
            session = await self.payments.create(self.order_id, self.order_total)
        except ServiceError as e:
            return self._payment_interrupted(GatewayError(str(e), status_code=e.status_code))
        self.payment_session = session

        try:
            outcome = await self.payments.open(session)
        except GatewayError as e:
            return self._payment_interrupted(e)

        if isinstance(outcome, PaymentCancelled):
            self.payment_session = None
            self._set_step(CheckoutStep.REVIEW)
            logger.info("Payment cancelled for order %s", self.order_id)
            return PlacementResult(CheckoutStep.REVIEW, self.order_id, cancelled=True)

        if isinstance(outcome, PaymentFailed):
            return self._payment_interrupted(GatewayError(outcome.message))

        if not isinstance(outcome, PaymentSucceeded):
            return self._payment_interrupted(
                GatewayError(f"Unrecognized payment outcome: {type(outcome).__name__}")
            )

        try:
            await self.payments.verify(session, outcome)
        except ServiceError as e:
            # The gateway may have captured the money; only support can settle it
            error = e if isinstance(e, VerificationError) else VerificationError(str(e))
            logger.error(
                "Payment %s for order %s could not be verified: %s",
                outcome.gateway_payment_id,
                self.order_id,
                error,
            )
            return self._fail(error, retry_allowed=False)

        logger.info("Payment %s verified for order %s", outcome.gateway_payment_id, self.order_id)
        self._confirmed_orders.add(self.order_id)
        return self._complete(lines)

    def _complete(self, lines: list[CartLine]) -> PlacementResult:
        """Commit a confirmed order. A failed commit can be retried without paying again."""
        try:
            self._commit(self.order_id, lines)
        except PurchaseRecordError as e:
            logger.error("%s", e)
            return self._fail(e, retry_allowed=True)

        self.payment_session = None
        self._set_step(CheckoutStep.PLACED)
        logger.info("Order %s placed (%s)", self.order_id, self.order_method.value)
        return PlacementResult(CheckoutStep.PLACED, self.order_id)

    def _payment_interrupted(self, error: GatewayError) -> PlacementResult:
        """Gateway trouble: the order stays created-but-unpaid and can be retried."""
        logger.warning("Payment for order %s interrupted: %s", self.order_id, error)
        self.payment_session = None
        self.last_error = error
        self._set_step(CheckoutStep.REVIEW)
        return PlacementResult(CheckoutStep.REVIEW, self.order_id, error)

    def _fail(self, error: StorefrontError, retry_allowed: bool) -> PlacementResult:
        self.last_error = error
        self._retry_allowed = retry_allowed
        self._set_step(CheckoutStep.FAILED)
        return PlacementResult(CheckoutStep.FAILED, self.order_id, error)

    def _commit(self, order_id: str, lines: list[CartLine]) -> None:
        """
        Record the purchase and clear the cart, at most once per order.

        Raises:
            PurchaseRecordError: If the purchase history cannot be written. The
                order is then not marked committed and the cart is kept.
        """
        if order_id in self._committed_orders:
            logger.debug("Order %s already committed", order_id)
            return
        try:
            self.purchases.add_purchased_items(lines)
        except (OSError, ValueError, StorefrontError) as e:
            raise PurchaseRecordError(order_id, str(e))
        self.cart.clear()
        self._committed_orders.add(order_id)

    def _forget_pending_order(self) -> None:
        self.order_id = None
        self.order_total = None
        self.order_method = None
        self.payment_session = None

    # --- Derived views ---

    def get_price_breakdown(self, order: Order | None = None) -> PriceBreakdown:
        """Breakdown of ``order``, or of the checkout's cart when no order is given."""
        if order is not None:
            return order_price_breakdown(order)
        return cart_price_breakdown(self.cart_snapshot or self.cart.get_lines())

    def get_status_timeline(self, order: Order) -> list[TimelineEntry]:
        return build_status_timeline(order.status_history, order.order_status, order.created_at)
