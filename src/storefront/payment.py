"""Payment sessions: gateway-side transactions for domain orders.

The gateway's checkout widget reports back through callbacks (a success
handler and a dismiss hook). Here that is an awaitable returning one of three
outcome types, so checkout code reads the result instead of registering
callbacks.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol, Union

from .errors import GatewayError
from .models import PaymentSessionState
from .order_service import PaymentGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentSucceeded:
    """The gateway reported a captured payment (not yet verified)."""

    gateway_order_id: str
    gateway_payment_id: str
    signature: str
    kind: str = "success"


@dataclass(frozen=True)
class PaymentCancelled:
    """The user dismissed the gateway modal."""

    kind: str = "cancelled"


@dataclass(frozen=True)
class PaymentFailed:
    """The gateway reported an error."""

    message: str
    kind: str = "error"


PaymentOutcome = Union[PaymentSucceeded, PaymentCancelled, PaymentFailed]


class GatewayUI(Protocol):
    """Hands a session to the gateway's checkout widget and waits for the result."""

    async def open(self, session: PaymentSessionState) -> PaymentOutcome: ...


class PaymentSession:
    """Creates, opens and verifies gateway transactions."""

    def __init__(self, gateway: PaymentGateway, ui: GatewayUI):
        self.gateway = gateway
        self.ui = ui

    async def create(self, order_id: str, amount: Decimal) -> PaymentSessionState:
        """Create the gateway-side order for ``order_id``."""
        session = await self.gateway.create_order(order_id, amount)
        logger.info(
            "Opened gateway order %s for order %s (%s %s)",
            session.gateway_order_id,
            order_id,
            session.amount,
            session.currency,
        )
        return session

    async def open(self, session: PaymentSessionState) -> PaymentOutcome:
        """Suspend until the user completes, cancels or the gateway fails."""
        outcome = await self.ui.open(session)
        logger.info(
            "Gateway order %s resolved: %s", session.gateway_order_id, type(outcome).__name__
        )
        return outcome

    async def verify(self, session: PaymentSessionState, outcome: PaymentSucceeded) -> None:
        """
        Confirm the payment with the backend. Marks the session verified on success.

        Raises:
            VerificationError: If the backend does not confirm the payment.
            GatewayError: If the outcome belongs to another gateway order.
        """
        if outcome.gateway_order_id != session.gateway_order_id:
            raise GatewayError(
                f"Payment for gateway order {outcome.gateway_order_id} does not match "
                f"session {session.gateway_order_id}"
            )
        await self.gateway.verify(
            session.order_id,
            outcome.gateway_order_id,
            outcome.gateway_payment_id,
            outcome.signature,
        )
        session.verified = True


class CallbackGatewayUI:
    """GatewayUI whose outcome arrives later from outside (e.g. an HTTP callback).

    ``open`` parks on a future; ``resolve`` completes it.
    """

    def __init__(self) -> None:
        self.session: PaymentSessionState | None = None
        self._future: asyncio.Future | None = None
        self._opened = asyncio.Event()

    async def open(self, session: PaymentSessionState) -> PaymentOutcome:
        loop = asyncio.get_running_loop()
        self.session = session
        self._future = loop.create_future()
        self._opened.set()
        try:
            return await self._future
        finally:
            self._future = None
            self._opened.clear()

    @property
    def is_open(self) -> bool:
        return self._future is not None and not self._future.done()

    async def wait_opened(self) -> None:
        await self._opened.wait()

    def resolve(self, outcome: PaymentOutcome) -> None:
        """
        Deliver the gateway outcome.

        Raises:
            GatewayError: If no session is waiting for an outcome.
        """
        if not self.is_open:
            raise GatewayError("No payment session is awaiting a result")
        self._future.set_result(outcome)
