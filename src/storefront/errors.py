"""Custom exceptions for storefront."""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    pass


# --- Checkout validation ---


class CheckoutValidationError(StorefrontError):
    """Raised when a checkout guard rejects a transition.

    ``step`` is the checkout step the user is sent back to.
    """

    def __init__(self, message: str, step: str):
        self.step = step
        super().__init__(message)


class AddressRequiredError(CheckoutValidationError):
    """Raised when no deliverable address is available."""

    def __init__(self, missing: list[str] | None = None):
        self.missing = missing or []
        msg = "Please add a delivery address"
        if self.missing:
            msg = f"{msg} (missing: {', '.join(self.missing)})"
        super().__init__(msg, step="ADDRESS")


class PaymentMethodRequiredError(CheckoutValidationError):
    """Raised when no payment method has been selected."""

    def __init__(self):
        super().__init__("Please select a payment method", step="PAYMENT")


class DisplayNameRequiredError(CheckoutValidationError):
    """Raised when the user has no name to put on the order."""

    def __init__(self):
        super().__init__("Please provide your name to place an order", step="REVIEW")


class OutOfStockError(CheckoutValidationError):
    """Raised when cart lines are out of stock at placement time."""

    def __init__(self, product_ids: list[str]):
        self.product_ids = product_ids
        super().__init__(
            f"Cannot place order: {len(product_ids)} item(s) are out of stock. "
            "Please remove them from your cart.",
            step="REVIEW",
        )


class EmptyCartError(CheckoutValidationError):
    """Raised when checkout is attempted with an empty cart."""

    def __init__(self):
        super().__init__("Your cart is empty", step="ADDRESS")


class InvalidTransitionError(StorefrontError):
    """Raised when a navigation is not allowed from the current step."""

    def __init__(self, current: str, target: str, reason: str | None = None):
        self.current = current
        self.target = target
        msg = f"Cannot move from {current} to {target}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class PurchaseRecordError(StorefrontError):
    """Raised when a confirmed order cannot be written to purchase history."""

    def __init__(self, order_id: str, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(
            f"Order {order_id} is confirmed but could not be saved to your purchases: {reason}"
        )


class AuthenticationRequiredError(StorefrontError):
    """Raised when an endpoint needs a signed-in caller."""

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Please sign in to {action}")


class CheckoutSessionNotFoundError(StorefrontError):
    """Raised when a checkout session ID doesn't exist."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Checkout session not found: {session_id}")


# --- Backend services ---


class ServiceError(StorefrontError):
    """Raised when a backend call fails or returns an unsuccessful envelope."""

    default_message = "Request failed"

    def __init__(self, message: str | None = None, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message or self.default_message)


class OrderCreationError(ServiceError):
    """Raised when the order service rejects an order or cannot be reached."""

    default_message = "Failed to place order. Please try again."


class OrderNotFoundError(ServiceError):
    """Raised when an order ID doesn't exist."""

    def __init__(self, order_id: str, message: str | None = None):
        self.order_id = order_id
        super().__init__(message or f"Order not found: {order_id}", status_code=404)


class GatewayError(ServiceError):
    """Raised when the payment gateway cannot be initialized or reports an error."""

    default_message = "Failed to initialize payment"


class VerificationError(ServiceError):
    """Raised when a gateway payment cannot be verified server-side."""

    default_message = "Payment verification failed. Please contact support."


class InvoiceFetchError(ServiceError):
    """Raised when an invoice cannot be downloaded."""

    default_message = "Failed to download invoice. Please try again."


# --- Configuration ---


class ConfigError(StorefrontError):
    """Raised when settings cannot be read or are invalid."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid settings at {path}: {reason}")


class InvalidSchemaVersionError(StorefrontError):
    """Raised when a stored file has an unsupported schema version."""

    def __init__(self, found: int, supported: int):
        self.found = found
        self.supported = supported
        super().__init__(
            f"Unsupported schema version {found}. This tool supports version {supported}."
        )
