"""Interfaces checkout needs from the rest of the storefront, plus in-memory versions."""

from typing import Iterable, Protocol

from .models import Address, CartLine, User


class CartAccessor(Protocol):
    """Read and clear the user's cart. Owned by the cart component."""

    def get_lines(self) -> list[CartLine]: ...

    def clear(self) -> None: ...


class AddressResolver(Protocol):
    """Supplies the current user's delivery address, if any."""

    def get_address(self) -> Address | None: ...


class UserAccessor(Protocol):
    """Supplies the signed-in user."""

    def get_user(self) -> User | None: ...


class PurchaseHistory(Protocol):
    """Append-only record of purchased units."""

    def add_purchased_item(self, line: CartLine, quantity: int = 1) -> None: ...

    def add_purchased_items(self, lines: Iterable[CartLine]) -> None:
        """Record every unit of the lines at once."""
        ...


class InMemoryCart:
    """A cart held in memory."""

    def __init__(self, lines: list[CartLine] | None = None):
        self.lines = list(lines or [])
        self.clear_count = 0

    def get_lines(self) -> list[CartLine]:
        return list(self.lines)

    def clear(self) -> None:
        self.lines = []
        self.clear_count += 1


class StaticAddressResolver:
    """Returns a fixed address (settable by the address-collection flow)."""

    def __init__(self, address: Address | None = None):
        self.address = address

    def get_address(self) -> Address | None:
        return self.address


class StaticUserAccessor:
    """Returns a fixed user (settable by the profile-completion flow)."""

    def __init__(self, user: User | None = None):
        self.user = user

    def get_user(self) -> User | None:
        return self.user
