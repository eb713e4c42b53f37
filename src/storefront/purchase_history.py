"""Purchase history (wardrobe) storage for storefront."""

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from .collaborators import UserAccessor
from .errors import InvalidSchemaVersionError
from .models import CartLine, PurchasedItem

SCHEMA_VERSION = 1
PURCHASES_DIR = "purchases"

DEFAULT_SIZE = "M"
DEFAULT_COLOR = "White"
ANONYMOUS_USER = "anonymous"


def _merge_item(items: list[PurchasedItem], line: CartLine, quantity: int) -> None:
    """Add one purchased unit, merging with an existing (product, size, color) entry."""
    size = line.size or DEFAULT_SIZE
    color = line.color or DEFAULT_COLOR
    for existing in items:
        if (
            existing.product_id == line.product_id
            and existing.size == size
            and existing.color == color
        ):
            existing.quantity += quantity
            return
    items.append(
        PurchasedItem(
            product_id=line.product_id,
            size=size,
            color=color,
            quantity=quantity,
            name=line.name,
            price=line.unit_price,
        )
    )


class InMemoryPurchaseHistory:
    """Purchase history for a single user held in memory."""

    def __init__(self) -> None:
        self.items: list[PurchasedItem] = []

    def add_purchased_item(self, line: CartLine, quantity: int = 1) -> None:
        _merge_item(self.items, line, quantity)

    def add_purchased_items(self, lines: Iterable[CartLine]) -> None:
        for line in lines:
            _merge_item(self.items, line, line.quantity)

    def list_items(self) -> list[PurchasedItem]:
        return list(self.items)


class PurchaseHistoryStore:
    """Manages per-user purchase history files."""

    def __init__(self, config_dir: Path):
        """
        Initialize PurchaseHistoryStore.

        Args:
            config_dir: Base data directory.
        """
        self.config_dir = config_dir
        self.purchases_dir = config_dir / PURCHASES_DIR

    def _user_path(self, user_id: str) -> Path:
        return self.purchases_dir / f"{user_id}.json"

    def _ensure_dir(self) -> None:
        self.purchases_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _lock(self, user_id: str) -> Iterator[None]:
        """Acquire exclusive lock on a user's file for read-modify-write operations."""
        self._ensure_dir()
        lock_path = self.purchases_dir / f".{user_id}.lock"
        with open(lock_path, "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load_data(self, user_id: str) -> dict[str, Any]:
        path = self._user_path(user_id)
        if not path.exists():
            return {"schema_version": SCHEMA_VERSION, "items": []}

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        version = data.get("schema_version", 0)
        if version != SCHEMA_VERSION:
            raise InvalidSchemaVersionError(version, SCHEMA_VERSION)
        return data

    def _save_data(self, user_id: str, data: dict[str, Any]) -> None:
        """Save a user's history atomically."""
        self._ensure_dir()

        fd, temp_path = tempfile.mkstemp(
            dir=self.purchases_dir, prefix=f".{user_id}_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self._user_path(user_id))
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def list_items(self, user_id: str) -> list[PurchasedItem]:
        """List a user's purchased items."""
        data = self._load_data(user_id)
        return [PurchasedItem.from_dict(item) for item in data.get("items", [])]

    def add_purchased_item(self, user_id: str, line: CartLine, quantity: int = 1) -> None:
        """Record purchased units of a cart line."""
        self._add(user_id, [(line, quantity)])

    def add_purchased_items(self, user_id: str, lines: Iterable[CartLine]) -> None:
        """Record every unit of an order's lines in a single write."""
        self._add(user_id, [(line, line.quantity) for line in lines])

    def _add(self, user_id: str, entries: list[tuple[CartLine, int]]) -> None:
        with self._lock(user_id):
            data = self._load_data(user_id)
            items = [PurchasedItem.from_dict(item) for item in data.get("items", [])]
            for line, quantity in entries:
                _merge_item(items, line, quantity)
            data["items"] = [item.to_dict() for item in items]
            self._save_data(user_id, data)

    def clear(self, user_id: str) -> int:
        """Remove a user's history. Returns the number of entries removed."""
        with self._lock(user_id):
            count = len(self._load_data(user_id).get("items", []))
            path = self._user_path(user_id)
            if path.exists():
                path.unlink()
            return count


class SignedInPurchaseHistory:
    """A PurchaseHistoryStore writing under whoever is signed in at write time."""

    def __init__(self, store: PurchaseHistoryStore, users: UserAccessor):
        self.store = store
        self.users = users

    @property
    def user_id(self) -> str:
        user = self.users.get_user()
        return user.id if user is not None and user.id else ANONYMOUS_USER

    def add_purchased_item(self, line: CartLine, quantity: int = 1) -> None:
        self.store.add_purchased_item(self.user_id, line, quantity)

    def add_purchased_items(self, lines: Iterable[CartLine]) -> None:
        self.store.add_purchased_items(self.user_id, lines)

    def list_items(self) -> list[PurchasedItem]:
        return self.store.list_items(self.user_id)
