"""Order status timeline reconstruction.

The backend may re-deliver status notifications and does not guarantee the
order of ``statusHistory``. The timeline keeps one entry per status, carrying
the latest timestamp seen for it, sorted by the canonical progression.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .models import Order, OrderStatus, StatusEvent

STATUS_ORDER: tuple[str, ...] = tuple(s.value for s in OrderStatus)

STATUS_LABELS: dict[str, str] = {
    "PLACED": "Order Placed",
    "CONFIRMED": "Order Confirmed",
    "SHIPPED": "Order Shipped",
    "DELIVERED": "Out for Delivery",
    "COMPLETED": "Delivered",
    "CANCELLED": "Cancelled",
}


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp (with optional trailing Z). Returns None if unparseable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class TimelineEntry:
    """One row of the rendered status timeline."""

    status: str
    updated_at: str | None
    reached: bool
    active: bool  # current status, already reached
    pending: bool  # current status, not yet reached

    @property
    def label(self) -> str:
        return STATUS_LABELS.get(self.status, self.status.title())

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "label": self.label,
            "updatedAt": self.updated_at,
            "reached": self.reached,
            "active": self.active,
            "pending": self.pending,
        }


def _is_newer(candidate: str | None, existing: str | None) -> bool:
    """A dated entry beats an undated one; otherwise the later timestamp wins."""
    if existing is None:
        return True
    if candidate is None:
        return False
    new_ts, old_ts = parse_timestamp(candidate), parse_timestamp(existing)
    if new_ts is None:
        return False
    if old_ts is None:
        return True
    return new_ts > old_ts


def _sort_key(status: str, first_seen: dict[str, int]) -> tuple[int, int]:
    if status in STATUS_ORDER:
        return (STATUS_ORDER.index(status), 0)
    # Unknown statuses trail the canonical ones, in the order they appeared
    return (len(STATUS_ORDER), first_seen[status])


def build_status_timeline(
    status_history: Iterable[StatusEvent],
    current_status: str | None,
    created_at: str | None = None,
) -> list[TimelineEntry]:
    """
    Build the deduplicated, canonically ordered status timeline.

    Args:
        status_history: Raw history, possibly unsorted and with repeated statuses.
        current_status: The order's current status (defaults to PLACED).
        created_at: Order creation time, used to seed PLACED when the history is empty.

    Returns:
        One entry per distinct status. Statuses after the current one are never
        invented; only the current status is inserted when missing.
    """
    current = (current_status or OrderStatus.PLACED.value).upper()
    latest: dict[str, str | None] = {}
    first_seen: dict[str, int] = {}

    history = list(status_history)
    if not history:
        latest[OrderStatus.PLACED.value] = created_at
        first_seen[OrderStatus.PLACED.value] = 0
    else:
        for position, event in enumerate(history):
            status = event.status.upper()
            if not status:
                continue
            first_seen.setdefault(status, position)
            if status not in latest or _is_newer(event.updated_at, latest[status]):
                latest[status] = event.updated_at

    if current not in latest:
        latest[current] = None
        first_seen[current] = len(first_seen) + len(history)

    ordered = sorted(latest, key=lambda s: _sort_key(s, first_seen))
    entries = []
    for status in ordered:
        updated_at = latest[status]
        reached = updated_at is not None
        entries.append(
            TimelineEntry(
                status=status,
                updated_at=updated_at,
                reached=reached,
                active=status == current and reached,
                pending=status == current and not reached,
            )
        )
    return entries


class OrderTimelineBuilder:
    """Builds status timelines for orders."""

    def for_order(self, order: Order) -> list[TimelineEntry]:
        return build_status_timeline(
            order.status_history, order.order_status, order.created_at
        )

    def __call__(self, order: Order) -> list[TimelineEntry]:
        return self.for_order(order)
