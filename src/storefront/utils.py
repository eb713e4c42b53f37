"""Utility functions for storefront."""

import json
from decimal import Decimal
from pathlib import Path

from .errors import ConfigError
from .models import Order, PurchasedItem
from .pricing import PriceBreakdown
from .timeline import TimelineEntry, parse_timestamp


def format_money(amount: Decimal, symbol: str = "₹") -> str:
    """Format an amount with two decimals and thousands separators."""
    return f"{symbol}{amount:,.2f}"


def format_timestamp(value: str | None) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        return value or ""
    return parsed.strftime("%d %b %Y, %H:%M")


def format_breakdown(breakdown: PriceBreakdown) -> str:
    """Format a price breakdown as the order page shows it."""
    rows = [
        ("Listing price", format_money(breakdown.listing_price)),
        ("Selling price", format_money(breakdown.selling_price)),
        ("Total fees", format_money(breakdown.total_fees)),
    ]
    if breakdown.other_discount > 0:
        rows.append(("Other discount", f"-{format_money(breakdown.other_discount)}"))
    rows.append(("Total amount", format_money(breakdown.total_amount)))

    width = max(len(label) for label, _ in rows)
    lines = [f"{label.ljust(width)}  {value}" for label, value in rows]
    if not breakdown.is_reconciled:
        lines.append("(components do not add up to the total; data was clamped)")
    return "\n".join(lines)


def format_timeline(entries: list[TimelineEntry]) -> str:
    """Format a status timeline, one status per line."""
    lines = []
    for entry in entries:
        if entry.active:
            marker = "[*]"
        elif entry.reached:
            marker = "[x]"
        else:
            marker = "[ ]"
        when = format_timestamp(entry.updated_at) if entry.reached else "pending"
        lines.append(f"{marker} {entry.label:<18} {when}")
    return "\n".join(lines)


def format_order(order: Order) -> str:
    """One-line order summary."""
    total = format_money(order.total_amount) if order.total_amount is not None else "-"
    count = sum(item.quantity for item in order.items)
    created = format_timestamp(order.created_at)
    return f"{order.id[-8:]}  {order.order_status:<10} {count:>3} item(s)  {total:>12}  {created}"


def format_purchase(item: PurchasedItem) -> str:
    name = item.name or item.product_id
    return f"{name}  size={item.size} color={item.color} x{item.quantity}"


def load_order_file(path: str) -> Order:
    """
    Load an order from a JSON file (a bare order or a ``{success, data}`` envelope).

    Raises:
        ConfigError: If the file is missing or not an order document.
    """
    file_path = Path(path)
    if not file_path.exists():
        raise ConfigError(path, "file not found")
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(path, f"not valid JSON ({e.msg})")

    if isinstance(data, dict) and "data" in data and "success" in data:
        data = data["data"]
    if not isinstance(data, dict):
        raise ConfigError(path, "expected an order object")
    return Order.from_dict(data)
