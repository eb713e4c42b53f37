"""Price breakdown derivation for orders and carts."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from .models import CartLine, Order, OrderLine, _money_to_json, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class PriceBreakdown:
    """Decomposition of a charged total into listing price, fees and discount."""

    listing_price: Decimal
    selling_price: Decimal
    total_fees: Decimal
    other_discount: Decimal
    total_amount: Decimal

    @property
    def is_reconciled(self) -> bool:
        """True when listing - discount + fees adds back up to the total."""
        return (
            self.listing_price - self.other_discount + self.total_fees
            == self.total_amount
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "listingPrice": _money_to_json(self.listing_price),
            "sellingPrice": _money_to_json(self.selling_price),
            "totalFees": _money_to_json(self.total_fees),
            "otherDiscount": _money_to_json(self.other_discount),
            "totalAmount": _money_to_json(self.total_amount),
        }


EMPTY_BREAKDOWN = PriceBreakdown(ZERO, ZERO, ZERO, ZERO, ZERO)


def calculate_price_breakdown(
    items: Iterable[OrderLine],
    total_amount: Decimal | int | float | str | None = None,
) -> PriceBreakdown:
    """
    Derive a price breakdown from order lines and the charged total.

    Any positive gap between the charged total and the summed selling price is
    attributed to fees (delivery). Other discount is whatever of the listing
    price is left after the selling price and the fees. Both are clamped at
    zero for inconsistent data; a warning is logged when a clamp triggers or
    when listing - discount + fees does not add back up to the total.

    Args:
        items: Order lines.
        total_amount: What was charged. Falls back to the selling price when
            missing or zero.
    """
    items = list(items)
    if not items:
        return EMPTY_BREAKDOWN

    listing_price = ZERO
    selling_price = ZERO
    for item in items:
        listing_price += (item.original_price or item.price) * item.quantity
        selling_price += item.price * item.quantity

    total = to_decimal(total_amount) or selling_price

    raw_fees = total - selling_price
    total_fees = max(ZERO, raw_fees)
    raw_discount = listing_price - selling_price - total_fees
    other_discount = max(ZERO, raw_discount)

    breakdown = PriceBreakdown(
        listing_price=listing_price,
        selling_price=selling_price,
        total_fees=total_fees,
        other_discount=other_discount,
        total_amount=total,
    )
    if raw_fees < 0 or raw_discount < 0:
        logger.warning(
            "Price breakdown clamped: total=%s selling=%s listing=%s "
            "(raw fees %s, raw discount %s)",
            total,
            selling_price,
            listing_price,
            raw_fees,
            raw_discount,
        )
    elif not breakdown.is_reconciled:
        logger.warning(
            "Price breakdown does not reconcile: listing %s - discount %s + fees %s != total %s",
            listing_price,
            other_discount,
            total_fees,
            total,
        )
    return breakdown


def order_price_breakdown(order: Order) -> PriceBreakdown:
    """Breakdown for a created order."""
    return calculate_price_breakdown(order.items, order.total_amount)


def cart_price_breakdown(lines: Iterable[CartLine]) -> PriceBreakdown:
    """Breakdown for a cart at the review step, charged at its selling total."""
    lines = list(lines)
    order_lines = [OrderLine.from_cart_line(line) for line in lines]
    return calculate_price_breakdown(order_lines, cart_total(lines))


def cart_total(lines: Iterable[CartLine]) -> Decimal:
    """Sum of unit price times quantity."""
    return sum((line.line_total for line in lines), ZERO)
