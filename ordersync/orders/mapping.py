"""Raw payload field -> domain value mapping.

Fixed tables translate the platform's financial and fulfillment status
strings into OrderStatus, and an ordered tier table turns the order total
into a shipping fee.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from ordersync.orders.models import OrderStatus

logger = logging.getLogger(__name__)

_FINANCIAL_STATUS_MAP: dict[str, OrderStatus] = {
    "pending": OrderStatus.PENDING,
    "authorized": OrderStatus.PENDING,
    "paid": OrderStatus.CONFIRMED,
    "partially_paid": OrderStatus.CONFIRMED,
    "refunded": OrderStatus.CANCELLED,
    "voided": OrderStatus.CANCELLED,
    "partially_refunded": OrderStatus.CONFIRMED,
}

_FULFILLMENT_STATUS_MAP: dict[str, OrderStatus] = {
    "fulfilled": OrderStatus.SHIPPED,
    "partial": OrderStatus.CONFIRMED,
    "restocked": OrderStatus.CANCELLED,
}

# (exclusive upper bound, fee); first tier whose bound exceeds the total wins
SHIPPING_TIERS: list[tuple[Decimal | None, Decimal]] = [
    (Decimal("50"), Decimal("9.99")),
    (Decimal("100"), Decimal("7.99")),
    (Decimal("200"), Decimal("5.99")),
    (None, Decimal("0.00")),
]

FALLBACK_SHIPPING_FEE = Decimal("9.99")


def map_financial_status(financial_status: str | None) -> OrderStatus:
    """Financial status -> OrderStatus. Unknown or missing -> PENDING."""
    if not financial_status:
        return OrderStatus.PENDING
    return _FINANCIAL_STATUS_MAP.get(financial_status.lower(), OrderStatus.PENDING)


def map_fulfillment_status(fulfillment_status: str | None) -> OrderStatus | None:
    """Fulfillment status -> OrderStatus, or None when it carries no signal."""
    if not fulfillment_status:
        return None
    return _FULFILLMENT_STATUS_MAP.get(fulfillment_status.lower())


def derive_status(financial_status: str | None, fulfillment_status: str | None) -> OrderStatus:
    """Combine both signals. A mapped fulfillment status overrides the financial one."""
    fulfilled = map_fulfillment_status(fulfillment_status)
    if fulfilled is not None:
        return fulfilled
    return map_financial_status(financial_status)


def _parse_total(total: Any) -> Decimal | None:
    if total is None or isinstance(total, bool):
        return None
    try:
        value = Decimal(str(total).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite():
        return None
    return value


def calculate_shipping_fee(total: Any) -> Decimal:
    """Tiered shipping fee for an order total.

    Boundary values belong to the next tier (50 pays 7.99). Anything that
    does not parse as a finite number pays the fallback fee.
    """
    value = _parse_total(total)
    if value is None:
        logger.debug("Unparseable order total %r, using fallback fee", total)
        return FALLBACK_SHIPPING_FEE
    for bound, fee in SHIPPING_TIERS:
        if bound is None or value < bound:
            return fee
    return FALLBACK_SHIPPING_FEE
