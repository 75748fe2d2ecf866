"""Order data models.

Order is the canonical mutable record. ``version`` starts at 1 and is the
only concurrency-control token: every successful mutation bumps it by
exactly one. SyncEvent is the ephemeral notification emitted after each
successful mutation and is never persisted.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any


class OrderStatus(str, Enum):
    """Order lifecycle states."""
    PENDING = "PENDING"      # Created or payment pending
    CONFIRMED = "CONFIRMED"  # Payment confirmed
    SHIPPED = "SHIPPED"      # Fulfilled
    CANCELLED = "CANCELLED"  # Refunded, voided or restocked


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.isoformat()


@dataclass(frozen=True)
class Order:
    """A stored order record."""

    id: str
    external_order_id: str
    status: OrderStatus
    shipping_fee: Decimal
    version: int
    created_at: datetime
    updated_at: datetime

    def with_changes(
        self,
        status: OrderStatus,
        shipping_fee: Decimal,
        updated_at: datetime,
    ) -> Order:
        """Return the next version of this order with new field values."""
        return replace(
            self,
            status=status,
            shipping_fee=shipping_fee,
            version=self.version + 1,
            updated_at=updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Public columns only, camelCase for the wire."""
        return {
            "id": self.id,
            "externalOrderId": self.external_order_id,
            "status": self.status.value,
            "shippingFee": float(self.shipping_fee),
            "version": self.version,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


def new_order(
    external_order_id: str,
    status: OrderStatus,
    shipping_fee: Decimal,
    now: datetime | None = None,
) -> Order:
    """Build a fresh order at version 1."""
    ts = now or utcnow()
    return Order(
        id=str(uuid.uuid4()),
        external_order_id=external_order_id,
        status=status,
        shipping_fee=shipping_fee,
        version=1,
        created_at=ts,
        updated_at=ts,
    )


@dataclass(frozen=True)
class SyncEvent:
    """Notification that an order reached a new version."""

    order_id: str
    version: int
    status: OrderStatus
    shipping_fee: Decimal
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> SyncEvent:
        return cls(
            order_id=order.id,
            version=order.version,
            status=order.status,
            shipping_fee=order.shipping_fee,
            updated_at=order.updated_at,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncEvent:
        """Parse the ORDER_SYNCED wire payload."""
        return cls(
            order_id=str(data["orderId"]),
            version=int(data["version"]),
            status=OrderStatus(data["status"]),
            shipping_fee=Decimal(str(data["shippingFee"])),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "version": self.version,
            "status": self.status.value,
            "shippingFee": float(self.shipping_fee),
            "updatedAt": _iso(self.updated_at),
        }
