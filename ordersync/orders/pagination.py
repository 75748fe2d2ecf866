"""Bulk order listing: offset pages and opaque cursor pages.

Offset mode is a direct bounded scan and drifts when rows are written
between pages. Cursor mode pages by keyset over (updated_at DESC, id DESC):
the cursor encodes the (updated_at, id) of the last row returned and the
next page starts strictly after it.

Cursor format: urlsafe-base64("<iso updated_at>|<id>"). The ISO timestamp
contains ':' so '|' is the separator.

Known approximation: a row updated between pages moves to the front of the
sort order, so it may be seen twice or skipped. This is not linearizable.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ordersync.orders.models import Order
from ordersync.orders.store import SORT_FIELDS, SORT_ORDERS, OrderStore, ScanPosition

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_CURSOR_LIMIT = 100

_SEPARATOR = "|"


@dataclass
class OffsetPage:
    data: list[Order]
    total: int
    skip: int
    take: int

    @property
    def has_more(self) -> bool:
        return self.skip + self.take < self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": [o.to_dict() for o in self.data],
            "total": self.total,
            "skip": self.skip,
            "take": self.take,
            "hasMore": self.has_more,
        }


@dataclass
class CursorPage:
    data: list[Order]
    has_more: bool
    next_cursor: str | None = None
    restarted: bool = field(default=False, repr=False)  # cursor missed, listing restarted

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "data": [o.to_dict() for o in self.data],
            "hasMore": self.has_more,
        }
        if self.next_cursor is not None:
            body["nextCursor"] = self.next_cursor
        return body


def list_orders(
    store: OrderStore,
    skip: int = 0,
    take: int = DEFAULT_PAGE_SIZE,
    sort_by: str = "updatedAt",
    sort_order: str = "DESC",
) -> OffsetPage:
    """Offset listing."""
    if skip < 0:
        raise ValueError("skip must be >= 0")
    if take < 1:
        raise ValueError("take must be >= 1")
    if sort_by not in SORT_FIELDS:
        raise ValueError(f"sortBy must be one of {SORT_FIELDS}")
    if sort_order not in SORT_ORDERS:
        raise ValueError(f"sortOrder must be one of {SORT_ORDERS}")
    data = store.list_orders(skip, take, sort_by, sort_order)
    return OffsetPage(data=data, total=store.count(), skip=skip, take=take)


def encode_cursor(order: Order) -> str:
    raw = f"{order.updated_at.isoformat()}{_SEPARATOR}{order.id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> ScanPosition | None:
    """Cursor -> (updated_at, id), or None if it is not a cursor we issued."""
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        stamp, order_id = raw.split(_SEPARATOR, 1)
        updated_at = datetime.fromisoformat(stamp)
    except (binascii.Error, UnicodeError, ValueError):
        return None
    if not order_id or updated_at.tzinfo is None:
        return None
    return updated_at, order_id


def list_orders_with_cursor(
    store: OrderStore,
    cursor: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    max_limit: int = MAX_CURSOR_LIMIT,
) -> CursorPage:
    """Cursor listing, at most ``max_limit`` rows. Unknown or stale cursors restart."""
    if limit < 1:
        raise ValueError("limit must be >= 1")
    limit = min(limit, max_limit)

    position: ScanPosition | None = None
    restarted = False
    if cursor:
        position = decode_cursor(cursor)
        if position is None:
            logger.info("Undecodable cursor, restarting listing")
            restarted = True
        elif store.get(position[1]) is None:
            logger.info("Cursor row %s no longer exists, restarting listing", position[1])
            position = None
            restarted = True

    rows = store.scan_after(position, limit + 1)
    has_more = len(rows) > limit
    data = rows[:limit]
    next_cursor = encode_cursor(data[-1]) if has_more and data else None
    return CursorPage(data=data, has_more=has_more, next_cursor=next_cursor, restarted=restarted)
