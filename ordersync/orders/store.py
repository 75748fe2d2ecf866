"""Order store: durable keyed records with conditional writes and range scans.

Two implementations share the OrderStore protocol:
- InMemoryOrderStore: process-local, used by tests and the "memory" backend
- PostgresOrderStore: psycopg-backed, the production store

Every write is a single atomic call. Mutations are conditioned on the
stored version (compare-and-set); the caller owns the retry loop.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

import psycopg
from psycopg.rows import dict_row

from ordersync.orders.models import Order, OrderStatus

logger = logging.getLogger(__name__)

SORT_FIELDS = ("createdAt", "updatedAt", "status")
SORT_ORDERS = ("ASC", "DESC")

# Keyset position in (updated_at DESC, id DESC) order
ScanPosition = tuple[datetime, str]


@runtime_checkable
class OrderStore(Protocol):
    """Protocol for order persistence."""

    def get(self, order_id: str) -> Order | None:
        ...

    def get_by_external_id(self, external_order_id: str) -> Order | None:
        ...

    def create(self, order: Order) -> Order | None:
        """Insert a new order. Returns None if the external id already exists."""
        ...

    def update_if_version(
        self,
        order_id: str,
        expected_version: int,
        status: OrderStatus,
        shipping_fee: Decimal,
        updated_at: datetime,
    ) -> Order | None:
        """Set fields and bump version by one iff the stored version matches.

        Returns the updated order, or None when the version moved on.
        """
        ...

    def count(self) -> int:
        ...

    def list_orders(self, skip: int, take: int, sort_by: str, sort_order: str) -> list[Order]:
        ...

    def scan_after(self, position: ScanPosition | None, limit: int) -> list[Order]:
        """Orders strictly after ``position`` in (updated_at DESC, id DESC) order."""
        ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


def _sort_key(order: Order, sort_by: str) -> Any:
    if sort_by == "createdAt":
        return (order.created_at, order.id)
    if sort_by == "status":
        return (order.status.value, order.id)
    return (order.updated_at, order.id)


class InMemoryOrderStore:
    """Dict-backed order store. Each call holds the lock for its own duration only."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._by_external: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            return self._orders.get(order_id)

    def get_by_external_id(self, external_order_id: str) -> Order | None:
        with self._lock:
            order_id = self._by_external.get(external_order_id)
            return self._orders.get(order_id) if order_id else None

    def create(self, order: Order) -> Order | None:
        with self._lock:
            if order.external_order_id in self._by_external:
                return None
            self._orders[order.id] = order
            self._by_external[order.external_order_id] = order.id
            return order

    def update_if_version(
        self,
        order_id: str,
        expected_version: int,
        status: OrderStatus,
        shipping_fee: Decimal,
        updated_at: datetime,
    ) -> Order | None:
        with self._lock:
            current = self._orders.get(order_id)
            if current is None or current.version != expected_version:
                return None
            updated = current.with_changes(status, shipping_fee, updated_at)
            self._orders[order_id] = updated
            return updated

    def count(self) -> int:
        with self._lock:
            return len(self._orders)

    def list_orders(self, skip: int, take: int, sort_by: str, sort_order: str) -> list[Order]:
        with self._lock:
            rows = sorted(
                self._orders.values(),
                key=lambda o: _sort_key(o, sort_by),
                reverse=sort_order == "DESC",
            )
        return rows[skip:skip + take]

    def scan_after(self, position: ScanPosition | None, limit: int) -> list[Order]:
        with self._lock:
            rows = sorted(
                self._orders.values(),
                key=lambda o: (o.updated_at, o.id),
                reverse=True,
            )
        if position is not None:
            rows = [o for o in rows if (o.updated_at, o.id) < position]
        return rows[:limit]


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

_COLUMNS = "id, external_order_id, status, shipping_fee, version, created_at, updated_at"

_SORT_COLUMNS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "status": "status",
}


def _row_to_order(row: dict[str, Any]) -> Order:
    return Order(
        id=row["id"],
        external_order_id=row["external_order_id"],
        status=OrderStatus(row["status"]),
        shipping_fee=Decimal(row["shipping_fee"]),
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresOrderStore:
    """psycopg-backed order store. One short-lived connection per call."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url

    def _get_conn(self) -> psycopg.Connection:
        return psycopg.connect(self._database_url, autocommit=True, row_factory=dict_row)

    def init_tables(self) -> None:
        """Create the orders table if it doesn't exist. Idempotent."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id                TEXT PRIMARY KEY,
                    external_order_id TEXT NOT NULL UNIQUE,
                    status            TEXT NOT NULL,
                    shipping_fee      NUMERIC(10, 2) NOT NULL,
                    version           INT NOT NULL DEFAULT 1,
                    created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at        TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_orders_updated_id
                ON orders (updated_at DESC, id DESC)
            """)
        logger.info("Order tables initialized")

    def get(self, order_id: str) -> Order | None:
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM orders WHERE id = %s", (order_id,),
            ).fetchone()
        return _row_to_order(row) if row else None

    def get_by_external_id(self, external_order_id: str) -> Order | None:
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM orders WHERE external_order_id = %s",
                (external_order_id,),
            ).fetchone()
        return _row_to_order(row) if row else None

    def create(self, order: Order) -> Order | None:
        with self._get_conn() as conn:
            row = conn.execute(
                f"""INSERT INTO orders ({_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (external_order_id) DO NOTHING
                    RETURNING {_COLUMNS}""",
                (
                    order.id,
                    order.external_order_id,
                    order.status.value,
                    order.shipping_fee,
                    order.version,
                    order.created_at,
                    order.updated_at,
                ),
            ).fetchone()
        return _row_to_order(row) if row else None

    def update_if_version(
        self,
        order_id: str,
        expected_version: int,
        status: OrderStatus,
        shipping_fee: Decimal,
        updated_at: datetime,
    ) -> Order | None:
        with self._get_conn() as conn:
            row = conn.execute(
                f"""UPDATE orders
                    SET status = %s, shipping_fee = %s, updated_at = %s,
                        version = version + 1
                    WHERE id = %s AND version = %s
                    RETURNING {_COLUMNS}""",
                (status.value, shipping_fee, updated_at, order_id, expected_version),
            ).fetchone()
        return _row_to_order(row) if row else None

    def count(self) -> int:
        with self._get_conn() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM orders").fetchone()
        return row["n"] if row else 0

    def list_orders(self, skip: int, take: int, sort_by: str, sort_order: str) -> list[Order]:
        # Column and direction come from fixed allowlists, never from the caller
        column = _SORT_COLUMNS[sort_by]
        direction = "DESC" if sort_order == "DESC" else "ASC"
        with self._get_conn() as conn:
            rows = conn.execute(
                f"""SELECT {_COLUMNS} FROM orders
                    ORDER BY {column} {direction}, id {direction}
                    OFFSET %s LIMIT %s""",
                (skip, take),
            ).fetchall()
        return [_row_to_order(r) for r in rows]

    def scan_after(self, position: ScanPosition | None, limit: int) -> list[Order]:
        with self._get_conn() as conn:
            if position is None:
                rows = conn.execute(
                    f"""SELECT {_COLUMNS} FROM orders
                        ORDER BY updated_at DESC, id DESC LIMIT %s""",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"""SELECT {_COLUMNS} FROM orders
                        WHERE (updated_at, id) < (%s, %s)
                        ORDER BY updated_at DESC, id DESC LIMIT %s""",
                    (position[0], position[1], limit),
                ).fetchall()
        return [_row_to_order(r) for r in rows]
