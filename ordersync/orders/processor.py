"""Order processor: turns queued webhook jobs into versioned order state.

Per job:
1. Validate the raw payload
2. Derive status (fulfillment overrides financial) and shipping fee
3. Upsert by external order id: create at version 1, or compare-and-set
   the new fields with version + 1; on a lost race re-read and retry
4. Emit a SyncEvent for the resulting version

Replays are safe: recomputing from the same payload yields the same field
values. A replay may consume a version number, it never reuses one.

The viewer write path (UPDATE_ORDER) goes through the same compare-and-set
loop, so viewer edits and webhook jobs share one version sequence.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from ordersync.bus import Job
from ordersync.errors import OptimisticLockConflict, OrderNotFound
from ordersync.events import SyncBroadcaster
from ordersync.orders.mapping import calculate_shipping_fee, derive_status
from ordersync.orders.models import Order, OrderStatus, SyncEvent, new_order, utcnow
from ordersync.orders.store import OrderStore
from ordersync.webhooks.schema import parse_payload

logger = logging.getLogger(__name__)

_EMIT_WATERMARK_SIZE = 100_000  # orders tracked for in-order emission


class OrderEdit(BaseModel):
    """Fields a viewer may change on an order."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    status: OrderStatus | None = None
    shipping_fee: Decimal | None = Field(default=None, alias="shippingFee", ge=0)


class UpdateOrderMessage(BaseModel):
    """Body of an UPDATE_ORDER frame from a viewer.

    Without ``expectedVersion`` the edit is last-write-wins.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1)
    data: OrderEdit
    expected_version: int | None = Field(default=None, alias="expectedVersion", ge=1)


class OrderProcessor:
    """Applies webhook jobs and viewer edits to the order store."""

    def __init__(
        self,
        store: OrderStore,
        broadcaster: SyncBroadcaster,
        *,
        max_lock_retries: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._max_lock_retries = max_lock_retries
        self._clock = clock
        self._emit_lock = threading.Lock()
        self._emitted: OrderedDict[str, int] = OrderedDict()
        self.lock_conflicts = 0

    # ── Webhook jobs ──────────────────────────────────────────────────────

    def process(self, job: Job) -> SyncEvent:
        """Process one job. Any exception means the job must not be acknowledged."""
        payload = parse_payload(job.payload)
        status = derive_status(payload.financial_status, payload.fulfillment_status)
        fee = calculate_shipping_fee(payload.total_price)

        order = self._upsert(payload.external_order_id, status, fee)
        event = SyncEvent.from_order(order)
        self._emit(event)
        logger.info(
            "Processed job %s (%s): order %s -> v%d %s fee=%s",
            job.job_id, job.topic, order.id, order.version, order.status.value, order.shipping_fee,
        )
        return event

    def _upsert(self, external_order_id: str, status: OrderStatus, fee: Decimal) -> Order:
        expected_version = 0
        for attempt in range(self._max_lock_retries + 1):
            current = self._store.get_by_external_id(external_order_id)
            if current is None:
                created = self._store.create(new_order(external_order_id, status, fee, self._clock()))
                if created is not None:
                    logger.info("Order created for external id %s: %s", external_order_id, created.id)
                    return created
                # Another worker created it first; update that row instead
                self._note_conflict(external_order_id, attempt)
                continue

            expected_version = current.version
            updated = self._store.update_if_version(
                current.id, current.version, status, fee, self._clock(),
            )
            if updated is not None:
                return updated
            self._note_conflict(current.id, attempt)

        raise OptimisticLockConflict(external_order_id, expected_version)

    def _note_conflict(self, key: str, attempt: int) -> None:
        self.lock_conflicts += 1
        logger.debug("Optimistic lock conflict on %s (attempt %d), retrying", key, attempt + 1)

    # ── Viewer edits ──────────────────────────────────────────────────────

    def apply_edit(self, message: UpdateOrderMessage) -> Order:
        """Apply a viewer's edit as a new version.

        Raises:
            OrderNotFound: unknown order id
            OptimisticLockConflict: ``expected_version`` given and stale
        """
        edit = message.data
        for attempt in range(self._max_lock_retries + 1):
            current = self._store.get(message.order_id)
            if current is None:
                raise OrderNotFound(message.order_id)
            if message.expected_version is not None and current.version != message.expected_version:
                raise OptimisticLockConflict(current.id, message.expected_version)

            updated = self._store.update_if_version(
                current.id,
                current.version,
                edit.status or current.status,
                edit.shipping_fee if edit.shipping_fee is not None else current.shipping_fee,
                self._clock(),
            )
            if updated is not None:
                self._emit(SyncEvent.from_order(updated))
                logger.info(
                    "Viewer edit applied to order %s -> v%d (forced=%s)",
                    updated.id, updated.version, message.expected_version is None,
                )
                return updated
            self._note_conflict(current.id, attempt)

        raise OptimisticLockConflict(message.order_id, message.expected_version or 0)

    # ── Emission ──────────────────────────────────────────────────────────

    def _emit(self, event: SyncEvent) -> None:
        """Publish unless a newer version of the order was already published."""
        with self._emit_lock:
            last = self._emitted.get(event.order_id, 0)
            if event.version <= last:
                logger.debug(
                    "Suppressing stale sync event for %s: v%d <= v%d",
                    event.order_id, event.version, last,
                )
                return
            self._emitted[event.order_id] = event.version
            self._emitted.move_to_end(event.order_id)
            if len(self._emitted) > _EMIT_WATERMARK_SIZE:
                self._emitted.popitem(last=False)
            self._broadcaster.publish(event)
