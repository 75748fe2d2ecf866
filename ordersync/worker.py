"""Sync worker: drains the job queue through the order processor.

Runs as a background thread. Each reserved job is processed and then
acknowledged; a job whose processing raises is released unacknowledged
so the queue redelivers it. Malformed jobs are acknowledged and dropped
since replaying them cannot succeed.
"""

from __future__ import annotations

import logging
import threading
import time

from ordersync.bus import Job, JobQueue
from ordersync.errors import MalformedPayload
from ordersync.orders.processor import OrderProcessor

logger = logging.getLogger(__name__)

_IDLE_SLEEP_SECONDS = 0.2
_ERROR_BACKOFF_SECONDS = 5.0


class SyncWorker:
    """Background consumer that feeds queued webhook jobs to the processor."""

    def __init__(
        self,
        queue: JobQueue,
        processor: OrderProcessor,
        *,
        consumer_name: str = "worker-0",
        batch_size: int = 10,
        block_ms: int = 2000,
    ) -> None:
        self._queue = queue
        self._processor = processor
        self._consumer_name = consumer_name
        self._batch_size = batch_size
        self._block_ms = block_ms
        self._running = False
        self._thread: threading.Thread | None = None
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(
            target=self._poll_loop, daemon=True, name="ordersync-worker",
        )
        self._thread.start()
        logger.info("Sync worker started: %s", self._consumer_name)

    def stop(self, timeout: float = 5.0) -> None:
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Sync worker stopped: %s", self._consumer_name)

    def _poll_loop(self) -> None:
        while self._running:
            try:
                handled = self.run_once(block_ms=self._block_ms)
            except Exception:
                # Queue transport failure; nothing was acknowledged
                logger.exception("Sync worker poll failed, backing off")
                time.sleep(_ERROR_BACKOFF_SECONDS)
                continue
            if not handled:
                time.sleep(_IDLE_SLEEP_SECONDS)

    def run_once(self, *, block_ms: int = 0) -> int:
        """Reserve and handle one batch. Returns the number of jobs handled."""
        jobs = self._queue.reserve(
            self._consumer_name, count=self._batch_size, block_ms=block_ms,
        )
        for job in jobs:
            self._handle(job)
        return len(jobs)

    def drain(self, max_batches: int = 1000) -> int:
        """Handle jobs until the queue yields nothing. Returns jobs handled."""
        total = 0
        for _ in range(max_batches):
            handled = self.run_once()
            if not handled:
                break
            total += handled
        return total

    def _handle(self, job: Job) -> None:
        try:
            self._processor.process(job)
        except MalformedPayload as exc:
            logger.error("Dropping malformed job %s: %s", job.job_id, exc.detail)
            self._queue.ack(job)
            self.failed += 1
            return
        except Exception:
            logger.exception("Job %s failed (attempt %d), leaving for redelivery", job.job_id, job.attempts + 1)
            self._queue.release(job)
            self.failed += 1
            return
        self._queue.ack(job)
        self.processed += 1
