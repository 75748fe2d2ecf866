"""Webhook ingest gate: dedup, enqueue, then mark received.

Order of side effects:
1. Validate the payload (MalformedPayload -> never enqueued)
2. Reject if a live receipt exists for the webhook id (duplicate)
3. Enqueue a job keyed by the webhook id (EnqueueFailure propagates)
4. Write the receipt, only after the enqueue is confirmed
5. Record the webhook in the audit trail

Writing the receipt last means a failed enqueue leaves no receipt behind,
so the platform's retry gets a fresh chance instead of being dropped.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from ordersync.audit import AuditSink
from ordersync.bus import Job, JobQueue
from ordersync.errors import EnqueueFailure, MalformedPayload
from ordersync.webhooks.idempotency import DedupStore
from ordersync.webhooks.schema import parse_payload

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
DUPLICATE = "duplicate"


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one ingest call."""

    status: str  # accepted | duplicate
    webhook_id: str

    @property
    def accepted(self) -> bool:
        return self.status == ACCEPTED

    def to_dict(self) -> dict[str, str]:
        return {"status": self.status, "webhookId": self.webhook_id}


class IngestGate:
    """At-most-once acceptance of inbound order webhooks."""

    def __init__(self, dedup: DedupStore, queue: JobQueue, audit: AuditSink) -> None:
        self._dedup = dedup
        self._queue = queue
        self._audit = audit
        self._counts: dict[str, int] = {}
        self._counts_lock = threading.Lock()

    @property
    def counts(self) -> dict[str, int]:
        with self._counts_lock:
            return dict(self._counts)

    def _log_webhook(self, webhook_id: str, topic: str, status: str) -> None:
        """Audit log line for webhook activity."""
        # ingest() runs on several threadpool workers at once
        with self._counts_lock:
            count = self._counts.get(status, 0) + 1
            self._counts[status] = count
        logger.info(
            "WEBHOOK_AUDIT webhook_id=%s topic=%s status=%s count=%d",
            webhook_id,
            topic,
            status,
            count,
        )

    def ingest(self, webhook_id: str | None, topic: str | None, payload: Any) -> IngestResult:
        """Accept or reject one webhook delivery.

        Raises:
            MalformedPayload: missing webhook id or invalid body
            EnqueueFailure: the queue refused the job; no receipt was written
        """
        topic = topic or "unknown"
        if not webhook_id or not webhook_id.strip():
            self._log_webhook("unknown", topic, "missing_id")
            raise MalformedPayload("missing webhook id")

        try:
            parse_payload(payload)
        except MalformedPayload:
            self._log_webhook(webhook_id, topic, "malformed")
            raise

        if self._dedup.seen(webhook_id):
            self._log_webhook(webhook_id, topic, DUPLICATE)
            return IngestResult(DUPLICATE, webhook_id)

        try:
            queued = self._queue.enqueue(Job(job_id=webhook_id, topic=topic, payload=payload))
        except EnqueueFailure:
            self._log_webhook(webhook_id, topic, "enqueue_failed")
            logger.exception("Failed to enqueue webhook %s", webhook_id)
            raise

        self._dedup.mark(webhook_id)
        if not queued:
            # Queue already held this job id; the receipt was lost or raced
            self._log_webhook(webhook_id, topic, DUPLICATE)
            return IngestResult(DUPLICATE, webhook_id)

        self._audit.record_webhook(webhook_id, topic, payload)
        self._log_webhook(webhook_id, topic, ACCEPTED)
        return IngestResult(ACCEPTED, webhook_id)
