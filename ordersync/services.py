"""Service container: explicitly constructed shared handles.

Holds the dedup store, job queue, order store, broadcaster, processor,
ingest gate and worker for one process. Built once from Settings, started
and shut down by the application lifespan; nothing here is a module-level
singleton.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import redis

from ordersync.audit import AuditSink, LogAuditSink
from ordersync.bus import InMemoryJobQueue, JobQueue, RedisJobQueue
from ordersync.config import Settings
from ordersync.events import SyncBroadcaster
from ordersync.orders.processor import OrderProcessor
from ordersync.orders.store import InMemoryOrderStore, OrderStore, PostgresOrderStore
from ordersync.webhooks.gate import IngestGate
from ordersync.webhooks.idempotency import DedupStore, InMemoryDedupStore, RedisDedupStore
from ordersync.worker import SyncWorker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    dedup: DedupStore
    queue: JobQueue
    store: OrderStore
    broadcaster: SyncBroadcaster
    audit: AuditSink
    processor: OrderProcessor
    gate: IngestGate
    worker: SyncWorker
    redis_client: redis.Redis | None = field(default=None, repr=False)

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        dedup: DedupStore | None = None,
        queue: JobQueue | None = None,
        store: OrderStore | None = None,
        audit: AuditSink | None = None,
    ) -> Services:
        """Wire the services for ``settings.backend``. Explicit args win."""
        client: redis.Redis | None = None
        if settings.backend == "redis" and (dedup is None or queue is None):
            client = redis.from_url(settings.redis_url, decode_responses=True)

        if dedup is None:
            dedup = (
                RedisDedupStore(client, settings.webhook_ttl_seconds)
                if client is not None
                else InMemoryDedupStore(settings.webhook_ttl_seconds)
            )
        if queue is None:
            queue = (
                RedisJobQueue(
                    client,
                    stream=settings.queue_stream,
                    group=settings.consumer_group,
                    job_ttl_seconds=settings.job_ttl_seconds,
                    claim_idle_ms=settings.claim_idle_ms,
                )
                if client is not None
                else InMemoryJobQueue(settings.job_ttl_seconds)
            )
        if store is None:
            store = (
                PostgresOrderStore(settings.database_url)
                if settings.backend == "redis"
                else InMemoryOrderStore()
            )

        broadcaster = SyncBroadcaster(settings.subscriber_queue_size)
        audit = audit or LogAuditSink()
        processor = OrderProcessor(store, broadcaster, max_lock_retries=settings.max_lock_retries)
        return cls(
            settings=settings,
            dedup=dedup,
            queue=queue,
            store=store,
            broadcaster=broadcaster,
            audit=audit,
            processor=processor,
            gate=IngestGate(dedup, queue, audit),
            worker=SyncWorker(
                queue,
                processor,
                consumer_name=settings.consumer_name,
                batch_size=settings.poll_batch,
                block_ms=settings.poll_block_ms,
            ),
            redis_client=client,
        )

    def start(self) -> None:
        """Prepare backing stores and start the worker if configured."""
        if isinstance(self.store, PostgresOrderStore):
            self.store.init_tables()
        if isinstance(self.queue, RedisJobQueue):
            self.queue.ensure_group()
        if self.settings.start_worker:
            self.worker.start()
        logger.info("Order sync services started (backend=%s)", self.settings.backend)

    def shutdown(self) -> None:
        self.worker.stop()
        self.broadcaster.close()
        if self.redis_client is not None:
            self.redis_client.close()
        logger.info("Order sync services stopped")
