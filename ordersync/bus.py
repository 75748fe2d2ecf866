"""Job queue: durable at-least-once work delivery for webhook processing.

The Redis implementation is a Redis Stream with one consumer group:
jobs are added via XADD, read with XREADGROUP, acknowledged with XACK and
reclaimed with XAUTOCLAIM when a worker died before acknowledging.

Job-id de-duplication: a ``ordersync:job:{job_id}`` key is SET NX and the
XADD issued in the same server-side script, so the key never exists
without its stream entry. Re-enqueueing the same webhook id while the key
lives is a no-op. If the script fails EnqueueFailure is raised and the
caller must not treat the work as accepted.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import redis

from ordersync.errors import EnqueueFailure

logger = logging.getLogger(__name__)

STREAM_JOBS = "ordersync:jobs"
CONSUMER_GROUP = "ordersync-workers"

_JOB_KEY_PREFIX = "ordersync:job:"
_JOB_TTL_SECONDS = 86400
_STREAM_MAXLEN = 100_000

# KEYS: job key, stream. ARGV: ttl, maxlen, job_id, topic, payload, enqueued_at.
# Returns the stream entry id, or nil when the job id is already known.
_ENQUEUE_SCRIPT = """
if not redis.call('SET', KEYS[1], 'queued', 'NX', 'EX', ARGV[1]) then
    return false
end
local ok, res = pcall(redis.call, 'XADD', KEYS[2], 'MAXLEN', '~', ARGV[2], '*',
    'job_id', ARGV[3], 'topic', ARGV[4], 'payload', ARGV[5], 'enqueued_at', ARGV[6])
if not ok then
    redis.call('DEL', KEYS[1])
    return redis.error_reply(res.err or tostring(res))
end
return res
"""


@dataclass
class Job:
    """One unit of webhook work. ``job_id`` is the webhook id."""

    job_id: str
    topic: str
    payload: dict[str, Any]
    entry_id: str = ""  # Redis stream entry ID once queued
    attempts: int = 0
    enqueued_at: float = field(default_factory=time.time)


@runtime_checkable
class JobQueue(Protocol):
    """Protocol for the durable work queue."""

    def enqueue(self, job: Job) -> bool:
        """Queue a job. False if a job with this id is already known.

        Raises EnqueueFailure when the queue could not accept the job.
        """
        ...

    def reserve(self, consumer_name: str, *, count: int = 10, block_ms: int = 0) -> list[Job]:
        """Take up to ``count`` jobs for exclusive processing."""
        ...

    def ack(self, job: Job) -> None:
        """Mark a reserved job done."""
        ...

    def release(self, job: Job) -> None:
        """Give a failed job back for redelivery."""
        ...

    def pending_count(self) -> int:
        ...


# ---------------------------------------------------------------------------
# Redis Streams
# ---------------------------------------------------------------------------


class RedisJobQueue:
    """Redis Streams job queue with a single consumer group."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        stream: str = STREAM_JOBS,
        group: str = CONSUMER_GROUP,
        job_ttl_seconds: int = _JOB_TTL_SECONDS,
        claim_idle_ms: int = 60_000,
    ) -> None:
        self._redis = client
        self._stream = stream
        self._group = group
        self._job_ttl = job_ttl_seconds
        self._claim_idle_ms = claim_idle_ms
        self._enqueue_script = client.register_script(_ENQUEUE_SCRIPT)

    @staticmethod
    def job_key(job_id: str) -> str:
        return f"{_JOB_KEY_PREFIX}{job_id}"

    def ensure_group(self) -> None:
        """Create the consumer group (idempotent). Call once on startup."""
        try:
            self._redis.xgroup_create(self._stream, self._group, id="0", mkstream=True)
            logger.info("Consumer group '%s' created on %s", self._group, self._stream)
        except redis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    def enqueue(self, job: Job) -> bool:
        try:
            entry_id = self._enqueue_script(
                keys=[self.job_key(job.job_id), self._stream],
                args=[
                    self._job_ttl,
                    _STREAM_MAXLEN,
                    job.job_id,
                    job.topic,
                    json.dumps(job.payload, default=str),
                    str(job.enqueued_at),
                ],
            )
        except redis.RedisError as exc:
            raise EnqueueFailure(f"enqueue failed for {job.job_id}") from exc
        if entry_id is None:
            logger.info("Job %s already queued, skipping", job.job_id)
            return False
        job.entry_id = entry_id
        return True

    def _decode(self, entry_id: str, fields: dict[str, str]) -> Job | None:
        try:
            return Job(
                job_id=fields["job_id"],
                topic=fields.get("topic", ""),
                payload=json.loads(fields["payload"]),
                entry_id=entry_id,
                enqueued_at=float(fields.get("enqueued_at", 0) or 0),
            )
        except (KeyError, ValueError):
            logger.error("Unreadable job entry %s on %s, acknowledging", entry_id, self._stream)
            self._redis.xack(self._stream, self._group, entry_id)
            return None

    def claim_stale(self, consumer_name: str, count: int = 10) -> list[Job]:
        """Reclaim jobs another worker failed to acknowledge in time."""
        # XAUTOCLAIM returns (next_start_id, [(entry_id, fields), ...], deleted_ids)
        _, entries, _ = self._redis.xautoclaim(
            self._stream,
            self._group,
            consumer_name,
            min_idle_time=self._claim_idle_ms,
            count=count,
        )
        if entries:
            logger.info(
                "Claimed %d stale jobs from %s (idle > %dms)",
                len(entries), self._stream, self._claim_idle_ms,
            )
        jobs = []
        for entry_id, fields in entries:
            if not fields:
                continue
            job = self._decode(entry_id, fields)
            if job is not None:
                job.attempts = 1
                jobs.append(job)
        return jobs

    def reserve(self, consumer_name: str, *, count: int = 10, block_ms: int = 0) -> list[Job]:
        jobs = self.claim_stale(consumer_name, count=count)
        if jobs:
            return jobs
        result = self._redis.xreadgroup(
            self._group,
            consumer_name,
            {self._stream: ">"},
            count=count,
            block=block_ms or None,
        )
        if not result:
            return []
        # result is [(stream_name, [(entry_id, fields), ...])]
        for entry_id, fields in result[0][1]:
            job = self._decode(entry_id, fields)
            if job is not None:
                jobs.append(job)
        return jobs

    def ack(self, job: Job) -> None:
        self._redis.xack(self._stream, self._group, job.entry_id)

    def release(self, job: Job) -> None:
        # Left pending; XAUTOCLAIM hands it out again after claim_idle_ms
        logger.info("Job %s left pending for redelivery", job.job_id)

    def pending_count(self) -> int:
        info = self._redis.xpending(self._stream, self._group)
        return info.get("pending", 0) if isinstance(info, dict) else 0


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryJobQueue:
    """Process-local queue with the same delivery contract as RedisJobQueue."""

    def __init__(self, job_ttl_seconds: int = _JOB_TTL_SECONDS) -> None:
        self._job_ttl = job_ttl_seconds
        self._ready: deque[Job] = deque()
        self._in_flight: dict[str, Job] = {}
        self._known: dict[str, float] = {}  # job_id -> expiry
        self._expiry: deque[tuple[float, str]] = deque()  # ordered by expiry (fixed TTL)
        self._cond = threading.Condition()
        self._seq = 0

    def _sweep(self, now: float) -> None:
        # Caller holds the lock
        while self._expiry and self._expiry[0][0] <= now:
            expires_at, job_id = self._expiry.popleft()
            if self._known.get(job_id) == expires_at:
                del self._known[job_id]

    def enqueue(self, job: Job) -> bool:
        with self._cond:
            now = time.time()
            self._sweep(now)
            if job.job_id in self._known:
                logger.info("Job %s already queued, skipping", job.job_id)
                return False
            self._seq += 1
            job.entry_id = f"{int(now * 1000)}-{self._seq}"
            expires_at = now + self._job_ttl
            self._known[job.job_id] = expires_at
            self._expiry.append((expires_at, job.job_id))
            self._ready.append(job)
            self._cond.notify()
            return True

    def reserve(self, consumer_name: str = "", *, count: int = 10, block_ms: int = 0) -> list[Job]:
        with self._cond:
            if not self._ready and block_ms:
                self._cond.wait(timeout=block_ms / 1000)
            jobs: list[Job] = []
            skipped: list[Job] = []
            while self._ready and len(jobs) < count:
                job = self._ready.popleft()
                if job.job_id in self._in_flight:
                    skipped.append(job)
                    continue
                self._in_flight[job.job_id] = job
                jobs.append(job)
            self._ready.extendleft(reversed(skipped))
            return jobs

    def ack(self, job: Job) -> None:
        with self._cond:
            self._in_flight.pop(job.job_id, None)

    def release(self, job: Job) -> None:
        with self._cond:
            if self._in_flight.pop(job.job_id, None) is not None:
                job.attempts += 1
                self._ready.append(job)
                self._cond.notify()

    def pending_count(self) -> int:
        with self._cond:
            return len(self._in_flight)

    def ready_count(self) -> int:
        with self._cond:
            return len(self._ready)

    def known_count(self) -> int:
        """Job ids still inside the de-duplication window."""
        with self._cond:
            return len(self._known)
