"""Webhook idempotency: receipt markers keyed by webhook id.

Contract:
- A receipt is written only after the job has been enqueued
- Receipts live for 24h (TTL); presence alone means "already accepted"
- Key pattern: webhook_id:{webhook_id}, value carries no payload
- If Redis is down on the check, fail open: the job queue's own job-id
  dedup still prevents double processing
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Protocol, runtime_checkable

import redis

logger = logging.getLogger(__name__)

_DEDUP_TTL_SECONDS = 86400  # 24 hours

_KEY_PREFIX = "webhook_id:"


@runtime_checkable
class DedupStore(Protocol):
    """Protocol for webhook receipt storage."""

    def seen(self, webhook_id: str) -> bool:
        """True if a live receipt exists for this webhook id."""
        ...

    def mark(self, webhook_id: str) -> None:
        """Write the receipt with TTL."""
        ...


class RedisDedupStore:
    """Redis-backed receipts using SETEX / EXISTS."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = _DEDUP_TTL_SECONDS) -> None:
        self._redis = client
        self._ttl = ttl_seconds

    @staticmethod
    def key(webhook_id: str) -> str:
        return f"{_KEY_PREFIX}{webhook_id}"

    def seen(self, webhook_id: str) -> bool:
        try:
            return bool(self._redis.exists(self.key(webhook_id)))
        except redis.RedisError:
            logger.warning(
                "Redis unavailable for webhook dedup, allowing %s", webhook_id,
                exc_info=True,
            )
            return False

    def mark(self, webhook_id: str) -> None:
        # Called after a confirmed enqueue; a lost receipt only costs a
        # repeat enqueue attempt, which job-id dedup absorbs.
        try:
            self._redis.setex(self.key(webhook_id), self._ttl, "received")
        except redis.RedisError:
            logger.warning("Failed to write webhook receipt: %s", webhook_id, exc_info=True)


class InMemoryDedupStore:
    """Process-local receipts with TTL expiry swept on write."""

    def __init__(self, ttl_seconds: int = _DEDUP_TTL_SECONDS) -> None:
        self._ttl = ttl_seconds
        self._expires: dict[str, float] = {}
        self._expiry: deque[tuple[float, str]] = deque()  # ordered by expiry (fixed TTL)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._expires)

    def _sweep(self, now: float) -> None:
        while self._expiry and self._expiry[0][0] <= now:
            expires_at, webhook_id = self._expiry.popleft()
            # A later mark() for the same id leaves a newer expiry in place
            if self._expires.get(webhook_id) == expires_at:
                del self._expires[webhook_id]

    def seen(self, webhook_id: str) -> bool:
        with self._lock:
            expires_at = self._expires.get(webhook_id)
            return expires_at is not None and time.time() < expires_at

    def mark(self, webhook_id: str) -> None:
        with self._lock:
            now = time.time()
            self._sweep(now)
            expires_at = now + self._ttl
            self._expires[webhook_id] = expires_at
            self._expiry.append((expires_at, webhook_id))
