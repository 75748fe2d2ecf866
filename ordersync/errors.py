"""Exception hierarchy for the order sync engine.

Only genuine failures are exceptions. A duplicate webhook is a normal
ingest result, a client version conflict is a resolver state and a
stale pagination cursor silently restarts the listing.
"""

from __future__ import annotations


class OrderSyncError(Exception):
    """Base class for all order sync errors."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class MalformedPayload(OrderSyncError):
    """Inbound webhook failed validation. Never enqueued."""


class EnqueueFailure(OrderSyncError):
    """The job queue refused the work. The dedup receipt must not be written."""


class OptimisticLockConflict(OrderSyncError):
    """Stored version changed between read and conditional write."""

    def __init__(self, order_id: str, expected_version: int) -> None:
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(f"order {order_id} is no longer at version {expected_version}")


class OrderNotFound(OrderSyncError):
    """No order with the given id exists."""


class SubmitBlocked(OrderSyncError):
    """A draft in conflict cannot be submitted until the conflict is resolved."""


class ClosedDraft(OrderSyncError):
    """The edit surface was closed; the draft no longer accepts events."""


class InvalidTransition(OrderSyncError):
    """The requested action has no transition from the current draft state."""
