"""Client conflict resolver: reconciles a local draft with live sync events.

One resolver per open edit surface. States:

    CLEAN    draft equals the baseline it was forked from
    DIRTY    draft differs from baseline
    CONFLICT draft is dirty and the server moved past the baseline

Transitions (anything not listed raises InvalidTransition):

    CLEAN    + edit             -> DIRTY (CLEAN if the edit changes nothing)
    CLEAN    + newer sync       -> CLEAN, adopt server fields and version
    DIRTY    + newer sync       -> CONFLICT, keep draft and server snapshot
    any      + stale sync       -> unchanged
    CONFLICT + newer sync       -> CONFLICT, snapshot replaced
    CONFLICT + accept server    -> CLEAN, draft := snapshot
    CONFLICT + force overwrite  -> DIRTY, draft kept, next submit is last-write-wins
    CLEAN/DIRTY + submit        -> CLEAN, local version + 1, UPDATE_ORDER frame returned
    CONFLICT + submit           -> SubmitBlocked

The resolver is synchronous and single-threaded; the caller feeds it one
event at a time from its socket loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable

from ordersync.errors import ClosedDraft, InvalidTransition, SubmitBlocked
from ordersync.orders.models import Order, OrderStatus, SyncEvent

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("status", "shippingFee")


class DraftState(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    CONFLICT = "conflict"


class Trigger(str, Enum):
    EDIT = "edit"
    SYNC_NEWER = "sync_newer"
    SYNC_STALE = "sync_stale"
    ACCEPT_SERVER = "accept_server"
    FORCE_OVERWRITE = "force_overwrite"
    SUBMIT = "submit"


@dataclass
class ClientDraft:
    """A viewer's working copy of one order."""

    order_id: str
    baseline_version: int
    baseline: dict[str, Any]
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def is_dirty(self) -> bool:
        return self.fields != self.baseline

    def rebase(self, version: int, values: dict[str, Any]) -> None:
        """Make ``values`` both the baseline and the working copy."""
        self.baseline_version = version
        self.baseline = dict(values)
        self.fields = dict(values)


def _event_fields(event: SyncEvent) -> dict[str, Any]:
    return {"status": event.status, "shippingFee": event.shipping_fee}


def _coerce(name: str, value: Any) -> Any:
    if name == "status":
        return OrderStatus(value)
    try:
        fee = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"shippingFee must be a number, got {value!r}") from exc
    if not fee.is_finite() or fee < 0:
        raise ValueError(f"shippingFee must be a non-negative number, got {value!r}")
    return fee


class ConflictResolver:
    """Finite-state machine guarding one draft against concurrent server updates."""

    def __init__(
        self,
        order_id: str,
        version: int,
        fields: dict[str, Any],
        *,
        unsubscribe: Callable[[], None] | None = None,
    ) -> None:
        values = {name: _coerce(name, fields[name]) for name in EDITABLE_FIELDS}
        self._draft: ClientDraft | None = ClientDraft(order_id, version, dict(values), dict(values))
        self._state = DraftState.CLEAN
        self._server: SyncEvent | None = None
        self._forced = False
        self._unsubscribe = unsubscribe
        self.order_id = order_id

    @classmethod
    def from_order(cls, order: Order, *, unsubscribe: Callable[[], None] | None = None) -> ConflictResolver:
        return cls(
            order.id,
            order.version,
            {"status": order.status, "shippingFee": order.shipping_fee},
            unsubscribe=unsubscribe,
        )

    # ── Introspection ─────────────────────────────────────────────────────

    @property
    def state(self) -> DraftState:
        return self._state

    @property
    def draft(self) -> ClientDraft:
        if self._draft is None:
            raise ClosedDraft(self.order_id)
        return self._draft

    @property
    def server_snapshot(self) -> SyncEvent | None:
        """The server version held while in CONFLICT."""
        return self._server

    @property
    def closed(self) -> bool:
        return self._draft is None

    # ── Inputs ────────────────────────────────────────────────────────────

    def edit(self, name: str, value: Any) -> DraftState:
        """Local field edit."""
        if name not in EDITABLE_FIELDS:
            raise ValueError(f"{name} is not editable")
        return self._fire(Trigger.EDIT, name=name, value=_coerce(name, value))

    def on_sync(self, event: SyncEvent) -> DraftState:
        """Incoming ORDER_SYNCED event. Events for other orders are ignored."""
        draft = self.draft
        if event.order_id != draft.order_id:
            return self._state
        trigger = Trigger.SYNC_NEWER if event.version > draft.baseline_version else Trigger.SYNC_STALE
        return self._fire(trigger, event=event)

    def handle_frame(self, frame: dict[str, Any]) -> DraftState:
        """Feed a decoded server frame."""
        if frame.get("event") == "ORDER_SYNCED":
            return self.on_sync(SyncEvent.from_dict(frame["data"]))
        logger.debug("Ignoring %s frame for draft %s", frame.get("event"), self.order_id)
        return self._state

    def accept_server(self) -> DraftState:
        return self._fire(Trigger.ACCEPT_SERVER)

    def force_overwrite(self) -> DraftState:
        return self._fire(Trigger.FORCE_OVERWRITE)

    def submit(self) -> dict[str, Any]:
        """Save. Returns the UPDATE_ORDER frame to send upstream."""
        frame: dict[str, Any] = {}
        self._fire(Trigger.SUBMIT, out=frame)
        return frame

    def close(self) -> None:
        """Discard the draft and stop listening."""
        if self._draft is None:
            return
        self._draft = None
        self._server = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ── Transition table ──────────────────────────────────────────────────

    def _fire(self, trigger: Trigger, **kwargs: Any) -> DraftState:
        draft = self.draft
        handler = _TRANSITIONS.get((self._state, trigger))
        if handler is None:
            if trigger is Trigger.SUBMIT:
                raise SubmitBlocked(f"order {draft.order_id} has an unresolved conflict")
            raise InvalidTransition(f"{trigger.value} not allowed in state {self._state.value}")
        previous = self._state
        self._state = handler(self, draft, **kwargs)
        if self._state is not previous:
            logger.debug("Draft %s: %s -[%s]-> %s", draft.order_id, previous.value, trigger.value, self._state.value)
        return self._state

    def _edit(self, draft: ClientDraft, *, name: str, value: Any) -> DraftState:
        draft.fields[name] = value
        return DraftState.DIRTY if draft.is_dirty else DraftState.CLEAN

    def _edit_in_conflict(self, draft: ClientDraft, *, name: str, value: Any) -> DraftState:
        draft.fields[name] = value
        return DraftState.CONFLICT

    def _fast_forward(self, draft: ClientDraft, *, event: SyncEvent) -> DraftState:
        draft.rebase(event.version, _event_fields(event))
        return DraftState.CLEAN

    def _ignore(self, draft: ClientDraft, *, event: SyncEvent) -> DraftState:
        return self._state

    def _enter_conflict(self, draft: ClientDraft, *, event: SyncEvent) -> DraftState:
        if self._server is None or event.version > self._server.version:
            self._server = event
        return DraftState.CONFLICT

    def _held_server(self) -> SyncEvent:
        if self._server is None:
            raise InvalidTransition(f"no server version held for order {self.order_id}")
        return self._server

    def _accept_server(self, draft: ClientDraft) -> DraftState:
        server = self._held_server()
        draft.rebase(server.version, _event_fields(server))
        self._server = None
        self._forced = False
        return DraftState.CLEAN

    def _force_overwrite(self, draft: ClientDraft) -> DraftState:
        """Keep the draft and make the next submit last-write-wins.

        The draft fields are untouched, but unlike a plain "clear the
        conflict marker" the baseline version moves to the held server
        version. That version is then acknowledged, so its redelivery is
        stale and does not reopen the conflict. The baseline fields stay as
        forked, so the draft remains dirty.
        """
        server = self._held_server()
        draft.baseline_version = server.version
        self._server = None
        self._forced = True
        return DraftState.DIRTY if draft.is_dirty else DraftState.CLEAN

    def _submit(self, draft: ClientDraft, *, out: dict[str, Any]) -> DraftState:
        body: dict[str, Any] = {
            "orderId": draft.order_id,
            "data": {
                "status": draft.fields["status"].value,
                "shippingFee": str(draft.fields["shippingFee"]),
            },
        }
        if not self._forced:
            body["expectedVersion"] = draft.baseline_version
        out.update({"event": "UPDATE_ORDER", "data": body})
        # Optimistic: assume the write lands as the next version
        draft.rebase(draft.baseline_version + 1, draft.fields)
        self._forced = False
        return DraftState.CLEAN


_Handler = Callable[..., DraftState]

_TRANSITIONS: dict[tuple[DraftState, Trigger], _Handler] = {
    (DraftState.CLEAN, Trigger.EDIT): ConflictResolver._edit,
    (DraftState.DIRTY, Trigger.EDIT): ConflictResolver._edit,
    (DraftState.CONFLICT, Trigger.EDIT): ConflictResolver._edit_in_conflict,
    (DraftState.CLEAN, Trigger.SYNC_NEWER): ConflictResolver._fast_forward,
    (DraftState.CLEAN, Trigger.SYNC_STALE): ConflictResolver._ignore,
    (DraftState.DIRTY, Trigger.SYNC_NEWER): ConflictResolver._enter_conflict,
    (DraftState.DIRTY, Trigger.SYNC_STALE): ConflictResolver._ignore,
    (DraftState.CONFLICT, Trigger.SYNC_NEWER): ConflictResolver._enter_conflict,
    (DraftState.CONFLICT, Trigger.SYNC_STALE): ConflictResolver._ignore,
    (DraftState.CONFLICT, Trigger.ACCEPT_SERVER): ConflictResolver._accept_server,
    (DraftState.CONFLICT, Trigger.FORCE_OVERWRITE): ConflictResolver._force_overwrite,
    (DraftState.CLEAN, Trigger.SUBMIT): ConflictResolver._submit,
    (DraftState.DIRTY, Trigger.SUBMIT): ConflictResolver._submit,
}
