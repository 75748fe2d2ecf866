"""End-to-end tests for the HTTP and WebSocket surface (in-memory backend)."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient
from factories import make_payload, seed_orders

from ordersync.client import ConflictResolver, DraftState
from ordersync.config import Settings
from ordersync.errors import EnqueueFailure
from ordersync.events import SyncBroadcaster
from ordersync.orders.models import OrderStatus, SyncEvent, new_order
from ordersync.serve import create_app
from ordersync.webhooks.handlers import _serve_viewer


def _post_webhook(client, webhook_id="wh-1", topic="orders/create", **payload):
    headers = {"X-Shopify-Topic": topic}
    if webhook_id is not None:
        headers["X-Shopify-Webhook-Id"] = webhook_id
    return client.post("/webhooks/shopify", json=make_payload(**payload), headers=headers)


class TestWebhookEndpoint:
    """POST /webhooks/shopify."""

    def test_accepted_then_duplicate(self, client, services):
        first = _post_webhook(client, "wh-1")
        second = _post_webhook(client, "wh-1")
        assert first.status_code == 200
        assert first.json() == {"status": "accepted", "webhookId": "wh-1"}
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"

        assert services.worker.drain() == 1
        order = services.store.get_by_external_id("1001")
        assert order.version == 1
        assert order.status is OrderStatus.CONFIRMED

    def test_status_counts(self, client):
        _post_webhook(client, "wh-1")
        _post_webhook(client, "wh-1")
        counts = client.get("/webhooks/status").json()["counts"]
        assert counts["accepted"] == 1
        assert counts["duplicate"] == 1

    def test_malformed_body_is_400(self, client, services):
        resp = client.post(
            "/webhooks/shopify",
            json={"financial_status": "paid"},
            headers={"X-Shopify-Webhook-Id": "wh-1"},
        )
        assert resp.status_code == 400
        assert services.queue.ready_count() == 0

    def test_non_json_body_is_400(self, client):
        resp = client.post(
            "/webhooks/shopify",
            content=b"{not json",
            headers={"X-Shopify-Webhook-Id": "wh-1", "Content-Type": "application/json"},
        )
        assert resp.status_code == 400

    def test_missing_webhook_id_is_400(self, client):
        assert _post_webhook(client, webhook_id=None).status_code == 400

    def test_queue_down_is_503_and_retry_succeeds(self, client, services, monkeypatch):
        def refuse(job):
            raise EnqueueFailure("queue down")

        with monkeypatch.context() as m:
            m.setattr(services.queue, "enqueue", refuse)
            assert _post_webhook(client, "wh-1").status_code == 503

        assert not services.dedup.seen("wh-1")
        retry = _post_webhook(client, "wh-1")
        assert retry.json()["status"] == "accepted"


class TestListingEndpoints:
    """GET /orders and /orders/cursor."""

    def test_offset_listing(self, client, services):
        seed_orders(services.store, 120)
        body = client.get("/orders", params={"skip": 0, "take": 50}).json()
        assert body["total"] == 120
        assert len(body["data"]) == 50
        assert body["hasMore"] is True

        tail = client.get("/orders", params={"skip": 100, "take": 50}).json()
        assert len(tail["data"]) == 20
        assert tail["hasMore"] is False

    def test_large_listing_is_gzipped(self, client, services):
        seed_orders(services.store, 120)
        resp = client.get("/orders", params={"take": 100}, headers={"Accept-Encoding": "gzip"})
        assert resp.headers["content-encoding"] == "gzip"

    @pytest.mark.parametrize(
        "params",
        [{"take": 0}, {"skip": -1}, {"sortBy": "total"}, {"sortOrder": "sideways"}],
    )
    def test_invalid_query_is_422(self, client, params):
        assert client.get("/orders", params=params).status_code == 422

    def test_cursor_walk(self, client, services):
        orders = seed_orders(services.store, 120, per_timestamp=3)
        seen, cursor = [], None
        while True:
            params = {"limit": 50}
            if cursor:
                params["cursor"] = cursor
            body = client.get("/orders/cursor", params=params).json()
            seen.extend(row["id"] for row in body["data"])
            if not body["hasMore"]:
                assert "nextCursor" not in body
                break
            cursor = body["nextCursor"]
        assert sorted(seen) == sorted(o.id for o in orders)

    def test_cursor_limit_is_capped(self, client, services):
        seed_orders(services.store, 150)
        body = client.get("/orders/cursor", params={"limit": 500}).json()
        assert len(body["data"]) == 100
        assert body["hasMore"] is True

    def test_cursor_limit_follows_settings(self):
        app = create_app(Settings(backend="memory", start_worker=False, max_cursor_limit=150))
        with TestClient(app) as client:
            seed_orders(app.state.services.store, 200)
            body = client.get("/orders/cursor", params={"limit": 500}).json()
        assert len(body["data"]) == 150
        assert body["hasMore"] is True

    def test_garbage_cursor_restarts(self, client, services):
        seed_orders(services.store, 3)
        body = client.get("/orders/cursor", params={"cursor": "!!garbage!!"}).json()
        assert len(body["data"]) == 3


class TestSyncSocket:
    """WS /sync."""

    def test_processed_webhook_is_broadcast(self, client, services):
        with client.websocket_connect("/sync") as ws:
            _post_webhook(client, "wh-1", financial_status="paid", total_price="150.00")
            services.worker.drain()
            frame = ws.receive_json()
        assert frame["event"] == "ORDER_SYNCED"
        assert frame["data"]["version"] == 1
        assert frame["data"]["status"] == "CONFIRMED"
        assert frame["data"]["shippingFee"] == 5.99

    def test_update_order_applies_and_broadcasts(self, client, services):
        _post_webhook(client, "wh-1")
        services.worker.drain()
        order = services.store.get_by_external_id("1001")
        with client.websocket_connect("/sync") as ws:
            ws.send_json({
                "event": "UPDATE_ORDER",
                "data": {"orderId": order.id, "data": {"status": "SHIPPED"}, "expectedVersion": 1},
            })
            frame = ws.receive_json()
        assert frame["event"] == "ORDER_SYNCED"
        assert frame["data"]["version"] == 2
        assert services.store.get(order.id).status is OrderStatus.SHIPPED

    def test_stale_update_gets_conflict(self, client, services):
        _post_webhook(client, "wh-1")
        _post_webhook(client, "wh-2", fulfillment_status="fulfilled")
        services.worker.drain()
        order = services.store.get_by_external_id("1001")
        with client.websocket_connect("/sync") as ws:
            ws.send_json({
                "event": "UPDATE_ORDER",
                "data": {"orderId": order.id, "data": {"shippingFee": 0}, "expectedVersion": 1},
            })
            frame = ws.receive_json()
        assert frame == {
            "event": "ORDER_CONFLICT",
            "data": {"orderId": order.id, "expectedVersion": 1, "currentVersion": 2},
        }
        assert services.store.get(order.id).version == 2

    @pytest.mark.parametrize(
        "raw, detail",
        [
            ("not json", "invalid JSON"),
            ('{"event": "DELETE_ORDER"}', "unsupported event"),
            ('{"event": "UPDATE_ORDER", "data": {"orderId": "x"}}', "invalid UPDATE_ORDER"),
            ('{"event": "UPDATE_ORDER", "data": {"orderId": "x", "data": {}}}', "order not found"),
        ],
    )
    def test_bad_frames_get_error(self, client, raw, detail):
        with client.websocket_connect("/sync") as ws:
            ws.send_text(raw)
            frame = ws.receive_json()
        assert frame["event"] == "ERROR"
        assert frame["data"]["detail"] == detail

    def test_resolver_round_trip(self, client, services):
        """A viewer edits, the server moves on, the viewer forces its edit through."""
        _post_webhook(client, "wh-1", financial_status="paid")
        services.worker.drain()
        order = services.store.get_by_external_id("1001")

        with client.websocket_connect("/sync") as ws:
            resolver = ConflictResolver.from_order(order)
            resolver.edit("shippingFee", "2.50")

            _post_webhook(client, "wh-2", fulfillment_status="fulfilled")
            services.worker.drain()
            assert resolver.handle_frame(ws.receive_json()) is DraftState.CONFLICT

            resolver.force_overwrite()
            ws.send_json(resolver.submit())
            echo = ws.receive_json()
            assert resolver.on_sync(SyncEvent.from_dict(echo["data"])) is DraftState.CLEAN

        final = services.store.get(order.id)
        assert final.version == 3
        assert str(final.shipping_fee) == "2.50"
        assert final.status is OrderStatus.CONFIRMED


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["worker"] is False


class _StubSocket:
    """Minimal socket: records close codes, optionally fails sends or disconnects."""

    def __init__(self, *, fail_send: bool = False, disconnect: bool = False) -> None:
        self.fail_send = fail_send
        self.disconnect = disconnect
        self.sent: list[dict] = []
        self.closed_with: int | None = None

    async def send_json(self, data: dict) -> None:
        if self.fail_send:
            raise RuntimeError("send failed")
        self.sent.append(data)

    async def receive_text(self) -> str:
        if self.disconnect:
            raise WebSocketDisconnect(code=1000)
        await asyncio.Event().wait()
        return ""

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code


class TestViewerLoop:
    """Pump and reader lifetimes for one viewer."""

    def _event(self) -> SyncEvent:
        return SyncEvent.from_order(new_order("1001", OrderStatus.CONFIRMED, Decimal("5.99")))

    def test_failed_pump_closes_socket(self):
        broadcaster = SyncBroadcaster()
        ws = _StubSocket(fail_send=True)

        async def run() -> None:
            with broadcaster.subscribe() as sub:
                broadcaster.publish(self._event())
                await asyncio.wait_for(_serve_viewer(ws, MagicMock(), sub), timeout=2)

        asyncio.run(run())
        assert ws.closed_with == 1011

    def test_disconnect_stops_pump_without_close(self):
        broadcaster = SyncBroadcaster()
        ws = _StubSocket(disconnect=True)

        async def run() -> None:
            with broadcaster.subscribe() as sub:
                await asyncio.wait_for(_serve_viewer(ws, MagicMock(), sub), timeout=2)

        asyncio.run(run())
        assert ws.closed_with is None
        assert broadcaster.subscriber_count == 0
