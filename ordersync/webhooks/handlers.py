"""HTTP and WebSocket handlers for the order sync service.

Routes:
- POST /webhooks/shopify   ingest one order webhook (200 accepted|duplicate)
- GET  /webhooks/status    ingest counters per outcome
- GET  /orders             offset listing
- GET  /orders/cursor      cursor listing
- WS   /sync               ORDER_SYNCED fan-out, UPDATE_ORDER writes

Response contract for the ingest endpoint:
- 200 for both accepted and duplicate (the platform stops retrying)
- 400 for malformed payloads or a missing webhook id header
- 503 when the job could not be queued, so the platform retries
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Literal

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from ordersync.errors import EnqueueFailure, MalformedPayload, OptimisticLockConflict, OrderNotFound
from ordersync.events import Subscription
from ordersync.orders.pagination import list_orders, list_orders_with_cursor
from ordersync.orders.processor import UpdateOrderMessage
from ordersync.services import Services

logger = logging.getLogger(__name__)

EVENT_ORDER_SYNCED = "ORDER_SYNCED"
EVENT_ORDER_CONFLICT = "ORDER_CONFLICT"
EVENT_UPDATE_ORDER = "UPDATE_ORDER"
EVENT_ERROR = "ERROR"


def _services(app: Any) -> Services:
    return app.state.services


async def _handle_webhook(request: Request) -> JSONResponse:
    services = _services(request.app)
    headers = {k.lower(): v for k, v in request.headers.items()}
    webhook_id = headers.get("x-shopify-webhook-id")
    topic = headers.get("x-shopify-topic")

    body = await request.body()
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.info("Rejected webhook %s: body is not JSON", webhook_id)
        return JSONResponse({"status": "rejected", "webhookId": webhook_id}, status_code=400)

    try:
        result = await run_in_threadpool(services.gate.ingest, webhook_id, topic, payload)
    except MalformedPayload as exc:
        logger.info("Rejected webhook %s: %s", webhook_id, exc.detail)
        return JSONResponse({"status": "rejected", "webhookId": webhook_id}, status_code=400)
    except EnqueueFailure:
        return JSONResponse({"status": "unavailable", "webhookId": webhook_id}, status_code=503)

    return JSONResponse(result.to_dict(), status_code=200)


async def _pump_events(websocket: WebSocket, sub: Subscription) -> None:
    while True:
        event = await sub.queue.get()
        await websocket.send_json({"event": EVENT_ORDER_SYNCED, "data": event.to_dict()})


async def _handle_viewer_frame(websocket: WebSocket, services: Services, raw: str) -> None:
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError:
        await websocket.send_json({"event": EVENT_ERROR, "data": {"detail": "invalid JSON"}})
        return
    if not isinstance(frame, dict) or frame.get("event") != EVENT_UPDATE_ORDER:
        await websocket.send_json({"event": EVENT_ERROR, "data": {"detail": "unsupported event"}})
        return

    try:
        message = UpdateOrderMessage.model_validate(frame.get("data"))
    except ValidationError:
        await websocket.send_json({"event": EVENT_ERROR, "data": {"detail": "invalid UPDATE_ORDER"}})
        return

    try:
        await run_in_threadpool(services.processor.apply_edit, message)
    except OrderNotFound:
        await websocket.send_json(
            {"event": EVENT_ERROR, "data": {"detail": "order not found", "orderId": message.order_id}}
        )
    except OptimisticLockConflict as exc:
        current = await run_in_threadpool(services.store.get, message.order_id)
        await websocket.send_json({
            "event": EVENT_ORDER_CONFLICT,
            "data": {
                "orderId": message.order_id,
                "expectedVersion": exc.expected_version,
                "currentVersion": current.version if current else None,
            },
        })


async def _receive_frames(websocket: WebSocket, services: Services) -> None:
    try:
        while True:
            raw = await websocket.receive_text()
            await _handle_viewer_frame(websocket, services, raw)
    except WebSocketDisconnect:
        return


async def _serve_viewer(websocket: WebSocket, services: Services, sub: Subscription) -> None:
    """Run the event pump and the frame reader until either one stops.

    A pump that dies (e.g. a failed send) closes the socket, so the viewer
    reconnects instead of sitting on a channel that no longer delivers.
    """
    sender = asyncio.create_task(_pump_events(websocket, sub))
    receiver = asyncio.create_task(_receive_frames(websocket, services))
    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sender, receiver):
            task.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)

    for task in done:
        exc = task.exception()
        if exc is None:
            continue
        logger.warning("Sync viewer %s stopped: %r", sub.sub_id, exc)
        if task is sender:
            # Socket may already be gone; close is best effort
            with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                await websocket.close(code=1011)


def register_order_routes(app: FastAPI) -> None:
    """Register webhook, listing and sync routes on the FastAPI app."""

    @app.post("/webhooks/shopify")
    async def shopify_webhook(request: Request):
        """Receive an order lifecycle webhook."""
        return await _handle_webhook(request)

    @app.get("/webhooks/status")
    def webhook_status(request: Request):
        """Webhook ingest counts by outcome."""
        return {"counts": _services(request.app).gate.counts}

    @app.get("/orders")
    def get_orders(
        request: Request,
        skip: int = Query(0, ge=0),
        take: int | None = Query(None, ge=1),
        sort_by: Literal["createdAt", "updatedAt", "status"] = Query("updatedAt", alias="sortBy"),
        sort_order: Literal["ASC", "DESC"] = Query("DESC", alias="sortOrder"),
    ):
        """Offset-paginated order listing."""
        services = _services(request.app)
        take = take or services.settings.default_page_size
        page = list_orders(services.store, skip, take, sort_by, sort_order)
        return page.to_dict()

    @app.get("/orders/cursor")
    def get_orders_with_cursor(
        request: Request,
        cursor: str | None = None,
        limit: int | None = Query(None, ge=1),
    ):
        """Cursor-paginated order listing (limit capped at max_cursor_limit)."""
        services = _services(request.app)
        settings = services.settings
        page = list_orders_with_cursor(
            services.store,
            cursor,
            limit or settings.default_page_size,
            max_limit=settings.max_cursor_limit,
        )
        return page.to_dict()

    @app.get("/health")
    def health(request: Request):
        services = _services(request.app)
        return {
            "status": "ok",
            "worker": services.worker.running,
            "subscribers": services.broadcaster.subscriber_count,
        }

    @app.websocket("/sync")
    async def sync_socket(websocket: WebSocket):
        """Real-time order sync channel."""
        services = _services(websocket.app)
        # Subscribe first so nothing published after the handshake is missed
        with services.broadcaster.subscribe() as sub:
            await websocket.accept()
            await _serve_viewer(websocket, services, sub)

    logger.info("Order routes registered: /webhooks/shopify, /orders, /orders/cursor, /sync")
