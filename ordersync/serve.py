"""FastAPI application for the order sync service.

Run with ``ordersync-serve`` or ``uvicorn ordersync.serve:create_app --factory``.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from ordersync import __version__
from ordersync.config import Settings
from ordersync.services import Services
from ordersync.webhooks.handlers import register_order_routes

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Build the app. Services are constructed from settings unless given."""
    settings = settings or (services.settings if services else Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services or Services.build(settings)
        app.state.services = svc
        svc.start()
        try:
            yield
        finally:
            svc.shutdown()

    app = FastAPI(title="Order Sync", version=__version__, lifespan=lifespan)
    app.add_middleware(GZipMiddleware, minimum_size=settings.gzip_minimum_size)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
        allow_headers=["*"],
    )
    register_order_routes(app)
    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.environ.get("PORT", "9000"))
    uvicorn.run("ordersync.serve:create_app", factory=True, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
