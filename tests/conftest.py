"""Shared fixtures for the order sync test suite."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from ordersync.config import Settings
from ordersync.events import SyncBroadcaster
from ordersync.orders.processor import OrderProcessor
from ordersync.orders.store import InMemoryOrderStore
from ordersync.serve import create_app


@pytest.fixture()
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture()
def broadcaster() -> SyncBroadcaster:
    return SyncBroadcaster(queue_size=100)


@pytest.fixture()
def processor(store: InMemoryOrderStore, broadcaster: SyncBroadcaster) -> OrderProcessor:
    return OrderProcessor(store, broadcaster)


@pytest.fixture()
def settings() -> Settings:
    """In-process backend; the worker is driven explicitly by tests."""
    return Settings(backend="memory", start_worker=False)


@pytest.fixture()
def app(settings: Settings):
    return create_app(settings)


@pytest.fixture()
def client(app):
    """TestClient with lifespan run (services built and started)."""
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def services(app, client):
    return app.state.services
