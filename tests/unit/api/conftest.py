"""API test fixtures: the real app with managers bound to fakes."""

from __future__ import annotations

import httpx
import pytest

from berth.api.dependencies import (
    get_activity_recorder,
    get_container_manager,
    get_port_allocator,
    get_volume_manager,
    get_volume_reconciler,
)
from berth.main import create_app

ALICE = {"X-Owner": "alice"}
BOB = {"X-Owner": "bob"}
ADMIN = {"X-Owner": "ops", "X-Role": "admin"}


@pytest.fixture
def app(container_manager, volume_manager, reconciler, allocator, recorder):
    app = create_app()
    app.dependency_overrides[get_container_manager] = lambda: container_manager
    app.dependency_overrides[get_volume_manager] = lambda: volume_manager
    app.dependency_overrides[get_volume_reconciler] = lambda: reconciler
    app.dependency_overrides[get_port_allocator] = lambda: allocator
    app.dependency_overrides[get_activity_recorder] = lambda: recorder
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
