"""API tests for admin GC endpoints."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from berth.services.gc.base import GCResult
from tests.unit.api.conftest import ADMIN, ALICE


class FakeScheduler:
    def __init__(self, *, in_progress: bool = False) -> None:
        self.cycle_in_progress = in_progress
        self.is_running = True
        self.last_run_at = None
        self.run_once = AsyncMock(
            return_value=[
                GCResult(task_name="container_drift", cleaned_count=2),
                GCResult(task_name="volume_reconcile", errors=["runtime unreachable"]),
            ]
        )


@pytest.fixture
def scheduler(monkeypatch):
    scheduler = FakeScheduler()
    monkeypatch.setattr("berth.api.v1.admin.get_gc_scheduler", lambda: scheduler)
    return scheduler


class TestGCRun:
    async def test_requires_admin(self, client, scheduler):
        resp = await client.post("/v1/admin/gc/run", headers=ALICE)

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        scheduler.run_once.assert_not_awaited()

    async def test_runs_all_tasks(self, client, scheduler):
        resp = await client.post("/v1/admin/gc/run", headers=ADMIN)

        assert resp.status_code == 200
        body = resp.json()
        assert body["total_cleaned"] == 2
        assert body["total_errors"] == 1
        scheduler.run_once.assert_awaited_once_with(None)

    async def test_runs_selected_tasks(self, client, scheduler):
        await client.post("/v1/admin/gc/run", json={"tasks": ["volume_reconcile"]}, headers=ADMIN)

        scheduler.run_once.assert_awaited_once_with({"volume_reconcile"})

    async def test_unknown_task(self, client, scheduler):
        resp = await client.post("/v1/admin/gc/run", json={"tasks": ["idle_session"]}, headers=ADMIN)

        assert resp.status_code == 400

    async def test_cycle_in_progress_is_423(self, client, scheduler):
        scheduler.cycle_in_progress = True

        resp = await client.post("/v1/admin/gc/run", headers=ADMIN)

        assert resp.status_code == 423
        scheduler.run_once.assert_not_awaited()

    async def test_scheduler_missing(self, client, monkeypatch):
        monkeypatch.setattr("berth.api.v1.admin.get_gc_scheduler", lambda: None)

        resp = await client.post("/v1/admin/gc/run", headers=ADMIN)

        assert resp.status_code == 503


class TestGCStatus:
    async def test_status(self, client, scheduler):
        resp = await client.get("/v1/admin/gc/status", headers=ADMIN)

        assert resp.status_code == 200
        body = resp.json()
        assert body["is_running"] is True
        assert body["cycle_in_progress"] is False
        assert set(body["tasks"]) == {"container_drift", "volume_reconcile"}
