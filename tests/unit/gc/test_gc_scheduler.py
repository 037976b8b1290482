"""Unit tests for GC scheduler.

Tests scheduler lifecycle, run_once behavior and task selection.
"""

from __future__ import annotations

import asyncio

import pytest

from berth.config import GCConfig, GCTaskConfig
from berth.services.gc.base import GCResult, GCTask
from berth.services.gc.scheduler import GCScheduler


class FakeGCTask(GCTask):
    """Fake GC task for testing."""

    def __init__(self, name: str, cleaned: int = 0, errors: list[str] | None = None):
        self._name = name
        self._cleaned = cleaned
        self._errors = errors or []
        self.run_count = 0

    @property
    def name(self) -> str:
        return self._name

    async def run(self) -> GCResult:
        self.run_count += 1
        result = GCResult(task_name=self._name, cleaned_count=self._cleaned)
        for error in self._errors:
            result.add_error(error)
        return result


class RaisingGCTask(GCTask):
    """GC task that raises an exception."""

    def __init__(self, name: str, error: Exception):
        self._name = name
        self._error = error
        self.run_count = 0

    @property
    def name(self) -> str:
        return self._name

    async def run(self) -> GCResult:
        self.run_count += 1
        raise self._error


@pytest.fixture
def gc_config():
    return GCConfig(
        enabled=True,
        run_on_startup=False,
        interval_seconds=1,
        container_drift=GCTaskConfig(enabled=True),
        volume_reconcile=GCTaskConfig(enabled=True),
    )


class TestGCScheduler:
    async def test_run_once_executes_all_tasks_in_order(self, gc_config):
        task1 = FakeGCTask("container_drift", cleaned=2)
        task2 = FakeGCTask("volume_reconcile", cleaned=3)
        scheduler = GCScheduler(tasks=[task1, task2], config=gc_config)

        results = await scheduler.run_once()

        assert [r.task_name for r in results] == ["container_drift", "volume_reconcile"]
        assert [r.cleaned_count for r in results] == [2, 3]
        assert scheduler.last_results == results
        assert scheduler.last_run_at is not None

    async def test_run_once_selects_tasks(self, gc_config):
        task1 = FakeGCTask("container_drift")
        task2 = FakeGCTask("volume_reconcile")
        scheduler = GCScheduler(tasks=[task1, task2], config=gc_config)

        results = await scheduler.run_once({"volume_reconcile"})

        assert [r.task_name for r in results] == ["volume_reconcile"]
        assert task1.run_count == 0

    async def test_task_exception_is_collected(self, gc_config):
        failing = RaisingGCTask("container_drift", RuntimeError("boom"))
        healthy = FakeGCTask("volume_reconcile", cleaned=1)
        scheduler = GCScheduler(tasks=[failing, healthy], config=gc_config)

        results = await scheduler.run_once()

        assert results[0].errors == ["Task failed: boom"]
        assert results[1].cleaned_count == 1

    async def test_cycle_in_progress(self, gc_config):
        release = asyncio.Event()
        observed: list[bool] = []

        class BlockingTask(FakeGCTask):
            async def run(self) -> GCResult:
                observed.append(scheduler.cycle_in_progress)
                await release.wait()
                return await super().run()

        scheduler = GCScheduler(tasks=[BlockingTask("container_drift")], config=gc_config)
        assert not scheduler.cycle_in_progress

        task = asyncio.create_task(scheduler.run_once())
        await asyncio.sleep(0)
        assert scheduler.cycle_in_progress

        release.set()
        await task
        assert observed == [True]
        assert not scheduler.cycle_in_progress

    async def test_start_and_stop(self, gc_config):
        task = FakeGCTask("container_drift")
        scheduler = GCScheduler(tasks=[task], config=gc_config)

        await scheduler.start()
        assert scheduler.is_running
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert not scheduler.is_running
        assert task.run_count >= 1

    async def test_stop_without_start(self, gc_config):
        scheduler = GCScheduler(tasks=[], config=gc_config)

        await scheduler.stop()

        assert not scheduler.is_running
