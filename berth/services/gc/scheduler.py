"""Background reconciliation scheduler.

Runs the drift and volume reconciliation tasks one after the other, either
on demand (admin API) or every ``gc.interval_seconds`` from a background
loop. A task that raises is reported as a failed GCResult and the cycle moves
on to the next task.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from berth.services.gc.base import GCResult, GCTask
from berth.utils.datetime import utcnow

if TYPE_CHECKING:
    from berth.config import GCConfig

logger = structlog.get_logger()


class GCScheduler:
    """Runs reconciliation tasks in cycles.

    ``run_once`` and the background loop share one cycle lock, so a manual run
    queues behind a scheduled one. The outcome of the last cycle is kept for
    ``GET /v1/admin/gc/status``.
    """

    def __init__(self, tasks: list[GCTask], config: "GCConfig") -> None:
        self._tasks = tasks
        self._config = config
        self._log = logger.bind(service="gc_scheduler")

        self._running = False
        self._task: asyncio.Task | None = None
        self._run_lock = asyncio.Lock()

        self.last_run_at: datetime | None = None
        self.last_results: list[GCResult] = []

    @property
    def is_running(self) -> bool:
        """Whether the background loop is running."""
        return self._running

    @property
    def cycle_in_progress(self) -> bool:
        return self._run_lock.locked()

    async def run_once(self, task_names: set[str] | None = None) -> list[GCResult]:
        """Run one cycle, waiting for a cycle already in flight.

        Args:
            task_names: Run only these tasks (None = all)
        """
        async with self._run_lock:
            results = await self._run_cycle(task_names)
            self.last_run_at = utcnow()
            self.last_results = results
            return results

    def _select(self, tasks: list[GCTask], task_names: set[str] | None) -> list[GCTask]:
        if task_names is None:
            return tasks
        return [t for t in tasks if t.name in task_names]

    async def _run_cycle(self, task_names: set[str] | None = None) -> list[GCResult]:
        selected = self._select(self._tasks, task_names)
        self._log.info("gc.cycle.start", tasks=[t.name for t in selected])

        results = [await self._run_task(t) for t in selected]

        self._log.info(
            "gc.cycle.complete",
            total_cleaned=sum(r.cleaned_count for r in results),
            total_skipped=sum(r.skipped_count for r in results),
            total_errors=sum(len(r.errors) for r in results),
        )
        return results

    async def _run_task(self, task: GCTask) -> GCResult:
        try:
            result = await task.run()
        except Exception as e:
            self._log.exception("gc.task.failed", task=task.name, error=str(e))
            result = GCResult(task_name=task.name)
            result.add_error(f"Task failed: {e}")
            return result

        result.task_name = task.name
        self._log.info(
            "gc.task.complete",
            task=task.name,
            cleaned=result.cleaned_count,
            skipped=result.skipped_count,
            errors=len(result.errors),
        )
        for error in result.errors:
            self._log.warning("gc.task.item_error", task=task.name, error=error)
        return result

    async def start(self) -> None:
        if self._running:
            self._log.warning("gc.scheduler.already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._background_loop())
        self._log.info("gc.scheduler.started", interval_seconds=self._config.interval_seconds)

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to exit."""
        if not self._running:
            return

        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self._log.info("gc.scheduler.stopped")

    async def _background_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                self._log.exception("gc.scheduler.cycle_error", error=str(e))

            try:
                await asyncio.sleep(self._config.interval_seconds)
            except asyncio.CancelledError:
                break
