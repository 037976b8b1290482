"""GC lifecycle management for FastAPI lifespan integration."""

from __future__ import annotations

import structlog

from berth.api.dependencies import get_container_locks, get_driver, get_reconciliation_guard
from berth.config import GCConfig, get_settings
from berth.db.session import get_async_session
from berth.services.gc.base import GCResult, GCTask
from berth.services.gc.scheduler import GCScheduler
from berth.services.gc.tasks import ContainerDriftGC, VolumeReconcileGC

logger = structlog.get_logger()

# Global scheduler instance
_gc_scheduler: GCScheduler | None = None

TASK_NAMES = ("container_drift", "volume_reconcile")


class SessionPerCycleGCScheduler(GCScheduler):
    """GC Scheduler that creates fresh db sessions for each cycle.

    Long-lived sessions in a background task would hold stale identity maps
    across cycles.
    """

    def __init__(self, config: GCConfig) -> None:
        # Tasks are built per cycle
        super().__init__(tasks=[], config=config)
        self._driver = get_driver()

    async def _run_cycle(self, task_names: set[str] | None = None) -> list[GCResult]:
        gc_config = get_settings().gc

        self._log.info("gc.cycle.start")

        results = []
        async with get_async_session() as db_session:
            tasks: list[GCTask] = []

            if gc_config.container_drift.enabled:
                tasks.append(
                    ContainerDriftGC(self._driver, db_session, locks=get_container_locks())
                )

            if gc_config.volume_reconcile.enabled:
                tasks.append(
                    VolumeReconcileGC(self._driver, db_session, get_reconciliation_guard())
                )

            for task in self._select(tasks, task_names):
                results.append(await self._run_task(task))

        self._log.info(
            "gc.cycle.complete",
            total_cleaned=sum(r.cleaned_count for r in results),
            total_errors=sum(len(r.errors) for r in results),
        )
        return results


async def init_gc_scheduler() -> GCScheduler:
    """Initialize the GC scheduler.

    Called during FastAPI lifespan startup, after database initialization.

    The scheduler is always created (for the admin API manual trigger),
    but the background loop only starts if gc.enabled=true.
    """
    global _gc_scheduler

    gc_config = get_settings().gc

    logger.info(
        "gc.init",
        enabled=gc_config.enabled,
        interval_seconds=gc_config.interval_seconds,
        run_on_startup=gc_config.run_on_startup,
        tasks={
            "container_drift": gc_config.container_drift.enabled,
            "volume_reconcile": gc_config.volume_reconcile.enabled,
        },
    )

    _gc_scheduler = SessionPerCycleGCScheduler(config=gc_config)

    if not gc_config.enabled:
        logger.info("gc.background_disabled", reason="gc.enabled=false")
        return _gc_scheduler

    if gc_config.run_on_startup:
        logger.info("gc.run_on_startup.start")
        try:
            results = await _gc_scheduler.run_once()
            logger.info(
                "gc.run_on_startup.complete",
                cleaned=sum(r.cleaned_count for r in results),
                errors=sum(len(r.errors) for r in results),
            )
        except Exception as e:
            # Don't fail startup due to GC errors
            logger.exception("gc.run_on_startup.failed", error=str(e))

    await _gc_scheduler.start()

    return _gc_scheduler


async def shutdown_gc_scheduler() -> None:
    """Stop the GC scheduler gracefully."""
    global _gc_scheduler

    if _gc_scheduler is not None:
        await _gc_scheduler.stop()
        _gc_scheduler = None


def get_gc_scheduler() -> GCScheduler | None:
    """Get the current GC scheduler instance."""
    return _gc_scheduler
