"""VolumeReconcileGC - periodic volume reconciliation for every owner.

Runs VolumeReconciler without ``force`` so that a pass already started by a
caller wins; the owner is then skipped until the next cycle.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from berth.concurrency.guard import ReconciliationGuard
from berth.errors import ReconciliationInProgressError
from berth.models.volume import VolumeRecord
from berth.services.activity import SYSTEM_ACTOR
from berth.services.gc.base import GCResult, GCTask
from berth.services.volumes import VolumeReconciler

if TYPE_CHECKING:
    from berth.drivers.base import Driver

logger = structlog.get_logger()


class VolumeReconcileGC(GCTask):
    """GC task reconciling volume records owner by owner."""

    def __init__(
        self,
        driver: "Driver",
        db_session: AsyncSession,
        guard: ReconciliationGuard,
    ) -> None:
        self._db = db_session
        self._reconciler = VolumeReconciler(driver, db_session, guard)
        self._log = logger.bind(gc_task="volume_reconcile")

    @property
    def name(self) -> str:
        return "volume_reconcile"

    async def run(self) -> GCResult:
        result = GCResult(task_name=self.name)

        owners = await self._db.execute(select(VolumeRecord.owner).distinct())
        for owner in sorted(owners.scalars().all()):
            try:
                report = await self._reconciler.run_pass(owner, actor=SYSTEM_ACTOR)
            except ReconciliationInProgressError:
                self._log.info("gc.volume_reconcile.skip.in_progress", owner=owner)
                result.skipped_count += 1
                continue
            except Exception as e:
                await self._db.rollback()
                self._log.exception(
                    "gc.volume_reconcile.item_error",
                    owner=owner,
                    error=str(e),
                )
                result.add_error(f"owner {owner}: {e}")
                continue

            if not report.runtime_reachable:
                result.add_error("runtime unreachable")
                break

            result.cleaned_count += report.mutations

        return result
