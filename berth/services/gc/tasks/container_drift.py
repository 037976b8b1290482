"""ContainerDriftGC - converge container records on the runtime.

For every ContainerRecord:
- runtime object gone: delete the record and its mount rows
- runtime state differs from ``status``: refresh ``status``

Each correction writes a CONTAINER_SYNC activity. If the runtime cannot be
listed the pass stops before touching the store.

Records created after the runtime listing was taken are skipped: their
runtime object may simply not have been listed yet.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from berth.concurrency.locks import KeyedLocks
from berth.errors import RuntimeUnreachableError
from berth.models.activity import ActivityType
from berth.models.container import ContainerRecord, ContainerState
from berth.models.volume import ContainerVolume
from berth.services.activity import SYSTEM_ACTOR, ActivityRecorder
from berth.services.gc.base import GCResult, GCTask
from berth.utils.datetime import utcnow

if TYPE_CHECKING:
    from berth.drivers.base import Driver

logger = structlog.get_logger()


class ContainerDriftGC(GCTask):
    """GC task reconciling container records with runtime containers."""

    def __init__(
        self,
        driver: "Driver",
        db_session: AsyncSession,
        *,
        locks: KeyedLocks | None = None,
        recorder: ActivityRecorder | None = None,
    ) -> None:
        self._driver = driver
        self._db = db_session
        self._locks = locks or KeyedLocks()
        self._recorder = recorder or ActivityRecorder(db_session)
        self._log = logger.bind(gc_task="container_drift")

    @property
    def name(self) -> str:
        return "container_drift"

    async def run(self) -> GCResult:
        result = GCResult(task_name=self.name)
        listed_at = utcnow()

        try:
            containers = await self._driver.list_containers(all=True)
        except RuntimeUnreachableError as e:
            self._log.warning("gc.container_drift.runtime_unreachable", error=e.message)
            result.add_error(f"runtime unreachable: {e.message}")
            return result

        observed = {c.runtime_id: c.state for c in containers}

        rows = await self._db.execute(
            select(ContainerRecord.id, ContainerRecord.created_at)
        )
        for row in rows.all():
            if row.created_at >= listed_at:
                result.skipped_count += 1
                continue
            try:
                lock = await self._locks.get(row.id)
                async with lock:
                    if await self._process(row.id, observed):
                        result.cleaned_count += 1
            except Exception as e:
                await self._db.rollback()
                self._log.exception(
                    "gc.container_drift.item_error",
                    container_id=row.id,
                    error=str(e),
                )
                result.add_error(f"container {row.id}: {e}")

        return result

    async def _process(self, container_id: str, observed: dict[str, ContainerState]) -> bool:
        """Correct one record. Returns True if anything changed."""
        # Re-read under the lock: a user action may have just changed it
        record = await self._db.get(ContainerRecord, container_id, populate_existing=True)
        if record is None:
            return False

        name = record.name
        previous = record.status

        if record.runtime_id is None or record.runtime_id not in observed:
            self._log.info(
                "gc.container_drift.vanished",
                container_id=container_id,
                runtime_id=record.runtime_id,
            )
            mounts = await self._db.execute(
                select(ContainerVolume).where(ContainerVolume.container_id == container_id)
            )
            for mount in mounts.scalars().all():
                await self._db.delete(mount)
            await self._db.delete(record)
            await self._db.commit()
            await self._locks.discard(container_id)

            await self._recorder.record(
                ActivityType.CONTAINER_SYNC,
                actor=SYSTEM_ACTOR,
                target=container_id,
                description=f"Container {name} no longer exists on the runtime",
                snapshot={
                    "container_name": name,
                    "previous_state": previous.value,
                    "new_state": ContainerState.REMOVED.value,
                },
            )
            return True

        state = observed[record.runtime_id]
        if state == previous:
            return False

        self._log.info(
            "gc.container_drift.state_changed",
            container_id=container_id,
            previous=previous.value,
            current=state.value,
        )
        now = utcnow()
        record.status = state
        record.last_observed_at = now
        record.updated_at = now
        self._db.add(record)
        await self._db.commit()

        await self._recorder.record(
            ActivityType.CONTAINER_SYNC,
            actor=SYSTEM_ACTOR,
            target=container_id,
            description=f"Container {name} status refreshed from the runtime",
            snapshot={
                "container_name": name,
                "previous_state": previous.value,
                "new_state": state.value,
            },
        )
        return True
