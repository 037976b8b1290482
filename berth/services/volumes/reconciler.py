"""VolumeReconciler - converges VolumeRecord rows with runtime volumes.

One pass, for one owner:
1. Load the owner's records and their container mounts
2. List runtime volumes and containers (unreachable runtime: return
   records as-is, every row annotated ``exists_in_docker=False``)
3. Plan the diff:
   - to_remove: record absent from runtime AND mounted by no container
   - to_update: record present in runtime with a different mountpoint
   - to_add: runtime volume not recorded, unowned or owned by this owner
   - to_relink: record present in runtime whose container mounts differ
     from the mounts of the runtime's containers
4. Apply: tombstone / update / insert / relink, one activity entry per
   mutation
5. Return live records annotated with ``exists_in_docker``

Passes are serialized by the injected ReconciliationGuard. A second pass
without external change plans nothing.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from berth.concurrency.guard import ReconciliationGuard
from berth.config import VolumesConfig, get_settings
from berth.drivers.base import ContainerInfo, Driver, RuntimeVolume
from berth.errors import RuntimeUnreachableError
from berth.models.activity import ActivityType
from berth.models.container import ContainerRecord
from berth.models.volume import ContainerVolume, VolumeRecord
from berth.services.activity import ActivityRecorder
from berth.services.volumes.ownership import VolumeOwner
from berth.utils.datetime import utcnow

logger = structlog.get_logger()

# (container record id, mount path)
Mount = tuple[str, str]


@dataclass
class Relink:
    """Mount associations of one record that no longer match the runtime."""

    record: VolumeRecord
    current: list[ContainerVolume]
    desired: list[Mount]


@dataclass
class ReconcilePlan:
    """Mutations one reconciliation pass will apply."""

    to_remove: list[VolumeRecord] = field(default_factory=list)
    to_update: list[tuple[VolumeRecord, RuntimeVolume]] = field(default_factory=list)
    to_add: list[RuntimeVolume] = field(default_factory=list)
    to_relink: list[Relink] = field(default_factory=list)
    # Runtime mounts by volume name, used when inserting adopted volumes
    associations: dict[str, list[Mount]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.to_remove or self.to_update or self.to_add or self.to_relink)

    def summary(self) -> dict[str, list[str]]:
        return {
            "to_remove": [r.name for r in self.to_remove],
            "to_update": [r.name for r, _ in self.to_update],
            "to_add": [v.name for v in self.to_add],
            "to_relink": [r.record.name for r in self.to_relink],
        }


@dataclass
class ReconciledVolume:
    """A live volume record after reconciliation."""

    record: VolumeRecord
    exists_in_docker: bool
    mounts: list[ContainerVolume] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.record.id,
            "name": self.record.name,
            "owner": self.record.owner,
            "driver": self.record.driver,
            "mountpoint": self.record.mountpoint,
            "size": self.record.size,
            "created_at": self.record.created_at.isoformat(),
            "updated_at": self.record.updated_at.isoformat(),
            "exists_in_docker": self.exists_in_docker,
            "mounts": [
                {"container_id": m.container_id, "mount_path": m.mount_path}
                for m in self.mounts
            ],
        }


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation pass."""

    volumes: list[ReconciledVolume]
    plan: ReconcilePlan = field(default_factory=ReconcilePlan)
    runtime_reachable: bool = True

    @property
    def mutations(self) -> int:
        return (
            len(self.plan.to_remove)
            + len(self.plan.to_update)
            + len(self.plan.to_add)
            + len(self.plan.to_relink)
        )


def _mounts_snapshot(mounts: list[Mount]) -> list[dict[str, str]]:
    return [{"container_id": c, "mount_path": p} for c, p in mounts]


class VolumeReconciler:
    """Keeps VolumeRecord rows consistent with the runtime volume inventory."""

    def __init__(
        self,
        driver: Driver,
        db_session: AsyncSession,
        guard: ReconciliationGuard,
        *,
        config: VolumesConfig | None = None,
        recorder: ActivityRecorder | None = None,
    ) -> None:
        self._driver = driver
        self._db = db_session
        self._guard = guard
        self._config = config or get_settings().volumes
        self._recorder = recorder or ActivityRecorder(db_session)
        self._log = logger.bind(service="volume_reconciler")

    async def reconcile(
        self,
        owner: VolumeOwner | str,
        *,
        force: bool = False,
        actor: str | None = None,
    ) -> list[ReconciledVolume]:
        """Run one reconciliation pass for ``owner``.

        Args:
            owner: Owner whose records are reconciled
            force: Run even if another pass is in flight
            actor: Actor recorded on activities (defaults to the owner)

        Raises:
            ReconciliationInProgressError: If another pass holds the guard
                and ``force`` is not set
        """
        report = await self.run_pass(owner, force=force, actor=actor)
        return report.volumes

    async def run_pass(
        self,
        owner: VolumeOwner | str,
        *,
        force: bool = False,
        actor: str | None = None,
    ) -> ReconcileReport:
        """Same as ``reconcile`` but also returns the applied plan."""
        owner = VolumeOwner.coerce(owner)
        async with self._guard.hold(owner.id, force=force):
            return await self._reconcile(owner, actor or owner.id)

    async def _reconcile(self, owner: VolumeOwner, actor: str) -> ReconcileReport:
        records = await self._load_records(owner)
        mounts = await self._load_mounts([r.id for r in records])

        try:
            runtime_volumes = await self._driver.list_volumes()
            runtime_containers = await self._driver.list_containers(all=True)
        except RuntimeUnreachableError as e:
            self._log.warning(
                "volumes.reconcile.runtime_unreachable",
                owner=owner.id,
                error=e.message,
            )
            return ReconcileReport(
                volumes=[
                    ReconciledVolume(record=r, exists_in_docker=False, mounts=mounts.get(r.id, []))
                    for r in records
                    if not r.is_tombstoned(self._config.tombstone_prefix)
                ],
                runtime_reachable=False,
            )

        runtime_by_name = {v.name: v for v in runtime_volumes}
        claimed = await self._names_recorded_elsewhere(owner, runtime_by_name)

        associations = await self._runtime_associations(runtime_containers)

        plan = self.plan(
            owner,
            records,
            mounts,
            runtime_volumes,
            claimed=claimed,
            associations=associations,
        )
        if plan.is_empty:
            self._log.debug("volumes.reconcile.noop", owner=owner.id)
        else:
            self._log.info("volumes.reconcile.plan", owner=owner.id, **plan.summary())
            await self._apply(plan, owner, actor)

        refreshed = await self._load_records(owner)
        mounts = await self._load_mounts([r.id for r in refreshed])
        return ReconcileReport(
            volumes=[
                ReconciledVolume(
                    record=r,
                    exists_in_docker=r.name in runtime_by_name,
                    mounts=mounts.get(r.id, []),
                )
                for r in refreshed
                if not r.is_tombstoned(self._config.tombstone_prefix)
            ],
            plan=plan,
        )

    def plan(
        self,
        owner: VolumeOwner,
        records: list[VolumeRecord],
        mounts: dict[str, list[ContainerVolume]],
        runtime_volumes: list[RuntimeVolume],
        *,
        claimed: set[str] | None = None,
        associations: dict[str, list[Mount]] | None = None,
    ) -> ReconcilePlan:
        """Compute the diff. Pure: touches neither store nor runtime.

        Args:
            claimed: Runtime volume names already recorded for another owner
            associations: Runtime mounts by volume name. None skips the
                association refresh.
        """
        prefix = self._config.tombstone_prefix
        runtime_by_name = {v.name: v for v in runtime_volumes}
        recorded_names = {r.name for r in records} | (claimed or set())

        plan = ReconcilePlan(associations=dict(associations or {}))
        for record in records:
            runtime = runtime_by_name.get(record.name)
            if runtime is None:
                if record.is_tombstoned(prefix):
                    continue
                # Mounted volumes are never auto-removed
                if mounts.get(record.id):
                    continue
                plan.to_remove.append(record)
                continue

            if record.mountpoint != runtime.mountpoint:
                # Also revives tombstoned records whose volume came back
                plan.to_update.append((record, runtime))

            if associations is not None:
                current = mounts.get(record.id, [])
                desired = sorted(set(associations.get(record.name, [])))
                if sorted((m.container_id, m.mount_path) for m in current) != desired:
                    plan.to_relink.append(Relink(record=record, current=current, desired=desired))

        for volume in runtime_volumes:
            if volume.name in recorded_names:
                continue
            if owner.may_adopt(volume.labels, self._config.owner_label):
                plan.to_add.append(volume)

        return plan

    async def _apply(self, plan: ReconcilePlan, owner: VolumeOwner, actor: str) -> None:
        now = utcnow()
        prefix = self._config.tombstone_prefix
        activities: list[tuple[ActivityType, str, str, dict[str, Any]]] = []

        for record in plan.to_remove:
            previous = record.mountpoint
            record.tombstone(now, prefix)
            self._db.add(record)
            activities.append(
                (
                    ActivityType.VOLUME_DELETE,
                    record.name,
                    f"Volume {record.name} no longer exists on the runtime",
                    {"volume_id": record.id, "previous_mountpoint": previous, "mountpoint": record.mountpoint},
                )
            )

        for record, runtime in plan.to_update:
            previous = record.mountpoint
            record.mountpoint = runtime.mountpoint
            record.driver = runtime.driver
            record.updated_at = now
            self._db.add(record)
            activities.append(
                (
                    ActivityType.VOLUME_UPDATE,
                    record.name,
                    f"Volume {record.name} mountpoint refreshed from the runtime",
                    {"volume_id": record.id, "previous_mountpoint": previous, "mountpoint": record.mountpoint},
                )
            )

        for volume in plan.to_add:
            record = VolumeRecord(
                id=f"vol-{uuid.uuid4().hex[:12]}",
                owner=owner.id,
                name=volume.name,
                driver=volume.driver,
                mountpoint=volume.mountpoint,
                size=0,
                created_at=now,
                updated_at=now,
            )
            self._db.add(record)
            adopted_mounts = sorted(set(plan.associations.get(volume.name, [])))
            for container_id, mount_path in adopted_mounts:
                self._db.add(
                    ContainerVolume(
                        container_id=container_id,
                        volume_id=record.id,
                        mount_path=mount_path,
                    )
                )
            activities.append(
                (
                    ActivityType.VOLUME_CREATE,
                    record.name,
                    f"Volume {record.name} adopted from the runtime",
                    {
                        "volume_id": record.id,
                        "driver": record.driver,
                        "mountpoint": record.mountpoint,
                        "mounts": _mounts_snapshot(adopted_mounts),
                    },
                )
            )

        for relink in plan.to_relink:
            previous = sorted((m.container_id, m.mount_path) for m in relink.current)
            for mount in relink.current:
                await self._db.delete(mount)
            for container_id, mount_path in relink.desired:
                self._db.add(
                    ContainerVolume(
                        container_id=container_id,
                        volume_id=relink.record.id,
                        mount_path=mount_path,
                    )
                )
            relink.record.updated_at = now
            self._db.add(relink.record)
            activities.append(
                (
                    ActivityType.VOLUME_UPDATE,
                    relink.record.name,
                    f"Volume {relink.record.name} container mounts refreshed from the runtime",
                    {
                        "volume_id": relink.record.id,
                        "previous_mounts": _mounts_snapshot(previous),
                        "mounts": _mounts_snapshot(relink.desired),
                    },
                )
            )

        await self._db.commit()

        for type_, target, description, snapshot in activities:
            await self._recorder.record(
                type_,
                actor=actor,
                target=target,
                description=description,
                snapshot=snapshot,
            )

        self._log.info(
            "volumes.reconcile.applied",
            owner=owner.id,
            removed=len(plan.to_remove),
            updated=len(plan.to_update),
            added=len(plan.to_add),
            relinked=len(plan.to_relink),
        )

    async def _runtime_associations(
        self,
        containers: list[ContainerInfo],
    ) -> dict[str, list[Mount]]:
        """Named volume mounts of runtime containers that have a record."""
        runtime_ids = [c.runtime_id for c in containers if c.named_volumes]
        if not runtime_ids:
            return {}
        result = await self._db.execute(
            select(ContainerRecord.runtime_id, ContainerRecord.id).where(
                ContainerRecord.runtime_id.in_(runtime_ids)
            )
        )
        record_ids = dict(result.all())

        associations: dict[str, list[Mount]] = {}
        for container in containers:
            container_id = record_ids.get(container.runtime_id)
            if container_id is None:
                continue
            for mount in container.mounts:
                if mount.type == "volume" and mount.name:
                    associations.setdefault(mount.name, []).append(
                        (container_id, mount.destination)
                    )
        return associations

    async def _load_records(self, owner: VolumeOwner) -> list[VolumeRecord]:
        result = await self._db.execute(
            select(VolumeRecord)
            .where(VolumeRecord.owner == owner.id)
            .order_by(VolumeRecord.name)
        )
        return list(result.scalars().all())

    async def _load_mounts(self, volume_ids: list[str]) -> dict[str, list[ContainerVolume]]:
        if not volume_ids:
            return {}
        result = await self._db.execute(
            select(ContainerVolume).where(ContainerVolume.volume_id.in_(volume_ids))
        )
        mounts: dict[str, list[ContainerVolume]] = {}
        for m in result.scalars().all():
            mounts.setdefault(m.volume_id, []).append(m)
        return mounts

    async def _names_recorded_elsewhere(
        self,
        owner: VolumeOwner,
        runtime_by_name: dict[str, RuntimeVolume],
    ) -> set[str]:
        if not runtime_by_name:
            return set()
        result = await self._db.execute(
            select(VolumeRecord.name).where(
                VolumeRecord.name.in_(list(runtime_by_name)),
                VolumeRecord.owner != owner.id,
            )
        )
        return set(result.scalars().all())
