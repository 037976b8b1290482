"""VolumeManager - explicit create/delete of named volumes.

Passive drift between the store and the runtime is handled by
VolumeReconciler; this manager covers caller-initiated changes.
"""

from __future__ import annotations

import re
import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from berth.config import get_settings
from berth.drivers.base import Driver, RuntimeVolume
from berth.errors import ConflictError, RecordNotFoundError, ValidationError
from berth.models.activity import ActivityType
from berth.models.volume import ContainerVolume, VolumeRecord
from berth.services.activity import ActivityRecorder
from berth.services.volumes.ownership import VolumeOwner
from berth.utils.datetime import utcnow

logger = structlog.get_logger()

VOLUME_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")


class VolumeManager:
    """Manages named volume lifecycle."""

    def __init__(
        self,
        driver: Driver,
        db_session: AsyncSession,
        *,
        recorder: ActivityRecorder | None = None,
    ) -> None:
        self._driver = driver
        self._db = db_session
        self._recorder = recorder or ActivityRecorder(db_session)
        self._log = logger.bind(manager="volume")
        self._config = get_settings().volumes

    async def get(self, owner: str, name: str) -> VolumeRecord:
        """Get a live (non-tombstoned) volume by name.

        Raises:
            RecordNotFoundError: If not found or not visible
        """
        record = await self._get_any(name)
        if (
            record is None
            or record.owner != owner
            or record.is_tombstoned(self._config.tombstone_prefix)
        ):
            raise RecordNotFoundError(f"Volume not found: {name}")
        return record

    async def _get_any(self, name: str) -> VolumeRecord | None:
        result = await self._db.execute(select(VolumeRecord).where(VolumeRecord.name == name))
        return result.scalars().first()

    async def _find_runtime(self, name: str) -> RuntimeVolume | None:
        for volume in await self._driver.list_volumes():
            if volume.name == name:
                return volume
        return None

    async def ensure(
        self,
        owner: VolumeOwner | str,
        name: str,
        *,
        driver: str | None = None,
    ) -> VolumeRecord:
        """Make sure ``name`` exists on both the runtime and the store.

        - recorded and present: returned unchanged
        - recorded but missing on the runtime: recreated on the runtime
        - present on the runtime only: adopted if unowned or ours
        - missing on both: created

        Raises:
            ValidationError: If the name is malformed
            ConflictError: If the volume belongs to another owner
        """
        owner = VolumeOwner.coerce(owner)
        if not VOLUME_NAME_PATTERN.match(name):
            raise ValidationError(
                "Volume name must contain only letters, numbers, and hyphens",
                details={"name": name},
            )
        driver = driver or self._config.default_driver
        prefix = self._config.tombstone_prefix

        record = await self._get_any(name)
        if record is not None and record.owner != owner.id:
            raise ConflictError(f"Volume name already taken: {name}", details={"name": name})

        runtime = await self._find_runtime(name)
        if runtime is not None and not owner.may_adopt(runtime.labels, self._config.owner_label):
            raise ConflictError(
                f"Volume {name} belongs to another owner",
                details={"name": name},
            )

        if record is not None and runtime is not None and not record.is_tombstoned(prefix):
            if record.mountpoint == runtime.mountpoint:
                return record

        description = f"Volume {name} adopted from the runtime"
        if runtime is None:
            self._log.info("volume.create", owner=owner.id, name=name, driver=driver)
            runtime = await self._driver.create_volume(
                name,
                driver=driver,
                labels=owner.labels(self._config.owner_label),
            )
            description = f"Volume {name} created"

        now = utcnow()
        if record is None:
            record = VolumeRecord(
                id=f"vol-{uuid.uuid4().hex[:12]}",
                owner=owner.id,
                name=name,
                created_at=now,
            )
        record.driver = runtime.driver
        record.mountpoint = runtime.mountpoint
        record.updated_at = now

        self._db.add(record)
        await self._db.commit()
        await self._db.refresh(record)

        await self._recorder.record(
            ActivityType.VOLUME_CREATE,
            actor=owner.id,
            target=name,
            description=description,
            snapshot={"volume_id": record.id, "driver": record.driver, "mountpoint": record.mountpoint},
        )
        return record

    async def delete(self, owner: str, name: str) -> None:
        """Delete a volume from the runtime and tombstone its record.

        Raises:
            RecordNotFoundError: If the volume is not visible to ``owner``
            ConflictError: If any container still mounts the volume
        """
        record = await self.get(owner, name)

        result = await self._db.execute(
            select(ContainerVolume.container_id).where(ContainerVolume.volume_id == record.id)
        )
        recorded_users = sorted(set(result.scalars().all()))

        runtime_users = sorted(
            c.name
            for c in await self._driver.list_containers(all=True)
            if name in c.named_volumes
        )

        if recorded_users or runtime_users:
            raise ConflictError(
                f"Volume {name} is in use",
                details={"containers": recorded_users, "runtime_containers": runtime_users},
            )

        self._log.info("volume.delete", owner=owner, name=name)
        try:
            await self._driver.remove_volume(name)
        except RecordNotFoundError:
            self._log.warning("volume.delete.runtime_missing", name=name)

        previous = record.mountpoint
        record.tombstone(utcnow(), self._config.tombstone_prefix)
        self._db.add(record)
        await self._db.commit()

        await self._recorder.record(
            ActivityType.VOLUME_DELETE,
            actor=owner,
            target=name,
            description=f"Volume {name} deleted",
            snapshot={"volume_id": record.id, "previous_mountpoint": previous},
        )
