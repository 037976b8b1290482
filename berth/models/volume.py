"""Volume data models.

VolumeRecord mirrors a named runtime volume for one owner.

Soft delete: there is no dedicated flag. A tombstoned record carries the
configured prefix (``DELETED_`` by default) at the start of ``mountpoint``,
followed by the deletion timestamp and the previous mountpoint.

ContainerVolume links a volume to the containers mounting it. A volume with
at least one link is never hard-deleted or tombstoned by reconciliation.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from berth.utils.datetime import utcnow

DEFAULT_TOMBSTONE_PREFIX = "DELETED_"


class VolumeRecord(SQLModel, table=True):
    """VolumeRecord - persisted named volume."""

    __tablename__ = "volumes"

    id: str = Field(primary_key=True)
    owner: str = Field(index=True)

    name: str = Field(unique=True, index=True)
    driver: str = Field(default="local")
    mountpoint: str = Field(default="")
    size: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_tombstoned(self, prefix: str = DEFAULT_TOMBSTONE_PREFIX) -> bool:
        return self.mountpoint.startswith(prefix)

    def tombstone(self, now: datetime, prefix: str = DEFAULT_TOMBSTONE_PREFIX) -> None:
        """Mark the record deleted while keeping its row for audit linkage."""
        self.mountpoint = f"{prefix}{now.isoformat()}_{self.mountpoint}"
        self.updated_at = now


class ContainerVolume(SQLModel, table=True):
    """Mount association between a container and a named volume."""

    __tablename__ = "container_volumes"

    id: Optional[int] = Field(default=None, primary_key=True)
    container_id: str = Field(foreign_key="containers.id", index=True)
    volume_id: str = Field(foreign_key="volumes.id", index=True)
    mount_path: str
