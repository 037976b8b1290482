"""Activity data model.

ActivityRecord is the append-only audit trail. Rows are written once by the
ActivityRecorder and never updated or deleted.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from berth.utils.datetime import utcnow


class ActivityType(str, Enum):
    """Audited action kinds."""

    CONTAINER_CREATE = "CONTAINER_CREATE"
    CONTAINER_START = "CONTAINER_START"
    CONTAINER_STOP = "CONTAINER_STOP"
    CONTAINER_RESTART = "CONTAINER_RESTART"
    CONTAINER_DELETE = "CONTAINER_DELETE"
    CONTAINER_SYNC = "CONTAINER_SYNC"
    VOLUME_CREATE = "VOLUME_CREATE"
    VOLUME_UPDATE = "VOLUME_UPDATE"
    VOLUME_DELETE = "VOLUME_DELETE"


class ActivityRecord(SQLModel, table=True):
    """ActivityRecord - immutable audit entry."""

    __tablename__ = "activities"

    id: str = Field(primary_key=True)
    type: ActivityType = Field(index=True)

    # Who did it (owner id, or "system" for background reconciliation)
    actor: str = Field(index=True)

    # What it was done to
    target: str = Field(index=True)
    description: str = Field(default="")

    # Metadata snapshot at the time of the action
    snapshot: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, default=dict),
    )

    created_at: datetime = Field(default_factory=utcnow, index=True)
