"""Container data model.

ContainerRecord is the persisted view of one runtime container.
- Created at provisioning time
- ``status`` follows the last state observed on the runtime
- Deleted once a remove operation has converged on both sides
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from berth.utils.datetime import utcnow


class ContainerState(str, Enum):
    """Observed container state.

    unknown -> created -> running <-> exited -> removed (terminal).
    ``restarting`` is a transient sub-state of running.
    """

    UNKNOWN = "unknown"
    CREATED = "created"
    RUNNING = "running"
    RESTARTING = "restarting"
    PAUSED = "paused"
    EXITED = "exited"
    DEAD = "dead"
    REMOVING = "removing"
    REMOVED = "removed"

    @classmethod
    def from_runtime(cls, value: str | None) -> "ContainerState":
        """Map a Docker ``State.Status`` string to a ContainerState."""
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.lower())
        except ValueError:
            return cls.UNKNOWN


class RestartPolicy(str, Enum):
    """Docker restart policy names."""

    NO = "no"
    ALWAYS = "always"
    UNLESS_STOPPED = "unless-stopped"
    ON_FAILURE = "on-failure"


class ContainerRecord(SQLModel, table=True):
    """ContainerRecord - persisted container."""

    __tablename__ = "containers"

    id: str = Field(primary_key=True)
    owner: str = Field(index=True)

    # Globally unique
    name: str = Field(unique=True, index=True)
    subdomain: str = Field(unique=True, index=True)

    # Runtime reference (Docker container ID)
    runtime_id: Optional[str] = Field(default=None, unique=True, index=True)

    image: str = Field(default="")
    restart_policy: RestartPolicy = Field(default=RestartPolicy.NO)

    # Last observed runtime state
    status: ContainerState = Field(default=ContainerState.UNKNOWN)
    last_observed_at: Optional[datetime] = Field(default=None)

    # [{host_port, container_port, protocol}, ...]
    ports: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False, default=list),
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, default=dict),
    )

    # Resource limits (None = unlimited)
    cpu_limit: Optional[float] = Field(default=None)
    memory_limit: Optional[str] = Field(default=None)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
