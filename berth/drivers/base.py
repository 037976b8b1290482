"""Driver base class - container runtime abstraction.

Driver is responsible ONLY for talking to the container engine.
It does NOT handle:
- Persistence
- Audit logging
- Convergence polling / escalation
- Ownership checks

Error contract for every method:
- RecordNotFoundError: the runtime object does not exist
- RuntimeUnreachableError: the engine API could not be reached
- OperationFailedError: the engine rejected the call
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from berth.models.container import ContainerState, RestartPolicy


@dataclass
class PortBinding:
    """One published port of a container."""

    container_port: int
    host_port: int | None = None
    protocol: str = "tcp"
    host_ip: str | None = None

    def to_dict(self) -> dict:
        """Convert to dict for ContainerRecord.ports JSON storage."""
        return {
            "host_port": self.host_port,
            "container_port": self.container_port,
            "protocol": self.protocol,
        }


@dataclass
class MountInfo:
    """One mount of a container."""

    type: str  # "volume" | "bind" | "tmpfs"
    destination: str
    name: str | None = None  # Volume name for named volumes
    source: str | None = None


@dataclass
class ContainerInfo:
    """Container information from driver."""

    runtime_id: str
    name: str
    state: ContainerState
    health: str | None = None  # "healthy" | "unhealthy" | "starting" | None
    restart_policy: RestartPolicy = RestartPolicy.NO
    ports: list[PortBinding] = field(default_factory=list)
    mounts: list[MountInfo] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.state in (ContainerState.RUNNING, ContainerState.RESTARTING)

    @property
    def named_volumes(self) -> list[str]:
        return [m.name for m in self.mounts if m.type == "volume" and m.name]


@dataclass
class RuntimeVolume:
    """Named volume as listed by the runtime."""

    name: str
    driver: str = "local"
    mountpoint: str = ""
    labels: dict[str, str] = field(default_factory=dict)


def parse_memory(memory_str: str) -> int:
    """Parse memory string (e.g., '1g', '512m') to bytes.

    Raises:
        ValueError: If the string is not a number with an optional k/m/g suffix
    """
    memory_str = memory_str.lower().strip()
    multipliers = {
        "k": 1024,
        "m": 1024 * 1024,
        "g": 1024 * 1024 * 1024,
    }
    if not memory_str:
        raise ValueError("empty memory limit")
    if memory_str[-1] in multipliers:
        value = int(float(memory_str[:-1]) * multipliers[memory_str[-1]])
    else:
        value = int(memory_str)
    if value <= 0:
        raise ValueError(f"memory limit must be positive: {memory_str}")
    return value


@dataclass
class ContainerSpec:
    """Everything the runtime needs to create one container."""

    name: str
    image: str
    env: dict[str, str] = field(default_factory=dict)
    ports: list[PortBinding] = field(default_factory=list)
    # (volume name, mount path) pairs
    volumes: list[tuple[str, str]] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    restart_policy: RestartPolicy = RestartPolicy.NO
    # CPU share (1.5 = one and a half cores) and memory such as "512m"
    cpus: float | None = None
    memory: str | None = None


class Driver(ABC):
    """Abstract driver interface for the container runtime.

    Containers and volumes created through the driver carry ownership labels
    so that reconciliation can attribute runtime objects to an owner.
    """

    # Container lifecycle

    @abstractmethod
    async def create_container(self, spec: ContainerSpec) -> str:
        """Create a container without starting it.

        Returns:
            Runtime container ID
        """
        ...

    @abstractmethod
    async def inspect(self, runtime_id: str) -> ContainerInfo:
        """Inspect a container.

        Raises:
            RecordNotFoundError: If the container does not exist
        """
        ...

    @abstractmethod
    async def start(self, runtime_id: str) -> None:
        """Start a container."""
        ...

    @abstractmethod
    async def stop(self, runtime_id: str, *, timeout: int) -> None:
        """Stop a container.

        Args:
            runtime_id: Runtime container ID
            timeout: Seconds to wait before the engine kills the process.
                0 kills immediately.
        """
        ...

    @abstractmethod
    async def restart(self, runtime_id: str, *, timeout: int) -> None:
        """Restart a container, stopping it with the given timeout first."""
        ...

    @abstractmethod
    async def remove(
        self,
        runtime_id: str,
        *,
        force: bool = True,
        remove_volumes: bool = False,
    ) -> None:
        """Remove a container.

        Args:
            runtime_id: Runtime container ID
            force: Kill the container first if it is running
            remove_volumes: Remove anonymous volumes attached to it
        """
        ...

    @abstractmethod
    async def list_containers(self, *, all: bool = True) -> list[ContainerInfo]:
        """List containers, including stopped ones when ``all`` is set."""
        ...

    # Volume management

    @abstractmethod
    async def list_volumes(self) -> list[RuntimeVolume]:
        """List every named volume known to the runtime."""
        ...

    @abstractmethod
    async def create_volume(
        self,
        name: str,
        *,
        driver: str = "local",
        labels: dict[str, str] | None = None,
    ) -> RuntimeVolume:
        """Create a named volume."""
        ...

    @abstractmethod
    async def remove_volume(self, name: str) -> None:
        """Remove a named volume.

        Raises:
            RecordNotFoundError: If the volume does not exist
        """
        ...

    async def close(self) -> None:
        """Release client resources."""
        return None
