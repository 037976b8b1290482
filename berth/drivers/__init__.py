"""Driver layer - container runtime abstraction."""

from berth.drivers.base import (
    ContainerInfo,
    ContainerSpec,
    Driver,
    MountInfo,
    PortBinding,
    RuntimeVolume,
)
from berth.drivers.docker import DockerDriver

__all__ = [
    "ContainerInfo",
    "ContainerSpec",
    "DockerDriver",
    "Driver",
    "MountInfo",
    "PortBinding",
    "RuntimeVolume",
]
