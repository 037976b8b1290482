"""Business logic managers."""

from berth.managers.container import ContainerManager
from berth.managers.volume import VolumeManager

__all__ = ["ContainerManager", "VolumeManager"]
