"""SQLModel data models."""

from berth.models.activity import ActivityRecord, ActivityType
from berth.models.container import ContainerRecord, ContainerState, RestartPolicy
from berth.models.volume import ContainerVolume, VolumeRecord

__all__ = [
    "ActivityRecord",
    "ActivityType",
    "ContainerRecord",
    "ContainerState",
    "ContainerVolume",
    "RestartPolicy",
    "VolumeRecord",
]
