from berth.managers.container.container import (
    ActionOutcome,
    ActionResult,
    ContainerAction,
    ContainerManager,
    VolumeMount,
)

__all__ = [
    "ActionOutcome",
    "ActionResult",
    "ContainerAction",
    "ContainerManager",
    "VolumeMount",
]
