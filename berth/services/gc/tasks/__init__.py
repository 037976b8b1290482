"""Background reconciliation tasks."""

from berth.services.gc.tasks.container_drift import ContainerDriftGC
from berth.services.gc.tasks.volume_reconcile import VolumeReconcileGC

__all__ = ["ContainerDriftGC", "VolumeReconcileGC"]
