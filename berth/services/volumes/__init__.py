"""Volume inventory reconciliation."""

from berth.services.volumes.ownership import VolumeOwner
from berth.services.volumes.reconciler import (
    ReconciledVolume,
    ReconcilePlan,
    ReconcileReport,
    VolumeReconciler,
)

__all__ = [
    "ReconcilePlan",
    "ReconcileReport",
    "ReconciledVolume",
    "VolumeOwner",
    "VolumeReconciler",
]
