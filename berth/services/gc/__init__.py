"""Background reconciliation (GC) for Berth.

This module provides periodic convergence for:
- Container records whose runtime object changed or vanished (ContainerDriftGC)
- Volume records of every owner (VolumeReconcileGC)

Usage:
    from berth.services.gc import GCScheduler

    scheduler = GCScheduler(...)
    await scheduler.start()
"""

from berth.services.gc.base import GCResult, GCTask
from berth.services.gc.scheduler import GCScheduler

__all__ = ["GCResult", "GCScheduler", "GCTask"]
