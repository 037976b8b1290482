"""GC task base classes and result structures."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class GCResult:
    """Result of a GC task execution.

    Attributes:
        task_name: Name of the GC task
        cleaned_count: Number of corrections applied
        skipped_count: Number of items skipped (e.g., guard held by a user request)
        errors: List of error messages for failed items
    """

    task_name: str = ""
    cleaned_count: int = 0
    skipped_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Whether the task completed without errors."""
        return len(self.errors) == 0

    def add_error(self, error: str) -> None:
        """Add an error message."""
        self.errors.append(error)


class GCTask(ABC):
    """Abstract base class for background reconciliation tasks.

    - ContainerDriftGC: refresh container records from the runtime
    - VolumeReconcileGC: reconcile volume records for every owner
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the task name (for logging and the admin API)."""
        ...

    @abstractmethod
    async def run(self) -> GCResult:
        """Execute the task.

        Individual item failures should be logged but not abort the whole
        task. Errors are collected in GCResult.errors.
        """
        ...
