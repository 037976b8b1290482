"""Admin API endpoints.

Manual trigger and status of the background reconciliation cycle.
Requires the admin role.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from berth.api.dependencies import AdminDep
from berth.config import get_settings
from berth.errors import ReconciliationInProgressError, ValidationError
from berth.services.gc.lifecycle import TASK_NAMES, get_gc_scheduler

router = APIRouter(prefix="/admin", tags=["admin"])


# Request/Response Models


class GCRunRequest(BaseModel):
    """Request body for manual GC trigger."""

    tasks: list[str] | None = Field(
        default=None,
        description="Task names to run. None = all enabled tasks. "
        "Valid names: container_drift, volume_reconcile",
    )


class GCTaskResult(BaseModel):
    task_name: str
    cleaned_count: int
    skipped_count: int
    errors: list[str]


class GCRunResponse(BaseModel):
    results: list[GCTaskResult]
    total_cleaned: int
    total_errors: int
    duration_ms: int


class GCStatusResponse(BaseModel):
    enabled: bool
    is_running: bool
    cycle_in_progress: bool
    interval_seconds: int
    last_run_at: str | None
    tasks: dict[str, dict[str, bool]]


# Endpoints


@router.post("/gc/run", response_model=GCRunResponse)
async def run_gc(
    caller: AdminDep,
    request: GCRunRequest | None = None,
) -> GCRunResponse:
    """Run one GC cycle synchronously and return per-task results.

    Works even when ``gc.enabled`` is false.

    **Status Codes**:
    - 200: Cycle executed (individual items may have errors)
    - 400: Unknown task name
    - 423: A cycle is already in progress
    - 503: Scheduler not initialized
    """
    scheduler = get_gc_scheduler()
    if scheduler is None:
        raise HTTPException(
            status_code=503,
            detail="GC scheduler is not available. Check server logs.",
        )

    task_names: set[str] | None = None
    if request and request.tasks is not None:
        unknown = sorted(set(request.tasks) - set(TASK_NAMES))
        if unknown:
            raise ValidationError(
                f"Unknown GC tasks: {', '.join(unknown)}",
                details={"allowed": list(TASK_NAMES)},
            )
        task_names = set(request.tasks)

    if scheduler.cycle_in_progress:
        raise ReconciliationInProgressError("A GC cycle is already running")

    start = time.monotonic()
    results = await scheduler.run_once(task_names)
    duration_ms = int((time.monotonic() - start) * 1000)

    return GCRunResponse(
        results=[
            GCTaskResult(
                task_name=r.task_name or "unknown",
                cleaned_count=r.cleaned_count,
                skipped_count=r.skipped_count,
                errors=r.errors,
            )
            for r in results
        ],
        total_cleaned=sum(r.cleaned_count for r in results),
        total_errors=sum(len(r.errors) for r in results),
        duration_ms=duration_ms,
    )


@router.get("/gc/status", response_model=GCStatusResponse)
async def get_gc_status(caller: AdminDep) -> GCStatusResponse:
    """Current GC configuration and running state."""
    gc_config = get_settings().gc
    scheduler = get_gc_scheduler()

    return GCStatusResponse(
        enabled=gc_config.enabled,
        is_running=scheduler.is_running if scheduler else False,
        cycle_in_progress=scheduler.cycle_in_progress if scheduler else False,
        interval_seconds=gc_config.interval_seconds,
        last_run_at=(
            scheduler.last_run_at.isoformat() if scheduler and scheduler.last_run_at else None
        ),
        tasks={
            "container_drift": {"enabled": gc_config.container_drift.enabled},
            "volume_reconcile": {"enabled": gc_config.volume_reconcile.enabled},
        },
    )
