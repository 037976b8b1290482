"""Volumes API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel, Field

from berth.api.dependencies import AuthDep, VolumeManagerDep, VolumeReconcilerDep

router = APIRouter()


class CreateVolumeRequest(BaseModel):
    name: str = Field(min_length=1)
    driver: str | None = None


class VolumeMountResponse(BaseModel):
    container_id: str
    mount_path: str


class VolumeResponse(BaseModel):
    id: str
    name: str
    driver: str
    mountpoint: str
    size: int
    created_at: datetime
    updated_at: datetime
    exists_in_docker: bool
    mounts: list[VolumeMountResponse] = Field(default_factory=list)


class VolumeListResponse(BaseModel):
    items: list[VolumeResponse]


@router.get("", response_model=VolumeListResponse)
async def list_volumes(
    reconciler: VolumeReconcilerDep,
    caller: AuthDep,
    force: bool = Query(False, description="Run even if another reconciliation is in flight"),
) -> VolumeListResponse:
    """Reconcile the caller's volumes with the runtime and list them.

    **Status Codes**:
    - 200: Reconciled list (``exists_in_docker`` false everywhere if the
      runtime was unreachable)
    - 423: Another reconciliation is running and ``force`` was not set
    """
    volumes = await reconciler.reconcile(caller.owner, force=force)
    return VolumeListResponse(items=[VolumeResponse(**v.to_dict()) for v in volumes])


@router.post("", response_model=VolumeResponse, status_code=201)
async def create_volume(
    request: CreateVolumeRequest,
    volume_mgr: VolumeManagerDep,
    caller: AuthDep,
) -> VolumeResponse:
    """Create a named volume, or adopt / recreate an existing one."""
    record = await volume_mgr.ensure(caller.owner, request.name, driver=request.driver)
    return VolumeResponse(
        id=record.id,
        name=record.name,
        driver=record.driver,
        mountpoint=record.mountpoint,
        size=record.size,
        created_at=record.created_at,
        updated_at=record.updated_at,
        exists_in_docker=True,
    )


@router.delete("/{name}", status_code=204)
async def delete_volume(
    name: str,
    volume_mgr: VolumeManagerDep,
    caller: AuthDep,
) -> Response:
    """Delete a volume no container mounts."""
    await volume_mgr.delete(caller.owner, name)
    return Response(status_code=204)
