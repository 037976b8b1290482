"""Ports API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Query
from pydantic import BaseModel

from berth.api.dependencies import AuthDep, PortAllocatorDep

router = APIRouter()


class PortAllocationResponse(BaseModel):
    desired: int
    port: int


@router.get("/allocate", response_model=PortAllocationResponse)
async def allocate_port(
    allocator: PortAllocatorDep,
    caller: AuthDep,
    port: int = Query(..., ge=1, le=65535, description="Desired container-side port"),
) -> PortAllocationResponse:
    """Suggest a free host port for ``port``.

    Nothing is reserved: the port may be taken by the time it is bound.
    """
    allocated = await allocator.allocate(port)
    return PortAllocationResponse(desired=port, port=allocated)
