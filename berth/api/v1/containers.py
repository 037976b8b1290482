"""Containers API endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from berth.api.dependencies import AuthDep, ContainerManagerDep
from berth.managers.container import ActionResult, VolumeMount
from berth.models.container import ContainerRecord, RestartPolicy

router = APIRouter()


# Request/Response Models


class VolumeMountModel(BaseModel):
    name: str = Field(min_length=1)
    mount_path: str = Field(min_length=1)


class CreateContainerRequest(BaseModel):
    """Request to provision a container."""

    name: str = Field(min_length=1, max_length=63)
    image: str = Field(min_length=1)
    subdomain: str | None = Field(default=None, min_length=3, max_length=63)
    ports: list[Annotated[int, Field(ge=1, le=65535)]] = Field(
        default_factory=list, description="Container ports to publish"
    )
    env: dict[str, str] = Field(default_factory=dict)
    volumes: list[VolumeMountModel] = Field(default_factory=list)
    restart_policy: RestartPolicy = RestartPolicy.NO
    cpus: float | None = Field(default=None, gt=0, description="CPU limit in cores")
    memory: str | None = Field(default=None, description="Memory limit, e.g. 512m or 1g")


class PortBindingModel(BaseModel):
    host_port: int | None
    container_port: int
    protocol: str = "tcp"


class ContainerResponse(BaseModel):
    """Container response model."""

    id: str
    owner: str
    name: str
    subdomain: str
    runtime_id: str | None
    image: str
    status: str
    restart_policy: str
    ports: list[PortBindingModel]
    cpu_limit: float | None = None
    memory_limit: str | None = None
    last_observed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ContainerListResponse(BaseModel):
    items: list[ContainerResponse]
    next_cursor: str | None = None


class ActionResponse(BaseModel):
    """Result of a lifecycle action."""

    container_id: str
    action: str
    previous_state: str
    new_state: str
    outcome: str


def _container_to_response(container: ContainerRecord) -> ContainerResponse:
    return ContainerResponse(
        id=container.id,
        owner=container.owner,
        name=container.name,
        subdomain=container.subdomain,
        runtime_id=container.runtime_id,
        image=container.image,
        status=container.status.value,
        restart_policy=container.restart_policy.value,
        ports=[PortBindingModel(**p) for p in container.ports],
        cpu_limit=container.cpu_limit,
        memory_limit=container.memory_limit,
        last_observed_at=container.last_observed_at,
        created_at=container.created_at,
        updated_at=container.updated_at,
    )


def _action_to_response(result: ActionResult) -> ActionResponse:
    return ActionResponse(**result.to_dict())


# Endpoints


@router.post("", response_model=ContainerResponse, status_code=201)
async def create_container(
    request: CreateContainerRequest,
    container_mgr: ContainerManagerDep,
    caller: AuthDep,
) -> ContainerResponse:
    """Provision a container: allocate its host ports, create missing volumes,
    create and start it on the runtime."""
    container = await container_mgr.create(
        caller.owner,
        name=request.name,
        image=request.image,
        subdomain=request.subdomain,
        ports=request.ports,
        env=request.env,
        volumes=[VolumeMount(name=v.name, mount_path=v.mount_path) for v in request.volumes],
        restart_policy=request.restart_policy,
        cpus=request.cpus,
        memory=request.memory,
    )
    return _container_to_response(container)


@router.get("", response_model=ContainerListResponse)
async def list_containers(
    container_mgr: ContainerManagerDep,
    caller: AuthDep,
    limit: int = Query(50, ge=1, le=200),
    cursor: str | None = Query(None),
) -> ContainerListResponse:
    """List containers (admins see every owner)."""
    items, next_cursor = await container_mgr.list(caller.scope, limit=limit, cursor=cursor)
    return ContainerListResponse(
        items=[_container_to_response(c) for c in items],
        next_cursor=next_cursor,
    )


@router.get("/{container_id}", response_model=ContainerResponse)
async def get_container(
    container_id: str,
    container_mgr: ContainerManagerDep,
    caller: AuthDep,
) -> ContainerResponse:
    """Get a container by id, name or runtime id."""
    container = await container_mgr.get(container_id, caller.scope)
    return _container_to_response(container)


@router.post("/{container_id}/actions/{action}", response_model=ActionResponse)
async def perform_action(
    container_id: str,
    action: str,
    container_mgr: ContainerManagerDep,
    caller: AuthDep,
    keep_volume: bool = Query(False),
) -> ActionResponse:
    """Run a lifecycle action: start, stop, restart or remove.

    **Status Codes**:
    - 200: Action accepted (check ``outcome``)
    - 409: Guard rejected the action (already running / stopped, invalid state)
    - 504: Restart did not converge in time
    """
    result = await container_mgr.perform_action(
        container_id,
        action,
        actor=caller.owner,
        owner=caller.scope,
        keep_volume=keep_volume,
    )
    return _action_to_response(result)


@router.delete("/{container_id}", response_model=ActionResponse)
async def delete_container(
    container_id: str,
    container_mgr: ContainerManagerDep,
    caller: AuthDep,
    keep_volume: bool = Query(False),
) -> ActionResponse:
    """Remove a container, and its named volumes unless ``keep_volume``."""
    result = await container_mgr.remove(
        container_id,
        actor=caller.owner,
        owner=caller.scope,
        keep_volume=keep_volume,
    )
    return _action_to_response(result)
