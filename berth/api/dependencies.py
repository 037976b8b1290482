"""FastAPI dependencies for Berth API.

Provides dependency injection for:
- Database sessions
- Driver
- Process-wide handles (reconciliation guard, per-container locks)
- Managers and services
- Caller identity
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

import structlog
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from berth.concurrency import KeyedLocks, ReconciliationGuard
from berth.config import get_settings
from berth.db.session import get_session_dependency
from berth.drivers.base import Driver
from berth.drivers.docker import DockerDriver
from berth.errors import ForbiddenError, UnauthorizedError, ValidationError
from berth.managers.container import ContainerManager
from berth.managers.volume import VolumeManager
from berth.services.activity import ActivityRecorder
from berth.services.ports import PortAllocator
from berth.services.volumes import VolumeReconciler

logger = structlog.get_logger()

ROLES = ("user", "admin")


@lru_cache
def get_driver() -> Driver:
    """Get cached driver instance.

    Uses lru_cache to ensure single driver instance across requests.
    """
    settings = get_settings()
    if settings.driver.type == "docker":
        return DockerDriver()
    raise ValueError(f"Unsupported driver type: {settings.driver.type}")


@lru_cache
def get_reconciliation_guard() -> ReconciliationGuard:
    """The one reconciliation guard of this process."""
    return ReconciliationGuard()


@lru_cache
def get_container_locks() -> KeyedLocks:
    """Per-container locks shared by requests and background tasks."""
    return KeyedLocks()


@dataclass(frozen=True)
class Caller:
    """Identity of the caller, established upstream."""

    owner: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def scope(self) -> str | None:
        """Owner filter for lookups: admins see every owner."""
        return None if self.is_admin else self.owner


def authenticate(request: Request) -> Caller:
    """Read the trusted identity headers set by the fronting proxy.

    - Owner header present: use it (role header defaults to "user")
    - Owner header absent and allow_anonymous: owner "default"
    - Otherwise: 401

    Raises:
        UnauthorizedError: If no identity is available
        ValidationError: If the role is unknown
    """
    security = get_settings().security
    owner = request.headers.get(security.owner_header)
    role = request.headers.get(security.role_header, "user").lower()

    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}", details={"allowed": list(ROLES)})

    if owner:
        return Caller(owner=owner, role=role)

    if security.allow_anonymous:
        logger.debug("auth.anonymous")
        return Caller(owner="default", role=role)

    raise UnauthorizedError("Authentication required")


def require_admin(caller: Annotated[Caller, Depends(authenticate)]) -> Caller:
    if not caller.is_admin:
        raise ForbiddenError("Admin role required")
    return caller


async def get_activity_recorder(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> ActivityRecorder:
    return ActivityRecorder(session)


async def get_volume_manager(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> VolumeManager:
    """Get VolumeManager with injected dependencies."""
    return VolumeManager(driver=get_driver(), db_session=session)


async def get_container_manager(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> ContainerManager:
    """Get ContainerManager with injected dependencies."""
    return ContainerManager(
        driver=get_driver(),
        db_session=session,
        locks=get_container_locks(),
    )


async def get_volume_reconciler(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> VolumeReconciler:
    """Get VolumeReconciler sharing the process-wide guard."""
    return VolumeReconciler(
        driver=get_driver(),
        db_session=session,
        guard=get_reconciliation_guard(),
    )


def get_port_allocator() -> PortAllocator:
    return PortAllocator(get_driver())


# Type aliases for cleaner dependency injection
DriverDep = Annotated[Driver, Depends(get_driver)]
SessionDep = Annotated[AsyncSession, Depends(get_session_dependency)]
AuthDep = Annotated[Caller, Depends(authenticate)]
AdminDep = Annotated[Caller, Depends(require_admin)]
ActivityRecorderDep = Annotated[ActivityRecorder, Depends(get_activity_recorder)]
ContainerManagerDep = Annotated[ContainerManager, Depends(get_container_manager)]
VolumeManagerDep = Annotated[VolumeManager, Depends(get_volume_manager)]
VolumeReconcilerDep = Annotated[VolumeReconciler, Depends(get_volume_reconciler)]
PortAllocatorDep = Annotated[PortAllocator, Depends(get_port_allocator)]
