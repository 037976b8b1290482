"""Shared fixtures for unit tests."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

import berth.models  # noqa: F401
from berth.concurrency import KeyedLocks, ReconciliationGuard
from berth.config import LifecycleConfig, PortsConfig, VolumesConfig
from berth.managers.container import ContainerManager
from berth.managers.volume import VolumeManager
from berth.services.activity import ActivityRecorder
from berth.services.ports import PortAllocator
from berth.services.volumes import VolumeReconciler
from tests.fakes import FakeDriver, FakeProber


@pytest.fixture
async def db_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def fake_prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def lifecycle_config() -> LifecycleConfig:
    """Lifecycle budgets with no waiting between polls."""
    return LifecycleConfig(restart_poll_attempts=10, restart_poll_interval=0)


@pytest.fixture
def ports_config() -> PortsConfig:
    return PortsConfig()


@pytest.fixture
def volumes_config() -> VolumesConfig:
    return VolumesConfig()


@pytest.fixture
def recorder(db_session: AsyncSession) -> ActivityRecorder:
    return ActivityRecorder(db_session)


@pytest.fixture
def allocator(fake_driver: FakeDriver, ports_config: PortsConfig, fake_prober: FakeProber) -> PortAllocator:
    return PortAllocator(fake_driver, config=ports_config, prober=fake_prober)


@pytest.fixture
def volume_manager(fake_driver: FakeDriver, db_session: AsyncSession, recorder: ActivityRecorder) -> VolumeManager:
    return VolumeManager(fake_driver, db_session, recorder=recorder)


@pytest.fixture
def container_locks() -> KeyedLocks:
    return KeyedLocks()


@pytest.fixture
def container_manager(
    fake_driver: FakeDriver,
    db_session: AsyncSession,
    container_locks: KeyedLocks,
    allocator: PortAllocator,
    volume_manager: VolumeManager,
    recorder: ActivityRecorder,
    lifecycle_config: LifecycleConfig,
) -> ContainerManager:
    return ContainerManager(
        fake_driver,
        db_session,
        locks=container_locks,
        allocator=allocator,
        volumes=volume_manager,
        recorder=recorder,
        config=lifecycle_config,
    )


@pytest.fixture
def guard() -> ReconciliationGuard:
    return ReconciliationGuard()


@pytest.fixture
def reconciler(
    fake_driver: FakeDriver,
    db_session: AsyncSession,
    guard: ReconciliationGuard,
    volumes_config: VolumesConfig,
    recorder: ActivityRecorder,
) -> VolumeReconciler:
    return VolumeReconciler(
        fake_driver,
        db_session,
        guard,
        config=volumes_config,
        recorder=recorder,
    )
