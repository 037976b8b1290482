"""ContainerManager - container lifecycle controller.

Every action follows the same shape:
    resolve record -> inspect runtime -> guard -> act -> re-inspect
    -> (escalate / poll) -> persist observed state -> record activity

The runtime is the authority on what happened. A failing store write after
a successful runtime mutation is logged as a warning, except for remove,
where the record must go too (see ``remove``).

Actions on the same container are serialized by an injected KeyedLocks.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import or_, select

from berth.concurrency.locks import KeyedLocks
from berth.config import LifecycleConfig, get_settings
from berth.drivers.base import ContainerInfo, ContainerSpec, Driver, PortBinding, parse_memory
from berth.errors import (
    AlreadyRunningError,
    AlreadyStoppedError,
    BerthError,
    ConflictError,
    ConvergenceTimeoutError,
    InvalidStateTransitionError,
    PartialFailureError,
    RecordNotFoundError,
    ValidationError,
)
from berth.managers.volume import VolumeManager
from berth.models.activity import ActivityType
from berth.models.container import ContainerRecord, ContainerState, RestartPolicy
from berth.models.volume import ContainerVolume, VolumeRecord
from berth.services.activity import ActivityRecorder
from berth.services.ports import PortAllocator
from berth.utils.convergence import converge
from berth.utils.datetime import utcnow

logger = structlog.get_logger()

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")
SUBDOMAIN_MIN = 3
SUBDOMAIN_MAX = 63

MANAGED_LABEL = "berth.managed"
NAME_LABEL = "berth.container_name"
SUBDOMAIN_LABEL = "berth.subdomain"


class ContainerAction(str, Enum):
    """Caller-visible lifecycle intents."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"
    REMOVE = "remove"


class ActionOutcome(str, Enum):
    """How an accepted action ended."""

    COMPLETED = "completed"
    # Stop was honored but a restart policy relaunched the container
    ACCEPTED_BUT_RUNNING = "accepted_but_running"


_ACTIVITY_TYPES = {
    ContainerAction.START: ActivityType.CONTAINER_START,
    ContainerAction.STOP: ActivityType.CONTAINER_STOP,
    ContainerAction.RESTART: ActivityType.CONTAINER_RESTART,
    ContainerAction.REMOVE: ActivityType.CONTAINER_DELETE,
}


@dataclass
class ActionResult:
    """Result of one lifecycle action."""

    container_id: str
    action: ContainerAction
    previous_state: ContainerState
    new_state: ContainerState
    outcome: ActionOutcome = ActionOutcome.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "action": self.action.value,
            "previous_state": self.previous_state.value,
            "new_state": self.new_state.value,
            "outcome": self.outcome.value,
        }


@dataclass
class _Attempt:
    """One action in flight.

    Identity fields are copied from the record up front: a rollback expires
    the ORM instance and it must not be lazily reloaded afterwards.
    """

    action: ContainerAction
    container_id: str
    name: str
    runtime_id: str | None
    previous: ContainerState | None = None
    current: ContainerState = ContainerState.UNKNOWN

    @classmethod
    def begin(cls, record: ContainerRecord, action: ContainerAction) -> "_Attempt":
        return cls(
            action=action,
            container_id=record.id,
            name=record.name,
            runtime_id=record.runtime_id,
        )

    def observe(self, state: ContainerState) -> None:
        if self.previous is None:
            self.previous = state
        self.current = state

    @property
    def previous_state(self) -> ContainerState:
        return self.previous or ContainerState.UNKNOWN


@dataclass
class VolumeMount:
    """Named volume requested at provisioning time."""

    name: str
    mount_path: str


class ContainerManager:
    """Orchestrates container lifecycle against the runtime and the store."""

    def __init__(
        self,
        driver: Driver,
        db_session: AsyncSession,
        *,
        locks: KeyedLocks | None = None,
        allocator: PortAllocator | None = None,
        volumes: VolumeManager | None = None,
        recorder: ActivityRecorder | None = None,
        config: LifecycleConfig | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self._driver = driver
        self._db = db_session
        self._locks = locks or KeyedLocks()
        self._recorder = recorder or ActivityRecorder(db_session)
        self._allocator = allocator or PortAllocator(driver)
        self._volumes = volumes or VolumeManager(driver, db_session, recorder=self._recorder)
        self._config = config or get_settings().lifecycle
        self._cancel = cancel
        self._log = logger.bind(manager="container")

    # Lookup

    async def get(self, ref: str, owner: str | None = None) -> ContainerRecord:
        """Resolve a container by id, then name, then runtime id.

        Args:
            ref: Record id, container name or runtime id
            owner: Restrict to this owner (None = any owner)

        Raises:
            RecordNotFoundError: If all three lookups miss
        """
        for column in (ContainerRecord.id, ContainerRecord.name, ContainerRecord.runtime_id):
            query = select(ContainerRecord).where(column == ref)
            if owner is not None:
                query = query.where(ContainerRecord.owner == owner)
            result = await self._db.execute(query)
            record = result.scalars().first()
            if record is not None:
                return record

        raise RecordNotFoundError(f"Container not found: {ref}", details={"container": ref})

    async def list(
        self,
        owner: str | None = None,
        *,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[ContainerRecord], str | None]:
        """List containers.

        Returns:
            Tuple of (containers, next_cursor)
        """
        query = select(ContainerRecord)
        if owner is not None:
            query = query.where(ContainerRecord.owner == owner)
        if cursor:
            query = query.where(ContainerRecord.id > cursor)

        query = query.order_by(ContainerRecord.id).limit(limit + 1)

        result = await self._db.execute(query)
        containers = list(result.scalars().all())

        next_cursor = None
        if len(containers) > limit:
            containers = containers[:limit]
            next_cursor = containers[-1].id

        return containers, next_cursor

    async def mounts(self, container_id: str) -> list[tuple[ContainerVolume, VolumeRecord]]:
        """Volume mounts recorded for a container."""
        result = await self._db.execute(
            select(ContainerVolume, VolumeRecord)
            .join(VolumeRecord, VolumeRecord.id == ContainerVolume.volume_id)
            .where(ContainerVolume.container_id == container_id)
        )
        return [(cv, vol) for cv, vol in result.all()]

    # Provisioning

    async def create(
        self,
        owner: str,
        *,
        name: str,
        image: str,
        subdomain: str | None = None,
        ports: list[int] | None = None,
        env: dict[str, str] | None = None,
        volumes: list[VolumeMount] | None = None,
        restart_policy: RestartPolicy = RestartPolicy.NO,
        cpus: float | None = None,
        memory: str | None = None,
        actor: str | None = None,
    ) -> ContainerRecord:
        """Provision and start a new container.

        Args:
            owner: Owner identifier
            name: Container name (letters, digits, hyphens)
            image: Image reference
            subdomain: Routing subdomain (defaults to ``name``)
            ports: Container ports, each published on its own allocated host port
            env: Environment variables
            volumes: Named volumes to mount, created when missing
            restart_policy: Runtime restart policy
            cpus: CPU limit in cores
            memory: Memory limit such as "512m" or "1g"
            actor: Actor recorded on the activity (defaults to owner)

        Raises:
            ValidationError: If name, subdomain, ports or limits are malformed
            ConflictError: If name or subdomain are already taken
            NoPortAvailableError: If no host port can be allocated
        """
        actor = actor or owner
        volumes = volumes or []
        container_ports = list(dict.fromkeys(ports or []))

        if not NAME_PATTERN.match(name):
            raise ValidationError(
                "Container name must contain only letters, numbers, and hyphens",
                details={"name": name},
            )
        if subdomain is None:
            if not (SUBDOMAIN_MIN <= len(name) <= SUBDOMAIN_MAX):
                raise ValidationError(
                    "Container name is used as the subdomain and must be 3-63 "
                    "characters; pass an explicit subdomain",
                    details={"name": name},
                )
            subdomain = name
        elif not (SUBDOMAIN_MIN <= len(subdomain) <= SUBDOMAIN_MAX) or not NAME_PATTERN.match(
            subdomain
        ):
            raise ValidationError(
                "Subdomain must be 3-63 letters, numbers, and hyphens",
                details={"subdomain": subdomain},
            )
        self._validate_limits(cpus, memory)

        result = await self._db.execute(
            select(ContainerRecord).where(
                or_(ContainerRecord.name == name, ContainerRecord.subdomain == subdomain)
            )
        )
        if result.scalars().first() is not None:
            raise ConflictError(
                "Container name or subdomain already in use",
                details={"name": name, "subdomain": subdomain},
            )

        bindings: list[PortBinding] = []
        for container_port in container_ports:
            host_port = await self._allocator.allocate(
                container_port,
                exclude=[b.host_port for b in bindings if b.host_port is not None],
            )
            bindings.append(PortBinding(container_port=container_port, host_port=host_port))

        mounts: list[tuple[str, str, str]] = []  # (volume id, volume name, mount path)
        for mount in volumes:
            volume = await self._volumes.ensure(owner, mount.name)
            mounts.append((volume.id, volume.name, mount.mount_path))

        owner_label = get_settings().volumes.owner_label
        spec = ContainerSpec(
            name=name,
            image=image,
            env=env or {},
            ports=bindings,
            volumes=[(volume_name, path) for _, volume_name, path in mounts],
            labels={
                MANAGED_LABEL: "true",
                owner_label: owner,
                NAME_LABEL: name,
                SUBDOMAIN_LABEL: subdomain,
            },
            restart_policy=restart_policy,
            cpus=cpus,
            memory=memory,
        )

        self._log.info(
            "container.create",
            owner=owner,
            name=name,
            image=image,
            subdomain=subdomain,
            ports=[p.to_dict() for p in bindings],
            cpus=cpus,
            memory=memory,
        )
        runtime_id = await self._driver.create_container(spec)

        now = utcnow()
        record = ContainerRecord(
            id=f"ctr-{uuid.uuid4().hex[:12]}",
            owner=owner,
            name=name,
            subdomain=subdomain,
            runtime_id=runtime_id,
            image=image,
            restart_policy=restart_policy,
            status=ContainerState.CREATED,
            last_observed_at=now,
            ports=[p.to_dict() for p in bindings],
            env=env or {},
            cpu_limit=cpus,
            memory_limit=memory,
            created_at=now,
            updated_at=now,
        )
        try:
            self._db.add(record)
            for volume_id, _, mount_path in mounts:
                self._db.add(
                    ContainerVolume(
                        container_id=record.id,
                        volume_id=volume_id,
                        mount_path=mount_path,
                    )
                )
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            self._log.warning("container.create.persist_failed", name=name, error=str(e))
            try:
                await self._driver.remove(runtime_id, force=True)
            except BerthError as cleanup_error:
                self._log.warning(
                    "container.create.cleanup_failed",
                    runtime_id=runtime_id,
                    error=cleanup_error.message,
                )
            if isinstance(e, IntegrityError):
                raise ConflictError(
                    "Container name or subdomain already in use",
                    details={"name": name, "subdomain": subdomain},
                ) from e
            raise

        attempt = _Attempt.begin(record, ContainerAction.START)
        attempt.observe(ContainerState.CREATED)
        snapshot = {
            "image": image,
            "subdomain": subdomain,
            "ports": [p.to_dict() for p in bindings],
            "cpus": cpus,
            "memory": memory,
        }
        try:
            await self._driver.start(runtime_id)
            await self._observe(attempt)
        except BerthError as e:
            await self._record_activity(
                ActivityType.CONTAINER_CREATE, actor, attempt, error=e, extra=snapshot
            )
            raise

        await self._persist_state(record, attempt)
        await self._record_activity(
            ActivityType.CONTAINER_CREATE,
            actor,
            attempt,
            description=f"Created container {name} with subdomain {subdomain}",
            extra=snapshot,
        )
        return record

    # Lifecycle actions

    async def perform_action(
        self,
        ref: str,
        action: ContainerAction | str,
        *,
        actor: str,
        owner: str | None = None,
        keep_volume: bool = False,
    ) -> ActionResult:
        """Dispatch a lifecycle intent by name."""
        try:
            action = ContainerAction(action)
        except ValueError:
            raise ValidationError(
                f"Invalid action: {action}",
                details={"allowed": [a.value for a in ContainerAction]},
            ) from None

        if action is ContainerAction.START:
            return await self.start(ref, actor=actor, owner=owner)
        if action is ContainerAction.STOP:
            return await self.stop(ref, actor=actor, owner=owner)
        if action is ContainerAction.RESTART:
            return await self.restart(ref, actor=actor, owner=owner)
        return await self.remove(ref, actor=actor, owner=owner, keep_volume=keep_volume)

    async def start(self, ref: str, *, actor: str, owner: str | None = None) -> ActionResult:
        """Start a container that is not running.

        Raises:
            AlreadyRunningError: If the container is running
        """
        return await self._run(ref, ContainerAction.START, actor, owner, self._do_start)

    async def stop(self, ref: str, *, actor: str, owner: str | None = None) -> ActionResult:
        """Stop a container, escalating to a forced stop when needed.

        Returns ``accepted_but_running`` when a restart policy keeps the
        container alive through both stops.

        Raises:
            AlreadyStoppedError: If the container is already stopped
        """
        return await self._run(ref, ContainerAction.STOP, actor, owner, self._do_stop)

    async def restart(self, ref: str, *, actor: str, owner: str | None = None) -> ActionResult:
        """Restart a running or exited container and wait for it to come up.

        Raises:
            InvalidStateTransitionError: If not running or exited
            ConvergenceTimeoutError: If it is not running (and healthy) in time
        """
        return await self._run(ref, ContainerAction.RESTART, actor, owner, self._do_restart)

    async def _run(
        self,
        ref: str,
        action: ContainerAction,
        actor: str,
        owner: str | None,
        op: Callable[[_Attempt], Awaitable[ActionOutcome]],
    ) -> ActionResult:
        record = await self.get(ref, owner)
        attempt = _Attempt.begin(record, action)

        lock = await self._locks.get(attempt.container_id)
        async with lock:
            self._log.info(
                f"container.{action.value}",
                container_id=attempt.container_id,
                runtime_id=attempt.runtime_id,
                actor=actor,
            )
            try:
                outcome = await op(attempt)
            except BerthError as e:
                self._log.info(
                    f"container.{action.value}.failed",
                    container_id=attempt.container_id,
                    code=e.code,
                    error=e.message,
                )
                # Guards leave the record untouched
                if attempt.previous is not None and not isinstance(e, ConflictError):
                    await self._persist_state(record, attempt)
                await self._record_activity(_ACTIVITY_TYPES[action], actor, attempt, error=e)
                raise

            await self._persist_state(record, attempt)
            await self._record_activity(
                _ACTIVITY_TYPES[action],
                actor,
                attempt,
                extra={"outcome": outcome.value},
            )

        return ActionResult(
            container_id=attempt.container_id,
            action=action,
            previous_state=attempt.previous_state,
            new_state=attempt.current,
            outcome=outcome,
        )

    async def _do_start(self, attempt: _Attempt) -> ActionOutcome:
        info = await self._observe(attempt)
        if info.is_running:
            raise AlreadyRunningError(details={"container_id": attempt.container_id})

        await self._driver.start(self._runtime_id(attempt))
        await self._observe(attempt)
        return ActionOutcome.COMPLETED

    async def _do_stop(self, attempt: _Attempt) -> ActionOutcome:
        info = await self._observe(attempt)
        if info.state in (ContainerState.EXITED, ContainerState.DEAD, ContainerState.CREATED):
            raise AlreadyStoppedError(details={"container_id": attempt.container_id})

        runtime_id = self._runtime_id(attempt)
        await self._driver.stop(runtime_id, timeout=self._config.stop_timeout)
        info = await self._observe(attempt)

        if info.is_running:
            self._log.info(
                "container.stop.force",
                container_id=attempt.container_id,
                state=info.state.value,
            )
            await self._driver.stop(runtime_id, timeout=self._config.force_stop_timeout)
            info = await self._observe(attempt)

        if info.is_running:
            self._log.warning(
                "container.stop.state_diverged",
                container_id=attempt.container_id,
                state=info.state.value,
                restart_policy=info.restart_policy.value,
            )
            return ActionOutcome.ACCEPTED_BUT_RUNNING

        return ActionOutcome.COMPLETED

    async def _do_restart(self, attempt: _Attempt) -> ActionOutcome:
        info = await self._observe(attempt)
        if info.state not in (ContainerState.RUNNING, ContainerState.EXITED):
            raise InvalidStateTransitionError(
                f"Cannot restart a container in state {info.state.value}",
                details={"container_id": attempt.container_id, "state": info.state.value},
            )

        await self._driver.restart(self._runtime_id(attempt), timeout=self._config.restart_timeout)

        result = await converge(
            lambda: self._observe(attempt),
            self._is_up,
            attempts=self._config.restart_poll_attempts,
            interval=self._config.restart_poll_interval,
            cancel=self._cancel,
        )
        if not result.converged:
            raise ConvergenceTimeoutError(
                details={
                    "container_id": attempt.container_id,
                    "attempts": result.attempts,
                    "state": result.value.state.value,
                    "health": result.value.health,
                    "cancelled": result.cancelled,
                },
            )

        self._log.info(
            "container.restart.converged",
            container_id=attempt.container_id,
            attempts=result.attempts,
        )
        return ActionOutcome.COMPLETED

    def _is_up(self, info: ContainerInfo) -> bool:
        if info.state != ContainerState.RUNNING:
            return False
        if self._config.require_healthy and info.health is not None:
            return info.health == "healthy"
        return True

    async def remove(
        self,
        ref: str,
        *,
        actor: str,
        owner: str | None = None,
        keep_volume: bool = False,
    ) -> ActionResult:
        """Remove a container from the runtime and the store.

        Steps, in order:
        1. Forced stop if running (best-effort)
        2. Forced runtime removal (a missing runtime object counts as removed)
        3. Unless ``keep_volume``, remove each named volume mount,
           independently best-effort
        4. Delete the record; on failure, retry once if the runtime object
           is confirmed gone

        Raises:
            PartialFailureError: If the runtime side is gone but the record
                could not be deleted
        """
        record = await self.get(ref, owner)
        attempt = _Attempt.begin(record, ContainerAction.REMOVE)

        lock = await self._locks.get(attempt.container_id)
        async with lock:
            self._log.info(
                "container.remove",
                container_id=attempt.container_id,
                runtime_id=attempt.runtime_id,
                keep_volume=keep_volume,
                actor=actor,
            )
            mounts = await self.mounts(attempt.container_id)
            try:
                volume_names = await self._remove_runtime(attempt, [vol.name for _, vol in mounts])
            except BerthError as e:
                await self._record_activity(ActivityType.CONTAINER_DELETE, actor, attempt, error=e)
                raise

            removed_volumes: list[str] = []
            if not keep_volume:
                removed_volumes = await self._remove_volumes(attempt, volume_names)

            attempt.observe(ContainerState.REMOVED)
            try:
                await self._delete_record(attempt, removed_volumes)
            except PartialFailureError as e:
                await self._record_activity(ActivityType.CONTAINER_DELETE, actor, attempt, error=e)
                raise

            await self._record_activity(
                ActivityType.CONTAINER_DELETE,
                actor,
                attempt,
                description=f"Removed container {attempt.name}",
                extra={"keep_volume": keep_volume, "removed_volumes": removed_volumes},
            )

        await self._locks.discard(attempt.container_id)

        return ActionResult(
            container_id=attempt.container_id,
            action=ContainerAction.REMOVE,
            previous_state=attempt.previous_state,
            new_state=ContainerState.REMOVED,
        )

    async def _remove_runtime(self, attempt: _Attempt, names: list[str]) -> list[str]:
        """Remove the runtime object and return the named volumes it mounted."""
        names = list(dict.fromkeys(names))
        if attempt.runtime_id is None:
            return names

        try:
            info = await self._observe(attempt)
        except RecordNotFoundError:
            self._log.warning("container.remove.runtime_missing", container_id=attempt.container_id)
            return names

        for name in info.named_volumes:
            if name not in names:
                names.append(name)

        if info.is_running:
            try:
                await self._driver.stop(attempt.runtime_id, timeout=self._config.force_stop_timeout)
            except BerthError as e:
                self._log.warning(
                    "container.remove.stop_failed",
                    container_id=attempt.container_id,
                    error=e.message,
                )

        try:
            await self._driver.remove(attempt.runtime_id, force=True, remove_volumes=False)
        except RecordNotFoundError:
            self._log.warning("container.remove.runtime_missing", container_id=attempt.container_id)

        return names

    async def _remove_volumes(self, attempt: _Attempt, names: list[str]) -> list[str]:
        removed = []
        for name in names:
            try:
                await self._driver.remove_volume(name)
            except RecordNotFoundError:
                self._log.warning(
                    "container.remove.volume_missing",
                    container_id=attempt.container_id,
                    volume=name,
                )
            except BerthError as e:
                self._log.warning(
                    "container.remove.volume_failed",
                    container_id=attempt.container_id,
                    volume=name,
                    error=e.message,
                )
                continue
            removed.append(name)
        return removed

    async def _delete_record(self, attempt: _Attempt, removed_volumes: list[str]) -> None:
        try:
            await self._delete_rows(attempt.container_id, removed_volumes)
            return
        except SQLAlchemyError as e:
            await self._db.rollback()
            self._log.warning(
                "container.remove.persist_failed",
                container_id=attempt.container_id,
                error=str(e),
            )
            first_error = e

        if not await self._runtime_gone(attempt):
            raise PartialFailureError(
                "Container record could not be deleted",
                details={"container_id": attempt.container_id, "runtime_gone": False},
            ) from first_error

        self._log.info("container.remove.persist_retry", container_id=attempt.container_id)
        try:
            await self._delete_rows(attempt.container_id, removed_volumes)
        except SQLAlchemyError as e:
            await self._db.rollback()
            self._log.warning(
                "container.remove.partial_failure",
                container_id=attempt.container_id,
                error=str(e),
            )
            raise PartialFailureError(
                "Runtime container removed but its record could not be deleted",
                details={"container_id": attempt.container_id, "runtime_gone": True},
            ) from e

    async def _delete_rows(self, container_id: str, removed_volumes: list[str]) -> None:
        result = await self._db.execute(
            select(ContainerVolume).where(ContainerVolume.container_id == container_id)
        )
        for mount in result.scalars().all():
            await self._db.delete(mount)

        if removed_volumes:
            prefix = get_settings().volumes.tombstone_prefix
            now = utcnow()
            result = await self._db.execute(
                select(VolumeRecord).where(VolumeRecord.name.in_(removed_volumes))
            )
            for volume in result.scalars().all():
                if not volume.is_tombstoned(prefix):
                    volume.tombstone(now, prefix)
                    self._db.add(volume)

        record = await self._db.get(ContainerRecord, container_id)
        if record is not None:
            await self._db.delete(record)
        await self._db.commit()

    async def _runtime_gone(self, attempt: _Attempt) -> bool:
        if attempt.runtime_id is None:
            return True
        try:
            info = await self._driver.inspect(attempt.runtime_id)
        except RecordNotFoundError:
            return True
        except BerthError:
            return False
        return info.state == ContainerState.REMOVED

    # Helpers

    def _validate_limits(self, cpus: float | None, memory: str | None) -> None:
        if cpus is not None and cpus <= 0:
            raise ValidationError("CPU limit must be positive", details={"cpus": cpus})
        if memory is not None:
            try:
                parse_memory(memory)
            except ValueError:
                raise ValidationError(
                    f"Invalid memory limit: {memory}",
                    details={"memory": memory},
                ) from None

    def _runtime_id(self, attempt: _Attempt) -> str:
        if attempt.runtime_id is None:
            raise RecordNotFoundError(
                f"Container {attempt.container_id} has no runtime object",
                details={"container_id": attempt.container_id},
            )
        return attempt.runtime_id

    async def _observe(self, attempt: _Attempt) -> ContainerInfo:
        info = await self._driver.inspect(self._runtime_id(attempt))
        attempt.observe(info.state)
        return info

    async def _persist_state(self, record: ContainerRecord, attempt: _Attempt) -> None:
        """Write the observed state; failures are downgraded to a warning."""
        now = utcnow()
        try:
            record.status = attempt.current
            record.last_observed_at = now
            record.updated_at = now
            self._db.add(record)
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            self._log.warning(
                "container.persist_state.failed",
                container_id=attempt.container_id,
                state=attempt.current.value,
                error=str(e),
            )

    async def _record_activity(
        self,
        type: ActivityType,
        actor: str,
        attempt: _Attempt,
        *,
        description: str | None = None,
        error: BerthError | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        snapshot: dict[str, Any] = {
            "container_name": attempt.name,
            "runtime_id": attempt.runtime_id,
            "previous_state": attempt.previous_state.value,
            "new_state": attempt.current.value,
        }
        if extra:
            snapshot.update(extra)
        if error is not None:
            snapshot["error"] = {"code": error.code, "message": error.message}

        if description is None:
            verb = attempt.action.value
            if error is None:
                description = f"Container {attempt.name}: {verb}"
            else:
                description = f"Container {attempt.name}: {verb} failed ({error.code})"

        await self._recorder.record(
            type,
            actor=actor,
            target=attempt.container_id,
            description=description,
            snapshot=snapshot,
        )
