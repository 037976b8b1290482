"""Docker driver implementation using aiodocker.

Every engine call goes through ``_translate_errors`` so that callers only ever
see Berth errors:
- DockerError 404 -> RecordNotFoundError
- other DockerError -> OperationFailedError (engine message preserved)
- connection failures -> RuntimeUnreachableError
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import aiodocker
import aiohttp
import structlog
from aiodocker.exceptions import DockerError

from berth.config import get_settings
from berth.drivers.base import (
    ContainerInfo,
    ContainerSpec,
    Driver,
    MountInfo,
    PortBinding,
    RuntimeVolume,
    parse_memory,
)
from berth.errors import OperationFailedError, RecordNotFoundError, RuntimeUnreachableError
from berth.models.container import ContainerState, RestartPolicy

logger = structlog.get_logger()


def _parse_restart_policy(value: str | None) -> RestartPolicy:
    try:
        return RestartPolicy(value or "no")
    except ValueError:
        return RestartPolicy.NO


def _parse_port_key(key: str) -> tuple[int, str]:
    """Split a Docker port key like ``80/tcp``."""
    port, _, protocol = key.partition("/")
    return int(port), protocol or "tcp"


class DockerDriver(Driver):
    """Docker driver implementation using aiodocker."""

    def __init__(self) -> None:
        settings = get_settings()
        socket_url = settings.driver.docker.socket
        if "://" in socket_url:
            self._socket = socket_url
        else:
            self._socket = f"unix://{socket_url}"

        self._log = logger.bind(driver="docker")
        self._client: aiodocker.Docker | None = None

    async def _get_client(self) -> aiodocker.Docker:
        """Get or create the aiodocker client."""
        if self._client is None:
            self._client = aiodocker.Docker(url=self._socket)
        return self._client

    async def close(self) -> None:
        """Close the docker client."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    @contextmanager
    def _translate_errors(self, operation: str, **context: Any) -> Iterator[None]:
        try:
            yield
        except DockerError as e:
            if e.status == 404:
                raise RecordNotFoundError(
                    f"{operation}: {e.message}",
                    details={"operation": operation, **context},
                ) from e
            self._log.warning(
                "docker.error",
                operation=operation,
                status=e.status,
                message=e.message,
                **context,
            )
            raise OperationFailedError(
                e.message,
                details={"operation": operation, "status": e.status, **context},
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            self._log.warning(
                "docker.unreachable",
                operation=operation,
                error=str(e),
                **context,
            )
            raise RuntimeUnreachableError(
                f"Docker engine unreachable: {e}",
                details={"operation": operation, **context},
            ) from e

    # Parsing

    def _parse_inspect(self, info: dict[str, Any]) -> ContainerInfo:
        """Build ContainerInfo from ``GET /containers/{id}/json``."""
        state = info.get("State") or {}
        health = (state.get("Health") or {}).get("Status")
        host_config = info.get("HostConfig") or {}

        ports: list[PortBinding] = []
        port_map = (info.get("NetworkSettings") or {}).get("Ports") or {}
        for key, bindings in port_map.items():
            container_port, protocol = _parse_port_key(key)
            if not bindings:
                ports.append(PortBinding(container_port=container_port, protocol=protocol))
                continue
            for b in bindings:
                host_port = b.get("HostPort")
                ports.append(
                    PortBinding(
                        container_port=container_port,
                        host_port=int(host_port) if host_port else None,
                        protocol=protocol,
                        host_ip=b.get("HostIp") or None,
                    )
                )

        return ContainerInfo(
            runtime_id=info.get("Id", ""),
            name=(info.get("Name") or "").lstrip("/"),
            state=ContainerState.from_runtime(state.get("Status")),
            health=health,
            restart_policy=_parse_restart_policy(
                (host_config.get("RestartPolicy") or {}).get("Name")
            ),
            ports=ports,
            mounts=self._parse_mounts(info.get("Mounts") or []),
            labels=(info.get("Config") or {}).get("Labels") or {},
        )

    def _parse_summary(self, summary: dict[str, Any]) -> ContainerInfo:
        """Build ContainerInfo from one ``GET /containers/json`` entry."""
        names = summary.get("Names") or []
        ports = [
            PortBinding(
                container_port=p["PrivatePort"],
                host_port=p.get("PublicPort"),
                protocol=p.get("Type", "tcp"),
                host_ip=p.get("IP"),
            )
            for p in summary.get("Ports") or []
            if "PrivatePort" in p
        ]
        return ContainerInfo(
            runtime_id=summary.get("Id", ""),
            name=names[0].lstrip("/") if names else "",
            state=ContainerState.from_runtime(summary.get("State")),
            ports=ports,
            mounts=self._parse_mounts(summary.get("Mounts") or []),
            labels=summary.get("Labels") or {},
        )

    def _parse_mounts(self, mounts: list[dict[str, Any]]) -> list[MountInfo]:
        return [
            MountInfo(
                type=m.get("Type", ""),
                destination=m.get("Destination", ""),
                name=m.get("Name"),
                source=m.get("Source"),
            )
            for m in mounts
        ]

    def _parse_volume(self, data: dict[str, Any]) -> RuntimeVolume:
        return RuntimeVolume(
            name=data.get("Name", ""),
            driver=data.get("Driver", "local"),
            mountpoint=data.get("Mountpoint", ""),
            labels=data.get("Labels") or {},
        )

    def _build_create_config(self, spec: ContainerSpec) -> dict[str, Any]:
        exposed_ports: dict[str, dict[str, Any]] = {}
        port_bindings: dict[str, list[dict[str, str]]] = {}
        for p in spec.ports:
            key = f"{p.container_port}/{p.protocol}"
            exposed_ports[key] = {}
            if p.host_port is not None:
                port_bindings.setdefault(key, []).append(
                    {"HostIp": p.host_ip or "0.0.0.0", "HostPort": str(p.host_port)}
                )

        host_config: dict[str, Any] = {
            "Binds": [f"{name}:{path}" for name, path in spec.volumes],
            "PortBindings": port_bindings,
            "RestartPolicy": {"Name": spec.restart_policy.value},
        }
        if spec.memory is not None:
            host_config["Memory"] = parse_memory(spec.memory)
        if spec.cpus is not None:
            host_config["NanoCpus"] = int(spec.cpus * 1e9)

        return {
            "Image": spec.image,
            "Env": [f"{k}={v}" for k, v in spec.env.items()],
            "Labels": spec.labels,
            "ExposedPorts": exposed_ports,
            "HostConfig": host_config,
        }

    # Container lifecycle

    async def create_container(self, spec: ContainerSpec) -> str:
        """Create a container without starting it."""
        client = await self._get_client()
        self._log.info(
            "docker.create",
            name=spec.name,
            image=spec.image,
            ports=[p.to_dict() for p in spec.ports],
            volumes=[name for name, _ in spec.volumes],
        )

        with self._translate_errors("create", name=spec.name):
            container = await client.containers.create(
                config=self._build_create_config(spec),
                name=spec.name,
            )

        self._log.info("docker.created", name=spec.name, runtime_id=container.id)
        return container.id

    async def inspect(self, runtime_id: str) -> ContainerInfo:
        client = await self._get_client()
        with self._translate_errors("inspect", runtime_id=runtime_id):
            container = client.containers.container(runtime_id)
            info = await container.show()
        return self._parse_inspect(info)

    async def start(self, runtime_id: str) -> None:
        client = await self._get_client()
        self._log.info("docker.start", runtime_id=runtime_id)
        with self._translate_errors("start", runtime_id=runtime_id):
            await client.containers.container(runtime_id).start()

    async def stop(self, runtime_id: str, *, timeout: int) -> None:
        client = await self._get_client()
        self._log.info("docker.stop", runtime_id=runtime_id, timeout=timeout)
        with self._translate_errors("stop", runtime_id=runtime_id):
            await client.containers.container(runtime_id).stop(t=timeout)

    async def restart(self, runtime_id: str, *, timeout: int) -> None:
        client = await self._get_client()
        self._log.info("docker.restart", runtime_id=runtime_id, timeout=timeout)
        with self._translate_errors("restart", runtime_id=runtime_id):
            await client.containers.container(runtime_id).restart(timeout=timeout)

    async def remove(
        self,
        runtime_id: str,
        *,
        force: bool = True,
        remove_volumes: bool = False,
    ) -> None:
        client = await self._get_client()
        self._log.info(
            "docker.remove",
            runtime_id=runtime_id,
            force=force,
            remove_volumes=remove_volumes,
        )
        with self._translate_errors("remove", runtime_id=runtime_id):
            await client.containers.container(runtime_id).delete(
                force=force, v=remove_volumes
            )

    async def list_containers(self, *, all: bool = True) -> list[ContainerInfo]:
        client = await self._get_client()
        with self._translate_errors("list_containers"):
            containers = await client.containers.list(all=all)

        # DockerContainer wraps the list summary and exposes it via __getitem__
        result = []
        for container in containers:
            summary: dict[str, Any] = {}
            for key in ("Id", "Names", "State", "Ports", "Mounts", "Labels"):
                try:
                    summary[key] = container[key]
                except KeyError:
                    continue
            result.append(self._parse_summary(summary))

        self._log.debug("docker.list_containers.result", count=len(result))
        return result

    # Volume management

    async def list_volumes(self) -> list[RuntimeVolume]:
        client = await self._get_client()
        with self._translate_errors("list_volumes"):
            response = await client.volumes.list()

        volumes = [self._parse_volume(v) for v in (response.get("Volumes") or [])]
        self._log.debug("docker.list_volumes.result", count=len(volumes))
        return volumes

    async def create_volume(
        self,
        name: str,
        *,
        driver: str = "local",
        labels: dict[str, str] | None = None,
    ) -> RuntimeVolume:
        client = await self._get_client()
        self._log.info("docker.create_volume", name=name, driver=driver)

        with self._translate_errors("create_volume", name=name):
            volume = await client.volumes.create(
                {
                    "Name": name,
                    "Driver": driver,
                    "Labels": labels or {},
                }
            )
            data = await volume.show()

        return self._parse_volume(data)

    async def remove_volume(self, name: str) -> None:
        client = await self._get_client()
        self._log.info("docker.remove_volume", name=name)

        with self._translate_errors("remove_volume", name=name):
            volume = await client.volumes.get(name)
            await volume.delete()
