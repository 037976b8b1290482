"""PortAllocator - picks a free host port for a container port.

Nothing is persisted. Every call rebuilds the used-port set from the live
runtime and confirms each candidate with an OS bind probe.

Scan order (ascending within each range, first hit wins):
1. the desired port itself
2. the preferred range for well-known desired ports (80 -> 8080-8089, ...)
3. the dynamic range (49152-65535)
4. the alternative range (10000-10999)

There is no reservation between allocation and the container binding the
port, so two concurrent allocations can return the same port.
"""

from __future__ import annotations

import socket
from abc import ABC, abstractmethod
from collections.abc import Collection, Iterator

import structlog

from berth.config import PortRange, PortsConfig, get_settings
from berth.drivers.base import Driver
from berth.errors import NoPortAvailableError, ValidationError

logger = structlog.get_logger()


class PortProber(ABC):
    """OS-level availability check for one port."""

    @abstractmethod
    async def is_free(self, port: int) -> bool:
        ...


class SocketProber(PortProber):
    """Probe by binding a listening TCP socket and closing it immediately."""

    def __init__(self, host: str = "0.0.0.0") -> None:
        self._host = host

    async def is_free(self, port: int) -> bool:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._host, port))
            sock.listen(1)
        except OSError:
            return False
        finally:
            sock.close()
        return True


class PortAllocator:
    """Allocates host ports for container ports."""

    def __init__(
        self,
        driver: Driver,
        *,
        config: PortsConfig | None = None,
        prober: PortProber | None = None,
    ) -> None:
        self._driver = driver
        self._config = config or get_settings().ports
        self._prober = prober or SocketProber(self._config.probe_host)
        self._log = logger.bind(service="port_allocator")

    async def used_ports(self) -> set[int]:
        """Host ports published by any container, queried live."""
        containers = await self._driver.list_containers(all=True)
        return {
            p.host_port
            for c in containers
            for p in c.ports
            if p.host_port is not None
        }

    def _ranges(self, desired: int) -> Iterator[tuple[str, PortRange]]:
        yield "desired", (desired, desired)
        preferred = self._config.preferred_ranges.get(desired)
        if preferred is not None:
            yield "preferred", preferred
        yield "dynamic", self._config.dynamic_range
        yield "alternative", self._config.alternative_range

    async def _is_available(self, port: int, used: set[int]) -> bool:
        if port in used:
            return False
        return await self._prober.is_free(port)

    async def allocate(self, desired: int, *, exclude: Collection[int] = ()) -> int:
        """Return a free host port for ``desired``.

        Args:
            desired: Container port the caller would like to publish as is
            exclude: Host ports already handed out to the same caller

        Raises:
            ValidationError: If ``desired`` is not a valid port number
            NoPortAvailableError: If every range is exhausted
            RuntimeUnreachableError: If the runtime cannot be listed
        """
        if not (1 <= desired <= 65535):
            raise ValidationError(
                f"Invalid port: {desired}",
                details={"port": desired},
            )

        used = await self.used_ports() | set(exclude)

        for source, (low, high) in self._ranges(desired):
            for port in range(low, high + 1):
                if await self._is_available(port, used):
                    self._log.info(
                        "ports.allocate",
                        desired=desired,
                        port=port,
                        source=source,
                        used_count=len(used),
                    )
                    return port

        self._log.warning("ports.allocate.exhausted", desired=desired)
        raise NoPortAvailableError(
            f"No host port available for {desired}",
            details={"desired": desired},
        )
