"""Unit tests for PortAllocator."""

from __future__ import annotations

import pytest

from berth.config import PortsConfig
from berth.errors import NoPortAvailableError, RuntimeUnreachableError, ValidationError
from berth.services.ports import PortAllocator, SocketProber
from tests.fakes import FakeDriver, FakeProber


def _allocator(driver: FakeDriver, prober: FakeProber, **config) -> PortAllocator:
    return PortAllocator(driver, config=PortsConfig(**config), prober=prober)


class TestAllocate:
    async def test_returns_desired_port_when_free(self, allocator):
        assert await allocator.allocate(80) == 80

    async def test_desired_bound_by_container_uses_preferred_range(self, allocator, fake_driver):
        fake_driver.add_container("other", host_ports=[80, 8080])

        assert await allocator.allocate(80) == 8081

    async def test_desired_busy_on_host_uses_preferred_range(self, allocator, fake_prober):
        fake_prober.busy = {5432, 54320}

        assert await allocator.allocate(5432) == 54321

    async def test_excluded_ports_are_skipped(self, allocator, fake_prober):
        assert await allocator.allocate(80, exclude=[80, 8080]) == 8081
        assert 80 not in fake_prober.probed

    async def test_stopped_containers_count_as_used(self, allocator, fake_driver):
        from berth.models.container import ContainerState

        fake_driver.add_container("stopped", state=ContainerState.EXITED, host_ports=[3000])

        assert await allocator.allocate(3000) == 3001

    async def test_falls_back_to_dynamic_range(self, allocator, fake_prober):
        fake_prober.busy = {9000}

        assert await allocator.allocate(9000) == 49152

    async def test_falls_back_to_alternative_range(self, fake_driver):
        prober = FakeProber(busy={80, 8080, 50000, 50001})
        allocator = _allocator(
            fake_driver,
            prober,
            preferred_ranges={80: (8080, 8080)},
            dynamic_range=(50000, 50001),
            alternative_range=(10000, 10001),
        )

        assert await allocator.allocate(80) == 10000
        assert prober.probed == [80, 8080, 50000, 50001, 10000]

    async def test_exhausted(self, fake_driver):
        fake_driver.add_container("a", host_ports=[10000])
        prober = FakeProber(busy={7000, 50000})
        allocator = _allocator(
            fake_driver,
            prober,
            dynamic_range=(50000, 50000),
            alternative_range=(10000, 10000),
        )

        with pytest.raises(NoPortAvailableError):
            await allocator.allocate(7000)

    async def test_rejects_invalid_port(self, allocator, fake_driver):
        with pytest.raises(ValidationError):
            await allocator.allocate(0)
        with pytest.raises(ValidationError):
            await allocator.allocate(70000)

        assert fake_driver.calls == []

    async def test_used_set_is_rebuilt_on_every_call(self, allocator, fake_driver):
        assert await allocator.allocate(80) == 80
        fake_driver.add_container("late", host_ports=[80])

        assert await allocator.allocate(80) == 8080
        assert len(fake_driver.calls_to("list_containers")) == 2

    async def test_unreachable_runtime_propagates(self, allocator, fake_driver):
        fake_driver.fail("list_containers", RuntimeUnreachableError("connection refused"))

        with pytest.raises(RuntimeUnreachableError):
            await allocator.allocate(80)


class TestSocketProber:
    async def test_bound_port_is_busy(self):
        import socket

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        port = sock.getsockname()[1]
        try:
            assert await SocketProber("127.0.0.1").is_free(port) is False
        finally:
            sock.close()
