"""Host port allocation."""

from berth.services.ports.allocator import PortAllocator, PortProber, SocketProber

__all__ = ["PortAllocator", "PortProber", "SocketProber"]
