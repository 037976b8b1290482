"""Docker driver."""

from berth.drivers.docker.docker import DockerDriver

__all__ = ["DockerDriver"]
