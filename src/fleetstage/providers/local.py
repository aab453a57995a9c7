"""No-op provider for servers that are the local machine."""

from typing import Optional

from fleetstage.config.models import ServerResource
from fleetstage.providers.base import ComputeProvider, ServerInfo, ServerStatus


class LocalProvider(ComputeProvider):
    """The local host: always running, never created, powered or destroyed."""

    supports_power_control = False
    graceful_shutdown_timeout = 0.0

    def _info(self, identity: str) -> ServerInfo:
        return ServerInfo(identity=identity, status=ServerStatus.RUNNING, ipv4="127.0.0.1")

    def lookup(self, server: ServerResource) -> Optional[ServerInfo]:
        return self._info(f"local:{server.name}")

    def describe(self, identity: str) -> Optional[ServerInfo]:
        return self._info(identity)

    def _create(self, server: ServerResource) -> ServerInfo:
        return self._info(f"local:{server.name}")

    def _power_on(self, identity: str) -> None:
        pass

    def _power_off(self, identity: str, force: bool) -> None:
        pass

    def _destroy(self, identity: str) -> None:
        pass
