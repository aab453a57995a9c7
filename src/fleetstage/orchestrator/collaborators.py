"""Interfaces of the collaborators the engine drives but does not implement."""

import socket
from abc import ABC, abstractmethod
from typing import List, Optional

from fleetstage.config.models import ServerResource
from fleetstage.providers.base import ServerInfo
from fleetstage.utils.errors import ContainerLayerError, ErrorContext, FleetError
from fleetstage.utils.logging import get_logger

logger = get_logger(__name__)


class ContainerOrchestrator(ABC):
    """Realizes the container set of a stage.

    Implementations live outside the engine. Any exception they raise is
    passed through as :class:`ContainerLayerError`.
    """

    @abstractmethod
    def up(self, stage_name: str, service_names: List[str]) -> None:
        pass

    @abstractmethod
    def down(self, stage_name: str, service_names: List[str]) -> None:
        pass


def run_container_step(containers: ContainerOrchestrator, operation: str,
                       stage_name: str, service_names: List[str]) -> None:
    """Call ``containers.up`` or ``containers.down`` and wrap any failure.

    Raises:
        ContainerLayerError: With the collaborator's own message as detail
    """
    logger.info(f"Containers {operation} for stage {stage_name}: {', '.join(service_names) or 'none'}")
    try:
        getattr(containers, operation)(stage_name, list(service_names))
    except ContainerLayerError:
        raise
    except Exception as e:
        detail = e.message if isinstance(e, FleetError) else (str(e) or type(e).__name__)
        raise ContainerLayerError(
            detail,
            context=ErrorContext(
                resource_key=f"containers:stage:{stage_name}",
                operation=f"containers_{operation}",
                stage=stage_name,
            ),
            cause=e,
        ) from e


class ReachabilityCheck(ABC):
    """Decides whether a running server accepts remote commands yet."""

    @abstractmethod
    def is_reachable(self, server: ServerResource, info: ServerInfo) -> bool:
        pass


class TcpReachabilityCheck(ReachabilityCheck):
    """Reachable once the server's SSH port accepts a TCP connection."""

    def __init__(self, connect_timeout: float = 3.0):
        self.connect_timeout = connect_timeout

    @staticmethod
    def target_host(server: ServerResource, info: ServerInfo) -> Optional[str]:
        return server.ssh_host or info.ipv4 or info.ipv6

    def is_reachable(self, server: ServerResource, info: ServerInfo) -> bool:
        host = self.target_host(server, info)
        if not host:
            logger.debug(f"{server.name} has no address yet")
            return False
        try:
            with socket.create_connection((host, server.ssh_port), timeout=self.connect_timeout):
                return True
        except OSError as e:
            logger.debug(f"{host}:{server.ssh_port} not reachable yet: {e}")
            return False
