"""Compute provider capability shared by every cloud backend."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from fleetstage.config.models import ProviderConfig, ServerResource
from fleetstage.utils.errors import ErrorContext, FleetError
from fleetstage.utils.logging import get_logger

logger = get_logger(__name__)


class ServerStatus(Enum):
    """Live power state of a server, always read from the provider."""
    NOT_FOUND = "not_found"
    STOPPED = "stopped"
    RUNNING = "running"
    STARTING = "starting"
    STOPPING = "stopping"


@dataclass
class ServerInfo:
    """What a provider reports about one server."""
    identity: str
    status: ServerStatus
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def addresses(self) -> Dict[str, str]:
        return {k: v for k, v in (("ipv4", self.ipv4), ("ipv6", self.ipv6)) if v}


@dataclass
class AuthStatus:
    """Whether a backend accepted the configured credentials."""
    authenticated: bool
    account: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, account: Optional[str] = None) -> "AuthStatus":
        return cls(authenticated=True, account=account)

    @classmethod
    def failed(cls, error: str) -> "AuthStatus":
        return cls(authenticated=False, error=error)


class ComputeProvider(ABC):
    """Base class for all compute backends.

    Subclasses implement the raw backend calls (``lookup``, ``describe``,
    ``_create``, ``_power_on``, ``_power_off``, ``_destroy``). The public
    lifecycle methods here add the idempotence every backend must honor:
    create never duplicates, power transitions into the current state are
    no-ops, and destroying an absent server succeeds.
    """

    #: Seconds the orchestrator waits after a graceful shutdown before forcing it
    graceful_shutdown_timeout: float = 120.0

    #: False for backends whose servers cannot be powered or destroyed
    supports_power_control: bool = True

    def __init__(self, config: ProviderConfig, project_name: str):
        """Initialize provider.

        Args:
            config: Backend settings from the project
            project_name: Used to tag and find the servers this project owns
        """
        self.config = config
        self.project_name = project_name
        timeout = config.config.get("graceful_shutdown_timeout")
        if timeout:
            self.graceful_shutdown_timeout = float(timeout)

    @property
    def name(self) -> str:
        return self.config.name

    def ownership_tags(self, server: ServerResource) -> Dict[str, str]:
        """Tags that let a later invocation find this server again."""
        return {
            "fleetflow:project": self.project_name,
            "fleetflow:server": server.name,
        }

    def context(self, operation: str, identity: Optional[str] = None,
                server: Optional[ServerResource] = None) -> ErrorContext:
        return ErrorContext(
            resource_key=server.resource_key() if server else None,
            provider=self.name,
            operation=operation,
            additional_info={"identity": identity} if identity else None,
        )

    def check_auth(self) -> AuthStatus:
        """Verify credentials without touching any server.

        Backends without credentials are always authenticated. Failures are
        reported in the returned status, not raised.
        """
        return AuthStatus.ok()

    # ------------------------------------------------------------------
    # Raw backend calls
    # ------------------------------------------------------------------

    @abstractmethod
    def lookup(self, server: ServerResource) -> Optional[ServerInfo]:
        """Find a live server owned by this project with the server's logical name.

        Returns:
            ServerInfo, or None if no such server exists
        """

    @abstractmethod
    def describe(self, identity: str) -> Optional[ServerInfo]:
        """Read one server by identity. Returns None when it does not exist."""

    @abstractmethod
    def _create(self, server: ServerResource) -> ServerInfo:
        pass

    @abstractmethod
    def _power_on(self, identity: str) -> None:
        pass

    @abstractmethod
    def _power_off(self, identity: str, force: bool) -> None:
        pass

    @abstractmethod
    def _destroy(self, identity: str) -> None:
        pass

    # ------------------------------------------------------------------
    # Idempotent lifecycle
    # ------------------------------------------------------------------

    def create(self, server: ServerResource, known_identity: Optional[str] = None) -> ServerInfo:
        """Create the server unless it already exists.

        Args:
            server: Desired server
            known_identity: Identity remembered in the state store, if any

        Returns:
            Info for the existing or newly created server

        Raises:
            ProviderUnavailableError, QuotaExceededError, InvalidSpecError
        """
        if known_identity:
            info = self.describe(known_identity)
            if info is not None and info.status != ServerStatus.NOT_FOUND:
                logger.info(f"Server {server.name} already exists as {info.identity}")
                return info

        info = self.lookup(server)
        if info is not None and info.status != ServerStatus.NOT_FOUND:
            logger.info(f"Found existing server {server.name} by tag: {info.identity}")
            return info

        logger.info(f"Creating server {server.name} with {self.name}")
        return self._create(server)

    def read_status(self, identity: str) -> ServerStatus:
        """Live power state. A missing server is NOT_FOUND, never an error."""
        info = self.describe(identity)
        return info.status if info is not None else ServerStatus.NOT_FOUND

    def power_on(self, identity: str) -> None:
        status = self.read_status(identity)
        if status in (ServerStatus.RUNNING, ServerStatus.STARTING):
            logger.debug(f"{identity} is already {status.value}")
            return
        if status == ServerStatus.NOT_FOUND:
            raise FleetError(
                f"cannot power on {identity}: server does not exist",
                context=self.context("power_on", identity),
            )
        self._power_on(identity)

    def power_off(self, identity: str, force: bool = False) -> None:
        """Shut a server down; ``force`` skips the graceful path."""
        status = self.read_status(identity)
        if status in (ServerStatus.STOPPED, ServerStatus.NOT_FOUND):
            logger.debug(f"{identity} is already {status.value}")
            return
        if status == ServerStatus.STOPPING and not force:
            return
        self._power_off(identity, force)

    def destroy(self, identity: str) -> None:
        """Delete a server. Succeeds as a no-op when it is already gone."""
        if self.read_status(identity) == ServerStatus.NOT_FOUND:
            logger.debug(f"{identity} already absent")
            return
        self._destroy(identity)
