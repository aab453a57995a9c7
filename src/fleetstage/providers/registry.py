"""Lookup tables from provider id to backend implementation."""

import threading
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from fleetstage.config.models import ProviderConfig
from fleetstage.utils.errors import ErrorContext, InvalidSpecError
from fleetstage.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Factory signature: (provider config, project name) -> backend
BackendFactory = Callable[[ProviderConfig, str], T]


class BackendRegistry(Generic[T]):
    """Maps provider ids to factories and caches one backend per id.

    New backends are added by registering a factory; the orchestrators never
    change.
    """

    def __init__(self, kind: str):
        self.kind = kind
        self._factories: Dict[str, BackendFactory] = {}
        self._instances: Dict[str, T] = {}
        self._lock = threading.Lock()

    def register(self, provider_id: str, factory: BackendFactory) -> None:
        self._factories[provider_id] = factory
        self._instances.pop(provider_id, None)

    def register_instance(self, provider_id: str, backend: T) -> None:
        """Register a ready-made backend (used for fakes and pre-configured clients)."""
        self._instances[provider_id] = backend

    def ids(self) -> List[str]:
        return sorted(set(self._factories) | set(self._instances))

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._factories or provider_id in self._instances

    def get(self, provider_id: str, config: Optional[ProviderConfig] = None,
            project_name: str = "") -> T:
        """Resolve a backend, building it on first use.

        Args:
            provider_id: Identifier used in the project configuration
            config: Settings for the backend (defaults to an empty config)
            project_name: Project the backend works for

        Raises:
            InvalidSpecError: If no backend is registered under ``provider_id``
        """
        with self._lock:
            if provider_id in self._instances:
                return self._instances[provider_id]

            factory = self._factories.get(provider_id)
            if factory is None:
                raise InvalidSpecError(
                    f"unknown {self.kind} provider '{provider_id}' "
                    f"(registered: {', '.join(self.ids()) or 'none'})",
                    context=ErrorContext(provider=provider_id, operation="resolve_provider"),
                )

            backend = factory(config or ProviderConfig(name=provider_id), project_name)
            self._instances[provider_id] = backend
            logger.debug(f"Initialized {self.kind} provider {provider_id}")
            return backend
