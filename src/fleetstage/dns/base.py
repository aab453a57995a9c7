"""DNS capability with ensure semantics shared by every DNS backend."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from fleetstage.config.models import ProviderConfig, RecordType
from fleetstage.providers.base import AuthStatus
from fleetstage.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DnsRecord:
    """One record as it exists at the DNS provider."""
    id: str
    name: str
    type: RecordType
    value: str
    proxied: bool = False
    ttl: int = 1


class DnsProvider(ABC):
    """Base class for DNS backends.

    Backends implement the four record primitives. ``ensure_record`` and
    ``remove_record`` build the idempotent contract on top of them:

    * absent -> create
    * present with a different value -> update
    * present with the same value -> no write, existing record returned
    """

    def __init__(self, config: ProviderConfig, project_name: str = ""):
        self.config = config
        self.project_name = project_name

    @property
    def name(self) -> str:
        return self.config.name

    def check_auth(self) -> AuthStatus:
        """Verify the backend accepts its credentials. Failures are returned, not raised."""
        return AuthStatus.ok()

    @abstractmethod
    def find_record(self, name: str, type: RecordType) -> Optional[DnsRecord]:
        """Look up a record by fully-qualified name and type."""

    @abstractmethod
    def create_record(self, name: str, type: RecordType, value: str,
                      ttl: int = 1, proxied: bool = False) -> DnsRecord:
        pass

    @abstractmethod
    def update_record(self, record: DnsRecord, value: str) -> DnsRecord:
        pass

    @abstractmethod
    def delete_record(self, record: DnsRecord) -> None:
        pass

    def plan_record(self, name: str, type: RecordType, value: Optional[str]) -> str:
        """What ``ensure_record`` would do: 'create', 'update' or 'no_change'. Read-only."""
        existing = self.find_record(name, type)
        if existing is None:
            return "create"
        if value is not None and existing.value != value:
            return "update"
        return "no_change"

    def ensure_record(self, name: str, type: RecordType, value: str,
                      ttl: int = 1, proxied: bool = False) -> DnsRecord:
        """Converge one record to ``value``.

        Args:
            name: Fully-qualified record name
            type: A, AAAA or CNAME
            value: Address, or target name for CNAME
            ttl: TTL used when the record is created (1 = automatic)
            proxied: Proxy flag used when the record is created

        Returns:
            The record as it exists after convergence
        """
        existing = self.find_record(name, type)
        if existing is None:
            record = self.create_record(name, type, value, ttl=ttl, proxied=proxied)
            logger.info(f"Created {type.value} record {name} -> {value}")
            return record
        if existing.value != value:
            record = self.update_record(existing, value)
            logger.info(f"Updated {type.value} record {name}: {existing.value} -> {value}")
            return record
        logger.debug(f"{type.value} record {name} already points at {value}")
        return existing

    def remove_record(self, name: str, type: RecordType) -> Optional[DnsRecord]:
        """Delete a record if it exists.

        Returns:
            The deleted record, or None when there was nothing to delete
        """
        existing = self.find_record(name, type)
        if existing is None:
            logger.debug(f"{type.value} record {name} already absent")
            return None
        self.delete_record(existing)
        logger.info(f"Deleted {type.value} record {name}")
        return existing
