"""State file data models."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

STATE_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_resource_key(key: str) -> List[str]:
    """Split a provider:kind:logical-name key into its three parts."""
    parts = key.split(":", 2)
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"Resource key must look like provider:kind:name, got {key!r}")
    return parts


class StateEntry(BaseModel):
    """Last-known identity of one applied resource.

    Power state is never recorded here; it is always read live from the provider.
    """

    key: str = Field(..., description="provider:kind:logical-name")
    identity: str = Field(..., description="Opaque provider-assigned id")
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description="Addresses, record ids, zone, etc."
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        parse_resource_key(v)
        return v

    @property
    def provider(self) -> str:
        return parse_resource_key(self.key)[0]

    @property
    def kind(self) -> str:
        return parse_resource_key(self.key)[1]

    @property
    def name(self) -> str:
        return parse_resource_key(self.key)[2]

    def updated(self, identity: Optional[str] = None, **metadata: Any) -> "StateEntry":
        """Return a copy with a new identity and/or merged metadata."""
        merged = {**self.metadata, **metadata}
        return self.model_copy(
            update={
                "identity": identity or self.identity,
                "metadata": merged,
                "updated_at": utcnow(),
            }
        )


class StateFile(BaseModel):
    """On-disk layout of the state store."""

    version: int = STATE_VERSION
    updated_at: datetime = Field(default_factory=utcnow)
    entries: Dict[str, StateEntry] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateFile":
        return cls.model_validate(data)


class LockInfo(BaseModel):
    """Holder details written into the lock file."""

    pid: int
    hostname: str
    acquired_at: datetime = Field(default_factory=utcnow)
    command: Optional[str] = None

    def describe(self) -> str:
        text = f"pid {self.pid} on {self.hostname} since {self.acquired_at.isoformat()}"
        if self.command:
            text += f" ({self.command})"
        return text
