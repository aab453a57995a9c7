"""Desired-state models and engine settings."""

from .models import (
    DeploymentRoute,
    DiskSpec,
    DnsDeclaration,
    Project,
    ProviderConfig,
    RecordType,
    ServerResource,
    Stage,
)
from .settings import ConfigValidationError, EngineSettings, load_settings

__all__ = [
    "DeploymentRoute",
    "DiskSpec",
    "DnsDeclaration",
    "Project",
    "ProviderConfig",
    "RecordType",
    "ServerResource",
    "Stage",
    "ConfigValidationError",
    "EngineSettings",
    "load_settings",
]
