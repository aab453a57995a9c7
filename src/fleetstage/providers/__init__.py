"""Compute provider capability, registry and backends."""

from fleetstage.providers.base import AuthStatus, ComputeProvider, ServerInfo, ServerStatus
from fleetstage.providers.ec2 import EC2Provider
from fleetstage.providers.local import LocalProvider
from fleetstage.providers.registry import BackendRegistry
from fleetstage.providers.sakura import SakuraCloudProvider


def default_provider_registry() -> "BackendRegistry[ComputeProvider]":
    """Registry with every built-in compute backend."""
    registry: BackendRegistry[ComputeProvider] = BackendRegistry("compute")
    registry.register("local", LocalProvider)
    registry.register("ec2", EC2Provider)
    registry.register("sakura-cloud", SakuraCloudProvider)
    return registry


__all__ = [
    'AuthStatus',
    'BackendRegistry',
    'ComputeProvider',
    'EC2Provider',
    'LocalProvider',
    'SakuraCloudProvider',
    'ServerInfo',
    'ServerStatus',
    'default_provider_registry',
]
