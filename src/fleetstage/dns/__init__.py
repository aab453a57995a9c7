"""DNS capability, registry and backends."""

from fleetstage.dns.base import DnsProvider, DnsRecord
from fleetstage.dns.cloudflare import CloudflareDns
from fleetstage.providers.registry import BackendRegistry


def default_dns_registry() -> "BackendRegistry[DnsProvider]":
    """Registry with every built-in DNS backend."""
    registry: BackendRegistry[DnsProvider] = BackendRegistry("dns")
    registry.register("cloudflare", CloudflareDns)
    return registry


__all__ = [
    'CloudflareDns',
    'DnsProvider',
    'DnsRecord',
    'default_dns_registry',
]
