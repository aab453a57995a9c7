"""Shared fixtures and in-memory fakes for the engine tests."""

import threading
from typing import Dict, List, Optional, Set

import pytest

from fleetstage.config.models import Project, ProviderConfig, RecordType, ServerResource
from fleetstage.config.settings import EngineSettings
from fleetstage.dns.base import DnsProvider, DnsRecord
from fleetstage.engine import FleetEngine
from fleetstage.orchestrator.collaborators import ContainerOrchestrator, ReachabilityCheck
from fleetstage.orchestrator.infra import InfraOrchestrator
from fleetstage.providers.base import AuthStatus, ComputeProvider, ServerInfo, ServerStatus
from fleetstage.providers.local import LocalProvider
from fleetstage.providers.registry import BackendRegistry
from fleetstage.state.store import StateStore
from fleetstage.utils.errors import DnsConvergenceError, QuotaExceededError


class FakeComputeProvider(ComputeProvider):
    """In-memory compute backend.

    Transitions (create, power on/off, destroy) settle after
    ``transition_reads`` describe calls, like a real backend that needs a
    few polls. Mutating calls are appended to ``calls`` and ``journal``.
    """

    graceful_shutdown_timeout = 0.05

    def __init__(self, config: Optional[ProviderConfig] = None, project_name: str = "demo",
                 journal: Optional[List] = None, transition_reads: int = 1):
        super().__init__(config or ProviderConfig(name="fake"), project_name)
        self.journal = journal if journal is not None else []
        self.transition_reads = transition_reads
        self.servers: Dict[str, Dict] = {}
        self.calls: List = []
        self.stuck_starting = False
        self.ignore_graceful = False
        self.fail_create: Set[str] = set()
        self.auth_error: Optional[str] = None
        self.auth_checks = 0
        self._pending: Dict[str, List] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def _record(self, op: str, target: str) -> None:
        self.calls.append((op, target))
        self.journal.append(("compute", op, target))

    def _transition(self, identity: str, now: ServerStatus, then: ServerStatus) -> None:
        self.servers[identity]["status"] = now
        self._pending[identity] = [then, self.transition_reads]

    def add_server(self, name: str, status: ServerStatus = ServerStatus.RUNNING,
                   settles_to: Optional[ServerStatus] = None) -> str:
        """Seed a server that exists before the test starts."""
        with self._lock:
            self._counter += 1
            identity = f"srv-{self._counter}"
            self.servers[identity] = {
                "name": name, "status": status, "ipv4": f"10.0.0.{self._counter}",
            }
            if settles_to is not None:
                self._transition(identity, status, settles_to)
        return identity

    def status_of(self, name: str) -> ServerStatus:
        for server in list(self.servers.values()):
            if server["name"] == name and server["status"] != ServerStatus.NOT_FOUND:
                return server["status"]
        return ServerStatus.NOT_FOUND

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    def check_auth(self) -> AuthStatus:
        self.auth_checks += 1
        return AuthStatus.failed(self.auth_error) if self.auth_error else AuthStatus.ok("fake-account")

    def lookup(self, server: ServerResource) -> Optional[ServerInfo]:
        with self._lock:
            candidates = [i for i, data in self.servers.items()
                          if data["name"] == server.name and data["status"] != ServerStatus.NOT_FOUND]
        for identity in candidates:
            info = self.describe(identity)
            if info is not None:
                return info
        return None

    def describe(self, identity: str) -> Optional[ServerInfo]:
        with self._lock:
            data = self.servers.get(identity)
            if data is None:
                return None
            pending = self._pending.get(identity)
            if pending is not None:
                if pending[1] <= 0:
                    data["status"] = pending[0]
                    del self._pending[identity]
                else:
                    pending[1] -= 1
            if data["status"] == ServerStatus.NOT_FOUND:
                return None
            return ServerInfo(identity=identity, status=data["status"], ipv4=data["ipv4"])

    def _create(self, server: ServerResource) -> ServerInfo:
        self._record("create", server.name)
        if server.name in self.fail_create:
            raise QuotaExceededError(f"instance limit reached creating {server.name}")
        identity = self.add_server(server.name, ServerStatus.STARTING)
        with self._lock:
            if not self.stuck_starting:
                self._transition(identity, ServerStatus.STARTING, ServerStatus.RUNNING)
        return ServerInfo(identity=identity, status=ServerStatus.STARTING)

    def _power_on(self, identity: str) -> None:
        self._record("power_on", identity)
        with self._lock:
            self._transition(identity, ServerStatus.STARTING, ServerStatus.RUNNING)

    def _power_off(self, identity: str, force: bool) -> None:
        self._record("power_off_force" if force else "power_off", identity)
        with self._lock:
            if force:
                self.servers[identity]["status"] = ServerStatus.STOPPED
                self._pending.pop(identity, None)
            elif not self.ignore_graceful:
                self._transition(identity, ServerStatus.STOPPING, ServerStatus.STOPPED)

    def _destroy(self, identity: str) -> None:
        self._record("destroy", identity)
        with self._lock:
            self._transition(identity, ServerStatus.STOPPING, ServerStatus.NOT_FOUND)


class FakeDnsProvider(DnsProvider):
    """In-memory DNS backend recording every write."""

    def __init__(self, config: Optional[ProviderConfig] = None, project_name: str = "demo",
                 journal: Optional[List] = None):
        super().__init__(config or ProviderConfig(name="fakedns"), project_name)
        self.journal = journal if journal is not None else []
        self.records: Dict = {}
        self.calls: List = []
        self.fail_names: Set[str] = set()
        self.auth_error: Optional[str] = None
        self._counter = 0
        self._lock = threading.Lock()

    def _record(self, op: str, name: str) -> None:
        self.calls.append((op, name))
        self.journal.append(("dns", op, name))
        if name in self.fail_names:
            raise DnsConvergenceError(f"API rejected {name}")

    @property
    def writes(self) -> List:
        return [call for call in self.calls if call[0] != "find"]

    def check_auth(self) -> AuthStatus:
        return AuthStatus.failed(self.auth_error) if self.auth_error else AuthStatus.ok()

    def find_record(self, name: str, type: RecordType) -> Optional[DnsRecord]:
        return self.records.get((name, type))

    def create_record(self, name, type, value, ttl=1, proxied=False) -> DnsRecord:
        self._record("create", name)
        with self._lock:
            self._counter += 1
            record = DnsRecord(id=f"rec-{self._counter}", name=name, type=type, value=value,
                               proxied=proxied, ttl=ttl)
            self.records[(name, type)] = record
        return record

    def update_record(self, record: DnsRecord, value: str) -> DnsRecord:
        self._record("update", record.name)
        updated = DnsRecord(id=record.id, name=record.name, type=record.type, value=value,
                            proxied=record.proxied, ttl=record.ttl)
        self.records[(record.name, record.type)] = updated
        return updated

    def delete_record(self, record: DnsRecord) -> None:
        self._record("delete", record.name)
        self.records.pop((record.name, record.type), None)


class RecordingContainers(ContainerOrchestrator):
    """Container layer that records calls and can be told to fail."""

    def __init__(self, journal: Optional[List] = None):
        self.journal = journal if journal is not None else []
        self.calls: List = []
        self.fail_on: Set[str] = set()

    def _call(self, op: str, stage_name: str, service_names: List[str]) -> None:
        self.calls.append((op, stage_name, list(service_names)))
        self.journal.append(("containers", op, stage_name))
        if op in self.fail_on:
            raise RuntimeError(f"compose {op} failed: network bridge missing")

    def up(self, stage_name, service_names):
        self._call("up", stage_name, service_names)

    def down(self, stage_name, service_names):
        self._call("down", stage_name, service_names)


class ScriptedReachability(ReachabilityCheck):
    """Reachable after ``ready_after`` checks; never when ``never`` is set."""

    def __init__(self, ready_after: int = 0, never: bool = False):
        self.ready_after = ready_after
        self.never = never
        self.checks: List[str] = []

    def is_reachable(self, server, info) -> bool:
        self.checks.append(server.name)
        if self.never:
            return False
        return len(self.checks) > self.ready_after


PROJECT_DATA = {
    "name": "demo",
    "providers": {
        "fake": {},
        "fakedns": {},
        "local": {},
    },
    "servers": {
        "web": {"provider": "fake", "plan": "2core-4gb", "dns_aliases": ["www", "app"]},
        "node-a": {"provider": "fake"},
        "node-b": {"provider": "fake"},
        "node-c": {"provider": "fake"},
        "workstation": {"provider": "local"},
    },
    "stages": {
        "staging": {
            "servers": ["web"],
            "dns": [{"server": "web", "provider": "fakedns", "zone": "example.com"}],
            "services": ["api", "worker"],
        },
        "cluster": {
            "servers": ["node-a", "node-b", "node-c"],
            "dns": [
                {"server": "node-a", "provider": "fakedns", "zone": "example.com"},
                {"server": "node-b", "provider": "fakedns", "zone": "example.com"},
            ],
            "services": ["api"],
        },
        "dev": {"services": ["api"]},
        "desk": {"servers": ["workstation"], "services": ["api"]},
    },
}


@pytest.fixture
def journal():
    """Cross-backend log of mutating calls, in call order."""
    return []


@pytest.fixture
def settings(tmp_path):
    """Engine settings with tiny timeouts and the state dir under tmp_path."""
    return EngineSettings(
        state_dir=tmp_path / ".fleetflow",
        provision_timeout=0.5,
        power_timeout=0.5,
        reachability_timeout=0.2,
        poll_initial_delay=0.001,
        poll_multiplier=1.5,
        poll_max_delay=0.01,
        max_workers=4,
    )


@pytest.fixture
def project():
    return Project.from_dict(PROJECT_DATA)


@pytest.fixture
def compute(journal):
    return FakeComputeProvider(journal=journal)


@pytest.fixture
def dns_backend(journal):
    return FakeDnsProvider(journal=journal)


@pytest.fixture
def providers(compute):
    registry = BackendRegistry("compute")
    registry.register_instance("fake", compute)
    registry.register("local", LocalProvider)
    return registry


@pytest.fixture
def dns_registry(dns_backend):
    registry = BackendRegistry("dns")
    registry.register_instance("fakedns", dns_backend)
    return registry


@pytest.fixture
def store(settings):
    """Writable, locked state store."""
    with StateStore.open(settings.state_path, settings.lock_path) as opened:
        yield opened


@pytest.fixture
def infra(project, store, providers, dns_registry, settings):
    return InfraOrchestrator(project, store, providers, dns_registry, settings)


@pytest.fixture
def containers(journal):
    return RecordingContainers(journal=journal)


@pytest.fixture
def reachability():
    return ScriptedReachability()


@pytest.fixture
def engine(project, settings, containers, reachability, providers, dns_registry):
    return FleetEngine(
        project,
        settings,
        containers=containers,
        reachability=reachability,
        providers=providers,
        dns=dns_registry,
    )


@pytest.fixture
def no_sleep(monkeypatch):
    """Skip the retry back-off between attempts."""
    monkeypatch.setattr("fleetstage.utils.retry.time.sleep", lambda seconds: None)
