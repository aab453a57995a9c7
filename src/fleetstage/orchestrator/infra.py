"""Drives compute and DNS backends toward a stage's desired infrastructure."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from fleetstage.config.models import DnsDeclaration, Project, RecordType, ServerResource, Stage
from fleetstage.config.settings import EngineSettings
from fleetstage.dns.base import DnsProvider, DnsRecord
from fleetstage.orchestrator.planner import ActionType, PlannedAction, StagePlan
from fleetstage.orchestrator.results import (
    ConvergenceResult,
    ExecutionStatus,
    ProgressCallback,
    ResourceOutcome,
)
from fleetstage.providers.base import ComputeProvider, ServerInfo, ServerStatus
from fleetstage.providers.registry import BackendRegistry
from fleetstage.state.models import StateEntry
from fleetstage.state.store import StateStore
from fleetstage.utils.errors import (
    ErrorContext,
    FleetError,
    OperationCancelledError,
    ProviderUnavailableError,
    ProvisionTimeoutError,
    error_handler,
)
from fleetstage.utils.logging import LogContext, get_logger
from fleetstage.utils.retry import poll_until

logger = get_logger(__name__)


class KeyedLocks:
    """One mutex per resource key, so work on a single identity never overlaps."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def hold(self, key: str):
        lock = self.get(key)
        with lock:
            yield


class Skipped(Exception):
    """Raised inside a resource task to record a SKIPPED outcome."""


@dataclass
class ServerReport:
    """Live view of one server for ``status``."""
    name: str
    resource_key: str
    status: ServerStatus
    identity: Optional[str] = None
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None
    error: Optional[str] = None


@dataclass
class StageStatus:
    """Live view of a stage's servers and DNS records."""
    stage: str
    servers: Dict[str, ServerReport] = field(default_factory=dict)
    dns: List[DnsRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class InfraOrchestrator:
    """Server power state machine and DNS convergence for one stage.

    Power state is always read live from the provider; the state store only
    remembers identities and addresses. Work on distinct servers runs in
    parallel, work on one identity is serialized, and a failure on one
    resource never stops its siblings.
    """

    def __init__(
        self,
        project: Project,
        store: StateStore,
        providers: BackendRegistry,
        dns_providers: BackendRegistry,
        settings: EngineSettings,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        """Initialize infra orchestrator.

        Args:
            project: Parsed desired state
            store: State store handle (locked for mutating operations)
            providers: Compute provider registry
            dns_providers: DNS provider registry
            settings: Timeouts, backoff and worker count
            cancel_event: Set to abort in-flight polls
            progress_callback: Called once per finished resource outcome
            locks: Per-key mutex map shared across orchestrators
        """
        self.project = project
        self.store = store
        self.providers = providers
        self.dns_providers = dns_providers
        self.settings = settings
        self.cancel_event = cancel_event or threading.Event()
        self.progress_callback = progress_callback
        self.locks = locks or KeyedLocks()
        self._known: Dict[str, ServerInfo] = {}
        self._known_lock = threading.Lock()
        self._authenticated: Set[str] = set()
        self._auth_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Backend resolution
    # ------------------------------------------------------------------

    def provider_for(self, server: ServerResource) -> ComputeProvider:
        return self.providers.get(
            server.provider, self.project.providers.get(server.provider), self.project.name
        )

    def dns_for(self, decl: DnsDeclaration) -> DnsProvider:
        return self.dns_providers.get(
            decl.provider, self.project.providers.get(decl.provider), self.project.name
        )

    def validate(self, stage: Stage) -> None:
        """Resolve every backend the stage needs and verify its credentials.

        Runs before any server or record is read or changed. Each backend is
        checked once per orchestrator.

        Raises:
            InvalidSpecError: If a provider id is not registered
            ProviderUnavailableError: If a backend rejects its credentials
        """
        backends: List[Union[ComputeProvider, DnsProvider]] = [
            self.provider_for(server) for server in self.project.stage_servers(stage)
        ]
        backends += [self.dns_for(decl) for decl in stage.dns]
        for backend in backends:
            self._check_auth(backend, stage)

    def _check_auth(self, backend: Union[ComputeProvider, DnsProvider], stage: Stage) -> None:
        with self._auth_lock:
            if backend.name in self._authenticated:
                return
            status = backend.check_auth()
            if not status.authenticated:
                raise ProviderUnavailableError(
                    f"{backend.name} rejected its credentials: {status.error}",
                    context=ErrorContext(provider=backend.name, operation="check_auth",
                                         stage=stage.name),
                    suggestions=[f"Check the credentials configured for {backend.name}"],
                )
            self._authenticated.add(backend.name)
        if status.account:
            logger.info(f"{backend.name} authenticated as {status.account}")

    def _servers(self, stage: Stage, exclude: Optional[Set[str]]) -> List[ServerResource]:
        return [s for s in self.project.stage_servers(stage) if not exclude or s.name not in exclude]

    def _declarations(self, stage: Stage, exclude: Optional[Set[str]]) -> List[DnsDeclaration]:
        return [d for d in stage.dns if not exclude or d.server not in exclude]

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    def _check_cancelled(self, what: str) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelledError(f"cancelled before {what}")

    def _execute(
        self,
        resource_key: str,
        operation: str,
        stage: Stage,
        provider: str,
        task: Callable[[], Tuple[str, Dict]],
    ) -> ResourceOutcome:
        """Run one resource task and turn its result or exception into an outcome."""
        start = time.monotonic()
        context = ErrorContext(
            resource_key=resource_key, provider=provider, operation=operation, stage=stage.name
        )
        with LogContext(logger, resource_key=resource_key, stage=stage.name,
                        provider=provider, operation=operation):
            try:
                with self.locks.hold(resource_key):
                    message, details = task()
                outcome = ResourceOutcome(resource_key, operation, ExecutionStatus.SUCCESS,
                                          message=message, details=details)
                logger.info(f"{operation}: {message}")
            except Skipped as s:
                outcome = ResourceOutcome(resource_key, operation, ExecutionStatus.SKIPPED,
                                          message=str(s))
                logger.info(f"{operation} skipped: {s}")
            except Exception as e:
                error = error_handler.handle_exception(e, context)
                error_handler.log_error(error)
                outcome = ResourceOutcome(resource_key, operation, ExecutionStatus.FAILED,
                                          message=error.message, error=error)

            outcome.duration = time.monotonic() - start
            logger.debug(f"{operation} finished in {outcome.duration:.2f}s",
                         extra={"duration": round(outcome.duration, 3)})

        if self.progress_callback:
            self.progress_callback(resource_key, outcome.status, outcome.message or None)
        return outcome

    def run_parallel(
        self,
        result: ConvergenceResult,
        items: Iterable,
        task: Callable[..., List[ResourceOutcome]],
    ) -> ConvergenceResult:
        """Run ``task(item)`` for every item across the worker pool and collect outcomes."""
        items = list(items)
        result.start_time = datetime.now()
        if items:
            workers = min(self.settings.max_workers, len(items))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fleetstage") as pool:
                futures = {pool.submit(task, item): item for item in items}
                try:
                    for future in as_completed(futures):
                        for outcome in future.result():
                            result.add(outcome)
                except KeyboardInterrupt:
                    logger.warning("Interrupted; aborting in-flight waits")
                    self.cancel_event.set()
                    raise
        result.end_time = datetime.now()

        cancelled = [o for o in result.outcomes if isinstance(o.error, OperationCancelledError)]
        if cancelled:
            raise cancelled[0].error
        return result

    def _wait_for_status(
        self,
        provider: ComputeProvider,
        identity: str,
        target: ServerStatus,
        timeout: float,
        context: ErrorContext,
    ) -> None:
        poll_until(
            lambda: provider.read_status(identity) == target,
            self.settings.backoff(timeout),
            description=f"{identity} to become {target.value}",
            timeout_error=ProvisionTimeoutError,
            context=context,
            cancel_event=self.cancel_event,
        )

    def _resolve_identity(self, server: ServerResource, provider: ComputeProvider) -> Optional[str]:
        """Identity from the state store, else from a live tag lookup."""
        entry = self.store.get(server.resource_key())
        if entry is not None:
            return entry.identity
        info = provider.lookup(server)
        return info.identity if info is not None else None

    def _remember(self, server: ServerResource, info: ServerInfo) -> None:
        with self._known_lock:
            self._known[server.name] = info

    def _record_server(self, server: ServerResource, provider: ComputeProvider, info: ServerInfo) -> None:
        key = server.resource_key()
        metadata = {"provider": provider.name, **info.addresses(), **{
            k: v for k, v in info.metadata.items() if v is not None
        }}
        existing = self.store.get(key)
        if existing is not None:
            entry = existing.model_copy(update={"identity": info.identity, "metadata": metadata})
        else:
            entry = StateEntry(key=key, identity=info.identity, metadata=metadata)
        self.store.put(entry)

    # ------------------------------------------------------------------
    # ensure_running
    # ------------------------------------------------------------------

    def ensure_running(self, stage: Stage, exclude: Optional[Set[str]] = None) -> ConvergenceResult:
        """Bring every server of the stage to Running.

        NotFound servers are created, Stopped ones powered on, transitional
        ones waited for. Running servers are left alone. The state entry is
        written as soon as a server exists and refreshed with its addresses
        once it is Running.
        """
        self._check_cancelled("ensure_running")
        self.validate(stage)
        result = ConvergenceResult(operation="ensure_running", stage=stage.name)
        return self.run_parallel(
            result, self._servers(stage, exclude), lambda s: [self._ensure_server(stage, s)]
        )

    def _drive_to_running(
        self,
        provider: ComputeProvider,
        identity: str,
        status: ServerStatus,
        context: ErrorContext,
    ) -> Optional[str]:
        """Power on or wait out a server in ``status``; returns what was done."""
        if status == ServerStatus.RUNNING:
            return None
        if status == ServerStatus.STOPPED:
            provider.power_on(identity)
            self._wait_for_status(provider, identity, ServerStatus.RUNNING,
                                  self.settings.power_timeout, context)
            return "powered on"
        if status == ServerStatus.STOPPING:
            self._wait_for_status(provider, identity, ServerStatus.STOPPED,
                                  self.settings.power_timeout, context)
            provider.power_on(identity)
            self._wait_for_status(provider, identity, ServerStatus.RUNNING,
                                  self.settings.power_timeout, context)
            return "powered on after shutdown finished"
        self._wait_for_status(provider, identity, ServerStatus.RUNNING,
                              self.settings.provision_timeout, context)
        return "finished starting"

    def _ensure_server(self, stage: Stage, server: ServerResource) -> ResourceOutcome:
        provider = self.provider_for(server)
        key = server.resource_key()

        def task():
            context = ErrorContext(resource_key=key, provider=provider.name,
                                   operation="ensure_running", stage=stage.name)
            entry = self.store.get(key)
            identity = entry.identity if entry else None
            status = provider.read_status(identity) if identity else ServerStatus.NOT_FOUND
            logger.debug(f"{server.name} is {status.value}")

            if status == ServerStatus.NOT_FOUND:
                info = provider.create(server, known_identity=identity)
                identity = info.identity
                self._record_server(server, provider, info)
                done = self._drive_to_running(provider, identity, info.status, context)
                if info.status in (ServerStatus.STOPPED, ServerStatus.STOPPING):
                    action = f"found {info.status.value}, {done}"
                elif info.status == ServerStatus.RUNNING:
                    action = "found running"
                else:
                    action = "created"
            else:
                action = self._drive_to_running(provider, identity, status, context) or "already running"

            info = provider.describe(identity)
            if info is None or info.status != ServerStatus.RUNNING:
                raise FleetError(f"server {identity} is not running after convergence",
                                 context=context)
            self._record_server(server, provider, info)
            self._remember(server, info)
            return f"{action} ({identity})", {"identity": identity, **info.addresses()}

        return self._execute(key, "ensure_running", stage, provider.name, task)

    def server_info(self, server: ServerResource) -> Optional[ServerInfo]:
        """Last known live info of a server, read from the provider when not cached."""
        with self._known_lock:
            cached = self._known.get(server.name)
        if cached is not None:
            return cached
        entry = self.store.get(server.resource_key())
        if entry is None:
            return None
        info = self.provider_for(server).describe(entry.identity)
        if info is not None:
            self._remember(server, info)
        return info

    # ------------------------------------------------------------------
    # DNS
    # ------------------------------------------------------------------

    def converge_dns(self, stage: Stage, exclude: Optional[Set[str]] = None) -> ConvergenceResult:
        """Ensure each server's primary record, then its CNAME aliases.

        A server that is not Running (or has no address of the declared
        family) gets SKIPPED outcomes; a failed primary record skips its
        aliases. Other servers' records are unaffected.
        """
        self._check_cancelled("converge_dns")
        self.validate(stage)
        result = ConvergenceResult(operation="converge_dns", stage=stage.name)
        return self.run_parallel(
            result, self._declarations(stage, exclude), lambda d: self._converge_declaration(stage, d)
        )

    def _converge_declaration(self, stage: Stage, decl: DnsDeclaration) -> List[ResourceOutcome]:
        server = self.project.servers[decl.server]
        dns = self.dns_for(decl)
        primary = decl.primary_fqdn(stage.name)
        primary_key = decl.record_key(primary)
        outcomes: List[ResourceOutcome] = []

        def ensure(fqdn: str, record_type: RecordType, value: str):
            def task():
                record = dns.ensure_record(fqdn, record_type, value, ttl=decl.ttl, proxied=decl.proxied)
                self.store.put(StateEntry(
                    key=decl.record_key(fqdn),
                    identity=record.id,
                    metadata={"name": fqdn, "type": record_type.value, "value": record.value,
                              "zone": decl.zone, "server": server.name, "stage": stage.name},
                ))
                return f"{fqdn} {record_type.value} -> {record.value}", {"record_id": record.id}
            return task

        def primary_task():
            info = self.server_info(server)
            if info is None or info.status != ServerStatus.RUNNING:
                raise Skipped(f"{server.name} is not running; address unknown")
            address = info.ipv6 if decl.record_type == RecordType.AAAA else info.ipv4
            if not address:
                raise Skipped(f"{server.name} has no {decl.record_type.value} address")
            return ensure(primary, decl.record_type, address)()

        outcome = self._execute(primary_key, "ensure_record", stage, dns.name, primary_task)
        outcomes.append(outcome)

        for alias in server.dns_aliases:
            fqdn = decl.alias_fqdn(alias)
            key = decl.record_key(fqdn)
            if not outcome.is_success():
                outcomes.append(ResourceOutcome(
                    key, "ensure_record", ExecutionStatus.SKIPPED,
                    message=f"primary record {primary} was not converged",
                ))
                continue
            outcomes.append(self._execute(key, "ensure_record", stage, dns.name,
                                          ensure(fqdn, RecordType.CNAME, primary)))
        return outcomes

    def remove_dns(self, stage: Stage, exclude: Optional[Set[str]] = None) -> ConvergenceResult:
        """Remove aliases first, then the primary record, per declaration.

        If any alias of a server cannot be removed, its primary record is
        kept (SKIPPED) so no alias is left pointing at a deleted name.
        """
        self._check_cancelled("remove_dns")
        self.validate(stage)
        result = ConvergenceResult(operation="remove_dns", stage=stage.name)
        return self.run_parallel(
            result, self._declarations(stage, exclude), lambda d: self._remove_declaration(stage, d)
        )

    def _remove_declaration(self, stage: Stage, decl: DnsDeclaration) -> List[ResourceOutcome]:
        server = self.project.servers[decl.server]
        dns = self.dns_for(decl)
        outcomes: List[ResourceOutcome] = []

        def remove(fqdn: str, record_type: RecordType):
            def task():
                removed = dns.remove_record(fqdn, record_type)
                self.store.remove(decl.record_key(fqdn))
                if removed is None:
                    return f"{fqdn} already absent", {}
                return f"{fqdn} {record_type.value} removed", {"record_id": removed.id}
            return task

        for alias in server.dns_aliases:
            fqdn = decl.alias_fqdn(alias)
            outcomes.append(self._execute(decl.record_key(fqdn), "remove_record", stage, dns.name,
                                          remove(fqdn, RecordType.CNAME)))

        primary = decl.primary_fqdn(stage.name)
        primary_key = decl.record_key(primary)
        if any(o.is_failed() for o in outcomes):
            outcomes.append(ResourceOutcome(
                primary_key, "remove_record", ExecutionStatus.SKIPPED,
                message=f"kept {primary}: an alias pointing at it could not be removed",
            ))
        else:
            outcomes.append(self._execute(primary_key, "remove_record", stage, dns.name,
                                          remove(primary, decl.record_type)))
        return outcomes

    # ------------------------------------------------------------------
    # power_off / destroy
    # ------------------------------------------------------------------

    def power_off(self, stage: Stage, exclude: Optional[Set[str]] = None) -> ConvergenceResult:
        """Stop every server of the stage: graceful first, forced after the provider's timeout."""
        self._check_cancelled("power_off")
        self.validate(stage)
        result = ConvergenceResult(operation="power_off", stage=stage.name)
        return self.run_parallel(
            result, self._servers(stage, exclude), lambda s: [self._power_off_server(stage, s)]
        )

    def _power_off_server(self, stage: Stage, server: ServerResource) -> ResourceOutcome:
        provider = self.provider_for(server)
        key = server.resource_key()

        def task():
            if not provider.supports_power_control:
                raise Skipped(f"{provider.name} servers cannot be powered off")
            context = ErrorContext(resource_key=key, provider=provider.name,
                                   operation="power_off", stage=stage.name)
            identity = self._resolve_identity(server, provider)
            status = provider.read_status(identity) if identity else ServerStatus.NOT_FOUND
            if status == ServerStatus.NOT_FOUND:
                return "not found; nothing to stop", {}
            if status == ServerStatus.STOPPED:
                return f"already stopped ({identity})", {"identity": identity}

            if status == ServerStatus.STARTING:
                self._wait_for_status(provider, identity, ServerStatus.RUNNING,
                                      self.settings.power_timeout, context)

            provider.power_off(identity)
            try:
                self._wait_for_status(provider, identity, ServerStatus.STOPPED,
                                      provider.graceful_shutdown_timeout, context)
                return f"stopped ({identity})", {"identity": identity}
            except ProvisionTimeoutError:
                logger.warning(
                    f"{identity} did not shut down within {provider.graceful_shutdown_timeout:g}s; "
                    f"forcing power off"
                )

            provider.power_off(identity, force=True)
            self._wait_for_status(provider, identity, ServerStatus.STOPPED,
                                  self.settings.power_timeout, context)
            return f"force-stopped ({identity})", {"identity": identity, "forced": True}

        return self._execute(key, "power_off", stage, provider.name, task)

    def destroy(self, stage: Stage, remove_dns: bool = True,
                exclude: Optional[Set[str]] = None) -> ConvergenceResult:
        """Remove DNS records (when requested), then destroy every server.

        A server whose DNS records could not all be removed is not destroyed.
        State entries are deleted only after the server is confirmed gone.
        """
        self._check_cancelled("destroy")
        self.validate(stage)
        result = ConvergenceResult(operation="destroy", stage=stage.name)
        blocked: Set[str] = set()

        if remove_dns:
            dns_result = self.remove_dns(stage, exclude)
            result.extend(dns_result)
            for outcome in dns_result.outcomes:
                if outcome.status != ExecutionStatus.SUCCESS:
                    entry_server = self._dns_owner(stage, outcome.resource_key)
                    if entry_server:
                        blocked.add(entry_server)

        self._check_cancelled("destroying servers")

        def destroy_one(server: ServerResource) -> List[ResourceOutcome]:
            if server.name in blocked:
                return [ResourceOutcome(
                    server.resource_key(), "destroy", ExecutionStatus.SKIPPED,
                    message=f"DNS records of {server.name} were not all removed",
                )]
            return [self._destroy_server(stage, server)]

        servers_result = ConvergenceResult(operation="destroy", stage=stage.name)
        self.run_parallel(servers_result, self._servers(stage, exclude), destroy_one)
        result.extend(servers_result)
        result.start_time = servers_result.start_time
        result.end_time = servers_result.end_time
        return result

    def _dns_owner(self, stage: Stage, record_key: str) -> Optional[str]:
        for decl in stage.dns:
            server = self.project.servers[decl.server]
            names = [decl.primary_fqdn(stage.name)] + [decl.alias_fqdn(a) for a in server.dns_aliases]
            if record_key in {decl.record_key(n) for n in names}:
                return decl.server
        return None

    def _destroy_server(self, stage: Stage, server: ServerResource) -> ResourceOutcome:
        provider = self.provider_for(server)
        key = server.resource_key()

        def task():
            if not provider.supports_power_control:
                self.store.remove(key)
                return f"{provider.name} server left in place", {}
            context = ErrorContext(resource_key=key, provider=provider.name,
                                   operation="destroy", stage=stage.name)
            identity = self._resolve_identity(server, provider)
            if identity is None:
                self.store.remove(key)
                return "already absent", {}

            provider.destroy(identity)
            self._wait_for_status(provider, identity, ServerStatus.NOT_FOUND,
                                  self.settings.power_timeout, context)
            self.store.remove(key)
            with self._known_lock:
                self._known.pop(server.name, None)
            return f"destroyed ({identity})", {"identity": identity}

        return self._execute(key, "destroy", stage, provider.name, task)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def _live_info(self, server: ServerResource) -> Tuple[Optional[str], Optional[ServerInfo]]:
        provider = self.provider_for(server)
        entry = self.store.get(server.resource_key())
        if entry is not None:
            info = provider.describe(entry.identity)
            if info is not None:
                return entry.identity, info
        info = provider.lookup(server)
        return (info.identity if info else None), info

    def status(self, stage: Stage) -> StageStatus:
        """Live status of every server and DNS record. Makes no mutating calls."""
        self.validate(stage)
        report = StageStatus(stage=stage.name)

        for server in self.project.stage_servers(stage):
            try:
                identity, info = self._live_info(server)
                report.servers[server.name] = ServerReport(
                    name=server.name,
                    resource_key=server.resource_key(),
                    status=info.status if info else ServerStatus.NOT_FOUND,
                    identity=identity,
                    ipv4=info.ipv4 if info else None,
                    ipv6=info.ipv6 if info else None,
                )
            except FleetError as e:
                report.servers[server.name] = ServerReport(
                    name=server.name, resource_key=server.resource_key(),
                    status=ServerStatus.NOT_FOUND, error=str(e),
                )
                report.errors.append(str(e))

        for decl in stage.dns:
            dns = self.dns_for(decl)
            server = self.project.servers[decl.server]
            wanted = [(decl.primary_fqdn(stage.name), decl.record_type)]
            wanted += [(decl.alias_fqdn(a), RecordType.CNAME) for a in server.dns_aliases]
            for fqdn, record_type in wanted:
                try:
                    record = dns.find_record(fqdn, record_type)
                except FleetError as e:
                    report.errors.append(str(e))
                    continue
                if record is not None:
                    report.dns.append(record)
        return report

    def plan_up(self, stage: Stage, plan: StagePlan, exclude: Optional[Set[str]] = None) -> StagePlan:
        """Append the actions ``ensure_running`` and ``converge_dns`` would take."""
        self.validate(stage)
        running: Dict[str, ServerInfo] = {}

        for server in self._servers(stage, exclude):
            key = server.resource_key()
            identity, info = self._live_info(server)
            status = info.status if info else ServerStatus.NOT_FOUND
            if status == ServerStatus.RUNNING:
                running[server.name] = info
                plan.add(PlannedAction(key, "server", ActionType.NO_CHANGE,
                                       f"{server.name} is running", current=identity))
            elif status == ServerStatus.NOT_FOUND:
                plan.add(PlannedAction(key, "server", ActionType.CREATE,
                                       f"create {server.name} on {server.provider}",
                                       desired=server.plan))
            elif status == ServerStatus.STARTING:
                plan.add(PlannedAction(key, "server", ActionType.WAIT,
                                       f"wait for {server.name} to finish starting", current=identity))
            else:
                plan.add(PlannedAction(key, "server", ActionType.START,
                                       f"power on {server.name}", current=identity))

        for decl in self._declarations(stage, exclude):
            dns = self.dns_for(decl)
            server = self.project.servers[decl.server]
            info = running.get(server.name)
            address = None
            if info is not None:
                address = info.ipv6 if decl.record_type == RecordType.AAAA else info.ipv4
            primary = decl.primary_fqdn(stage.name)
            records = [(primary, decl.record_type, address)]
            records += [(decl.alias_fqdn(a), RecordType.CNAME, primary) for a in server.dns_aliases]
            for fqdn, record_type, value in records:
                planned = dns.plan_record(fqdn, record_type, value)
                existing = None
                if planned != "create":
                    found = dns.find_record(fqdn, record_type)
                    existing = found.value if found else None
                plan.add(PlannedAction(
                    decl.record_key(fqdn), "dns", ActionType(planned),
                    f"{record_type.value} {fqdn} -> {value or 'address once running'}",
                    current=existing, desired=value,
                ))
        return plan

    def plan_suspend(self, stage: Stage, plan: StagePlan, exclude: Optional[Set[str]] = None) -> StagePlan:
        self.validate(stage)
        for server in self._servers(stage, exclude):
            key = server.resource_key()
            if not self.provider_for(server).supports_power_control:
                plan.add(PlannedAction(key, "server", ActionType.NO_CHANGE,
                                       f"{server.name} has no power control"))
                continue
            identity, info = self._live_info(server)
            status = info.status if info else ServerStatus.NOT_FOUND
            if status in (ServerStatus.RUNNING, ServerStatus.STARTING, ServerStatus.STOPPING):
                plan.add(PlannedAction(key, "server", ActionType.STOP,
                                       f"power off {server.name}", current=identity))
            else:
                plan.add(PlannedAction(key, "server", ActionType.NO_CHANGE,
                                       f"{server.name} is {status.value}", current=identity))
        return plan

    def plan_destroy(self, stage: Stage, plan: StagePlan, exclude: Optional[Set[str]] = None) -> StagePlan:
        self.validate(stage)
        for decl in self._declarations(stage, exclude):
            dns = self.dns_for(decl)
            server = self.project.servers[decl.server]
            records = [(decl.alias_fqdn(a), RecordType.CNAME) for a in server.dns_aliases]
            records.append((decl.primary_fqdn(stage.name), decl.record_type))
            for fqdn, record_type in records:
                found = dns.find_record(fqdn, record_type)
                action = ActionType.DELETE if found else ActionType.NO_CHANGE
                plan.add(PlannedAction(decl.record_key(fqdn), "dns", action,
                                       f"{record_type.value} {fqdn}",
                                       current=found.value if found else None))

        for server in self._servers(stage, exclude):
            key = server.resource_key()
            if not self.provider_for(server).supports_power_control:
                plan.add(PlannedAction(key, "server", ActionType.NO_CHANGE,
                                       f"{server.name} is not destroyable"))
                continue
            identity, info = self._live_info(server)
            if info is None or info.status == ServerStatus.NOT_FOUND:
                plan.add(PlannedAction(key, "server", ActionType.NO_CHANGE,
                                       f"{server.name} does not exist"))
            else:
                plan.add(PlannedAction(key, "server", ActionType.DELETE,
                                       f"destroy {server.name}", current=identity))
        return plan
