"""CLI-facing operations over one project."""

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from fleetstage.config.models import Project
from fleetstage.config.settings import EngineSettings
from fleetstage.dns import default_dns_registry
from fleetstage.orchestrator.collaborators import (
    ContainerOrchestrator,
    ReachabilityCheck,
    TcpReachabilityCheck,
)
from fleetstage.orchestrator.infra import InfraOrchestrator, KeyedLocks, StageStatus
from fleetstage.orchestrator.planner import StagePlan
from fleetstage.orchestrator.results import ProgressCallback, StageResult
from fleetstage.orchestrator.stage import Confirmer, StageOrchestrator, TeardownDepth
from fleetstage.providers import default_provider_registry
from fleetstage.providers.registry import BackendRegistry
from fleetstage.state.store import StateStore
from fleetstage.utils.logging import LogContext, get_logger

logger = get_logger(__name__)


class FleetEngine:
    """Entry point used by the command-line layer.

    Each call is one command: mutating commands hold the project lock for
    their whole duration, read-only commands work on the last committed
    state without taking it.

    Example:
        engine = FleetEngine(project, load_settings(), containers=compose)
        result = engine.stage_up("staging")
        if not result.is_success():
            ...
    """

    def __init__(
        self,
        project: Project,
        settings: Optional[EngineSettings] = None,
        containers: Optional[ContainerOrchestrator] = None,
        reachability: Optional[ReachabilityCheck] = None,
        providers: Optional[BackendRegistry] = None,
        dns: Optional[BackendRegistry] = None,
        confirmer: Optional[Confirmer] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        """Initialize engine.

        Args:
            project: Parsed desired state
            settings: Engine settings (defaults apply when omitted)
            containers: Container layer for the project's stages
            reachability: Remote-shell readiness check (TCP connect to the SSH port by default)
            providers: Compute backends (built-ins when omitted)
            dns: DNS backends (built-ins when omitted)
            confirmer: Asked before a destroy that was not confirmed up front
            progress_callback: Called once per finished resource outcome
        """
        if containers is None:
            raise ValueError("a container orchestrator is required")
        self.project = project
        self.settings = settings or EngineSettings()
        self.containers = containers
        self.reachability = reachability or TcpReachabilityCheck()
        self.providers = providers or default_provider_registry()
        self.dns = dns or default_dns_registry()
        self.confirmer = confirmer
        self.progress_callback = progress_callback
        self.locks = KeyedLocks()

    def _orchestrator(self, store: StateStore, cancel_event: threading.Event) -> StageOrchestrator:
        infra = InfraOrchestrator(
            self.project,
            store,
            self.providers,
            self.dns,
            self.settings,
            cancel_event=cancel_event,
            progress_callback=self.progress_callback,
            locks=self.locks,
        )
        return StageOrchestrator(
            self.project,
            infra,
            self.containers,
            self.reachability,
            self.settings,
            confirmer=self.confirmer,
        )

    @contextmanager
    def _command(self, command: str, mutating: bool) -> Iterator[StageOrchestrator]:
        """Scope of one command: store handle, cancel event and command deadline."""
        cancel_event = threading.Event()
        timer = None
        if self.settings.command_timeout:
            def expire():
                logger.warning(
                    f"{command} exceeded its {self.settings.command_timeout:g}s deadline; cancelling"
                )
                cancel_event.set()

            timer = threading.Timer(self.settings.command_timeout, expire)
            timer.daemon = True
            timer.start()

        try:
            if mutating:
                with StateStore.open(
                    self.settings.state_path,
                    self.settings.lock_path,
                    lock_timeout=self.settings.lock_timeout,
                    stale_lock_max_age=self.settings.stale_lock_max_age,
                    command=command,
                ) as store:
                    yield self._orchestrator(store, cancel_event)
            else:
                store = StateStore.snapshot(self.settings.state_path)
                yield self._orchestrator(store, cancel_event)
        except KeyboardInterrupt:
            logger.warning(f"{command} interrupted; state keeps its last committed entries")
            cancel_event.set()
            raise
        finally:
            if timer is not None:
                timer.cancel()

    def stage_up(self, name: str) -> StageResult:
        """Bring a stage's servers, containers and DNS up."""
        stage = self.project.get_stage(name)
        with LogContext(logger, stage=name, operation="up"):
            with self._command(f"up {name}", mutating=True) as orchestrator:
                result = orchestrator.up(stage)
            self._log_result(result)
        return result

    def stage_down(self, name: str, depth: TeardownDepth = TeardownDepth.STOP_ONLY,
                   confirmed: bool = False) -> StageResult:
        """Stop a stage's containers and tear its servers down to ``depth``.

        Raises:
            ConfirmationRequiredError: For an unconfirmed DESTROY
        """
        stage = self.project.get_stage(name)
        with LogContext(logger, stage=name, operation=f"down:{depth.value}"):
            if depth == TeardownDepth.DESTROY and stage.is_remote and not confirmed:
                # the prompt shows a plan, which must not wait on our own lock
                with self._command(f"plan {name}", mutating=False) as orchestrator:
                    orchestrator.require_confirmation(stage, confirmed)
                confirmed = True
            with self._command(f"down {name} ({depth.value})", mutating=True) as orchestrator:
                result = orchestrator.down(stage, depth, confirmed=confirmed)
            self._log_result(result)
        return result

    def stage_status(self, name: str) -> StageStatus:
        """Live server power states and DNS records. Read-only."""
        stage = self.project.get_stage(name)
        with self._command(f"status {name}", mutating=False) as orchestrator:
            return orchestrator.status(stage)

    def stage_plan(self, name: str, depth: Optional[TeardownDepth] = None) -> StagePlan:
        """Pending actions of ``stage_up`` (or ``stage_down(depth)``) without applying them."""
        stage = self.project.get_stage(name)
        with self._command(f"plan {name}", mutating=False) as orchestrator:
            plan = orchestrator.plan(stage, depth)
        logger.info(f"Plan for {name} ({plan.operation}): {plan.summary()}")
        return plan

    @staticmethod
    def _log_result(result: StageResult) -> None:
        outcomes = result.outcomes
        failed = len(result.failed)
        if result.is_success():
            logger.info(f"Stage {result.stage} {result.operation}: {len(outcomes)} resource step(s) done")
        else:
            logger.error(
                f"Stage {result.stage} {result.operation}: {failed} of {len(outcomes)} "
                f"resource step(s) failed"
                + ("; container layer failed" if result.container_error else "")
            )
