"""Top-level sequencing of infrastructure and containers for one stage."""

import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, Optional, Set

from fleetstage.config.models import Project, ServerResource, Stage
from fleetstage.config.settings import EngineSettings
from fleetstage.orchestrator.collaborators import (
    ContainerOrchestrator,
    ReachabilityCheck,
    run_container_step,
)
from fleetstage.orchestrator.infra import InfraOrchestrator, StageStatus
from fleetstage.orchestrator.planner import ActionType, PlannedAction, StagePlan
from fleetstage.orchestrator.results import (
    ConvergenceResult,
    ExecutionStatus,
    ResourceOutcome,
    StageResult,
)
from fleetstage.utils.errors import (
    ConfirmationRequiredError,
    ContainerLayerError,
    ErrorContext,
    UnreachableTimeoutError,
    error_handler,
)
from fleetstage.utils.logging import get_logger
from fleetstage.utils.retry import poll_until

logger = get_logger(__name__)


class TeardownDepth(Enum):
    """How far ``down`` goes."""
    STOP_ONLY = "stop-only"
    SUSPEND = "suspend"
    DESTROY = "destroy"


# Returns True to let a destroy proceed; receives the teardown plan to show
Confirmer = Callable[[StagePlan], bool]


class StageOrchestrator:
    """Coordinates the infra orchestrator and the container layer.

    ``up``: servers, reachability, containers, then DNS.
    ``down``: containers always, then nothing / power off / destroy by depth.
    Local stages (no servers) never reach the infra orchestrator.
    """

    def __init__(
        self,
        project: Project,
        infra: InfraOrchestrator,
        containers: ContainerOrchestrator,
        reachability: ReachabilityCheck,
        settings: EngineSettings,
        confirmer: Optional[Confirmer] = None,
    ):
        self.project = project
        self.infra = infra
        self.containers = containers
        self.reachability = reachability
        self.settings = settings
        self.confirmer = confirmer

    @property
    def cancel_event(self) -> threading.Event:
        return self.infra.cancel_event

    def shared_servers(self, stage: Stage) -> Set[str]:
        """Servers of the stage that another stage also uses."""
        return {
            name for name in stage.servers
            if len(self.project.stages_using_server(name)) > 1
        }

    def _shared_outcomes(self, stage: Stage, operation: str, shared: Set[str]) -> ConvergenceResult:
        result = ConvergenceResult(operation=operation, stage=stage.name)
        for name in sorted(shared):
            others = [s for s in self.project.stages_using_server(name) if s != stage.name]
            result.add(ResourceOutcome(
                self.project.servers[name].resource_key(), operation, ExecutionStatus.SKIPPED,
                message=f"shared with stage(s) {', '.join(others)}; left untouched",
            ))
            logger.info(f"Leaving {name} untouched: also used by {', '.join(others)}")
        return result

    # ------------------------------------------------------------------
    # up
    # ------------------------------------------------------------------

    def up(self, stage: Stage) -> StageResult:
        """Bring a stage up.

        Server failures are collected rather than raised. Containers start
        only when every server is Running and reachable. A container failure
        is recorded on the result and DNS still converges.

        Raises:
            InvalidSpecError: If a backend for the stage is not registered
            ProviderUnavailableError: If a backend rejects its credentials
            OperationCancelledError: If the cancel event is set mid-way
        """
        result = StageResult(stage=stage.name, operation="up")
        if not stage.is_remote:
            logger.info(f"Stage {stage.name} is local; skipping infrastructure")
            result.container_error = self._containers_up(stage)
            return result

        servers = self.infra.ensure_running(stage)
        result.phases.append(servers)
        if not servers.is_success():
            logger.error(
                f"Stage {stage.name}: {len(servers.failed)} server(s) failed to converge; "
                f"containers and DNS not started"
            )
            return result

        reach = self.wait_reachable(stage)
        result.phases.append(reach)
        if not reach.is_success():
            return result

        if stage.dns and self.settings.parallel_dns:
            with ThreadPoolExecutor(max_workers=1, thread_name_prefix="fleetstage-dns") as pool:
                dns_future = pool.submit(self.infra.converge_dns, stage)
                result.container_error = self._containers_up(stage)
                result.phases.append(dns_future.result())
        else:
            result.container_error = self._containers_up(stage)
            if stage.dns:
                result.phases.append(self.infra.converge_dns(stage))
        return result

    def _containers_up(self, stage: Stage) -> Optional[ContainerLayerError]:
        try:
            run_container_step(self.containers, "up", stage.name, stage.services)
        except ContainerLayerError as e:
            error_handler.log_error(e)
            return e
        return None

    def wait_reachable(self, stage: Stage) -> ConvergenceResult:
        """Poll every server in parallel until it accepts remote commands.

        Uses the same backoff helper as power-state polling; expiry is
        reported as ``UnreachableTimeoutError`` for that server.
        """
        result = ConvergenceResult(operation="wait_reachable", stage=stage.name)
        return self.infra.run_parallel(
            result, self.project.stage_servers(stage), lambda s: [self._wait_one(stage, s)]
        )

    def _wait_one(self, stage: Stage, server: ServerResource) -> ResourceOutcome:
        provider = self.infra.provider_for(server)
        key = server.resource_key()
        if not provider.supports_power_control:
            return ResourceOutcome(key, "wait_reachable", ExecutionStatus.SKIPPED,
                                   message="local server")

        context = ErrorContext(resource_key=key, provider=provider.name,
                               operation="wait_reachable", stage=stage.name)
        info = self.infra.server_info(server)
        try:
            poll_until(
                lambda: info is not None and self.reachability.is_reachable(server, info),
                self.settings.backoff(self.settings.reachability_timeout),
                description=f"{server.name} to accept remote commands",
                timeout_error=UnreachableTimeoutError,
                context=context,
                cancel_event=self.cancel_event,
            )
        except UnreachableTimeoutError as e:
            error_handler.log_error(e)
            return ResourceOutcome(key, "wait_reachable", ExecutionStatus.FAILED,
                                   message=e.message, error=e)
        return ResourceOutcome(key, "wait_reachable", ExecutionStatus.SUCCESS, message="reachable")

    # ------------------------------------------------------------------
    # down
    # ------------------------------------------------------------------

    def down(self, stage: Stage, depth: TeardownDepth = TeardownDepth.STOP_ONLY,
             confirmed: bool = False) -> StageResult:
        """Tear a stage down to the given depth.

        Raises:
            ConfirmationRequiredError: For DESTROY without confirmation; raised
                before anything is touched
            ProviderUnavailableError: If a backend rejects its credentials, also
                before anything is touched
        """
        if depth == TeardownDepth.DESTROY and stage.is_remote:
            self.require_confirmation(stage, confirmed)
        if depth != TeardownDepth.STOP_ONLY and stage.is_remote:
            self.infra.validate(stage)

        result = StageResult(stage=stage.name, operation=f"down:{depth.value}")
        try:
            run_container_step(self.containers, "down", stage.name, stage.services)
        except ContainerLayerError as e:
            error_handler.log_error(e)
            result.container_error = e

        if not stage.is_remote or depth == TeardownDepth.STOP_ONLY:
            return result

        shared = self.shared_servers(stage)
        if shared:
            result.phases.append(self._shared_outcomes(stage, depth.value, shared))

        if depth == TeardownDepth.SUSPEND:
            result.phases.append(self.infra.power_off(stage, exclude=shared))
        else:
            result.phases.append(self.infra.destroy(stage, remove_dns=True, exclude=shared))
        return result

    def require_confirmation(self, stage: Stage, confirmed: bool) -> None:
        if confirmed:
            return
        if self.settings.unattended:
            logger.info(f"Unattended mode: destroying stage {stage.name} without prompting")
            return
        if self.confirmer is not None:
            if self.confirmer(self.plan(stage, TeardownDepth.DESTROY)):
                return
            raise ConfirmationRequiredError(
                f"destroy of stage '{stage.name}' was declined",
                context=ErrorContext(stage=stage.name, operation="destroy"),
            )
        raise ConfirmationRequiredError(
            f"destroying stage '{stage.name}' requires explicit confirmation",
            context=ErrorContext(stage=stage.name, operation="destroy"),
            suggestions=["Pass confirmed=True (e.g. a --yes flag)",
                         "Run unattended (FLEETSTAGE_UNATTENDED=true or CI=true)"],
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def plan(self, stage: Stage, depth: Optional[TeardownDepth] = None) -> StagePlan:
        """Pending actions of ``up`` (depth None) or ``down(depth)``. Makes no mutating calls."""
        operation = "up" if depth is None else f"down:{depth.value}"
        plan = StagePlan(stage=stage.name, operation=operation)
        containers_key = f"containers:stage:{stage.name}"
        services = ", ".join(stage.services) or "no services"

        if depth is None:
            if stage.is_remote:
                self.infra.plan_up(stage, plan)
            plan.add(PlannedAction(containers_key, "containers", ActionType.START,
                                   f"start {services}"))
            return plan

        plan.add(PlannedAction(containers_key, "containers", ActionType.STOP, f"stop {services}"))
        if not stage.is_remote or depth == TeardownDepth.STOP_ONLY:
            return plan

        shared = self.shared_servers(stage)
        for name in sorted(shared):
            plan.add(PlannedAction(self.project.servers[name].resource_key(), "server",
                                   ActionType.NO_CHANGE, f"{name} is shared; left untouched"))
        if depth == TeardownDepth.SUSPEND:
            self.infra.plan_suspend(stage, plan, exclude=shared)
        else:
            self.infra.plan_destroy(stage, plan, exclude=shared)
        return plan

    def status(self, stage: Stage) -> StageStatus:
        if not stage.is_remote:
            return StageStatus(stage=stage.name)
        return self.infra.status(stage)

