"""Per-resource outcomes aggregated across a convergence run."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from fleetstage.utils.errors import FleetError


class ExecutionStatus(Enum):
    """Status of execution."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ResourceOutcome:
    """Result of one operation on one resource."""

    resource_key: str
    operation: str
    status: ExecutionStatus
    message: str = ""
    error: Optional[FleetError] = None
    details: Dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        """Check if execution was successful."""
        return self.status == ExecutionStatus.SUCCESS

    def is_failed(self) -> bool:
        """Check if execution failed."""
        return self.status == ExecutionStatus.FAILED


@dataclass
class ConvergenceResult:
    """All outcomes of one orchestrator operation over a stage.

    Failures never short-circuit siblings, so this holds every resource's
    outcome, successful or not.
    """

    operation: str
    stage: str
    outcomes: List[ResourceOutcome] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def add(self, outcome: ResourceOutcome) -> ResourceOutcome:
        self.outcomes.append(outcome)
        return outcome

    def extend(self, other: "ConvergenceResult") -> None:
        self.outcomes.extend(other.outcomes)

    @property
    def failed(self) -> List[ResourceOutcome]:
        return [o for o in self.outcomes if o.is_failed()]

    @property
    def succeeded(self) -> List[ResourceOutcome]:
        return [o for o in self.outcomes if o.is_success()]

    @property
    def skipped(self) -> List[ResourceOutcome]:
        return [o for o in self.outcomes if o.status == ExecutionStatus.SKIPPED]

    def is_success(self) -> bool:
        """No resource failed."""
        return not self.failed

    def outcome_for(self, resource_key: str, operation: Optional[str] = None) -> Optional[ResourceOutcome]:
        for outcome in self.outcomes:
            if outcome.resource_key == resource_key and (operation is None or outcome.operation == operation):
                return outcome
        return None

    @property
    def duration(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def summary(self) -> str:
        return (
            f"{len(self.succeeded)} succeeded, {len(self.failed)} failed, "
            f"{len(self.skipped)} skipped"
        )


@dataclass
class StageResult:
    """Result of a whole ``up`` or ``down`` for one stage."""

    stage: str
    operation: str
    phases: List[ConvergenceResult] = field(default_factory=list)
    container_error: Optional[FleetError] = None

    @property
    def outcomes(self) -> List[ResourceOutcome]:
        return [o for phase in self.phases for o in phase.outcomes]

    @property
    def failed(self) -> List[ResourceOutcome]:
        return [o for o in self.outcomes if o.is_failed()]

    def phase(self, operation: str) -> Optional[ConvergenceResult]:
        return next((p for p in self.phases if p.operation == operation), None)

    def is_success(self) -> bool:
        return self.container_error is None and not self.failed

    def errors(self) -> List[FleetError]:
        errors = [o.error for o in self.failed if o.error is not None]
        if self.container_error is not None:
            errors.append(self.container_error)
        return errors


# Type alias for progress callback: (resource_key, status, message)
ProgressCallback = Callable[[str, ExecutionStatus, Optional[str]], None]
