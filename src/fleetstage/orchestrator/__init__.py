"""Infra and stage orchestration."""

from fleetstage.orchestrator.collaborators import (
    ContainerOrchestrator,
    ReachabilityCheck,
    TcpReachabilityCheck,
    run_container_step,
)
from fleetstage.orchestrator.infra import InfraOrchestrator, KeyedLocks, ServerReport, StageStatus
from fleetstage.orchestrator.planner import ActionType, PlannedAction, StagePlan
from fleetstage.orchestrator.results import (
    ConvergenceResult,
    ExecutionStatus,
    ProgressCallback,
    ResourceOutcome,
    StageResult,
)
from fleetstage.orchestrator.stage import Confirmer, StageOrchestrator, TeardownDepth

__all__ = [
    'ActionType',
    'Confirmer',
    'ContainerOrchestrator',
    'ConvergenceResult',
    'ExecutionStatus',
    'InfraOrchestrator',
    'KeyedLocks',
    'PlannedAction',
    'ProgressCallback',
    'ReachabilityCheck',
    'ResourceOutcome',
    'ServerReport',
    'StageOrchestrator',
    'StagePlan',
    'StageResult',
    'StageStatus',
    'TcpReachabilityCheck',
    'TeardownDepth',
    'run_container_step',
]
