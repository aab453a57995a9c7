"""Stage orchestration and cloud convergence engine."""

__version__ = "0.1.0"

from fleetstage.config import EngineSettings, Project, load_settings
from fleetstage.engine import FleetEngine
from fleetstage.orchestrator import ContainerOrchestrator, TeardownDepth

__all__ = [
    'ContainerOrchestrator',
    'EngineSettings',
    'FleetEngine',
    'Project',
    'TeardownDepth',
    'load_settings',
    '__version__',
]
