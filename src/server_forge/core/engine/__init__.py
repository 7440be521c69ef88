"""Engine — step registry, orchestration and rollback."""

from server_forge.core.engine.context import StepContext
from server_forge.core.engine.executor import OrchestrationEngine
from server_forge.core.engine.registry import ExecutionPlan, StepRegistry
from server_forge.core.engine.rollback import RollbackManager

__all__ = [
    "ExecutionPlan",
    "OrchestrationEngine",
    "RollbackManager",
    "StepContext",
    "StepRegistry",
]
