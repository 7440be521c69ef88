"""
Domain models — configuration, steps, records, results.

    from server_forge.core.models import Configuration, Step, ExecutionRecord
"""

from server_forge.core.models.configuration import DISTRO_ALIASES, Configuration
from server_forge.core.models.record import (
    ExecutionRecord,
    RollbackResult,
    RollbackStatus,
    RunResult,
    RunStatus,
    StepStatus,
)
from server_forge.core.models.step import Step, UndoToken, idempotency_key

__all__ = [
    "DISTRO_ALIASES",
    "Configuration",
    "ExecutionRecord",
    "RollbackResult",
    "RollbackStatus",
    "RunResult",
    "RunStatus",
    "Step",
    "StepStatus",
    "UndoToken",
    "idempotency_key",
]
