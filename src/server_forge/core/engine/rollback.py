"""
RollbackManager — undo completed steps in strict reverse log order.

Rollback walks the run's records rather than a live call stack, so it
works the same whether the records come straight from the engine or
are reconstructed from the ActionLog after a crash.

Order is descending ``completed_seq``: the reverse of the order in
which the completed transitions were admitted to the log. Concurrent
steps get no stronger guarantee than that.

When an inverse fails the record becomes ``rollback_error`` and the
failed step's prerequisites are left in place: undoing them would pull
the floor out from under a resource that could not be cleaned up.
Branches that do not lead to the failed step are still rolled back.
A record that arrives as ``rollback_error`` (a forward action that
could not take back its own changes) pins its prerequisites the same
way before anything is undone.
Nothing here is retried; a partial rollback goes to an operator.
"""

from __future__ import annotations

import logging
from typing import Callable

from server_forge.core.engine.context import StepContext
from server_forge.core.engine.registry import ExecutionPlan
from server_forge.core.errors import RollbackError
from server_forge.core.models.record import (
    ExecutionRecord,
    RollbackResult,
    RollbackStatus,
    StepStatus,
)
from server_forge.core.observability.logging_config import log_context
from server_forge.core.persistence.action_log import ActionLog

logger = logging.getLogger(__name__)

ContextFactory = Callable[[str], StepContext]


class RollbackManager:
    """Replays a run's completed records backwards through their inverses.

    Args:
        plan: The plan the records were produced from (step definitions
            and the dependency map).
        action_log: Every status transition is appended here.
        context_factory: Builds a StepContext for a step id.
    """

    def __init__(
        self,
        plan: ExecutionPlan,
        action_log: ActionLog,
        context_factory: ContextFactory,
    ):
        self._plan = plan
        self._log = action_log
        self._context_factory = context_factory

    def rollback(self, records: list[ExecutionRecord]) -> RollbackResult:
        """Undo every completed record, newest completion first."""
        completed = sorted(
            (r for r in records if r.status == StepStatus.COMPLETED),
            key=lambda r: -1 if r.completed_seq is None else r.completed_seq,
            reverse=True,
        )
        result = RollbackResult()
        blocked: set[str] = set()

        for record in records:
            if record.status == StepStatus.ROLLBACK_ERROR:
                logger.error("%s left changes in place: %s", record.step_id, record.error)
                blocked |= self._plan.prerequisites(record.step_id)
                result.remediation.append(record)

        if completed:
            logger.info("Rolling back %d completed step(s)", len(completed))

        for record in completed:
            if record.step_id in blocked:
                logger.warning(
                    "Leaving %s in place: a step that depends on it could not be rolled back",
                    record.step_id,
                )
                result.remediation.append(record)
                continue

            try:
                with log_context(step_id=record.step_id):
                    self._undo(record)
            except RollbackError as e:
                record.error = str(e)
                record.mark(StepStatus.ROLLBACK_ERROR)
                self._journal(record)
                logger.error("%s", e)
                blocked |= self._plan.prerequisites(record.step_id)
                result.remediation.append(record)
                continue

            record.mark(StepStatus.ROLLED_BACK)
            if not self._journal(record):
                # Undone on the machine, but a later rollback would try again
                record.error = "rolled back, but the action log could not record it"
                result.remediation.append(record)
                continue
            result.rolled_back.append(record.step_id)
            logger.info("↺ %s rolled back", record.step_id)

        result.status = (
            RollbackStatus.FULLY_ROLLED_BACK
            if not result.remediation
            else RollbackStatus.PARTIALLY_ROLLED_BACK
        )
        if result.remediation:
            logger.error(
                "Rollback incomplete; manual remediation needed for: %s",
                ", ".join(r.step_id for r in result.remediation),
            )
        return result

    def _journal(self, record: ExecutionRecord) -> bool:
        try:
            self._log.append(record)
        except OSError as e:
            logger.error("Action log write failed for %s (%s): %s", record.step_id, record.status, e)
            return False
        return True

    def _undo(self, record: ExecutionRecord) -> None:
        step = self._plan.get(record.step_id)
        if step is None:
            raise RollbackError(record.step_id, "step is not part of the current plan")
        if record.undo_token is None:
            raise RollbackError(record.step_id, "completed record has no undo token")

        ctx = self._context_factory(step.id)
        try:
            step.inverse(ctx, dict(record.undo_token))
        except Exception as e:
            raise RollbackError(step.id, str(e), output=ctx.output) from e
        finally:
            if ctx.output:
                record.output = "\n".join(filter(None, [record.output, ctx.output]))
