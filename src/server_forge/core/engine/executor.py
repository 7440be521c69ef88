"""
Engine executor — the central orchestration loop.

The engine takes an execution plan and a configuration, walks the plan
through a bounded worker pool, and records every status transition to
the ActionLog before trusting it. On the first failure (or a
cancellation) it stops scheduling, lets in-flight steps finish, and
hands the run's records to the RollbackManager.

Flow:
    plan → schedule ready steps → forward action → log → … → success
                                        ↓ failure / cancel
                               drain in-flight → rollback → log

Scheduling rules:
    - a step is ready when every prerequisite is completed in this run
    - ready steps are dispatched in plan order, up to ``max_workers``
    - at most one exclusive step (package manager) is in flight, and a
      process-wide lock serializes exclusive steps across engines

A step whose completion cannot be written to the log is taken back on
the spot and counts as failed: after a crash, rollback only knows
what the log knows.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import nullcontext

from server_forge.adapters.base import ActionInvoker
from server_forge.adapters.filesystem import LocalFilesystem
from server_forge.core.distro.provider import DistroProvider
from server_forge.core.engine.context import StepContext
from server_forge.core.engine.registry import ExecutionPlan
from server_forge.core.engine.rollback import RollbackManager
from server_forge.core.errors import ActionExecutionError, CompensationError, ConfigurationError
from server_forge.core.models.configuration import Configuration
from server_forge.core.models.record import (
    ExecutionRecord,
    RollbackResult,
    RunResult,
    RunStatus,
    StepStatus,
)
from server_forge.core.models.step import Step, idempotency_key
from server_forge.core.observability.logging_config import log_context
from server_forge.core.persistence.action_log import ActionLog, generate_run_id

logger = logging.getLogger(__name__)

# Concurrent package-manager invocations corrupt the lock state of the
# machine, so exclusive steps are serialized process-wide
_PACKAGE_MANAGER_LOCK = threading.Lock()

DEFAULT_MAX_WORKERS = 4
DEFAULT_TIMEOUT = 300.0


class OrchestrationEngine:
    """Executes plans with logging, idempotent resume and rollback.

    Args:
        invoker: Runs the commands steps resolve.
        action_log: Durable journal for every transition.
        provider: Distro command mapping (default: a fresh provider).
        filesystem: Config-file seam (default: the real root).
        max_workers: Upper bound on concurrently running steps.
        timeout: Per-invocation timeout in seconds.
    """

    def __init__(
        self,
        invoker: ActionInvoker,
        action_log: ActionLog,
        provider: DistroProvider | None = None,
        filesystem: LocalFilesystem | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._invoker = invoker
        self._log = action_log
        self._provider = provider or DistroProvider()
        self._filesystem = filesystem or LocalFilesystem()
        self._max_workers = max_workers
        self._timeout = timeout
        self._cancel = threading.Event()

    @property
    def action_log(self) -> ActionLog:
        return self._log

    # ── Cancellation ────────────────────────────────────────────

    def cancel(self) -> None:
        """Request cooperative cancellation of the current run.

        No new steps are scheduled; in-flight steps run to completion
        (a system mutation is never half-killed), then the run is
        rolled back exactly as on failure.
        """
        logger.warning("Cancellation requested")
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    # ── Running ─────────────────────────────────────────────────

    def run(
        self,
        plan: ExecutionPlan,
        configuration: Configuration,
        run_id: str | None = None,
    ) -> RunResult:
        """Execute ``plan`` for ``configuration`` in a new log segment."""
        run_id = run_id or generate_run_id()
        if self._log.has_run(run_id):
            raise ValueError(f"Run {run_id!r} already has a log segment")

        self._cancel.clear()
        config_hash = configuration.config_hash()
        applied = self._log.completed_index(exclude_run=run_id)

        with log_context(run_id=run_id):
            return self._run(plan, configuration, run_id, applied, config_hash)

    def _run(
        self,
        plan: ExecutionPlan,
        configuration: Configuration,
        run_id: str,
        applied: dict[str, ExecutionRecord],
        config_hash: str,
    ) -> RunResult:
        result = RunResult(run_id=run_id)
        completed: set[str] = set()
        started: set[str] = set()
        in_flight: dict[Future[bool], Step] = {}
        exclusive_in_flight = False

        logger.info("Run %s: %d steps, %d worker(s)", run_id, plan.total_steps, self._max_workers)

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="forge-step") as pool:
            while True:
                halted = result.failed_step is not None or self._cancel.is_set()
                if not halted:
                    for step in plan.steps:
                        if len(in_flight) >= self._max_workers:
                            break
                        if step.id in started or not step.requires <= completed:
                            continue
                        if step.is_exclusive and exclusive_in_flight:
                            continue

                        started.add(step.id)
                        record = self._new_record(run_id, step, config_hash)
                        result.records.append(record)

                        prior = applied.get(record.idempotency_key)
                        if prior is not None:
                            if self._reuse(record, prior):
                                completed.add(step.id)
                                continue
                            result.failed_step = step.id
                            break

                        record.mark(StepStatus.RUNNING)
                        if self._journal(record) is None:
                            self._fail_unlogged(record)
                            result.failed_step = step.id
                            break
                        future = pool.submit(self._execute_step, step, record, configuration)
                        in_flight[future] = step
                        if step.is_exclusive:
                            exclusive_in_flight = True

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    step = in_flight.pop(future)
                    if step.is_exclusive:
                        exclusive_in_flight = False
                    if future.result():
                        completed.add(step.id)
                    elif result.failed_step is None:
                        result.failed_step = step.id
                        logger.error("Step %s failed; halting scheduling", step.id)

        result.cancelled = self._cancel.is_set()
        if result.failed_step is None and not result.cancelled:
            result.status = RunStatus.SUCCESS
            logger.info("Run %s completed: %d step(s)", run_id, len(completed))
            return result

        if result.cancelled:
            logger.warning("Run %s cancelled; rolling back", run_id)
        result.rollback = self.rollback(plan, configuration, result.records)
        result.status = (
            RunStatus.ROLLED_BACK if result.rollback.fully_rolled_back else RunStatus.ROLLBACK_FAILED
        )
        logger.info("Run %s finished: %s", run_id, result.status)
        return result

    def _new_record(self, run_id: str, step: Step, config_hash: str) -> ExecutionRecord:
        return ExecutionRecord(
            run_id=run_id,
            step_id=step.id,
            label=step.label,
            idempotency_key=idempotency_key(step.id, config_hash),
            config_hash=config_hash,
        )

    def _reuse(self, record: ExecutionRecord, prior: ExecutionRecord) -> bool:
        """Record an already-applied step as completed without re-running it."""
        record.mark(StepStatus.RUNNING)
        record.undo_token = dict(prior.undo_token or {})
        record.reused_from = prior.record_id
        record.output = f"already applied by run {prior.run_id} (record {prior.record_id})"
        record.mark(StepStatus.COMPLETED)
        seq = self._journal(record)
        if seq is None:
            self._fail_unlogged(record)
            return False
        record.completed_seq = seq
        logger.info("⊘ %s → already applied, skipped", record.step_id)
        return True

    def _journal(self, record: ExecutionRecord) -> int | None:
        """Append a transition; None when the log could not be written."""
        try:
            return self._log.append(record)
        except OSError as e:
            logger.error("Action log write failed for %s (%s): %s", record.step_id, record.status, e)
            return None

    def _fail_unlogged(self, record: ExecutionRecord) -> None:
        record.undo_token = None
        record.error = "the action log could not be written; step not run"
        record.mark(StepStatus.FAILED)
        self._journal(record)

    def _execute_step(
        self,
        step: Step,
        record: ExecutionRecord,
        configuration: Configuration,
    ) -> bool:
        """Run one forward action in a worker thread. Never raises."""
        ctx = self._context(configuration, step.id)
        lock = _PACKAGE_MANAGER_LOCK if step.is_exclusive else nullcontext()
        with log_context(run_id=record.run_id, step_id=step.id):
            with lock:
                status, error = self._apply(step, record, ctx)
            if status == StepStatus.COMPLETED:
                logger.info("✓ %s → completed", step.id)
                return True

            record.output = ctx.output
            record.error = error
            record.mark(status)
            self._journal(record)
            logger.error("✗ %s → %s: %s", step.id, status, error)
            return False

    def _apply(
        self,
        step: Step,
        record: ExecutionRecord,
        ctx: StepContext,
    ) -> tuple[StepStatus, str | None]:
        """Forward action plus its completion entry, as one unit.

        Returns COMPLETED, FAILED (nothing left on the machine) or
        ROLLBACK_ERROR (the step could not take back its own changes).
        """
        try:
            token = dict(step.forward(ctx) or {})
        except CompensationError as e:
            return StepStatus.ROLLBACK_ERROR, str(e)
        except ActionExecutionError as e:
            return StepStatus.FAILED, str(e)
        except Exception as e:
            logger.exception("Step %s raised", step.id)
            return StepStatus.FAILED, f"{type(e).__name__}: {e}"

        try:
            json.dumps(token)
        except (TypeError, ValueError) as e:
            error = f"undo token is not serializable: {e}"
        else:
            record.undo_token = token
            record.output = ctx.output
            record.mark(StepStatus.COMPLETED)
            seq = self._journal(record)
            if seq is not None:
                record.completed_seq = seq
                return StepStatus.COMPLETED, None
            error = "the action log could not record the completed step"

        # Applied, but no rollback would ever find it
        try:
            step.inverse(ctx, token)
        except Exception as e:
            logger.error("Could not take back %s: %s", step.id, e)
            return StepStatus.ROLLBACK_ERROR, f"{error}; undo failed: {e}"
        return StepStatus.FAILED, f"{error}; the change was taken back"

    def _context(self, configuration: Configuration, step_id: str) -> StepContext:
        return StepContext(
            step_id=step_id,
            configuration=configuration,
            provider=self._provider,
            invoker=self._invoker,
            filesystem=self._filesystem,
            timeout=self._timeout,
        )

    # ── Rollback ────────────────────────────────────────────────

    def rollback(
        self,
        plan: ExecutionPlan,
        configuration: Configuration,
        records: list[ExecutionRecord],
    ) -> RollbackResult:
        """Undo the completed records of a run, newest first."""
        manager = RollbackManager(
            plan=plan,
            action_log=self._log,
            context_factory=lambda step_id: self._context(configuration, step_id),
        )
        return manager.rollback(records)

    def rollback_run(
        self,
        run_id: str,
        plan: ExecutionPlan,
        configuration: Configuration,
    ) -> RollbackResult:
        """Roll back a previous (typically crashed) run from its log segment.

        Raises:
            LogCorruptionError: The run's segment cannot be read.
            ConfigurationError: The run was made with another configuration.
        """
        records = self._load_run(run_id, configuration)
        return self.rollback(plan, configuration, records)

    # ── Resume ──────────────────────────────────────────────────

    def resume(
        self,
        run_id: str,
        plan: ExecutionPlan,
        configuration: Configuration,
    ) -> RunResult:
        """Continue an interrupted run in a new segment.

        Steps the interrupted run completed are reused through their
        idempotency keys; everything else runs again.

        Raises:
            LogCorruptionError: The run's segment cannot be read.
            ConfigurationError: The run was made with another configuration.
        """
        self._load_run(run_id, configuration)
        logger.info("Resuming run %s", run_id)
        return self.run(plan, configuration)

    def _load_run(self, run_id: str, configuration: Configuration) -> list[ExecutionRecord]:
        if not self._log.has_run(run_id):
            raise ConfigurationError(f"No action log for run {run_id!r}")
        records = self._log.read_run(run_id)

        config_hash = configuration.config_hash()
        foreign = {r.config_hash for r in records} - {config_hash}
        if foreign:
            raise ConfigurationError(
                f"Run {run_id!r} was made with a different configuration"
            )

        # Close out steps the crash caught mid-flight; their effect is unknown
        for record in records:
            if record.status in (StepStatus.RUNNING, StepStatus.PENDING):
                record.error = "interrupted before completion"
                record.mark(StepStatus.FAILED)
                self._journal(record)
                logger.warning("Step %s of run %s was interrupted", record.step_id, run_id)
        return records
