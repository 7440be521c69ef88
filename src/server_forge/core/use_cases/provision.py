"""
Provision use cases — plan, run, resume, roll back and inspect runs.

This is the top-level orchestrator for the CLI: it loads the
configuration, builds the step registry and plan, wires the engine to
an invoker, filesystem and action log, and turns every outcome
(including errors) into a result object with ``to_dict()``.

Modes:
    real      commands run through subprocess (sudo when not root)
    mock      commands go to the MockInvoker, files land under
              ``.state/mock-root``; the action log is real
    dry-run   mock mode in a throwaway directory; nothing persists,
              the result lists the commands a real run would issue
"""

from __future__ import annotations

import logging
import os
import signal
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from server_forge.adapters.base import ActionInvoker
from server_forge.adapters.filesystem import LocalFilesystem
from server_forge.adapters.mock import MockInvoker
from server_forge.adapters.shell import SubprocessInvoker
from server_forge.core.config.loader import config_root, find_config_file, load_configuration
from server_forge.core.engine.executor import DEFAULT_MAX_WORKERS, OrchestrationEngine
from server_forge.core.engine.registry import ExecutionPlan
from server_forge.core.errors import ConfigurationError, ServerForgeError
from server_forge.core.models.configuration import Configuration
from server_forge.core.models.record import ExecutionRecord, RollbackResult, RunResult, RunStatus
from server_forge.core.persistence.action_log import DEFAULT_RUNS_DIR, DEFAULT_STATE_DIR, ActionLog
from server_forge.core.steps.catalog import build_registry

logger = logging.getLogger(__name__)

STATE_DIR_ENV = "SERVER_FORGE_STATE_DIR"
MOCK_ROOT_DIR = "mock-root"

# Query commands a fresh host answers "no" to; a dry run then shows the
# installs and service changes a first run would make
FRESH_HOST_QUERIES = ("dpkg -s", "rpm -q", "systemctl is-enabled", "systemctl is-active")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 2


@dataclass
class ProvisionResult:
    """Result of planning, running, resuming or rolling back."""

    configuration: Configuration | None = None
    plan: ExecutionPlan | None = None
    run: RunResult | None = None
    rollback: RollbackResult | None = None
    dry_run: bool = False
    commands: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def exit_code(self) -> int:
        if self.error:
            return EXIT_FAILED
        rollback = self.rollback or (self.run.rollback if self.run else None)
        if rollback is not None and not rollback.fully_rolled_back:
            return EXIT_PARTIAL
        if self.run is not None and self.run.status != RunStatus.SUCCESS:
            return EXIT_FAILED
        return EXIT_OK

    def to_dict(self) -> dict:
        result: dict = {}
        if self.error:
            result["error"] = self.error
            return result

        if self.configuration is not None:
            result["distro_family"] = self.configuration.distro_family
            result["config_hash"] = self.configuration.config_hash()
        if self.plan is not None:
            result["plan"] = [
                {"id": s.id, "label": s.label, "requires": sorted(s.requires), "exclusive": s.is_exclusive}
                for s in self.plan.steps
            ]
        if self.run is not None:
            result["run"] = self.run.to_dict()
        if self.rollback is not None:
            result["rollback"] = self.rollback.to_dict()
        if self.dry_run:
            result["dry_run"] = True
            result["commands"] = list(self.commands)
        return result


@dataclass
class LogResult:
    """Result of inspecting the action log."""

    runs: list[str] = field(default_factory=list)
    run_id: str | None = None
    records: list[ExecutionRecord] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        if self.run_id is None:
            return {"runs": list(self.runs)}
        return {
            "run_id": self.run_id,
            "records": [r.model_dump(mode="json", exclude={"undo_token"}) for r in self.records],
        }


# ── Wiring ──────────────────────────────────────────────────────


def state_directory(config_path: Path | None) -> Path:
    """Where run segments live: env override, else next to the config."""
    override = os.environ.get(STATE_DIR_ENV)
    if override:
        return Path(override)
    base = config_root(config_path) if config_path else Path.cwd()
    return base / DEFAULT_STATE_DIR / DEFAULT_RUNS_DIR


def _load(config_path: Path | None) -> tuple[Configuration, Path | None]:
    if config_path is None:
        config_path = find_config_file()
    return load_configuration(config_path), config_path


def _plan(configuration: Configuration) -> ExecutionPlan:
    return build_registry(configuration).build_plan()


def _engine(
    action_log: ActionLog,
    mock_mode: bool,
    max_workers: int,
    invoker: ActionInvoker | None = None,
    filesystem: LocalFilesystem | None = None,
) -> OrchestrationEngine:
    if invoker is None:
        invoker = MockInvoker() if mock_mode else SubprocessInvoker(use_sudo=True)
    if filesystem is None and mock_mode:
        filesystem = LocalFilesystem(root=action_log.directory.parent / MOCK_ROOT_DIR)
    return OrchestrationEngine(
        invoker=invoker,
        action_log=action_log,
        filesystem=filesystem,
        max_workers=max_workers,
    )


@contextmanager
def _cancel_on_interrupt(engine: OrchestrationEngine):
    """Turn Ctrl-C into a cooperative cancel (main thread only)."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum, frame):
        engine.cancel()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


# ── Use cases ───────────────────────────────────────────────────


def plan_provisioning(config_path: Path | None = None) -> ProvisionResult:
    """Validate the configuration and compute the execution plan."""
    result = ProvisionResult()
    try:
        result.configuration, _ = _load(config_path)
        result.plan = _plan(result.configuration)
    except ServerForgeError as e:
        result.error = str(e)
    return result


def fresh_host_invoker() -> MockInvoker:
    """MockInvoker that answers like a machine nothing was installed on."""
    invoker = MockInvoker(invoker_name="dry-run")
    for query in FRESH_HOST_QUERIES:
        invoker.set_failure(query, stderr="")
    return invoker


def run_provisioning(
    config_path: Path | None = None,
    dry_run: bool = False,
    mock_mode: bool = False,
    max_workers: int = DEFAULT_MAX_WORKERS,
    invoker: ActionInvoker | None = None,
    filesystem: LocalFilesystem | None = None,
) -> ProvisionResult:
    """Provision the machine described by the configuration.

    Args:
        config_path: Explicit path to server-forge.yml (default: search).
        dry_run: Run against a mock in a scratch directory and report
            the commands instead of changing anything.
        mock_mode: Use the mock invoker with a real action log.
        max_workers: Upper bound on concurrently running steps.
        invoker: Pre-configured invoker (overrides the mode's default).
        filesystem: Pre-configured filesystem (overrides the mode's default).
    """
    result = ProvisionResult(dry_run=dry_run)
    try:
        configuration, config_path = _load(config_path)
        result.configuration = configuration
        result.plan = _plan(configuration)

        if dry_run:
            with tempfile.TemporaryDirectory(prefix="server-forge-dry-") as scratch:
                mock = invoker if isinstance(invoker, MockInvoker) else fresh_host_invoker()
                action_log = ActionLog(directory=Path(scratch) / DEFAULT_RUNS_DIR, fsync=False)
                engine = _engine(
                    action_log, True, max_workers, mock,
                    LocalFilesystem(root=Path(scratch) / MOCK_ROOT_DIR),
                )
                result.run = engine.run(result.plan, configuration)
                result.commands = mock.calls
            return result

        action_log = ActionLog(directory=state_directory(config_path))
        engine = _engine(action_log, mock_mode, max_workers, invoker, filesystem)
        with _cancel_on_interrupt(engine):
            result.run = engine.run(result.plan, configuration)
    except ServerForgeError as e:
        result.error = str(e)
    return result


def resume_provisioning(
    run_id: str,
    config_path: Path | None = None,
    mock_mode: bool = False,
    max_workers: int = DEFAULT_MAX_WORKERS,
    invoker: ActionInvoker | None = None,
    filesystem: LocalFilesystem | None = None,
) -> ProvisionResult:
    """Continue an interrupted run; already-applied steps are skipped."""
    result = ProvisionResult()
    try:
        configuration, config_path = _load(config_path)
        result.configuration = configuration
        result.plan = _plan(configuration)
        action_log = ActionLog(directory=state_directory(config_path))
        engine = _engine(action_log, mock_mode, max_workers, invoker, filesystem)
        with _cancel_on_interrupt(engine):
            result.run = engine.resume(run_id, result.plan, configuration)
    except (ServerForgeError, ValueError) as e:
        result.error = str(e)
    return result


def rollback_provisioning(
    run_id: str,
    config_path: Path | None = None,
    mock_mode: bool = False,
    invoker: ActionInvoker | None = None,
    filesystem: LocalFilesystem | None = None,
) -> ProvisionResult:
    """Undo every completed step of a previous run, newest first."""
    result = ProvisionResult()
    try:
        configuration, config_path = _load(config_path)
        result.configuration = configuration
        plan = _plan(configuration)
        action_log = ActionLog(directory=state_directory(config_path))
        engine = _engine(action_log, mock_mode, 1, invoker, filesystem)
        result.rollback = engine.rollback_run(run_id, plan, configuration)
    except (ServerForgeError, ValueError) as e:
        result.error = str(e)
    return result


def show_log(run_id: str | None = None, config_path: Path | None = None) -> LogResult:
    """List runs, or the latest record of every step of one run."""
    result = LogResult(run_id=run_id)
    if config_path is None:
        config_path = find_config_file()
    action_log = ActionLog(directory=state_directory(config_path))
    try:
        if run_id is None:
            result.runs = action_log.list_runs()
        elif not action_log.has_run(run_id):
            raise ConfigurationError(f"No action log for run {run_id!r}")
        else:
            result.records = action_log.read_run(run_id)
    except (ServerForgeError, ValueError) as e:
        result.error = str(e)
    return result
