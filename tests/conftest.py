"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from server_forge.adapters.filesystem import LocalFilesystem
from server_forge.adapters.mock import MockInvoker
from server_forge.core.distro.provider import Command, DistroProvider
from server_forge.core.engine.context import StepContext
from server_forge.core.engine.executor import OrchestrationEngine
from server_forge.core.errors import ActionExecutionError
from server_forge.core.models.configuration import Configuration
from server_forge.core.models.step import Step
from server_forge.core.persistence.action_log import ActionLog


@pytest.fixture
def configuration() -> Configuration:
    return Configuration(distro_family="apt")


@pytest.fixture
def invoker() -> MockInvoker:
    return MockInvoker()


@pytest.fixture
def filesystem(tmp_path: Path) -> LocalFilesystem:
    """Filesystem rooted in a scratch tree instead of ``/``."""
    return LocalFilesystem(root=tmp_path / "root")


@pytest.fixture
def action_log(tmp_path: Path) -> ActionLog:
    return ActionLog(directory=tmp_path / "runs", fsync=False)


@pytest.fixture
def engine(invoker, action_log, filesystem) -> OrchestrationEngine:
    """Engine that runs one step at a time, so ordering is deterministic."""
    return OrchestrationEngine(
        invoker=invoker,
        action_log=action_log,
        filesystem=filesystem,
        max_workers=1,
    )


@pytest.fixture
def make_context(configuration, invoker, filesystem):
    def factory(config: Configuration | None = None) -> StepContext:
        return StepContext(
            step_id="test",
            configuration=config or configuration,
            provider=DistroProvider(),
            invoker=invoker,
            filesystem=filesystem,
        )
    return factory


@pytest.fixture
def journal() -> list[str]:
    """Order in which test steps applied and undid themselves."""
    return []


@pytest.fixture
def make_step(journal):
    """Build a step that records ``do:<id>`` / ``undo:<id>`` in the journal.

    The forward action also runs ``forge-step apply <id>`` through the
    invoker, so MockInvoker failures and timeouts can target it.
    """

    def factory(
        step_id: str,
        requires=(),
        fail: bool = False,
        inverse_fails: bool = False,
        exclusive: bool = False,
        token: dict | None = None,
        on_forward=None,
    ) -> Step:
        def forward(ctx):
            if on_forward is not None:
                on_forward()
            ctx.run(Command("forge-step", ("apply", step_id)))
            journal.append(f"do:{step_id}")
            if fail:
                raise ActionExecutionError(f"{step_id} failed", output=ctx.output)
            return token if token is not None else {"step": step_id}

        def inverse(ctx, undo_token):
            journal.append(f"undo:{step_id}")
            if inverse_fails:
                raise RuntimeError(f"cannot undo {step_id}")

        return Step(
            id=step_id,
            label=f"Step {step_id}",
            forward=forward,
            inverse=inverse,
            requires=frozenset(requires),
            exclusive=exclusive,
        )

    return factory
