"""
StepContext — what a step's forward or inverse action gets to work with.

A fresh context is created for every action call. It carries the
configuration (by value), the distro provider, the invoker and the
filesystem, and it captures a transcript of every command run so the
engine can store it on the ExecutionRecord.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from server_forge.adapters.base import ActionInvoker, InvocationResult
from server_forge.adapters.filesystem import LocalFilesystem
from server_forge.core.distro.provider import Command, DistroProvider
from server_forge.core.errors import ActionExecutionError, ActionTimeoutError
from server_forge.core.models.configuration import Configuration

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """Execution environment for one action call of one step."""

    step_id: str
    configuration: Configuration
    provider: DistroProvider
    invoker: ActionInvoker
    filesystem: LocalFilesystem
    timeout: float = 300.0
    transcript: list[str] = field(default_factory=list)

    @property
    def family(self) -> str:
        return self.configuration.distro_family

    def resolve(self, action: str, **params: Any) -> Command:
        return self.provider.resolve(action, self.family, **params)

    def execute(self, action: str, check: bool = True, **params: Any) -> InvocationResult:
        """Resolve a canonical action and run it.

        Args:
            action: Canonical action, e.g. ``"install_package:nginx"``.
            check: Raise ActionExecutionError on a non-zero exit code.

        Returns:
            The invocation result (also when ``check`` is False).
        """
        return self.run(self.resolve(action, **params), check=check)

    def run(self, command: Command, check: bool = True) -> InvocationResult:
        """Run an already-resolved command through the invoker."""
        self.transcript.append(f"$ {command}")
        try:
            result = self.invoker.invoke(command.program, command.args, self.timeout)
        except ActionTimeoutError as e:
            self.transcript.append(str(e))
            raise ActionTimeoutError(str(e), output=self.output) from e

        if result.stdout:
            self.transcript.append(result.stdout.rstrip())
        if result.stderr:
            self.transcript.append(result.stderr.rstrip())

        if check and not result.ok:
            logger.warning("[%s] %s exited with %d", self.step_id, command, result.exit_code)
            raise ActionExecutionError(
                f"{command} exited with code {result.exit_code}",
                output=self.output,
            )
        return result

    def succeeds(self, action: str, **params: Any) -> bool:
        """Run a query action; True when it exits 0."""
        return self.execute(action, check=False, **params).ok

    @property
    def output(self) -> str:
        return "\n".join(self.transcript)
