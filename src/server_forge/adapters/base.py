"""
Adapter base — the narrow seam between the engine and the machine.

Every command a step issues, forward or inverse, goes through a single
interface:

    invoke(command, args, timeout) -> InvocationResult(exit_code, stdout, stderr)

This is where apt/yum/dnf/systemctl/docker/kubectl actually run. The
engine never spawns processes itself. A non-zero exit code is returned,
not raised; only a timeout raises (``ActionTimeoutError``), because the
caller cannot know what state the command left behind.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class InvocationResult:
    """Captured result of one external invocation."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ActionInvoker(ABC):
    """Abstract base class for command invokers.

    To add a new invoker (e.g. over SSH):
        1. Subclass ActionInvoker
        2. Implement name, is_available, invoke
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Invoker identifier (e.g. 'subprocess', 'mock')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the invoker can run commands here. Never raises."""

    @abstractmethod
    def invoke(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: float = 300.0,
    ) -> InvocationResult:
        """Run ``command`` with ``args``, bounded by ``timeout`` seconds.

        Raises:
            ActionTimeoutError: The command did not finish in time.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
