"""
Step — a named, idempotent system mutation with a declared inverse.

Steps are defined when the registry is built and never change after.
The forward action returns an *undo token*: a JSON-serializable mapping
holding whatever the inverse needs (prior file contents, which packages
were actually installed, whether a service was enabled before). The
token is persisted with the ExecutionRecord so rollback still works
after a process restart.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from server_forge.core.engine.context import StepContext

UndoToken = dict[str, Any]
ForwardAction = Callable[["StepContext"], UndoToken]
InverseAction = Callable[["StepContext", UndoToken], None]


def _no_inverse(ctx: StepContext, token: UndoToken) -> None:
    """Inverse for steps whose effect is left in place on rollback."""


@dataclass(frozen=True)
class Step:
    """A unit of work in a provisioning plan."""

    id: str
    label: str
    forward: ForwardAction
    inverse: InverseAction = _no_inverse
    requires: frozenset[str] = field(default_factory=frozenset)
    exclusive: bool = False
    uses_package_manager: bool = False

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Step id must not be empty")
        # Accept any iterable of ids for convenience
        if not isinstance(self.requires, frozenset):
            object.__setattr__(self, "requires", frozenset(self.requires))

    @property
    def is_exclusive(self) -> bool:
        """Whether this step must not overlap another exclusive step.

        Package-manager steps are always exclusive: concurrent apt/yum/dnf
        invocations on one machine corrupt the package lock.
        """
        return self.exclusive or self.uses_package_manager


def idempotency_key(step_id: str, config_hash: str) -> str:
    """Derive the key used to detect an already-applied step."""
    return hashlib.sha256(f"{step_id}\x00{config_hash}".encode("utf-8")).hexdigest()
