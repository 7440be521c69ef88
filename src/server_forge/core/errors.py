"""
Error taxonomy — every failure the core can surface.

Errors fall into three propagation groups:

    before any mutation   ConfigurationError, UnsupportedDistroError,
                          UnsupportedActionError, DuplicateStepError,
                          MissingDependencyError, CyclicDependencyError
    during a run          ActionExecutionError (handled by rollback),
                          CompensationError (partial change left behind)
    needs an operator     RollbackError, LogCorruptionError

Only the first group is safe to retry blindly (after fixing input).
"""

from __future__ import annotations


class ServerForgeError(Exception):
    """Base class for all server-forge errors."""


class ConfigurationError(ServerForgeError):
    """Raised when the configuration is invalid or missing."""


# ── Distribution mapping ────────────────────────────────────────


class UnsupportedDistroError(ServerForgeError):
    """The package-manager family is outside the supported set."""

    def __init__(self, family: str):
        self.family = family
        super().__init__(f"Unsupported distribution family: {family!r}")


class UnsupportedActionError(ServerForgeError):
    """No command mapping exists for an action under a family."""

    def __init__(self, action: str, family: str, reason: str = ""):
        self.action = action
        self.family = family
        msg = f"No mapping for action {action!r} under family {family!r}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


# ── Registry ────────────────────────────────────────────────────


class DuplicateStepError(ServerForgeError):
    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Step already registered: {step_id!r}")


class MissingDependencyError(ServerForgeError):
    def __init__(self, step_id: str, missing: str):
        self.step_id = step_id
        self.missing = missing
        super().__init__(f"Step {step_id!r} depends on unregistered step {missing!r}")


class CyclicDependencyError(ServerForgeError):
    """The step graph contains a cycle.

    ``cycle`` lists the step ids along the cycle, with the first id
    repeated at the end (``["a", "b", "a"]``).
    """

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")


# ── Execution ───────────────────────────────────────────────────


class ActionExecutionError(ServerForgeError):
    """A forward action failed. Carries the captured diagnostic output."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(message)


class ActionTimeoutError(ActionExecutionError):
    """An external invocation exceeded its timeout."""


class CompensationError(ActionExecutionError):
    """A forward action failed and could not take back all of its own changes.

    ``leftover`` describes each change still in place on the machine.
    """

    def __init__(self, message: str, leftover: list[str], output: str = ""):
        self.leftover = list(leftover)
        super().__init__(f"{message}; left in place: {', '.join(self.leftover)}", output=output)


class RollbackError(ServerForgeError):
    """An inverse action failed. Never retried automatically."""

    def __init__(self, step_id: str, message: str, output: str = ""):
        self.step_id = step_id
        self.output = output
        super().__init__(f"Rollback of {step_id!r} failed: {message}")


# ── Persistence ─────────────────────────────────────────────────


class LogCorruptionError(ServerForgeError):
    """A log segment holds a malformed entry. Affects that run only."""

    def __init__(self, run_id: str, line: int, reason: str):
        self.run_id = run_id
        self.line = line
        super().__init__(f"Action log for run {run_id!r} is corrupt at line {line}: {reason}")
