"""
Step builders — reusable forward/inverse pairs.

Each builder returns an immutable Step whose forward action records
exactly what it changed, so the inverse undoes only that:

    packages_step      installs what is missing, removes only those
    config_file_step   writes a file, restores the previous content and mode
    secret_file_step   generates a 0600 secret once, removes it if created
    service_step       enables/starts a unit, restores the prior state

A failed step is never rolled back, so every forward action takes back
its own partial changes before re-raising (see ``compensating``). A
cleanup that fails turns the error into a CompensationError naming
what was left on the machine.

Package names and service names are canonical and mapped per family
through the DistroProvider (``"firewall"`` → ``ufw`` / ``firewalld``).
"""

from __future__ import annotations

import logging
import secrets
from contextlib import contextmanager
from functools import partial
from typing import Any, Callable, Iterable, Iterator, Sequence

from server_forge.core.engine.context import StepContext
from server_forge.core.errors import CompensationError
from server_forge.core.models.configuration import Configuration
from server_forge.core.models.step import Step, UndoToken

logger = logging.getLogger(__name__)

PackageSource = Sequence[str] | Callable[[StepContext], Sequence[str]]
PathSource = str | Callable[[StepContext], str]
Renderer = Callable[[Configuration, str | None], str]

SECRET_MODE = 0o600


# ── Compensation ────────────────────────────────────────────────


class Compensation:
    """Cleanups registered by a forward action, replayed newest first on failure."""

    def __init__(self, ctx: StepContext):
        self._ctx = ctx
        self._cleanups: list[tuple[str, Callable[[], Any]]] = []

    def push(self, description: str, cleanup: Callable[[], Any]) -> None:
        self._cleanups.append((description, cleanup))

    def unwind(self) -> list[str]:
        """Run every cleanup; return the descriptions of those that failed."""
        leftover: list[str] = []
        for description, cleanup in reversed(self._cleanups):
            try:
                cleanup()
            except Exception as e:
                self._ctx.transcript.append(f"cleanup failed ({description}): {e}")
                logger.error("[%s] could not %s: %s", self._ctx.step_id, description, e)
                leftover.append(description)
        self._cleanups.clear()
        return leftover


@contextmanager
def compensating(ctx: StepContext) -> Iterator[Compensation]:
    """Take back a forward action's partial changes if it raises.

    Raises:
        CompensationError: A cleanup failed; the original error is chained.
    """
    undo = Compensation(ctx)
    try:
        yield undo
    except Exception as e:
        leftover = undo.unwind()
        if leftover:
            raise CompensationError(str(e), leftover, output=ctx.output) from e
        raise


def generate_secret(length: int = 32) -> str:
    return secrets.token_urlsafe(length)


# ── Packages ────────────────────────────────────────────────────


def packages_step(
    step_id: str,
    label: str,
    packages: PackageSource,
    requires: Iterable[str] = (),
) -> Step:
    """Install packages through the package manager (always exclusive)."""

    def forward(ctx: StepContext) -> UndoToken:
        wanted = packages(ctx) if callable(packages) else packages
        installed: list[str] = []
        with compensating(ctx) as undo:
            for canonical in wanted:
                pkg = ctx.provider.package_name(canonical, ctx.family)
                if ctx.succeeds("query_package", package=pkg):
                    logger.debug("[%s] %s already installed", step_id, pkg)
                    continue
                ctx.execute("install_package", package=pkg)
                installed.append(pkg)
                undo.push(f"remove {pkg}", partial(ctx.execute, "remove_package", package=pkg))
        return {"installed": installed}

    def inverse(ctx: StepContext, token: UndoToken) -> None:
        for pkg in reversed(token.get("installed", [])):
            ctx.execute("remove_package", package=pkg)

    return Step(
        id=step_id,
        label=label,
        forward=forward,
        inverse=inverse,
        requires=frozenset(requires),
        uses_package_manager=True,
    )


# ── Files ───────────────────────────────────────────────────────


def config_file_step(
    step_id: str,
    label: str,
    path: PathSource,
    render: Renderer | str,
    requires: Iterable[str] = (),
    mode: int = 0o644,
    restart: str | None = None,
    reload_systemd: bool = False,
) -> Step:
    """Write a configuration file, keeping the previous content for undo.

    Args:
        path: Target path, or a callable resolving it per family.
        render: Fixed content, or ``render(configuration, previous)``
            returning the new content (lets a step edit a file in place).
        restart: Canonical service to restart after writing and after
            restoring, so the running daemon follows the file.
        reload_systemd: Run ``systemctl daemon-reload`` after writing and
            after restoring (unit files and drop-ins).
    """

    def after_change(ctx: StepContext) -> None:
        if reload_systemd:
            ctx.execute("daemon_reload")
        if restart:
            ctx.execute("restart_service", service=ctx.provider.service_name(restart, ctx.family))

    def forward(ctx: StepContext) -> UndoToken:
        target = path(ctx) if callable(path) else path
        previous = ctx.filesystem.read(target)
        token = {"path": target, "previous": previous, "mode": ctx.filesystem.mode(target)}
        content = render(ctx.configuration, previous) if callable(render) else render
        with compensating(ctx) as undo:
            ctx.filesystem.write(target, content, mode=mode)
            ctx.transcript.append(f"wrote {target} ({len(content)} bytes)")
            # Restoring also restarts, so a daemon that refused the new
            # file comes back up on the old one
            undo.push(f"restore {target}", partial(inverse, ctx, token))
            after_change(ctx)
        return token

    def inverse(ctx: StepContext, token: UndoToken) -> None:
        _restore(ctx, token["path"], token.get("previous"), token.get("mode"))
        after_change(ctx)

    return Step(
        id=step_id,
        label=label,
        forward=forward,
        inverse=inverse,
        requires=frozenset(requires),
    )


def _restore(ctx: StepContext, target: str, previous: str | None, mode: int | None) -> None:
    if previous is None:
        ctx.filesystem.remove(target)
        ctx.transcript.append(f"removed {target}")
    else:
        ctx.filesystem.write(target, previous, mode=0o644 if mode is None else mode)
        ctx.transcript.append(f"restored {target}")


def secret_file_step(
    step_id: str,
    label: str,
    path: str,
    requires: Iterable[str] = (),
) -> Step:
    """Generate a secret into a 0600 file unless one already exists.

    The secret never enters the undo token or the transcript, so it
    stays out of the action log. An existing file is left untouched:
    whatever it protects was set up with that value.
    """

    def forward(ctx: StepContext) -> UndoToken:
        if ctx.filesystem.read(path) is not None:
            ctx.transcript.append(f"kept existing {path}")
            return {"path": path, "created": False}
        ctx.filesystem.write(path, generate_secret() + "\n", mode=SECRET_MODE)
        ctx.transcript.append(f"generated {path}")
        return {"path": path, "created": True}

    def inverse(ctx: StepContext, token: UndoToken) -> None:
        if token.get("created"):
            ctx.filesystem.remove(token["path"])
            ctx.transcript.append(f"removed {token['path']}")

    return Step(
        id=step_id,
        label=label,
        forward=forward,
        inverse=inverse,
        requires=frozenset(requires),
    )


# ── Services ────────────────────────────────────────────────────


def service_step(
    step_id: str,
    label: str,
    service: str | Callable[[StepContext], str],
    requires: Iterable[str] = (),
) -> Step:
    """Enable and start a systemd unit; undo returns it to its prior state."""

    def forward(ctx: StepContext) -> UndoToken:
        canonical = service(ctx) if callable(service) else service
        unit = ctx.provider.service_name(canonical, ctx.family)
        was_enabled = ctx.succeeds("service_enabled", service=unit)
        was_active = ctx.succeeds("service_active", service=unit)
        with compensating(ctx) as undo:
            if not was_enabled:
                ctx.execute("enable_service", service=unit)
                undo.push(f"disable {unit}", partial(ctx.execute, "disable_service", service=unit))
            if not was_active:
                ctx.execute("start_service", service=unit)
        return {"service": unit, "was_enabled": was_enabled, "was_active": was_active}

    def inverse(ctx: StepContext, token: UndoToken) -> None:
        unit = token["service"]
        if not token.get("was_active"):
            ctx.execute("stop_service", service=unit)
        if not token.get("was_enabled"):
            ctx.execute("disable_service", service=unit)

    return Step(
        id=step_id,
        label=label,
        forward=forward,
        inverse=inverse,
        requires=frozenset(requires),
    )
