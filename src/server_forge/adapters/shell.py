"""
Subprocess invoker — the single place where ``subprocess.run`` is called.

Commands are run without a shell (argument lists only). When the
process is not root and ``use_sudo`` is set, commands are prefixed with
``sudo -n`` so a missing credential fails fast instead of prompting.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from typing import Sequence

from server_forge.adapters.base import ActionInvoker, InvocationResult
from server_forge.core.errors import ActionTimeoutError

logger = logging.getLogger(__name__)

# Keep captured output bounded; the tail carries the useful diagnostics
_OUTPUT_LIMIT = 4000


class SubprocessInvoker(ActionInvoker):
    """Run commands on the local machine.

    Args:
        use_sudo: Prefix commands with ``sudo -n`` when not already root.
        env_overrides: Extra environment variables for every command.
    """

    def __init__(self, use_sudo: bool = False, env_overrides: dict[str, str] | None = None):
        self._use_sudo = use_sudo
        self._env_overrides = dict(env_overrides or {})

    @property
    def name(self) -> str:
        return "subprocess"

    def is_available(self) -> bool:
        return shutil.which("sh") is not None

    def invoke(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: float = 300.0,
    ) -> InvocationResult:
        cmd = [command, *args]
        if self._use_sudo and os.geteuid() != 0:
            cmd = ["sudo", "-n", *cmd]

        env = os.environ.copy()
        env.setdefault("DEBIAN_FRONTEND", "noninteractive")
        env.update(self._env_overrides)

        logger.debug("Invoking: %s (timeout=%ss)", " ".join(cmd), timeout)
        start = time.monotonic()
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise ActionTimeoutError(
                f"Command timed out after {timeout}s: {' '.join(cmd)}",
                output=_tail(e.stderr if isinstance(e.stderr, str) else ""),
            ) from e
        except FileNotFoundError:
            return InvocationResult(exit_code=127, stderr=f"Command not found: {command}")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.debug("Exit %d after %dms: %s", result.returncode, elapsed_ms, command)
        return InvocationResult(
            exit_code=result.returncode,
            stdout=_tail(result.stdout),
            stderr=_tail(result.stderr),
        )


def _tail(text: str | None) -> str:
    if not text:
        return ""
    return text[-_OUTPUT_LIMIT:]
