"""
Mock invoker — universal test double for command execution.

Used in mock mode and in tests to drive real steps without touching the
machine. Succeeds for everything by default; individual command lines
can be given custom results, made to fail, or made to time out.
"""

from __future__ import annotations

import threading
import time
from typing import Sequence

from server_forge.adapters.base import ActionInvoker, InvocationResult
from server_forge.core.errors import ActionTimeoutError


class MockInvoker(ActionInvoker):
    """Records every invocation and replays configured results.

    Responses are matched by substring against the full command line
    (``"apt-get install -y nginx"``); the first registered match wins.
    """

    def __init__(
        self,
        invoker_name: str = "mock",
        available: bool = True,
        default_exit_code: int = 0,
        delay: float = 0.0,
    ):
        self._name = invoker_name
        self._available = available
        self._default_exit_code = default_exit_code
        self._delay = delay
        self._responses: list[tuple[str, InvocationResult | None]] = []
        self._calls: list[str] = []
        self._lock = threading.Lock()
        self._in_flight = 0
        self.max_in_flight = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def calls(self) -> list[str]:
        """Every command line received, in call order."""
        return list(self._calls)

    @property
    def call_count(self) -> int:
        return len(self._calls)

    def is_available(self) -> bool:
        return self._available

    def set_result(self, match: str, exit_code: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Return a custom result for command lines containing ``match``."""
        self._responses.append((match, InvocationResult(exit_code, stdout, stderr)))

    def set_failure(self, match: str, stderr: str = "mock failure", exit_code: int = 1) -> None:
        self.set_result(match, exit_code=exit_code, stderr=stderr)

    def set_timeout(self, match: str) -> None:
        """Make command lines containing ``match`` raise a timeout."""
        self._responses.append((match, None))

    def called(self, match: str) -> bool:
        return any(match in line for line in self._calls)

    def invoke(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: float = 300.0,
    ) -> InvocationResult:
        line = " ".join([command, *args])
        with self._lock:
            self._calls.append(line)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self._delay:
                time.sleep(self._delay)
            for match, result in self._responses:
                if match in line:
                    if result is None:
                        raise ActionTimeoutError(f"Command timed out after {timeout}s: {line}")
                    return result
            return InvocationResult(exit_code=self._default_exit_code, stdout=f"[mock] {line}")
        finally:
            with self._lock:
                self._in_flight -= 1

    def reset(self) -> None:
        """Clear call log and custom responses."""
        with self._lock:
            self._calls.clear()
            self._responses.clear()
            self.max_in_flight = 0
