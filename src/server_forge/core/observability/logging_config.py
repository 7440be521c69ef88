"""
Logging configuration — process-wide setup plus per-run/per-step context.

``setup_logging`` is called once by main.py. Every module logs through
``logging.getLogger(__name__)``; a filter on each handler stamps records
with the run and step they belong to, taken from ``log_context``:

    with log_context(run_id="run-…", step_id="firewall"):
        logger.info("...")     # → "run-… firewall  ..."

Steps execute in worker threads, so the context lives in contextvars
and the engine enters it inside the worker, not around the pool.

Levels, highest precedence first:
    --debug / --verbose / --quiet  >  SERVER_FORGE_LOG_LEVEL  >  WARNING
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_run_id: ContextVar[str] = ContextVar("server_forge_run_id", default="-")
_step_id: ContextVar[str] = ContextVar("server_forge_step_id", default="-")

# Console output for operators: messages only at WARNING and above
_FMT_CONSOLE = "%(message)s"
_FMT_VERBOSE = "%(asctime)s %(run_id)s %(step_id)-24s %(message)s"
_FMT_DEBUG = (
    "%(asctime)s %(levelname)-5s %(run_id)s %(step_id)s "
    "[%(threadName)s] %(name)s:%(lineno)d  %(message)s"
)
_FMT_FILE = _FMT_DEBUG
_DATEFMT_CONSOLE = "%H:%M:%S"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"


class RunContextFilter(logging.Filter):
    """Adds ``run_id`` and ``step_id`` attributes to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = _run_id.get()
        record.step_id = _step_id.get()
        return True


@contextmanager
def log_context(run_id: str | None = None, step_id: str | None = None) -> Iterator[None]:
    """Tag log records emitted inside the block with a run and/or step.

    Arguments left as None keep the enclosing value.
    """
    tokens = []
    if run_id is not None:
        tokens.append((_run_id, _run_id.set(run_id)))
    if step_id is not None:
        tokens.append((_step_id, _step_id.set(step_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def current_context() -> dict[str, str]:
    return {"run_id": _run_id.get(), "step_id": _step_id.get()}


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Configure the root logger for the CLI.

    Args:
        level: Console level name. ERROR is what ``--quiet`` asks for:
            only failures and rollback trouble reach the terminal.
        log_file: Optional file that always gets the full format.
        log_file_level: Level for the file (default: ``level``).
    """
    numeric_level = parse_level(level)
    if numeric_level <= logging.DEBUG:
        fmt = _FMT_DEBUG
    elif numeric_level <= logging.INFO:
        fmt = _FMT_VERBOSE
    else:
        fmt = _FMT_CONSOLE

    context_filter = RunContextFilter()
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=_DATEFMT_CONSOLE))
    console.addFilter(context_filter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    effective_level = numeric_level

    if log_file:
        file_level = parse_level(log_file_level) if log_file_level else numeric_level
        effective_level = min(effective_level, file_level)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
        fh.addFilter(context_filter)
        root.addHandler(fh)

    root.setLevel(effective_level)
    logging.raiseExceptions = False


def parse_level(level: str | None) -> int:
    """Level name to its numeric constant; unknown names mean WARNING."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    return numeric if isinstance(numeric, int) else logging.WARNING
