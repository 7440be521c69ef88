"""
Action log — append-only journal of ExecutionRecords.

Every status transition of every step is written as one NDJSON line to
the run's segment file (``.state/runs/<run_id>.ndjson``):

    {"run_id": "...", "seq": 3, "logged_at": "...", "record": {...}}

Lines are never rewritten. A later line for the same record supersedes
an earlier one. Appends are serialized and fsync'd before returning, so
a transition the engine has seen acknowledged survives a crash.

Recovery rules:
    - a final line without a trailing newline that doesn't parse is a
      write cut short by a crash: ignored (and trimmed before the next
      append to that segment)
    - any other malformed line is corruption: LogCorruptionError for
      that run only
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from server_forge.core.errors import LogCorruptionError
from server_forge.core.models.record import ExecutionRecord, StepStatus

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".state"
DEFAULT_RUNS_DIR = "runs"
SEGMENT_SUFFIX = ".ndjson"

_RUN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class LogEntry(BaseModel):
    """One persisted line of a run segment."""

    run_id: str
    seq: int
    logged_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    record: ExecutionRecord


def generate_run_id() -> str:
    """Generate a unique, chronologically sortable run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"run-{now}-{short}"


class ActionLog:
    """Append-only, per-run segmented execution journal."""

    def __init__(
        self,
        directory: Path | None = None,
        project_root: Path | None = None,
        fsync: bool = True,
    ):
        if directory is not None:
            self._dir = directory
        elif project_root is not None:
            self._dir = project_root / DEFAULT_STATE_DIR / DEFAULT_RUNS_DIR
        else:
            self._dir = Path(DEFAULT_STATE_DIR) / DEFAULT_RUNS_DIR
        self._fsync = fsync
        self._lock = threading.Lock()
        self._next_seq: dict[str, int] = {}

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, run_id: str) -> Path:
        if not _RUN_ID_RE.match(run_id):
            raise ValueError(f"Invalid run id: {run_id!r}")
        return self._dir / f"{run_id}{SEGMENT_SUFFIX}"

    # ── Writing ─────────────────────────────────────────────────

    def append(self, record: ExecutionRecord) -> int:
        """Durably append a snapshot of ``record``. Returns its sequence.

        The caller must not treat the transition as done until this
        returns. Appends are admitted one at a time; the returned
        sequence is the run's single notion of "happened before".
        """
        path = self.path_for(record.run_id)
        with self._lock:
            if record.run_id not in self._next_seq:
                self._next_seq[record.run_id] = self._recover_next_seq(path, record.run_id)
            seq = self._next_seq[record.run_id]

            entry = LogEntry(run_id=record.run_id, seq=seq, record=record)
            line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"

            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                if self._fsync:
                    os.fsync(f.fileno())

            self._next_seq[record.run_id] = seq + 1

        logger.debug("Logged %s:%s → %s (seq=%d)", record.run_id, record.step_id, record.status, seq)
        return seq

    def _recover_next_seq(self, path: Path, run_id: str) -> int:
        """Trim a torn final line, then continue numbering after the last entry."""
        if not path.is_file():
            return 0
        raw = path.read_bytes()
        if raw and not raw.endswith(b"\n"):
            keep = raw.rfind(b"\n") + 1
            try:
                self._parse_line(run_id, 0, raw[keep:].decode("utf-8", errors="replace"))
            except LogCorruptionError:
                logger.warning("Trimming truncated tail of %s (%d bytes)", path, len(raw) - keep)
                with path.open("r+b") as f:
                    f.truncate(keep)
            else:
                # Complete entry, only the newline was lost
                with path.open("ab") as f:
                    f.write(b"\n")
        entries = self.read_entries(run_id)
        return entries[-1].seq + 1 if entries else 0

    # ── Reading ─────────────────────────────────────────────────

    def read_entries(self, run_id: str) -> list[LogEntry]:
        """All entries of a run segment, in append order.

        Raises:
            LogCorruptionError: A malformed entry other than a torn tail.
        """
        path = self.path_for(run_id)
        if not path.is_file():
            return []

        text = path.read_text(encoding="utf-8", errors="replace")
        lines = text.split("\n")
        # A well-formed file ends with "\n", leaving an empty last chunk
        torn_tail = lines.pop() if lines else ""

        entries: list[LogEntry] = []
        for line_num, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            entries.append(self._parse_line(run_id, line_num, line))

        if torn_tail.strip():
            try:
                entries.append(self._parse_line(run_id, len(lines) + 1, torn_tail))
            except LogCorruptionError:
                logger.warning("Ignoring truncated final entry in run %s", run_id)

        return entries

    def _parse_line(self, run_id: str, line_num: int, line: str) -> LogEntry:
        try:
            entry = LogEntry.model_validate(json.loads(line))
        except json.JSONDecodeError as e:
            raise LogCorruptionError(run_id, line_num, f"invalid JSON: {e}") from e
        except ValidationError as e:
            raise LogCorruptionError(run_id, line_num, f"invalid entry: {e}") from e
        if entry.run_id != run_id or entry.record.run_id != run_id:
            raise LogCorruptionError(run_id, line_num, f"entry belongs to run {entry.run_id!r}")
        return entry

    def read_run(self, run_id: str) -> list[ExecutionRecord]:
        """Reconstruct a run: latest snapshot per record, first-seen order."""
        return _collapse(self.read_entries(run_id))

    def list_runs(self) -> list[str]:
        """Run ids with a segment on disk, oldest first."""
        if not self._dir.is_dir():
            return []
        return sorted(p.name[: -len(SEGMENT_SUFFIX)] for p in self._dir.glob(f"*{SEGMENT_SUFFIX}"))

    def has_run(self, run_id: str) -> bool:
        return self.path_for(run_id).is_file()

    # ── Idempotency lookups ─────────────────────────────────────

    def completed_index(self, exclude_run: str | None = None) -> dict[str, ExecutionRecord]:
        """Map idempotency key → record, for keys whose latest state is completed.

        Segments that fail to parse are skipped with a warning; a
        corrupt run never affects lookups for other runs.
        """
        latest: dict[str, tuple[tuple[str, int, int], ExecutionRecord]] = {}
        for run_order, run_id in enumerate(self.list_runs()):
            if run_id == exclude_run:
                continue
            try:
                records = self._records_with_position(run_id)
            except LogCorruptionError as e:
                logger.warning("Skipping corrupt run during lookup: %s", e)
                continue
            for (logged_at, seq), record in records:
                if not record.idempotency_key:
                    continue
                position = (logged_at, run_order, seq)
                current = latest.get(record.idempotency_key)
                if current is None or position > current[0]:
                    latest[record.idempotency_key] = (position, record)

        return {
            key: record
            for key, (_, record) in latest.items()
            if record.status == StepStatus.COMPLETED
        }

    def find_completed(self, idempotency_key: str, exclude_run: str | None = None) -> ExecutionRecord | None:
        return self.completed_index(exclude_run=exclude_run).get(idempotency_key)

    def _records_with_position(self, run_id: str) -> list[tuple[tuple[str, int], ExecutionRecord]]:
        entries = self.read_entries(run_id)
        records = _collapse(entries)
        last_position: dict[str, tuple[str, int]] = {}
        for entry in entries:
            last_position[entry.record.record_id] = (entry.logged_at, entry.seq)
        return [(last_position[r.record_id], r) for r in records]


def _collapse(entries: list[LogEntry]) -> list[ExecutionRecord]:
    records: dict[str, ExecutionRecord] = {}
    for entry in entries:
        record = entry.record
        previous = records.get(record.record_id)
        if record.completed_seq is None:
            if record.status == StepStatus.COMPLETED:
                record = record.model_copy(update={"completed_seq": entry.seq})
            elif previous is not None and previous.completed_seq is not None:
                record = record.model_copy(update={"completed_seq": previous.completed_seq})
        # dict keeps the first-insertion position on update
        records[record.record_id] = record
    return list(records.values())
