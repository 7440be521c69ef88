"""
ExecutionRecord and run results — the engine's output contract.

An ExecutionRecord is the durable status entry for one attempted Step
within one run. The engine mutates it in memory and appends a snapshot
to the ActionLog on every status transition; the log, not the object,
is the source of truth.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_ERROR = "rollback_error"


class RunStatus(StrEnum):
    SUCCESS = "success"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


class RollbackStatus(StrEnum):
    FULLY_ROLLED_BACK = "fully_rolled_back"
    PARTIALLY_ROLLED_BACK = "partially_rolled_back"


class ExecutionRecord(BaseModel):
    """Status entry for one attempted step in one run."""

    record_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    run_id: str
    step_id: str
    label: str = ""
    status: StepStatus = StepStatus.PENDING

    started_at: str | None = None
    ended_at: str | None = None

    undo_token: dict[str, Any] | None = None
    output: str = ""                 # captured diagnostic output
    error: str | None = None

    idempotency_key: str = ""
    config_hash: str = ""
    reused_from: str | None = None   # record whose undo token was reused
    completed_seq: int | None = None  # log sequence of the completed entry

    def mark(self, status: StepStatus) -> None:
        """Apply a status transition and stamp the timestamps."""
        self.status = status
        if status == StepStatus.RUNNING:
            self.started_at = _now_iso()
        elif status != StepStatus.PENDING:
            self.ended_at = _now_iso()

    @property
    def completed(self) -> bool:
        return self.status == StepStatus.COMPLETED


@dataclass
class RollbackResult:
    """Outcome of a rollback pass."""

    status: RollbackStatus = RollbackStatus.FULLY_ROLLED_BACK
    rolled_back: list[str] = field(default_factory=list)
    remediation: list[ExecutionRecord] = field(default_factory=list)

    @property
    def fully_rolled_back(self) -> bool:
        return self.status == RollbackStatus.FULLY_ROLLED_BACK

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "rolled_back": list(self.rolled_back),
            "remediation": [
                {"step_id": r.step_id, "status": r.status.value, "error": r.error}
                for r in self.remediation
            ],
        }


@dataclass
class RunResult:
    """Outcome of one engine run."""

    run_id: str = ""
    status: RunStatus = RunStatus.SUCCESS
    records: list[ExecutionRecord] = field(default_factory=list)
    rollback: RollbackResult | None = None
    cancelled: bool = False
    failed_step: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def record_for(self, step_id: str) -> ExecutionRecord | None:
        """Most recent record for a step in this run."""
        for record in reversed(self.records):
            if record.step_id == step_id:
                return record
        return None

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "cancelled": self.cancelled,
            "failed_step": self.failed_step,
            "records": [r.model_dump(mode="json", exclude={"undo_token"}) for r in self.records],
            "rollback": self.rollback.to_dict() if self.rollback else None,
        }
