"""
Tests for the orchestration engine — scheduling, failure, resume, idempotence.
"""

import errno
import threading
import time

import pytest

from server_forge.core.engine.executor import OrchestrationEngine
from server_forge.core.engine.registry import StepRegistry
from server_forge.core.errors import ConfigurationError
from server_forge.core.models.configuration import Configuration
from server_forge.core.models.record import ExecutionRecord, RunStatus, StepStatus
from server_forge.core.models.step import idempotency_key
from server_forge.core.persistence.action_log import ActionLog


def _plan(*steps):
    registry = StepRegistry()
    for step in steps:
        registry.register(step)
    return registry.build_plan()


# ── Success path ─────────────────────────────────────────────────────


class TestSuccessfulRun:
    def test_all_steps_complete_in_order(self, engine, configuration, make_step, journal):
        plan = _plan(make_step("a"), make_step("b", requires=["a"]), make_step("c", requires=["b"]))

        result = engine.run(plan, configuration)

        assert result.status == RunStatus.SUCCESS
        assert result.ok
        assert journal == ["do:a", "do:b", "do:c"]
        assert [r.status for r in result.records] == [StepStatus.COMPLETED] * 3
        assert result.rollback is None

    def test_every_transition_is_logged(self, engine, configuration, make_step, action_log):
        plan = _plan(make_step("a"), make_step("b", requires=["a"]))

        result = engine.run(plan, configuration)

        entries = action_log.read_entries(result.run_id)
        statuses = [(e.record.step_id, e.record.status) for e in entries]
        assert statuses == [
            ("a", StepStatus.RUNNING),
            ("a", StepStatus.COMPLETED),
            ("b", StepStatus.RUNNING),
            ("b", StepStatus.COMPLETED),
        ]
        assert [e.seq for e in entries] == [0, 1, 2, 3]

    def test_records_carry_undo_token_and_output(self, engine, configuration, make_step):
        plan = _plan(make_step("a", token={"installed": ["nginx"]}))

        result = engine.run(plan, configuration)

        record = result.record_for("a")
        assert record.undo_token == {"installed": ["nginx"]}
        assert "$ forge-step apply a" in record.output
        assert record.started_at and record.ended_at
        assert record.idempotency_key == idempotency_key("a", configuration.config_hash())

    def test_run_id_cannot_be_reused(self, engine, configuration, make_step):
        plan = _plan(make_step("a"))
        engine.run(plan, configuration, run_id="run-fixed")

        with pytest.raises(ValueError):
            engine.run(plan, configuration, run_id="run-fixed")

    def test_max_workers_must_be_positive(self, invoker, action_log):
        with pytest.raises(ValueError):
            OrchestrationEngine(invoker=invoker, action_log=action_log, max_workers=0)


# ── Failure and rollback ─────────────────────────────────────────────


class TestFailure:
    def test_failing_step_rolls_back_earlier_steps(self, engine, configuration, make_step, journal):
        plan = _plan(
            make_step("s1"),
            make_step("s2"),
            make_step("s3", fail=True),
            make_step("s4"),
            make_step("s5"),
        )

        result = engine.run(plan, configuration)

        assert result.status == RunStatus.ROLLED_BACK
        assert result.failed_step == "s3"
        assert journal == ["do:s1", "do:s2", "do:s3", "undo:s2", "undo:s1"]
        assert result.record_for("s1").status == StepStatus.ROLLED_BACK
        assert result.record_for("s2").status == StepStatus.ROLLED_BACK
        assert result.record_for("s3").status == StepStatus.FAILED
        assert result.record_for("s4") is None
        assert result.record_for("s5") is None

    def test_dependent_chain_is_undone_newest_first(self, engine, configuration, make_step, journal):
        plan = _plan(
            make_step("A"),
            make_step("B", requires=["A"]),
            make_step("C", requires=["B"], fail=True),
            make_step("D", requires=["C"]),
        )

        result = engine.run(plan, configuration)

        assert result.status == RunStatus.ROLLED_BACK
        assert journal.index("undo:B") < journal.index("undo:A")
        assert "do:D" not in journal
        assert result.record_for("D") is None
        assert result.rollback.fully_rolled_back
        assert result.rollback.rolled_back == ["B", "A"]

    def test_failed_step_error_and_output_recorded(self, engine, configuration, make_step, invoker):
        invoker.set_failure("forge-step apply b", stderr="E: disk full")
        plan = _plan(make_step("a"), make_step("b", requires=["a"]))

        result = engine.run(plan, configuration)

        record = result.record_for("b")
        assert record.status == StepStatus.FAILED
        assert "exited with code 1" in record.error
        assert "E: disk full" in record.output

    def test_unexpected_exception_fails_the_step(self, engine, configuration, make_step):
        def explode():
            raise RuntimeError("boom")

        plan = _plan(make_step("a"), make_step("b", on_forward=explode))

        result = engine.run(plan, configuration)

        assert result.status == RunStatus.ROLLED_BACK
        assert result.record_for("b").error == "RuntimeError: boom"

    def test_unserializable_token_fails_the_step(self, engine, configuration, make_step, journal):
        plan = _plan(make_step("a"), make_step("b", token={"handle": object()}))

        result = engine.run(plan, configuration)

        assert result.failed_step == "b"
        assert "not serializable" in result.record_for("b").error
        assert journal == ["do:a", "do:b", "undo:b", "undo:a"]

    def test_timeout_triggers_rollback(self, engine, configuration, make_step, invoker, journal):
        invoker.set_timeout("forge-step apply b")
        plan = _plan(make_step("a"), make_step("b", requires=["a"]))

        result = engine.run(plan, configuration)

        assert result.status == RunStatus.ROLLED_BACK
        assert "timed out" in result.record_for("b").error
        assert result.record_for("a").status == StepStatus.ROLLED_BACK
        assert journal == ["do:a", "undo:a"]

    def test_rollback_transitions_are_logged(self, engine, configuration, make_step, action_log):
        plan = _plan(make_step("a"), make_step("b", requires=["a"], fail=True))

        result = engine.run(plan, configuration)

        records = {r.step_id: r for r in action_log.read_run(result.run_id)}
        assert records["a"].status == StepStatus.ROLLED_BACK
        assert records["b"].status == StepStatus.FAILED


# ── Concurrency ──────────────────────────────────────────────────────


class TestConcurrency:
    def test_exclusive_steps_never_overlap(self, invoker, action_log, filesystem, configuration, make_step):
        lock = threading.Lock()
        state = {"running": 0, "max": 0}

        def track():
            with lock:
                state["running"] += 1
                state["max"] = max(state["max"], state["running"])
            time.sleep(0.05)
            with lock:
                state["running"] -= 1

        plan = _plan(
            make_step("x", exclusive=True, on_forward=track),
            make_step("y", exclusive=True, on_forward=track),
            make_step("z", exclusive=True, on_forward=track),
        )
        engine = OrchestrationEngine(invoker, action_log, filesystem=filesystem, max_workers=4)

        result = engine.run(plan, configuration)

        assert result.ok
        assert state["max"] == 1

    def test_independent_steps_run_in_parallel(self, invoker, action_log, filesystem, configuration, make_step):
        # Both steps must be in flight at once for the barrier to release
        barrier = threading.Barrier(2, timeout=5)
        plan = _plan(
            make_step("left", on_forward=barrier.wait),
            make_step("right", on_forward=barrier.wait),
        )
        engine = OrchestrationEngine(invoker, action_log, filesystem=filesystem, max_workers=2)

        result = engine.run(plan, configuration)

        assert result.ok

    def test_dependents_wait_for_prerequisites(self, invoker, action_log, filesystem, configuration, make_step, journal):
        plan = _plan(
            make_step("base"),
            make_step("left", requires=["base"]),
            make_step("right", requires=["base"]),
            make_step("top", requires=["left", "right"]),
        )
        engine = OrchestrationEngine(invoker, action_log, filesystem=filesystem, max_workers=4)

        result = engine.run(plan, configuration)

        assert result.ok
        assert journal[0] == "do:base"
        assert journal[-1] == "do:top"


    def test_diamond_failure_with_parallel_workers(
        self, invoker, action_log, filesystem, configuration, make_step, journal
    ):
        # B and C must be in flight together for the barrier to release
        barrier = threading.Barrier(2, timeout=5)
        plan = _plan(
            make_step("A"),
            make_step("B", requires=["A"], on_forward=barrier.wait),
            make_step("C", requires=["A"], on_forward=barrier.wait, fail=True),
            make_step("D", requires=["B", "C"]),
        )
        engine = OrchestrationEngine(invoker, action_log, filesystem=filesystem, max_workers=4)

        result = engine.run(plan, configuration)

        assert result.status == RunStatus.ROLLED_BACK
        assert result.failed_step == "C"
        assert journal.index("undo:B") < journal.index("undo:A")
        assert "undo:C" not in journal
        assert "do:D" not in journal
        assert result.record_for("D") is None
        assert result.rollback.rolled_back == ["B", "A"]


# ── Action log write failures ────────────────────────────────────────


class FailingLog(ActionLog):
    """ActionLog whose n-th appends (1-based) raise like a full disk."""

    def __init__(self, directory, fail_on):
        super().__init__(directory=directory, fsync=False)
        self.fail_on = set(fail_on)
        self.appends = 0

    def append(self, record):
        self.appends += 1
        if self.appends in self.fail_on:
            raise OSError(errno.ENOSPC, "No space left on device")
        return super().append(record)


class TestActionLogWriteFailure:
    def _engine(self, invoker, filesystem, log):
        return OrchestrationEngine(invoker, log, filesystem=filesystem, max_workers=1)

    def test_unrecorded_completion_is_taken_back(
        self, invoker, filesystem, configuration, make_step, journal, tmp_path
    ):
        # a running, a completed, b running, b completed ← fails
        log = FailingLog(tmp_path / "runs", fail_on={4})
        plan = _plan(make_step("a"), make_step("b", requires=["a"]), make_step("c", requires=["b"]))

        result = self._engine(invoker, filesystem, log).run(plan, configuration)

        assert result.status == RunStatus.ROLLED_BACK
        assert result.failed_step == "b"
        assert journal == ["do:a", "do:b", "undo:b", "undo:a"]
        record = result.record_for("b")
        assert record.status == StepStatus.FAILED
        assert "could not record" in record.error
        assert result.record_for("c") is None

    def test_unrecorded_start_never_runs_the_step(
        self, invoker, filesystem, configuration, make_step, journal, tmp_path
    ):
        log = FailingLog(tmp_path / "runs", fail_on={3})
        plan = _plan(make_step("a"), make_step("b", requires=["a"]))

        result = self._engine(invoker, filesystem, log).run(plan, configuration)

        assert result.status == RunStatus.ROLLED_BACK
        assert journal == ["do:a", "undo:a"]
        assert result.record_for("b").status == StepStatus.FAILED

    def test_unrecorded_rollback_needs_remediation(
        self, invoker, filesystem, configuration, make_step, journal, tmp_path
    ):
        # a running, a completed, b running, b failed, a rolled back ← fails
        log = FailingLog(tmp_path / "runs", fail_on={5})
        plan = _plan(make_step("a"), make_step("b", requires=["a"], fail=True))

        result = self._engine(invoker, filesystem, log).run(plan, configuration)

        assert result.status == RunStatus.ROLLBACK_FAILED
        assert journal == ["do:a", "do:b", "undo:a"]
        (leftover,) = result.rollback.remediation
        assert leftover.step_id == "a"
        assert "could not record" in leftover.error


# ── Cancellation ─────────────────────────────────────────────────────


class TestCancellation:
    def test_cancel_stops_scheduling_and_rolls_back(self, engine, configuration, make_step, journal):
        plan = _plan(
            make_step("a", on_forward=engine.cancel),
            make_step("b", requires=["a"]),
        )

        result = engine.run(plan, configuration)

        assert result.cancelled
        assert result.status == RunStatus.ROLLED_BACK
        assert journal == ["do:a", "undo:a"]
        assert result.record_for("b") is None

    def test_cancel_flag_resets_for_next_run(self, engine, configuration, make_step):
        engine.cancel()
        assert engine.cancel_requested

        result = engine.run(_plan(make_step("a")), configuration)

        assert result.ok
        assert not result.cancelled


# ── Idempotence ──────────────────────────────────────────────────────


class TestIdempotence:
    def test_second_run_reuses_applied_steps(self, engine, configuration, make_step, journal):
        plan = _plan(make_step("a"), make_step("b", requires=["a"]))
        first = engine.run(plan, configuration)
        journal.clear()

        second = engine.run(plan, configuration)

        assert second.ok
        assert journal == []
        for step_id in ("a", "b"):
            record = second.record_for(step_id)
            assert record.status == StepStatus.COMPLETED
            assert record.reused_from == first.record_for(step_id).record_id
            assert "already applied" in record.output

    def test_rolled_back_steps_run_again(self, engine, configuration, make_step, journal):
        failing = _plan(make_step("a"), make_step("b", requires=["a"], fail=True))
        assert engine.run(failing, configuration).status == RunStatus.ROLLED_BACK
        journal.clear()

        fixed = _plan(make_step("a"), make_step("b", requires=["a"]))
        result = engine.run(fixed, configuration)

        assert result.ok
        assert journal == ["do:a", "do:b"]
        assert result.record_for("a").reused_from is None

    def test_other_configuration_is_not_reused(self, engine, configuration, make_step, journal):
        plan = _plan(make_step("a"))
        engine.run(plan, configuration)
        journal.clear()

        other = Configuration(distro_family="apt", monitoring=True)
        engine.run(plan, other)

        assert journal == ["do:a"]


# ── Resume and recovery ──────────────────────────────────────────────


class TestResume:
    def _crashed_run(self, action_log, configuration) -> tuple[str, ExecutionRecord]:
        """Segment of a run that died while step b was running."""
        run_id = "run-crashed"
        config_hash = configuration.config_hash()

        a = ExecutionRecord(
            run_id=run_id, step_id="a", config_hash=config_hash,
            idempotency_key=idempotency_key("a", config_hash),
        )
        a.mark(StepStatus.RUNNING)
        action_log.append(a)
        a.undo_token = {"step": "a"}
        a.mark(StepStatus.COMPLETED)
        action_log.append(a)

        b = ExecutionRecord(
            run_id=run_id, step_id="b", config_hash=config_hash,
            idempotency_key=idempotency_key("b", config_hash),
        )
        b.mark(StepStatus.RUNNING)
        action_log.append(b)

        # The write in progress when the process died
        with action_log.path_for(run_id).open("a", encoding="utf-8") as f:
            f.write('{"run_id": "run-crashed", "seq": 3, "rec')
        return run_id, a

    def test_resume_skips_completed_and_reruns_the_rest(
        self, engine, configuration, make_step, journal, action_log
    ):
        run_id, a = self._crashed_run(action_log, configuration)
        plan = _plan(make_step("a"), make_step("b", requires=["a"]), make_step("c", requires=["b"]))

        result = engine.resume(run_id, plan, configuration)

        assert result.ok
        assert result.run_id != run_id
        assert journal == ["do:b", "do:c"]
        assert result.record_for("a").reused_from == a.record_id

        crashed = {r.step_id: r for r in action_log.read_run(run_id)}
        assert crashed["b"].status == StepStatus.FAILED
        assert crashed["b"].error == "interrupted before completion"

    def test_rollback_of_crashed_run(self, engine, configuration, make_step, journal, action_log):
        run_id, _ = self._crashed_run(action_log, configuration)
        plan = _plan(make_step("a"), make_step("b", requires=["a"]))

        rollback = engine.rollback_run(run_id, plan, configuration)

        assert rollback.fully_rolled_back
        assert rollback.rolled_back == ["a"]
        assert journal == ["undo:a"]

    def test_resume_with_other_configuration_rejected(self, engine, configuration, make_step, action_log):
        run_id, _ = self._crashed_run(action_log, configuration)
        other = Configuration(distro_family="dnf")

        with pytest.raises(ConfigurationError, match="different configuration"):
            engine.resume(run_id, _plan(make_step("a")), other)

    def test_resume_unknown_run(self, engine, configuration, make_step):
        with pytest.raises(ConfigurationError, match="No action log"):
            engine.resume("run-missing", _plan(make_step("a")), configuration)
