"""Tests for the run, step and event model."""

from datetime import timedelta

import pytest

from pushci import PushEvent, Run, RunFinalizedError, RunStatus, Step, StepResult, TriggerEvent
from pushci.models import utcnow


def _result(step: Step, exit_status: int) -> StepResult:
    now = utcnow()
    return StepResult(step=step, exit_status=exit_status, started_at=now, finished_at=now + timedelta(seconds=2))


def test_step_requires_name_and_command():
    with pytest.raises(ValueError, match="name"):
        Step(name="", command="cargo test")
    with pytest.raises(ValueError, match="empty command"):
        Step(name="test", command="   ")


def test_step_env_is_read_only():
    env = {"RUST_BACKTRACE": "1"}
    step = Step(name="test", command="cargo test", env=env)
    env["RUST_BACKTRACE"] = "0"
    assert step.env["RUST_BACKTRACE"] == "1"
    with pytest.raises(TypeError):
        step.env["RUST_BACKTRACE"] = "full"  # type: ignore[index]


def test_step_is_hashable():
    a = Step(name="lint", command="cargo clippy", env={"A": "1"})
    b = Step(name="lint", command="cargo clippy", env={"A": "1"})
    assert a == b
    assert len({a, b}) == 1


def test_step_result_properties():
    step = Step(name="lint", command="cargo clippy")
    assert _result(step, 0).ok
    assert not _result(step, 0).fatal
    assert _result(step, 101).fatal
    assert _result(step, 101).elapsed_seconds == 2.0

    tolerated = Step(name="audit", command="cargo audit", continue_on_error=True)
    assert not _result(tolerated, 1).ok
    assert not _result(tolerated, 1).fatal


def test_push_event_describe():
    assert PushEvent().describe() == "push"
    assert PushEvent(ref="main", sha="0123456789abcdef").describe() == "push main 01234567"
    assert TriggerEvent().describe() == "event"


def test_new_run_is_pending():
    run = Run(event=PushEvent())
    assert run.status is RunStatus.PENDING
    assert run.step_results == ()
    assert run.started_at is None
    assert run.duration is None
    assert not run.is_terminal
    assert len(run.run_id) == 12


def test_run_ids_are_unique():
    assert len({Run(event=PushEvent()).run_id for _ in range(50)}) == 50


def test_run_lifecycle():
    run = Run(event=PushEvent())
    run.start()
    assert run.status is RunStatus.PENDING
    assert run.started_at is not None

    run.mark_running()
    assert run.status is RunStatus.RUNNING

    step = Step(name="test", command="cargo test")
    run.record(_result(step, 0))
    run.succeed()

    assert run.status is RunStatus.SUCCEEDED
    assert run.succeeded
    assert run.is_terminal
    assert run.error is None
    assert run.finished_at is not None
    assert run.duration is not None and run.duration >= 0
    assert [r.step.name for r in run.step_results] == ["test"]


def test_failed_step_is_first_fatal_result():
    run = Run(event=PushEvent())
    tolerated = Step(name="audit", command="cargo audit", continue_on_error=True)
    lint = Step(name="lint", command="cargo clippy")
    run.record(_result(tolerated, 1))
    run.record(_result(lint, 101))
    run.fail()
    assert run.failed_step is not None
    assert run.failed_step.step.name == "lint"


def test_terminal_run_cannot_change():
    run = Run(event=PushEvent())
    run.fail("toolchain missing")
    assert run.error == "toolchain missing"

    step = Step(name="test", command="cargo test")
    with pytest.raises(RunFinalizedError) as exc_info:
        run.record(_result(step, 0))
    assert exc_info.value.status is RunStatus.FAILED
    assert run.run_id in str(exc_info.value)

    with pytest.raises(RunFinalizedError):
        run.succeed()
    with pytest.raises(RunFinalizedError):
        run.mark_running()
    assert run.status is RunStatus.FAILED


def test_step_results_cannot_be_mutated_from_outside():
    run = Run(event=PushEvent())
    results = run.step_results
    assert isinstance(results, tuple)


def test_request_cancel():
    run = Run(event=PushEvent())
    assert not run.cancel_requested
    run.request_cancel()
    assert run.cancel_requested
    assert run.cancel_event.is_set()
    run.mark_cancelled()
    assert run.status is RunStatus.CANCELLED
    # Requesting again after the run is over is harmless
    run.request_cancel()


def test_to_dict():
    run = Run(event=PushEvent(ref="main"))
    run.mark_running()
    run.record(_result(Step(name="test", command="cargo test"), 0))
    run.succeed()

    data = run.to_dict()
    assert data["run_id"] == run.run_id
    assert data["status"] == "succeeded"
    assert data["event"]["description"] == "push main"
    assert data["steps"][0]["name"] == "test"
    assert data["steps"][0]["exit_status"] == 0
    assert data["cache_hit"] is False
