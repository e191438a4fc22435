"""Tests for run records."""

import json
from datetime import timedelta

import pytest

from pushci import PushEvent, Run, RunRecord, Step, StepResult, list_runs, read_run, write_run
from pushci.models import utcnow


def _finished_run(created_offset: int = 0, exit_status: int = 0) -> Run:
    run = Run(event=PushEvent(ref="main"), created_at=utcnow() + timedelta(seconds=created_offset))
    run.mark_running()
    now = utcnow()
    run.record(
        StepResult(
            step=Step(name="test", command="cargo test"),
            exit_status=exit_status,
            started_at=now,
            finished_at=now,
            output="test result: ok\n",
        )
    )
    if exit_status:
        run.fail()
    else:
        run.succeed()
    return run


def test_write_and_read_run(tmp_path):
    run = _finished_run(exit_status=101)
    path = write_run(tmp_path, run)

    assert path == tmp_path / f"{run.run_id}.json"
    assert json.loads(path.read_text())["status"] == "failed"

    record = read_run(tmp_path, run.run_id)
    assert record.run_id == run.run_id
    assert record.status == "failed"
    assert record.steps[0].name == "test"
    assert record.steps[0].exit_status == 101
    assert record.steps[0].output == "test result: ok\n"
    assert record.event["kind"] == "push"


def test_record_from_run():
    run = _finished_run()
    record = RunRecord.from_run(run)
    assert RunRecord.from_json(record.to_json()) == record


def test_read_missing_run(tmp_path):
    with pytest.raises(FileNotFoundError, match="nope"):
        read_run(tmp_path, "nope")


def test_list_runs_newest_first(tmp_path):
    older = _finished_run(created_offset=-60)
    newer = _finished_run()
    write_run(tmp_path, older)
    write_run(tmp_path, newer)

    assert [r.run_id for r in list_runs(tmp_path)] == [newer.run_id, older.run_id]
    assert [r.run_id for r in list_runs(tmp_path, limit=1)] == [newer.run_id]


def test_list_runs_of_missing_directory(tmp_path):
    assert list_runs(tmp_path / "nowhere") == []


def _run_with_steps(*steps: tuple[Step, int]) -> Run:
    run = Run(event=PushEvent())
    run.mark_running()
    now = utcnow()
    for step, exit_status in steps:
        run.record(StepResult(step=step, exit_status=exit_status, started_at=now, finished_at=now))
    return run


def test_failed_step_skips_tolerated_failures(tmp_path):
    flaky = Step(name="lint", command="cargo clippy", continue_on_error=True)
    run = _run_with_steps((flaky, 1), (Step(name="test", command="cargo test"), 101))
    run.fail()

    record = read_run(tmp_path, write_run(tmp_path, run).stem)
    assert record.steps[0].continue_on_error
    assert not record.steps[1].continue_on_error
    assert record.failed_step is not None
    assert record.failed_step.name == "test"


def test_no_failed_step_unless_the_run_failed():
    flaky = Step(name="lint", command="cargo clippy", continue_on_error=True)
    tolerated = _run_with_steps((flaky, 1), (Step(name="test", command="cargo test"), 0))
    tolerated.succeed()
    assert RunRecord.from_run(tolerated).failed_step is None

    cancelled = _run_with_steps((Step(name="test", command="cargo test"), 130))
    cancelled.mark_cancelled()
    assert RunRecord.from_run(cancelled).failed_step is None
