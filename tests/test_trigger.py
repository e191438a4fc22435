"""Tests for the trigger listener."""

import threading

import pytest

from pushci import Pipeline, PushEvent, RunStatus, TriggerListener, local_push_event
from pushci.output import OutputManager, Verbosity

from .fakes import CI_STEPS, RecordingStore, ScriptedExecutor, make_config


def _pipeline(project, tmp_path, executor, store=None) -> Pipeline:
    return Pipeline(
        make_config(*CI_STEPS),
        project,
        store=store,
        executor=executor,
        output=OutputManager(verbosity=Verbosity.QUIET),
        tmp_root=tmp_path / "work",
    )


def test_on_event_runs_the_pipeline(project, tmp_path):
    executor = ScriptedExecutor()
    listener = TriggerListener(_pipeline(project, tmp_path, executor))

    run = listener.on_event(PushEvent(ref="main"))

    assert run.status is RunStatus.SUCCEEDED
    assert run.event == PushEvent(ref="main", received_at=run.event.received_at)
    assert executor.executed == list(CI_STEPS)
    assert listener.active_runs() == []


def test_every_event_starts_a_new_run(project, tmp_path):
    listener = TriggerListener(_pipeline(project, tmp_path, ScriptedExecutor()))
    event = PushEvent(ref="main", sha="abc")
    first = listener.on_event(event)
    second = listener.on_event(event)
    assert first.run_id != second.run_id
    assert first.succeeded and second.succeeded


def test_concurrent_runs(project, tmp_path):
    store = RecordingStore()
    barrier = threading.Barrier(3, timeout=10)

    def wait_for_all(step):
        if step.name == "format-check":
            barrier.wait()

    executor = ScriptedExecutor(on_execute=wait_for_all)
    with TriggerListener(_pipeline(project, tmp_path, executor, store), max_concurrent_runs=3) as listener:
        futures = [listener.submit(PushEvent()) for _ in range(3)]
        runs = [f.result(timeout=30) for f in futures]

    assert all(r.status is RunStatus.SUCCEEDED for r in runs)
    assert len({r.run_id for r in runs}) == 3
    # One save per run, all under the same key
    assert len(store.saves) == 3
    assert len(set(store.saves)) == 1
    assert sorted(executor.executed) == sorted(list(CI_STEPS) * 3)


def test_cancel_in_progress_run(project, tmp_path):
    started = threading.Event()
    release = threading.Event()

    def block(step):
        started.set()
        release.wait(timeout=10)

    executor = ScriptedExecutor(on_execute=block)
    with TriggerListener(_pipeline(project, tmp_path, executor)) as listener:
        future = listener.submit(PushEvent())
        assert started.wait(timeout=10)
        (active,) = listener.active_runs()
        assert listener.cancel(active.run_id)
        release.set()
        run = future.result(timeout=30)

    assert run.status is RunStatus.CANCELLED
    assert executor.executed == ["format-check"]


def test_cancel_unknown_run(project, tmp_path):
    listener = TriggerListener(_pipeline(project, tmp_path, ScriptedExecutor()))
    assert listener.cancel("does-not-exist") is False


def test_shutdown_cancels_runs(project, tmp_path):
    started = threading.Event()
    release = threading.Event()

    def block(step):
        started.set()
        release.wait(timeout=10)

    listener = TriggerListener(_pipeline(project, tmp_path, ScriptedExecutor(on_execute=block)))
    future = listener.submit(PushEvent())
    assert started.wait(timeout=10)

    threading.Timer(0.2, release.set).start()
    listener.shutdown(wait=True, cancel_runs=True)

    assert future.result().status is RunStatus.CANCELLED


def test_no_events_accepted_after_shutdown(project, tmp_path):
    executor = ScriptedExecutor()
    listener = TriggerListener(_pipeline(project, tmp_path, executor))
    assert listener.submit(PushEvent()).result().succeeded
    listener.shutdown()

    with pytest.raises(RuntimeError, match="shut down"):
        listener.submit(PushEvent())
    with pytest.raises(RuntimeError, match="shut down"):
        listener.on_event(PushEvent())

    listener.shutdown()
    assert listener.active_runs() == []
    assert executor.executed == list(CI_STEPS)


def test_invalid_concurrency(project, tmp_path):
    with pytest.raises(ValueError):
        TriggerListener(_pipeline(project, tmp_path, ScriptedExecutor()), max_concurrent_runs=0)


def test_local_push_event_outside_git(tmp_path):
    event = local_push_event(tmp_path)
    assert event.kind == "push"
    assert event.ref is None
    assert event.sha is None
