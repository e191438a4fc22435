"""Turning trigger events into runs."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from types import TracebackType

from .models import PushEvent, Run, TriggerEvent
from .pipeline import Pipeline
from .subprocess import run as run_command

logger = logging.getLogger(__name__)

_CLOSED_MESSAGE = "TriggerListener has been shut down and accepts no more events"


class TriggerListener:
    """
    Starts one run per trigger event.

    Every event starts a run: there is no filtering and no retrying. Events
    handed to `on_event` run in the calling thread; events handed to `submit`
    run on a thread pool, so several runs can be in progress at once.
    """

    def __init__(self, pipeline: Pipeline, *, max_concurrent_runs: int = 4):
        if max_concurrent_runs < 1:
            raise ValueError("max_concurrent_runs must be >= 1")
        self.pipeline = pipeline
        self.max_concurrent_runs = max_concurrent_runs
        self._pool: ThreadPoolExecutor | None = None
        self._active: dict[str, Run] = {}
        self._lock = threading.Lock()
        self._closed = False

    def on_event(self, event: TriggerEvent) -> Run:
        """Run the pipeline for `event` and return the finished run."""
        run = self._allocate(event)
        return self._dispatch(run)

    def submit(self, event: TriggerEvent) -> Future[Run]:
        """Queue a run for `event` and return a future for the finished run."""
        run = self._allocate(event)
        with self._lock:
            if self._closed:
                self._active.pop(run.run_id, None)
                raise RuntimeError(_CLOSED_MESSAGE)
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.max_concurrent_runs,
                    thread_name_prefix="pushci-run",
                )
            return self._pool.submit(self._dispatch, run)

    def cancel(self, run_id: str) -> bool:
        """Request cancellation of a queued or in-progress run. Returns False if it is unknown."""
        with self._lock:
            run = self._active.get(run_id)
        if run is None:
            return False
        run.request_cancel()
        return True

    def active_runs(self) -> list[Run]:
        with self._lock:
            return list(self._active.values())

    def shutdown(self, *, wait: bool = True, cancel_runs: bool = False) -> None:
        """
        Stop accepting events, optionally cancelling runs still in flight.

        Later calls to `on_event` or `submit` raise RuntimeError. Calling it again is harmless.
        """
        if cancel_runs:
            for run in self.active_runs():
                run.request_cancel()
        with self._lock:
            self._closed = True
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    def __enter__(self) -> TriggerListener:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown(cancel_runs=exc_type is not None)

    def _allocate(self, event: TriggerEvent) -> Run:
        run = Run(event=event)
        # Registered before it is queued so a waiting run can be cancelled too
        with self._lock:
            if self._closed:
                raise RuntimeError(_CLOSED_MESSAGE)
            self._active[run.run_id] = run
        logger.info("Run %s allocated for %s", run.run_id, event.describe())
        return run

    def _dispatch(self, run: Run) -> Run:
        try:
            return self.pipeline.execute(run)
        finally:
            with self._lock:
                self._active.pop(run.run_id, None)
            logger.info("Run %s finished: %s", run.run_id, run.status.value)


def local_push_event(path: Path | str) -> PushEvent:
    """
    Describe the current state of a local checkout as a push event.

    Outside a git repository (or without git installed) the event carries no ref.
    """
    try:
        ref = run_command("git", "-C", path, "rev-parse", "--abbrev-ref", "HEAD")
        sha = run_command("git", "-C", path, "rev-parse", "HEAD")
    except FileNotFoundError:
        return PushEvent()
    if ref.failed or sha.failed:
        return PushEvent()
    return PushEvent(ref=ref.output.strip(), sha=sha.output.strip())
