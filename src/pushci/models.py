"""Core data model: trigger events, steps, step results and runs."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class PipelineError(Exception):
    """Base class for pipeline misuse errors."""


class RunFinalizedError(PipelineError):
    """Raised when a run is mutated after reaching a terminal status."""

    def __init__(self, run_id: str, status: RunStatus):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Run '{run_id}' is already {status.value} and can no longer change")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class RunStatus(Enum):
    """Lifecycle status of a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass(frozen=True)
class TriggerEvent:
    """An opaque event that starts a run."""

    kind: str = "event"
    received_at: datetime = field(default_factory=utcnow)

    def describe(self) -> str:
        return self.kind


@dataclass(frozen=True)
class PushEvent(TriggerEvent):
    """
    A push to the repository.

    `ref` and `sha` are informational only; no predicate filters on them.
    """

    kind: str = "push"
    ref: str | None = None
    sha: str | None = None

    def describe(self) -> str:
        parts = [self.kind]
        if self.ref:
            parts.append(self.ref)
        if self.sha:
            parts.append(self.sha[:8])
        return " ".join(parts)


@dataclass(frozen=True)
class Step:
    """
    A named, ordered unit of work in the pipeline.

    Attributes:
        name: Display name, unique within a pipeline.
        command: Shell command line executed for this step.
        env: Environment overrides applied on top of the pipeline environment.
        continue_on_error: If True, a failing exit status does not stop the run.
        timeout: Optional limit in seconds; overrides the pipeline default.

    """

    name: str
    command: str
    env: Mapping[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    timeout: float | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Step name must not be empty")
        if not self.command.strip():
            raise ValueError(f"Step '{self.name}' has an empty command")
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def __hash__(self) -> int:
        return hash((self.name, self.command, tuple(sorted(self.env.items())), self.continue_on_error, self.timeout))


@dataclass(frozen=True)
class StepResult:
    """Outcome of executing one step within a run."""

    step: Step
    exit_status: int
    started_at: datetime
    finished_at: datetime
    output: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def fatal(self) -> bool:
        """True if this result stops the run."""
        return not self.ok and not self.step.continue_on_error

    @property
    def elapsed_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class Run:
    """
    One execution of the pipeline, triggered by one event.

    The run is mutated through its methods only, and becomes immutable once
    its status is terminal.
    """

    event: TriggerEvent
    run_id: str = field(default_factory=new_run_id)
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    cache_hit: bool = False
    _step_results: list[StepResult] = field(default_factory=list, repr=False)
    _cancel: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def step_results(self) -> tuple[StepResult, ...]:
        return tuple(self._step_results)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    @property
    def failed_step(self) -> StepResult | None:
        """The step result that failed the run, if any."""
        for result in self._step_results:
            if result.fatal:
                return result
        return None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise RunFinalizedError(self.run_id, self.status)

    def request_cancel(self) -> None:
        """Ask an in-progress run to stop. Has no effect once the run is terminal."""
        self._cancel.set()

    def start(self) -> None:
        """Record the start time. Status stays pending until the first step runs."""
        self._ensure_mutable()
        if self.started_at is None:
            self.started_at = utcnow()

    def mark_running(self) -> None:
        self._ensure_mutable()
        if self.started_at is None:
            self.started_at = utcnow()
        self.status = RunStatus.RUNNING

    def record(self, result: StepResult) -> None:
        self._ensure_mutable()
        self._step_results.append(result)

    def succeed(self) -> None:
        self._finish(RunStatus.SUCCEEDED, None)

    def fail(self, error: str | None = None) -> None:
        self._finish(RunStatus.FAILED, error)

    def mark_cancelled(self, reason: str = "Run was cancelled") -> None:
        self._finish(RunStatus.CANCELLED, reason)

    def _finish(self, status: RunStatus, error: str | None) -> None:
        self._ensure_mutable()
        now = utcnow()
        if self.started_at is None:
            self.started_at = now
        self.status = status
        self.error = error
        self.finished_at = now

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "run_id": self.run_id,
            "event": {
                "kind": self.event.kind,
                "description": self.event.describe(),
                "received_at": self.event.received_at.isoformat(),
            },
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "cache_hit": self.cache_hit,
            "steps": [
                {
                    "name": r.step.name,
                    "command": r.step.command,
                    "exit_status": r.exit_status,
                    "started_at": r.started_at.isoformat(),
                    "finished_at": r.finished_at.isoformat(),
                    "continue_on_error": r.step.continue_on_error,
                    "timed_out": r.timed_out,
                    "output": r.output,
                }
                for r in self._step_results
            ],
        }
