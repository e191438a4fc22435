"""Sequential, fail-fast execution of pipeline steps."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from typing import Protocol

from .config import DEFAULT_SHELL, PipelineConfig
from .environment import PreparedContext
from .models import Run, Step, StepResult, utcnow
from .output import OutputManager, get_output_manager
from .subprocess import RunResult
from .subprocess import run as run_command

logger = logging.getLogger(__name__)

# What a POSIX shell reports for a command it cannot find
COMMAND_NOT_FOUND_EXIT_STATUS = 127


class StepExecutor(Protocol):
    """Executes a single step and reports its exit status and output."""

    def execute(
        self,
        step: Step,
        context: PreparedContext,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> RunResult: ...


class ShellExecutor:
    """Runs step commands through a shell in the prepared working directory."""

    def __init__(self, shell: Sequence[str] = DEFAULT_SHELL):
        self.shell = tuple(shell)

    def execute(
        self,
        step: Step,
        context: PreparedContext,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> RunResult:
        env = dict(context.env)
        env.update(step.env)
        try:
            return run_command(
                *self.shell,
                step.command,
                cwd=context.workdir,
                env=env,
                timeout=timeout,
                cancel=cancel,
            )
        except FileNotFoundError as e:
            return RunResult(
                returncode=COMMAND_NOT_FOUND_EXIT_STATUS,
                output=f"{e}\n",
                command=[*self.shell, step.command],
            )


class StepRunner:
    """
    Runs steps one at a time, in order, stopping at the first failure.

    A step fails the run when it exits non-zero and is not marked
    continue-on-error. Steps already run are not rolled back.
    """

    def __init__(
        self,
        config: PipelineConfig,
        executor: StepExecutor | None = None,
        output: OutputManager | None = None,
    ):
        self.config = config
        self.executor = executor or ShellExecutor(config.shell)
        self._output = output

    @property
    def output(self) -> OutputManager:
        return self._output or get_output_manager()

    def run_steps(self, context: PreparedContext, steps: Sequence[Step], run: Run) -> Run:
        """Execute `steps` for `run`, leaving the run in a terminal status."""
        for step in steps:
            if run.cancel_requested:
                run.mark_cancelled(f"Run was cancelled before step '{step.name}'")
                return run

            run.mark_running()
            self.output.step_header(step)
            logger.debug("Run %s: starting step '%s'", run.run_id, step.name)

            started_at = utcnow()
            executed = self.executor.execute(
                step,
                context,
                timeout=self.config.step_timeout(step),
                cancel=run.cancel_event,
            )
            result = StepResult(
                step=step,
                exit_status=executed.returncode,
                started_at=started_at,
                finished_at=utcnow(),
                output=executed.output,
                timed_out=executed.timed_out,
            )
            run.record(result)
            self.output.step_status(result)
            logger.debug("Run %s: step '%s' exited with %d", run.run_id, step.name, result.exit_status)

            if executed.cancelled:
                run.mark_cancelled(f"Run was cancelled during step '{step.name}'")
                return run
            if result.fatal:
                run.fail()
                return run

        run.succeed()
        return run
