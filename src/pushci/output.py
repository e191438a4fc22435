"""Terminal reporting for pipeline runs.

All run output goes through a process-wide OutputManager so that formatting
stays consistent:
- Tree-style output with rich colors and symbols (local mode)
- GHA ::group:: markers (when GITHUB_ACTIONS=true)
- NO_COLOR is respected through rich
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rich.console import Console
from rich.text import Text

from .models import Run, RunStatus, Step, StepResult


class Verbosity(Enum):
    """Verbosity levels for output."""

    QUIET = 0  # Run status only
    NORMAL = 1  # Step headers and statuses, output of failed steps
    VERBOSE = 2  # Output of every step


# Symbols for tree output
SYMBOLS = {
    "entry": "▼",  # Run entry point (▼)
    "branch": "├─▶",  # Step (├─▶)
    "pipe": "│",  # Continuation line (│)
    "success": "✓",  # Success (✓)
    "failure": "✗",  # Failure (✗)
    "cancelled": "⊘",  # Cancelled (⊘)
}

STATUS_STYLES = {
    RunStatus.SUCCEEDED: ("success", "bold green"),
    RunStatus.FAILED: ("failure", "bold red"),
    RunStatus.CANCELLED: ("cancelled", "bold yellow"),
}

# Lines of a failed step's output shown in normal verbosity
FAILURE_TAIL_LINES = 20


@dataclass
class OutputManager:
    """
    Centralized output formatting for pipeline runs.

    Runs may execute concurrently; a lock keeps each printed block together.
    """

    console: Console = field(default_factory=Console)
    verbosity: Verbosity = Verbosity.NORMAL
    _is_gha: bool = field(default_factory=lambda: os.environ.get("GITHUB_ACTIONS") == "true")
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def in_gha(self) -> bool:
        """Whether running in GitHub Actions."""
        return self._is_gha

    def _print(self, message: str, style: str | None = None) -> None:
        self.console.print(message, style=style, markup=False, highlight=False)

    def _prefix(self) -> str:
        return f"{SYMBOLS['pipe']}    "

    def run_header(self, run: Run, pipeline_name: str) -> None:
        """Print the header of a run."""
        if self.verbosity is Verbosity.QUIET:
            return
        with self._lock:
            self._print(f"\n{SYMBOLS['entry']} {pipeline_name} [{run.run_id}] ({run.event.describe()})", style="bold")
            self._print(SYMBOLS["pipe"])

    def note(self, message: str, style: str | None = "dim") -> None:
        """Print a line inside the current run."""
        if self.verbosity is Verbosity.QUIET:
            return
        with self._lock:
            self._print(f"{self._prefix()}{message}", style=style)

    def step_header(self, step: Step) -> None:
        """Print step header."""
        if self.verbosity is Verbosity.QUIET:
            return
        with self._lock:
            if self._is_gha:
                print(f"::group::{step.name}", flush=True)
                return
            self._print(f"{SYMBOLS['branch']} {step.name}", style="bold cyan")
            self._print(f"{self._prefix()}$ {step.command}", style="dim")

    def step_status(self, result: StepResult) -> None:
        """Print step output (as verbosity allows) and completion status."""
        if self.verbosity is Verbosity.QUIET:
            return

        lines = result.output.rstrip("\n").splitlines() if result.output else []
        if self.verbosity is not Verbosity.VERBOSE:
            lines = lines[-FAILURE_TAIL_LINES:] if not result.ok else []

        with self._lock:
            prefix = "" if self._is_gha else self._prefix()
            for line in lines:
                # Step output carries ANSI colors when CARGO_TERM_COLOR=always
                self.console.print(Text.from_ansi(f"{prefix}{line}"), highlight=False)

            elapsed = result.elapsed_seconds
            if result.ok:
                self._print(f"{prefix}{SYMBOLS['success']} {elapsed:.2f}s", style="green")
            else:
                reason = "timed out" if result.timed_out else f"exit code {result.exit_status}"
                if result.step.continue_on_error:
                    reason += ", continuing"
                self._print(f"{prefix}{SYMBOLS['failure']} {reason} after {elapsed:.2f}s", style="red")

            if self._is_gha:
                print("::endgroup::", flush=True)

    def run_status(self, run: Run, pipeline_name: str) -> None:
        """Print the terminal status of a run."""
        symbol_key, style = STATUS_STYLES.get(run.status, ("failure", "bold red"))
        duration = run.duration or 0.0
        with self._lock:
            if self._is_gha and run.status is not RunStatus.SUCCEEDED and run.error:
                print(f"::error::{run.error}", flush=True)
            message = f"{SYMBOLS[symbol_key]} {pipeline_name} {run.status.value} in {duration:.2f}s"
            failed = run.failed_step
            if run.status is RunStatus.FAILED and failed is not None:
                message += f" (step '{failed.step.name}' failed)"
            self._print(f"\n{message}", style=style)
            if run.error and not self._is_gha:
                self._print(f"Error: {run.error}", style="red")


# Global output manager instance
_output_manager: OutputManager | None = None


def get_output_manager() -> OutputManager:
    """Get the global output manager instance."""
    global _output_manager
    if _output_manager is None:
        _output_manager = OutputManager()
    return _output_manager


def reset_output_manager() -> None:
    """Reset the global output manager (for testing)."""
    global _output_manager
    _output_manager = None


def configure_output(
    verbosity: Verbosity = Verbosity.NORMAL,
    force_color: bool | None = None,
) -> OutputManager:
    """
    Configure the global output manager.

    Args:
        verbosity: Output verbosity level
        force_color: Force color output on/off (None for auto-detect)

    Returns:
        The configured OutputManager instance.

    """
    global _output_manager

    console_kwargs: dict[str, Any] = {}
    if force_color is not None:
        console_kwargs["force_terminal"] = force_color

    _output_manager = OutputManager(
        console=Console(**console_kwargs),
        verbosity=verbosity,
    )
    return _output_manager
