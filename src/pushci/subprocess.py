"""Subprocess helpers for pipeline steps and collaborators."""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

# Exit statuses reported for commands we stopped ourselves, as `timeout(1)` and shells do
TIMEOUT_EXIT_STATUS = 124
CANCELLED_EXIT_STATUS = 130

_POLL_INTERVAL = 0.05
_KILL_GRACE_SECONDS = 5.0


@dataclass
class RunResult:
    """
    Result from running a subprocess.

    Attributes:
        returncode: The exit code of the process (124 on timeout, 130 on cancellation).
        output: Captured stdout and stderr, interleaved as the process wrote them.
        command: The command that was executed.
        timed_out: True if the process was stopped because it exceeded its timeout.
        cancelled: True if the process was stopped because cancellation was requested.

    """

    returncode: int
    output: str = ""
    command: list[str] = field(default_factory=list)
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        """True if the command succeeded (exit code 0)."""
        return self.returncode == 0

    @property
    def failed(self) -> bool:
        """True if the command failed (non-zero exit code)."""
        return self.returncode != 0


class SubprocessError(Exception):
    """Raised when a subprocess fails and check=True."""

    def __init__(self, result: RunResult):
        self.result = result
        cmd_str = " ".join(result.command)
        super().__init__(f"Command '{cmd_str}' failed with exit code {result.returncode}")


def _terminate(proc: subprocess.Popen[bytes]) -> None:
    """Stop a process and everything it spawned, escalating to SIGKILL."""
    if sys.platform == "win32":
        proc.terminate()
    else:
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
    try:
        proc.wait(timeout=_KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        if sys.platform == "win32":
            proc.kill()
        else:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        proc.wait()


def run(
    *args: str | Path,
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    inherit_env: bool = True,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
    check: bool = False,
) -> RunResult:
    """
    Run a subprocess command to completion and capture its output.

    The call blocks until the process exits, the timeout elapses, or `cancel`
    is set. In the latter two cases the whole process group is terminated.

    Args:
        *args: Command and arguments to run (e.g., "cargo", "fmt", "--check")
        cwd: Working directory for the command
        env: Additional environment variables (merged with the current environment)
        inherit_env: If False, the process sees only `env`
        timeout: Seconds to wait before stopping the process, None waits indefinitely
        cancel: Event that stops the process when set
        check: If True, raise SubprocessError on non-zero exit code

    Returns:
        RunResult with exit code and captured output

    Raises:
        SubprocessError: If check=True and the command fails
        FileNotFoundError: If the command is not found

    Example:
        >>> result = run("sh", "-c", "echo hello")
        >>> result.ok, result.output
        (True, 'hello\\n')

    """
    cmd = [str(arg) for arg in args]

    run_env = os.environ.copy() if inherit_env else {}
    if env:
        run_env.update(env)

    cwd_str = str(cwd) if cwd else None

    # Output goes to a file rather than a pipe so a chatty process can never block on a full buffer
    with tempfile.TemporaryFile() as log:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd_str,
            env=run_env,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=sys.platform != "win32",
        )

        deadline = time.monotonic() + timeout if timeout is not None else None
        timed_out = False
        cancelled = False

        while True:
            try:
                proc.wait(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    cancelled = True
                elif deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                else:
                    continue
                _terminate(proc)
                break

        log.seek(0)
        output = log.read().decode("utf-8", errors="replace")

    if timed_out:
        returncode = TIMEOUT_EXIT_STATUS
    elif cancelled:
        returncode = CANCELLED_EXIT_STATUS
    else:
        returncode = proc.returncode

    result = RunResult(
        returncode=returncode,
        output=output,
        command=cmd,
        timed_out=timed_out,
        cancelled=cancelled,
    )

    if check and result.failed:
        raise SubprocessError(result)

    return result
