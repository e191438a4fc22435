"""Pipeline configuration.

A pipeline is configured once, before any run starts, and never changes
afterwards: the environment, the toolchain pin, the cache settings and the
ordered steps are all frozen.

Configuration comes from one of two places:
- `rust_pipeline()`, the built-in format/lint/test pipeline for a Cargo project
- `load_workflow()`, which reads a GitHub Actions style workflow file
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .models import PipelineError, Step

# GitHub Actions runs `run:` blocks with this shell on Linux runners
DEFAULT_SHELL = ("bash", "--noprofile", "--norc", "-eo", "pipefail", "-c")


class WorkflowError(PipelineError):
    """Raised when a workflow file cannot be turned into a pipeline."""


class CacheConfig(BaseModel):
    """
    Dependency cache settings.

    The fingerprint is computed from `manifests` (required) and `lock_files`
    (used when present). `paths` are the working-directory relative paths
    saved into and restored from the cache.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    manifests: tuple[str, ...] = ("Cargo.toml",)
    lock_files: tuple[str, ...] = ("Cargo.lock",)
    paths: tuple[str, ...] = ("target",)
    key_prefix: str = "v0-pushci"


class PipelineConfig(BaseModel):
    """Immutable description of a pipeline: environment, toolchain, cache and steps."""

    model_config = ConfigDict(frozen=True)

    name: str = "ci"
    env: Mapping[str, str] = Field(default_factory=dict, validate_default=True)
    toolchain: str = "stable"
    required_tools: tuple[str, ...] = ()
    cache: CacheConfig = CacheConfig()
    steps: tuple[Step, ...] = ()
    timeout: float | None = None
    shell: tuple[str, ...] = DEFAULT_SHELL

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise ValueError("env must be a mapping of names to values")
        return {str(k): _env_value(v) for k, v in value.items()}

    @field_validator("env", mode="after")
    @classmethod
    def _freeze_env(cls, value: Mapping[str, str]) -> Mapping[str, str]:
        return MappingProxyType(dict(value))

    @field_validator("steps", mode="after")
    @classmethod
    def _unique_step_names(cls, steps: tuple[Step, ...]) -> tuple[Step, ...]:
        seen: set[str] = set()
        for step in steps:
            if step.name in seen:
                raise ValueError(f"Duplicate step name '{step.name}'")
            seen.add(step.name)
        return steps

    def step_timeout(self, step: Step) -> float | None:
        """Effective timeout for a step: its own, else the pipeline default."""
        return step.timeout if step.timeout is not None else self.timeout


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def rust_pipeline(**overrides: Any) -> PipelineConfig:
    """
    The built-in pipeline for a Cargo project.

    Checks formatting, runs clippy on the library and on the examples with
    warnings denied, then runs the tests, with colored cargo output and the
    stable toolchain.
    """
    values: dict[str, Any] = {
        "name": "rust",
        "env": {"CARGO_TERM_COLOR": "always"},
        "toolchain": "stable",
        "required_tools": ("cargo",),
        "cache": CacheConfig(),
        "steps": (
            Step(name="format-check", command="cargo fmt --check"),
            Step(name="lint", command="cargo clippy -- -D warnings"),
            Step(name="lint-examples", command="cargo clippy --examples -- -D warnings"),
            Step(name="test", command="cargo test"),
        ),
    }
    values.update(overrides)
    return PipelineConfig(**values)


# =============================================================================
# Workflow files
# =============================================================================


def _split_run_block(block: str) -> list[str]:
    """Split a `run:` block into commands, one per line, honouring `\\` continuations."""
    commands: list[str] = []
    pending = ""
    for raw in block.splitlines():
        line = raw.strip()
        if pending:
            line = f"{pending} {line}".strip()
            pending = ""
        if line.endswith("\\"):
            pending = line[:-1].strip()
            continue
        if not line or line.startswith("#"):
            continue
        commands.append(line)
    if pending:
        commands.append(pending)
    return commands


def _has_push_trigger(on: Any) -> bool:
    if isinstance(on, str):
        return on == "push"
    if isinstance(on, list):
        return "push" in on
    if isinstance(on, Mapping):
        return "push" in on
    return False


def _action_name(uses: str) -> tuple[str, str]:
    """Split `owner/repo@ref` into (repo, ref)."""
    action, _, ref = uses.partition("@")
    return action.rsplit("/", 1)[-1], ref


def _select_job(jobs: Any, job: str | None) -> tuple[str, Mapping[str, Any]]:
    if not isinstance(jobs, Mapping) or not jobs:
        raise WorkflowError("Workflow has no jobs")
    if job is None:
        if len(jobs) != 1:
            raise WorkflowError(f"Workflow has {len(jobs)} jobs, select one of: {', '.join(map(str, jobs))}")
        job = next(iter(jobs))
    if job not in jobs:
        raise WorkflowError(f"Job '{job}' not found. Available jobs: {', '.join(map(str, jobs))}")
    definition = jobs[job]
    if not isinstance(definition, Mapping):
        raise WorkflowError(f"Job '{job}' must be a mapping")
    return str(job), definition


def parse_workflow(data: Any, *, job: str | None = None) -> PipelineConfig:
    """
    Build a pipeline from a parsed workflow document.

    Supported: top-level and job-level `env`, one job's `steps` made of
    `uses:` entries for checkout, toolchain and cache actions, and `run:`
    entries. Each line of a `run:` block becomes its own step.
    """
    if not isinstance(data, Mapping):
        raise WorkflowError("Workflow must be a mapping")
    # YAML 1.1 loaders read a bare `on` key as boolean True
    if not _has_push_trigger(data.get("on", data.get(True))):
        raise WorkflowError("Workflow is not triggered on push")

    job_id, job_def = _select_job(data.get("jobs"), job)

    env: dict[str, Any] = dict(data.get("env") or {})
    env.update(job_def.get("env") or {})

    toolchain = "stable"
    cache_enabled = False
    steps: list[Step] = []

    for index, entry in enumerate(job_def.get("steps") or [], start=1):
        if not isinstance(entry, Mapping):
            raise WorkflowError(f"Step {index} of job '{job_id}' must be a mapping")

        if "uses" in entry:
            action, ref = _action_name(str(entry["uses"]))
            with_params = entry.get("with") or {}
            if action == "checkout":
                continue
            if action.endswith("toolchain"):
                toolchain = str(with_params.get("toolchain", ref))
            elif action.endswith("cache"):
                cache_enabled = True
            else:
                raise WorkflowError(f"Unsupported action '{entry['uses']}' in job '{job_id}'")
            continue

        if "run" not in entry:
            raise WorkflowError(f"Step {index} of job '{job_id}' has neither 'uses' nor 'run'")

        commands = _split_run_block(str(entry["run"]))
        if not commands:
            raise WorkflowError(f"Step {index} of job '{job_id}' has an empty 'run' block")

        base_name = str(entry.get("name") or f"Run {commands[0]}")
        step_env = {str(k): _env_value(v) for k, v in (entry.get("env") or {}).items()}
        timeout_minutes = entry.get("timeout-minutes")
        for n, command in enumerate(commands, start=1):
            name = base_name if len(commands) == 1 else f"{base_name} ({n}/{len(commands)})"
            steps.append(
                Step(
                    name=name,
                    command=command,
                    env=step_env,
                    continue_on_error=bool(entry.get("continue-on-error", False)),
                    timeout=float(timeout_minutes) * 60 if timeout_minutes is not None else None,
                )
            )

    try:
        return PipelineConfig(
            name=str(data.get("name") or job_id),
            env=env,
            toolchain=toolchain,
            cache=CacheConfig(enabled=cache_enabled),
            steps=tuple(steps),
        )
    except ValueError as e:
        raise WorkflowError(str(e)) from e


def load_workflow(path: Path | str, *, job: str | None = None) -> PipelineConfig:
    """Read a workflow YAML file and build a pipeline from it."""
    path = Path(path)
    yaml = YAML(typ="safe")
    try:
        data = yaml.load(path.read_text())
    except YAMLError as e:
        raise WorkflowError(f"Invalid YAML in {path}: {e}") from e
    return parse_workflow(data, job=job)


# =============================================================================
# Locations
# =============================================================================


def _home() -> Path:
    return Path.home() / ".pushci"


def default_cache_dir() -> Path:
    """Where cache entries live. Override with PUSHCI_CACHE_DIR."""
    if env_dir := os.environ.get("PUSHCI_CACHE_DIR"):
        return Path(env_dir)
    return _home() / "cache"


def default_runs_dir() -> Path:
    """Where run records are written. Override with PUSHCI_RUNS_DIR."""
    if env_dir := os.environ.get("PUSHCI_RUNS_DIR"):
        return Path(env_dir)
    return _home() / "runs"


def default_tmp_dir() -> Path | None:
    """Parent directory for run working directories. Override with PUSHCI_TMPDIR."""
    if env_dir := os.environ.get("PUSHCI_TMPDIR"):
        return Path(env_dir)
    return None
