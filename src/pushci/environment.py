"""Preparing the environment a run executes in.

Preparation happens in a fixed order, before any step runs:

1. acquire a clean, isolated working directory holding a copy of the project
2. materialize the configured environment variables
3. fingerprint the dependency manifests
4. restore the cache entry for that fingerprint, if there is a usable one
5. provision the pinned toolchain (`provision()`, once the cache is restored)

Failing to set up the working directory or to provision the toolchain is
fatal; a cache problem never is. The working directory is removed when the
`prepare()` scope exits, whatever the outcome.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Generator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

from .cache import CacheStore, fingerprint
from .config import PipelineConfig
from .models import Run
from .result import Err, Ok, Result
from .subprocess import run as run_command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedContext:
    """Everything a run's steps need: where to run and with which environment."""

    run_id: str
    workdir: Path
    env: Mapping[str, str]
    fingerprint: str
    cache_hit: bool
    toolchain: str


# =============================================================================
# Toolchain provisioning
# =============================================================================


class ToolchainProvisioner(Protocol):
    """Makes a pinned toolchain available, returning environment variables that select it."""

    def provision(self, toolchain: str) -> Result[dict[str, str]]: ...


class NoopProvisioner:
    """Assumes the toolchain is already there."""

    def provision(self, toolchain: str) -> Result[dict[str, str]]:
        return Ok({})


class PathProvisioner:
    """Checks that the required executables are on PATH."""

    def __init__(self, tools: Sequence[str]):
        self.tools = tuple(tools)

    def provision(self, toolchain: str) -> Result[dict[str, str]]:
        missing = [tool for tool in self.tools if shutil.which(tool) is None]
        if missing:
            return Err(f"Required tools not found on PATH: {', '.join(missing)}", kind="provisioning")
        return Ok({})


class RustupProvisioner:
    """Installs a Rust toolchain with rustup and pins it for every step."""

    def __init__(self, *, profile: str = "minimal", components: Sequence[str] = ("rustfmt", "clippy")):
        self.profile = profile
        self.components = tuple(components)

    def provision(self, toolchain: str) -> Result[dict[str, str]]:
        if shutil.which("rustup") is None:
            return Err("rustup not found on PATH", kind="provisioning")

        args = ["rustup", "toolchain", "install", toolchain, "--profile", self.profile]
        for component in self.components:
            args += ["--component", component]

        logger.info("Provisioning toolchain %s", toolchain)
        result = run_command(*args)
        if result.failed:
            tail = "\n".join(result.output.splitlines()[-5:])
            return Err(
                f"Failed to install toolchain '{toolchain}' (exit code {result.returncode})\n{tail}",
                kind="provisioning",
            )
        return Ok({"RUSTUP_TOOLCHAIN": toolchain})


# =============================================================================
# Environment preparer
# =============================================================================


class EnvironmentPreparer:
    """
    Turns a pending run into a prepared context.

    Args:
        config: The pipeline configuration.
        project: Directory holding the project to check out into each run.
        store: Cache store to restore from, or None to run without a cache.
        provisioner: Toolchain provisioner; defaults to not provisioning anything.
        tmp_root: Parent directory for working directories (system temp dir if None).

    """

    def __init__(
        self,
        config: PipelineConfig,
        project: Path | str,
        *,
        store: CacheStore | None = None,
        provisioner: ToolchainProvisioner | None = None,
        tmp_root: Path | str | None = None,
    ):
        self.config = config
        self.project = Path(project)
        self.store = store
        self.provisioner = provisioner or NoopProvisioner()
        self.tmp_root = Path(tmp_root) if tmp_root is not None else None

    @contextmanager
    def prepare(self, run: Run) -> Generator[Result[PreparedContext], None, None]:
        """
        Prepare an isolated environment for `run`, up to and including the cache restore.

        Yields Ok(PreparedContext), or Err(kind="provisioning") if no working
        directory could be set up. The toolchain is provisioned separately
        with `provision()`. The working directory is removed when the scope
        exits.

        Usage:
            with preparer.prepare(run) as prepared:
                if prepared.ok:
                    provisioned = preparer.provision(prepared.value())
                    ...
        """
        try:
            if self.tmp_root is not None:
                self.tmp_root.mkdir(parents=True, exist_ok=True)
            workdir = Path(tempfile.mkdtemp(prefix=f"pushci-{run.run_id}-", dir=self.tmp_root))
        except OSError as e:
            logger.error("No working directory for run %s: %s", run.run_id, e)
            yield Err(f"Failed to create a working directory: {e}", kind="provisioning")
            return

        try:
            yield self._prepare(run, workdir)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def provision(self, context: PreparedContext) -> Result[PreparedContext]:
        """
        Provision the pinned toolchain for a prepared context.

        Returns the context with the toolchain's environment variables added,
        or Err(kind="provisioning"). The cache has already been restored at
        this point, so the caller still owns saving it.
        """
        provisioned = self.provisioner.provision(context.toolchain)
        if provisioned.failed:
            logger.error("Provisioning failed for run %s: %s", context.run_id, provisioned.error)
            return Err(provisioned.error or "Toolchain provisioning failed", kind="provisioning")
        env = {**context.env, **provisioned.value()}
        return Ok(replace(context, env=MappingProxyType(env)))

    def _prepare(self, run: Run, workdir: Path) -> Result[PreparedContext]:
        try:
            self._checkout(workdir)
        except OSError as e:
            return Err(f"Failed to check out {self.project}: {e}", kind="provisioning")

        env = dict(self.config.env)

        key = fingerprint(workdir, self.config.cache)
        cache_hit = self._restore(key, workdir)
        run.cache_hit = cache_hit

        return Ok(
            PreparedContext(
                run_id=run.run_id,
                workdir=workdir,
                env=MappingProxyType(env),
                fingerprint=key,
                cache_hit=cache_hit,
                toolchain=self.config.toolchain,
            )
        )

    def _checkout(self, workdir: Path) -> None:
        """Copy the project into the working directory, leaving out VCS data and cache paths."""
        if not self.project.is_dir():
            raise NotADirectoryError(f"Project directory not found: {self.project}")

        top_level_cache = {rel for rel in self.config.cache.paths if "/" not in rel.strip("/")}
        project = self.project.resolve()

        def ignore(directory: str, names: list[str]) -> set[str]:
            skipped = {".git"} & set(names)
            if Path(directory).resolve() == project:
                skipped |= top_level_cache & set(names)
            return skipped

        shutil.copytree(project, workdir, symlinks=True, ignore=ignore, dirs_exist_ok=True)

    def _restore(self, key: str, workdir: Path) -> bool:
        if self.store is None or not self.config.cache.enabled:
            return False
        try:
            return self.store.restore(key, workdir)
        except Exception as e:
            # A broken cache degrades the run to a full rebuild, nothing more
            logger.warning("Cache restore failed for %s, treating as a miss: %s", key[:16], e)
            return False
