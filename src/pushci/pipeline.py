"""The pipeline: prepare, run the steps, save the cache."""

from __future__ import annotations

import logging
from pathlib import Path

from .cache import CacheStore, CacheWriter
from .config import PipelineConfig
from .environment import EnvironmentPreparer, ToolchainProvisioner
from .models import Run
from .output import OutputManager, get_output_manager
from .runner import StepExecutor, StepRunner
from .workspace import write_run

logger = logging.getLogger(__name__)


class Pipeline:
    """
    Executes runs of one statically configured pipeline.

    Each run gets its own working directory and shares nothing with other
    runs except the cache store, so runs may execute concurrently.

    Args:
        config: The pipeline configuration.
        project: Directory holding the project the pipeline checks.
        store: Cache store, or None to run without a cache.
        provisioner: Toolchain provisioner (none by default).
        executor: Step executor (shell by default).
        output: Output manager (the global one by default).
        tmp_root: Parent directory for working directories.
        runs_dir: If set, a JSON record of every finished run is written there.

    """

    def __init__(
        self,
        config: PipelineConfig,
        project: Path | str,
        *,
        store: CacheStore | None = None,
        provisioner: ToolchainProvisioner | None = None,
        executor: StepExecutor | None = None,
        output: OutputManager | None = None,
        tmp_root: Path | str | None = None,
        runs_dir: Path | str | None = None,
    ):
        self.config = config
        self.preparer = EnvironmentPreparer(
            config,
            project,
            store=store,
            provisioner=provisioner,
            tmp_root=tmp_root,
        )
        self.runner = StepRunner(config, executor=executor, output=output)
        self.cache_writer = CacheWriter(store, config.cache) if store is not None else None
        self.runs_dir = Path(runs_dir) if runs_dir is not None else None
        self._output = output

    @property
    def output(self) -> OutputManager:
        return self._output or get_output_manager()

    def execute(self, run: Run) -> Run:
        """Execute a pending run to a terminal status and return it."""
        self.output.run_header(run, self.config.name)

        if run.cancel_requested:
            run.mark_cancelled("Run was cancelled before it started")
        else:
            run.start()
            self._execute(run)

        if self.runs_dir is not None:
            path = write_run(self.runs_dir, run)
            logger.debug("Wrote run record %s", path)

        self.output.run_status(run, self.config.name)
        return run

    def _execute(self, run: Run) -> None:
        with self.preparer.prepare(run) as prepared:
            if prepared.failed:
                # Nothing was checked out or restored, so there is nothing to save
                run.fail(prepared.error)
                return

            context = prepared.value()
            if self.cache_writer is not None:
                self.output.note(f"cache {'hit' if context.cache_hit else 'miss'} ({context.fingerprint[:12]})")
            try:
                provisioned = self.preparer.provision(context)
                if provisioned.failed:
                    run.fail(provisioned.error)
                else:
                    self.runner.run_steps(provisioned.value(), self.config.steps, run)
            except Exception as e:
                if not run.is_terminal:
                    run.fail(f"{type(e).__name__}: {e}")
                raise
            finally:
                # Saved once whatever the run's status, provisioning failures included
                if self.cache_writer is not None:
                    self.cache_writer.save(context, context.fingerprint)
