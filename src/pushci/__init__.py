"""
pushci - A push-triggered, fail-fast CI pipeline runner.

Basic usage:

    import pushci

    config = pushci.rust_pipeline()
    pipeline = pushci.Pipeline(config, "path/to/crate", store=pushci.DirectoryCache("/tmp/pushci-cache"))

    with pushci.TriggerListener(pipeline) as listener:
        run = listener.on_event(pushci.PushEvent(ref="main"))

    assert run.status is pushci.RunStatus.SUCCEEDED

    # Or use the CLI:
    #   pushci run --project path/to/crate
"""

from .cache import CacheEntry, CacheStore, CacheWriter, DirectoryCache, fingerprint
from .config import (
    CacheConfig,
    PipelineConfig,
    WorkflowError,
    load_workflow,
    parse_workflow,
    rust_pipeline,
)
from .environment import (
    EnvironmentPreparer,
    NoopProvisioner,
    PathProvisioner,
    PreparedContext,
    RustupProvisioner,
    ToolchainProvisioner,
)
from .models import (
    PipelineError,
    PushEvent,
    Run,
    RunFinalizedError,
    RunStatus,
    Step,
    StepResult,
    TriggerEvent,
)
from .pipeline import Pipeline
from .result import Err, Ok, Result
from .runner import ShellExecutor, StepExecutor, StepRunner
from .subprocess import RunResult, SubprocessError, run
from .trigger import TriggerListener, local_push_event
from .workspace import RunRecord, list_runs, read_run, write_run

__all__ = [
    # Result types
    "Result",
    "Ok",
    "Err",
    # Data model
    "Run",
    "RunStatus",
    "Step",
    "StepResult",
    "TriggerEvent",
    "PushEvent",
    "PipelineError",
    "RunFinalizedError",
    # Configuration
    "CacheConfig",
    "PipelineConfig",
    "WorkflowError",
    "rust_pipeline",
    "load_workflow",
    "parse_workflow",
    # Cache
    "fingerprint",
    "CacheStore",
    "CacheEntry",
    "DirectoryCache",
    "CacheWriter",
    # Environment
    "EnvironmentPreparer",
    "PreparedContext",
    "ToolchainProvisioner",
    "NoopProvisioner",
    "PathProvisioner",
    "RustupProvisioner",
    # Execution
    "StepExecutor",
    "ShellExecutor",
    "StepRunner",
    "Pipeline",
    "TriggerListener",
    "local_push_event",
    # Subprocess helpers
    "run",
    "RunResult",
    "SubprocessError",
    # Run records
    "RunRecord",
    "write_run",
    "read_run",
    "list_runs",
]

__version__ = "0.1.0"
