"""Run records on disk.

Every finished run can be written to `{runs_dir}/{run_id}.json`, which is
what `pushci runs` lists. Records are plain JSON and never read back into
live `Run` objects: a record describes a run that is over.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .models import Run


@dataclass
class StepRecord:
    """A finished step as stored in a run record."""

    name: str
    command: str
    exit_status: int
    started_at: str
    finished_at: str
    continue_on_error: bool = False
    timed_out: bool = False
    output: str = ""


@dataclass
class RunRecord:
    """A finished run as stored in `{run_id}.json`."""

    run_id: str
    status: str
    event: dict[str, Any]
    created_at: str
    started_at: str | None
    finished_at: str | None
    error: str | None = None
    cache_hit: bool = False
    steps: list[StepRecord] = field(default_factory=list)

    @property
    def failed_step(self) -> StepRecord | None:
        """The step that failed the run, if a step did."""
        if self.status != "failed":
            return None
        return next((s for s in self.steps if s.exit_status != 0 and not s.continue_on_error), None)

    @classmethod
    def from_run(cls, run: Run) -> RunRecord:
        return cls.from_dict(run.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRecord:
        steps = [StepRecord(**s) for s in data.get("steps", [])]
        return cls(**{**data, "steps": steps})

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), indent=2)

    @classmethod
    def from_json(cls, data: str) -> RunRecord:
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(data))


def write_run(runs_dir: Path, run: Run) -> Path:
    """Write the record of `run` to `{runs_dir}/{run_id}.json` and return its path."""
    runs_dir.mkdir(parents=True, exist_ok=True)
    path = runs_dir / f"{run.run_id}.json"
    fd, tmp_name = tempfile.mkstemp(prefix=f".{run.run_id}-", suffix=".tmp", dir=runs_dir)
    with os.fdopen(fd, "w") as f:
        f.write(RunRecord.from_run(run).to_json())
    os.replace(tmp_name, path)
    return path


def read_run(runs_dir: Path, run_id: str) -> RunRecord:
    """Read the record of a run."""
    path = runs_dir / f"{run_id}.json"
    if not path.exists():
        raise FileNotFoundError(f"No record for run '{run_id}' in {runs_dir}")
    return RunRecord.from_json(path.read_text())


def list_runs(runs_dir: Path, limit: int | None = None) -> list[RunRecord]:
    """Run records, most recently created first."""
    if not runs_dir.is_dir():
        return []
    records = [RunRecord.from_json(p.read_text()) for p in runs_dir.glob("*.json")]
    records.sort(key=lambda r: r.created_at, reverse=True)
    return records[:limit] if limit is not None else records
