# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import InvalidTransition


def frozen_map(data: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    """Read-only copy of a mapping (insertion order preserved)."""
    return MappingProxyType(dict(data or {}))


# ---------------------------------------------------------------------
# Workflow document
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """
    A single step inside a CI job: either a reusable action (`uses`) or an
    inline shell command (`run`).
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    params: Mapping[str, Any] = field(default_factory=frozen_map)  # `with:`
    id: Optional[str] = None
    condition: Optional[str] = None  # `if:`
    continue_on_error: bool = False
    env: Mapping[str, str] = field(default_factory=frozen_map)
    cwd: Optional[str] = None  # `working-directory:`
    shell: Optional[str] = None
    timeout_minutes: Optional[float] = None

    @property
    def is_action(self) -> bool:
        return self.uses is not None

    @property
    def label(self) -> str:
        return self.uses if self.uses is not None else (self.run or "")


@dataclass(frozen=True)
class MatrixSpec:
    """Declared matrix axes, in declaration order, plus exclusions."""
    axes: Tuple[Tuple[str, Tuple[Any, ...]], ...]
    exclude: Tuple[Mapping[str, Any], ...] = ()

    @property
    def axis_names(self) -> List[str]:
        return [name for name, _ in self.axes]


@dataclass(frozen=True)
class Job:
    """
    A CI job: steps + dependencies + matrix + environment.

    `id` is the key in the document's `jobs:` mapping and is what `needs`
    refers to; `name` is the display name.
    """
    id: str
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=frozen_map)
    matrix: Optional[MatrixSpec] = None
    runs_on: str = "ubuntu-latest"
    condition: Optional[str] = None
    continue_on_error: bool = False
    timeout_minutes: Optional[float] = None
    fail_fast: bool = False
    max_parallel: Optional[int] = None


@dataclass(frozen=True)
class TriggerFilter:
    """Branch and path filters for one event kind."""
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()
    paths_ignore: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Workflow:
    name: str
    jobs: Mapping[str, Job]
    triggers: Mapping[str, TriggerFilter] = field(default_factory=frozen_map)
    env: Mapping[str, str] = field(default_factory=frozen_map)

    def job(self, job_id: str) -> Job:
        return self.jobs[job_id]


# ---------------------------------------------------------------------
# Expanded job instance
# ---------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class JobInstance:
    """A job bound to one concrete matrix combination (or none)."""
    job: Job
    combination: Tuple[Tuple[str, Any], ...] = ()

    @property
    def identity(self) -> Tuple[str, Tuple[Tuple[str, Any], ...]]:
        return self.job.id, self.combination

    @property
    def matrix(self) -> Dict[str, Any]:
        return dict(self.combination)

    @property
    def key(self) -> str:
        """Stable, unique string form of the identity; used in logs and results."""
        if not self.combination:
            return self.job.id
        values = ", ".join(str(v) for _, v in self.combination)
        return f"{self.job.id} ({values})"

    @property
    def display_name(self) -> str:
        if not self.combination:
            return self.job.name
        values = ", ".join(str(v) for _, v in self.combination)
        return f"{self.job.name} ({values})"


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)

_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED},
}


class StepOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class StepResult:
    name: str
    outcome: StepOutcome
    exit_code: Optional[int] = None
    output: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    error: Optional[str] = None

    @property
    def conclusion(self) -> StepOutcome:
        # a tolerated failure does not count against the job
        if self.outcome is StepOutcome.FAILURE and self.continue_on_error:
            return StepOutcome.SUCCESS
        return self.outcome


@dataclass
class JobResult:
    """
    Per-instance outcome. State changes go through `transition()`, which
    enforces Pending -> Running -> terminal (or Pending -> Skipped/Cancelled).
    """
    key: str
    job_id: str
    name: str
    required: bool = True
    status: JobStatus = JobStatus.PENDING
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def transition(self, target: JobStatus) -> None:
        if target not in _TRANSITIONS.get(self.status, set()):
            raise InvalidTransition(self.key, self.status.value, target.value)
        self.status = target
        now = time.monotonic()
        if target is JobStatus.RUNNING:
            self.started_at = now
        elif target.terminal:
            self.finished_at = now

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at
