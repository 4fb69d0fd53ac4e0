# aggregator.py
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .errors import RunIncomplete
from .model import Job, JobResult, JobStatus


@dataclass(frozen=True)
class RunResult:
    jobs: Mapping[str, JobResult]
    verdict: JobStatus  # SUCCEEDED or FAILED

    @property
    def succeeded(self) -> bool:
        return self.verdict is JobStatus.SUCCEEDED

    @property
    def failed_jobs(self) -> List[str]:
        return [r.key for r in self.jobs.values() if r.required and r.status is not JobStatus.SUCCEEDED]


class RunAggregator:
    """
    Collects per-instance results and computes the run verdict once every
    instance is terminal.

    Required instances are every instance, except those whose job is
    `continue-on-error: true`. When `required_jobs` is given, only instances
    of those job ids are required.

    The run succeeds iff every required instance Succeeded. A run with no
    required instances succeeds.
    """

    def __init__(self, required_jobs: Optional[Iterable[str]] = None):
        self.required_jobs = set(required_jobs) if required_jobs is not None else None
        self._results: Dict[str, JobResult] = {}
        self._listeners: List[Callable[[RunResult], None]] = []
        self._verdict: Optional[RunResult] = None
        self._lock = threading.Lock()

    def is_required(self, job: Job) -> bool:
        if self.required_jobs is not None:
            return job.id in self.required_jobs
        return not job.continue_on_error

    def track(self, result: JobResult, job: Job) -> None:
        result.required = self.is_required(job)
        with self._lock:
            self._results[result.key] = result

    def add_listener(self, fn: Callable[[RunResult], None]) -> None:
        """fn(run_result) is called exactly once, when the verdict is computed."""
        with self._lock:
            done = self._verdict
            if done is None:
                self._listeners.append(fn)
        if done is not None:
            fn(done)

    @property
    def pending(self) -> List[str]:
        return [k for k, r in self._results.items() if not r.status.terminal]

    @property
    def complete(self) -> bool:
        return not self.pending

    def finalize(self) -> RunResult:
        """Compute (or return the already computed) verdict. Idempotent."""
        with self._lock:
            if self._verdict is not None:
                return self._verdict
            pending = self.pending
            if pending:
                raise RunIncomplete(pending)

            ok = all(r.status is JobStatus.SUCCEEDED for r in self._results.values() if r.required)
            self._verdict = RunResult(
                jobs=dict(self._results),
                verdict=JobStatus.SUCCEEDED if ok else JobStatus.FAILED,
            )
            listeners, self._listeners = self._listeners, []

        for fn in listeners:
            fn(self._verdict)
        return self._verdict
