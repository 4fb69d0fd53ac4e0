# scheduler.py
from __future__ import annotations

import os
import threading
from collections import Counter, deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Protocol

from .aggregator import RunAggregator
from .dag import build_instance_graph
from .errors import CIError
from .executor import JobOutcome
from .expressions import ExpressionContext, evaluate_condition
from .model import Job, JobInstance, JobResult, JobStatus
from .ui.console import Console, get_console


class InstanceExecutor(Protocol):
    def execute(self, instance: JobInstance) -> JobOutcome: ...

    def cancel_all(self) -> None: ...


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _job_result(statuses: List[JobStatus]) -> str:
    """Collapse a job's instance statuses into `needs.<job>.result`."""
    if any(s is JobStatus.FAILED for s in statuses):
        return "failure"
    if any(s is JobStatus.CANCELLED for s in statuses):
        return "cancelled"
    if statuses and all(s is JobStatus.SKIPPED for s in statuses):
        return "skipped"
    return "success"


class JobScheduler:
    """
    Dispatches job instances onto a thread pool as their dependencies
    become terminal.

    - the instance graph is built (and checked for cycles) up front, so a
      cyclic document never starts anything
    - every free worker slot is filled while eligible work exists
    - a job's `if:` decides between Running and Skipped once all its
      dependencies are terminal; the default is `success()`
    - `cancel()` stops dispatch, cancels everything still pending and asks
      the executor to stop in-flight instances
    """

    def __init__(
        self,
        jobs: Iterable[Job],
        instances: Iterable[JobInstance],
        executor: InstanceExecutor,
        *,
        max_workers: Optional[int] = None,
        aggregator: Optional[RunAggregator] = None,
        console: Optional[Console] = None,
        github: Optional[Mapping[str, str]] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.jobs = list(jobs)
        self.instances = list(instances)
        self.by_key, self.deps, self.dependents = build_instance_graph(self.jobs, self.instances)
        self.executor = executor
        self.max_workers = max(1, max_workers or default_workers())
        self.aggregator = aggregator or RunAggregator()
        self.console = console or get_console()
        self.github = dict(github or {})
        self.env = dict(env or {})

        self.results: Dict[str, JobResult] = {}
        for inst in self.instances:
            result = JobResult(key=inst.key, job_id=inst.job.id, name=inst.display_name)
            self.aggregator.track(result, inst.job)
            self.results[inst.key] = result

        self._remaining = {k: len(v) for k, v in self.deps.items()}
        self._ready: Deque[str] = deque()
        self._running_per_job: Counter = Counter()
        self._cancel = threading.Event()

    # --------------------------------------------------------------
    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Safe to call from any thread."""
        if self._cancel.is_set():
            return
        self._cancel.set()
        self.executor.cancel_all()

    # --------------------------------------------------------------
    def _statuses_of(self, job_id: str) -> List[JobStatus]:
        return [self.results[k].status for k, inst in self.by_key.items() if inst.job.id == job_id]

    def _condition_context(self, inst: JobInstance) -> ExpressionContext:
        dep_statuses = [self.results[d].status for d in self.deps[inst.key]]
        needs = {
            job_id: {"result": _job_result(self._statuses_of(job_id))}
            for job_id in inst.job.needs
        }
        return ExpressionContext(
            contexts={
                "matrix": inst.matrix,
                "needs": needs,
                "env": self.env,
                "github": self.github,
            },
            functions={
                "success": lambda: not self.cancelled and all(s is JobStatus.SUCCEEDED for s in dep_statuses),
                "failure": lambda: any(s is JobStatus.FAILED for s in dep_statuses),
                "always": lambda: True,
                "cancelled": lambda: self.cancelled,
            },
        )

    def _finish(self, key: str) -> None:
        """`key` is terminal: release dependents whose deps are all terminal."""
        for child in sorted(self.dependents[key]):
            self._remaining[child] -= 1
            if self._remaining[child] == 0:
                self._ready.append(child)

    def _skip(self, key: str, reason: str) -> None:
        self.results[key].transition(JobStatus.SKIPPED)
        self.console.print_job_skipped(key, reason)
        self._finish(key)

    def _cancel_pending(self) -> None:
        for result in self.results.values():
            if result.status is JobStatus.PENDING:
                result.transition(JobStatus.CANCELLED)
                result.error = "run cancelled"
        self._ready.clear()

    def _fail_fast(self, job: Job) -> None:
        for key, inst in self.by_key.items():
            result = self.results[key]
            if inst.job.id == job.id and result.status is JobStatus.PENDING:
                result.transition(JobStatus.CANCELLED)
                result.error = "cancelled by fail-fast"
                self.console.print_job_skipped(key, "fail-fast")
                self._finish(key)

    def _gate(self, key: str) -> Optional[bool]:
        """True -> run, False -> skip, None -> failed while evaluating."""
        inst = self.by_key[key]
        try:
            return evaluate_condition(inst.job.condition, self._condition_context(inst))
        except Exception as e:
            message = e.message if isinstance(e, CIError) else f"{type(e).__name__}: {e}"
            result = self.results[key]
            result.transition(JobStatus.RUNNING)
            result.error = f"bad job condition: {message}"
            result.transition(JobStatus.FAILED)
            self.console.print_job_finished(key, result.status.value)
            self._finish(key)
            return None

    def _complete(self, key: str, fut: Future) -> None:
        inst = self.by_key[key]
        result = self.results[key]
        self._running_per_job[inst.job.id] -= 1
        try:
            outcome: JobOutcome = fut.result()
        except Exception as e:
            outcome = JobOutcome(status=JobStatus.FAILED, error=f"{type(e).__name__}: {e}")

        status = outcome.status
        if status not in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED):
            status = JobStatus.FAILED
        result.steps = list(outcome.steps)
        result.error = outcome.error
        result.transition(status)
        self.console.print_job_finished(key, status.value, result.duration)
        self._finish(key)

        if status is JobStatus.FAILED and inst.job.fail_fast:
            self._fail_fast(inst.job)

    # --------------------------------------------------------------
    def run(self) -> Dict[str, JobResult]:
        for key in self.by_key:
            if self._remaining[key] == 0:
                self._ready.append(key)

        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while self._ready or in_flight:
                if self.cancelled:
                    self._cancel_pending()

                deferred: List[str] = []
                while self._ready and len(in_flight) < self.max_workers:
                    key = self._ready.popleft()
                    result = self.results[key]
                    if result.status is not JobStatus.PENDING:
                        continue
                    inst = self.by_key[key]

                    decision = self._gate(key)
                    if decision is None:
                        continue
                    if not decision:
                        self._skip(key, "condition false")
                        continue

                    cap = inst.job.max_parallel
                    if cap is not None and self._running_per_job[inst.job.id] >= max(1, cap):
                        deferred.append(key)
                        continue

                    result.transition(JobStatus.RUNNING)
                    self._running_per_job[inst.job.id] += 1
                    in_flight[pool.submit(self.executor.execute, inst)] = key
                self._ready.extendleft(reversed(deferred))

                if not in_flight:
                    continue

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    self._complete(in_flight.pop(fut), fut)

        return self.results
