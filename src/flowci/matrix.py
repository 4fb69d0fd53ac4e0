# matrix.py
from __future__ import annotations

from itertools import product
from typing import Any, Iterable, Iterator, List, Mapping, Tuple

from .model import Job, JobInstance, MatrixSpec, Workflow

Combination = Tuple[Tuple[str, Any], ...]


class Matrix:
    """
    Lazy, restartable Cartesian product over a job's matrix axes.

    Every iteration starts again from the first combination; axis order in
    each combination follows the declaration order. An axis with no values
    yields no combinations at all.

    Example:
        list(Matrix(MatrixSpec(axes=(("os", ("linux", "windows")),))))
        -> [(("os", "linux"),), (("os", "windows"),)]
    """

    def __init__(self, spec: MatrixSpec):
        self.spec = spec

    def __iter__(self) -> Iterator[Combination]:
        names = self.spec.axis_names
        for values in product(*(vals for _, vals in self.spec.axes)):
            combo = tuple(zip(names, values))
            if not self._excluded(combo):
                yield combo

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def _excluded(self, combo: Combination) -> bool:
        values = dict(combo)
        return any(_entry_matches(entry, values) for entry in self.spec.exclude)


def _entry_matches(entry: Mapping[str, Any], values: Mapping[str, Any]) -> bool:
    return all(k in values and values[k] == v for k, v in entry.items())


def expand(job: Job) -> Iterator[JobInstance]:
    """One JobInstance per matrix combination; exactly one when there is no matrix."""
    if job.matrix is None:
        yield JobInstance(job=job)
        return
    for combo in Matrix(job.matrix):
        yield JobInstance(job=job, combination=combo)


def expand_jobs(jobs: Iterable[Job]) -> List[JobInstance]:
    instances: List[JobInstance] = []
    for job in jobs:
        instances.extend(expand(job))
    return instances


def expand_workflow(workflow: Workflow) -> List[JobInstance]:
    return expand_jobs(workflow.jobs.values())
