# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from .errors import CyclicDependency, MalformedDocument
from .model import Job, JobInstance


def build_job_graph(jobs: Iterable[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.id: str (unique)
      - job.needs: iterable[str] (ids of jobs that must run BEFORE this job)

    Returns (adj, indeg) where adj maps dep -> dependents.
    """
    jobs = list(jobs)
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise MalformedDocument(f"Duplicate job ids found: {dupes}")

    id_set = set(ids)
    adj: Dict[str, Set[str]] = {n: set() for n in id_set}
    indeg: Dict[str, int] = {n: 0 for n in id_set}

    for job in jobs:
        for dep in job.needs:
            if dep not in id_set:
                raise MalformedDocument(
                    f"Job '{job.id}' needs missing job '{dep}'",
                    job=job.id,
                    known=", ".join(sorted(id_set)),
                )
            # Edge dep -> job.id (dep must run before job)
            if job.id not in adj[dep]:
                adj[dep].add(job.id)
                indeg[job.id] += 1

    return adj, indeg


def topo_levels(adj: Mapping[str, Set[str]], indeg: Mapping[str, int]) -> List[List[str]]:
    """
    Convert a DAG into topological "levels" (stages).
    Each stage can run in parallel.

    Raises CyclicDependency listing the nodes that never became ready.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        raise CyclicDependency(sorted(n for n, d in indeg.items() if d > 0))

    return levels


def check_acyclic(jobs: Iterable[Job]) -> None:
    adj, indeg = build_job_graph(jobs)
    topo_levels(adj, indeg)


def build_instance_graph(
    jobs: Iterable[Job],
    instances: Iterable[JobInstance],
) -> Tuple[Dict[str, JobInstance], Dict[str, Set[str]], Dict[str, Set[str]]]:
    """
    Expand job-level `needs` to instance edges: every instance of B waits on
    ALL instances of each job B needs. A needed job that expanded to zero
    instances contributes no edges.

    Returns (by_key, deps, dependents) keyed by JobInstance.key.
    """
    jobs = list(jobs)
    check_acyclic(jobs)

    by_key: Dict[str, JobInstance] = {}
    seen_identity: Set[tuple] = set()
    by_job: Dict[str, List[str]] = {j.id: [] for j in jobs}
    for inst in instances:
        if inst.identity in seen_identity or inst.key in by_key:
            raise MalformedDocument(f"Duplicate job instance: {inst.key}", job=inst.job.id)
        seen_identity.add(inst.identity)
        by_key[inst.key] = inst
        by_job.setdefault(inst.job.id, []).append(inst.key)

    deps: Dict[str, Set[str]] = {k: set() for k in by_key}
    dependents: Dict[str, Set[str]] = {k: set() for k in by_key}
    for key, inst in by_key.items():
        for dep_job in inst.job.needs:
            for dep_key in by_job.get(dep_job, []):
                deps[key].add(dep_key)
                dependents[dep_key].add(key)

    return by_key, deps, dependents


def instance_stages(jobs: Iterable[Job], instances: Iterable[JobInstance]) -> List[List[str]]:
    """Stages of instance keys, for `flowci plan`."""
    _by_key, deps, dependents = build_instance_graph(jobs, instances)
    return topo_levels(dependents, {k: len(v) for k, v in deps.items()})
