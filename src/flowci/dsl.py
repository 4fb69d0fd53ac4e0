# dsl.py
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from .model import Job, MatrixSpec, Step, TriggerFilter, Workflow, frozen_map


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: Optional[str] = None,
    cwd: Optional[str] = None,
    condition: Optional[str] = None,
    continue_on_error: bool = False,
    env: Optional[Dict[str, Any]] = None,
    timeout_minutes: Optional[float] = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        cwd=cwd,
        condition=condition,
        continue_on_error=continue_on_error,
        env=frozen_map({k: str(v) for k, v in (env or {}).items()}),
        timeout_minutes=timeout_minutes,
    )


def uses(
    name: str,
    action: str,
    *,
    id: Optional[str] = None,
    condition: Optional[str] = None,
    continue_on_error: bool = False,
    **params: Any,
) -> Step:
    """
    Create an action step. Keyword params become `with:` entries;
    underscores map to dashes (sparse_checkout -> sparse-checkout).
    """
    return Step(
        name=name,
        uses=action,
        id=id,
        condition=condition,
        continue_on_error=continue_on_error,
        params=frozen_map({k.replace("_", "-"): str(v) for k, v in params.items()}),
    )


# ---------------------------------------------------------------------
# Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: Step,
    name: Optional[str] = None,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, Any]] = None,
    matrix: Optional[Mapping[str, Sequence[Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    runs_on: str = "ubuntu-latest",
    condition: Optional[str] = None,
    continue_on_error: bool = False,
    timeout_minutes: Optional[float] = None,
    fail_fast: bool = False,
    max_parallel: Optional[int] = None,
) -> Job:
    if not steps:
        raise ValueError(f"job({id!r}) must have at least one step")

    spec = None
    if matrix is not None:
        spec = MatrixSpec(
            axes=tuple((axis, tuple(values)) for axis, values in matrix.items()),
            exclude=tuple(frozen_map(e) for e in (exclude or [])),
        )

    return Job(
        id=id,
        name=name or id,
        steps=tuple(steps),
        needs=tuple(needs or []),
        env=frozen_map({k: str(v) for k, v in (env or {}).items()}),
        matrix=spec,
        runs_on=runs_on,
        condition=condition,
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
        fail_fast=fail_fast,
        max_parallel=max_parallel,
    )


# ---------------------------------------------------------------------
# Workflow helper
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: Job,
    on: Optional[Mapping[str, Optional[Sequence[str]]]] = None,
    env: Optional[Dict[str, Any]] = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf("ci", job(...), job(...)).

    `on` maps event kind -> branch patterns (None means every branch):
        wf("ci", job(...), on={"push": ["main"], "pull_request": ["main"]})
    """
    by_id: Dict[str, Job] = {}
    for j in jobs:
        if j.id in by_id:
            raise ValueError(f"Duplicate job id: {j.id}")
        by_id[j.id] = j

    triggers = {
        kind: TriggerFilter(branches=tuple(branches) if branches is not None else ("**",))
        for kind, branches in (on or {"push": None}).items()
    }
    return Workflow(
        name=name,
        jobs=frozen_map(by_id),
        triggers=frozen_map(triggers),
        env=frozen_map({k: str(v) for k, v in (env or {}).items()}),
    )


workflow = wf  # alias (avoid naming your own function workflow if you use it)
