# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import MalformedDocument, UnknownField
from .expressions import check_syntax
from .model import Job, MatrixSpec, Step, TriggerFilter, Workflow, frozen_map
from .ui.console import get_console

WORKFLOW_KEYS = {"name", "run-name", "on", "env", "jobs", "permissions", "concurrency"}
TRIGGER_KEYS = {"branches", "branches-ignore", "paths", "paths-ignore", "types", "tags"}
JOB_KEYS = {
    "name",
    "runs-on",
    "needs",
    "strategy",
    "steps",
    "env",
    "if",
    "continue-on-error",
    "timeout-minutes",
    "permissions",
}
STRATEGY_KEYS = {"matrix", "fail-fast", "max-parallel"}
STEP_KEYS = {
    "name",
    "id",
    "uses",
    "with",
    "run",
    "if",
    "env",
    "continue-on-error",
    "working-directory",
    "shell",
    "timeout-minutes",
}


# ----------------------------------------------------------------------
# YAML: reject duplicate keys instead of silently keeping the last one
# ----------------------------------------------------------------------

class _UniqueKeyLoader(yaml.SafeLoader):
    pass


def _construct_unique_mapping(loader: _UniqueKeyLoader, node: yaml.MappingNode, deep: bool = False) -> Dict:
    loader.flatten_mapping(node)
    mapping: Dict[Any, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=True)
        if key in mapping:
            raise MalformedDocument(
                f"duplicate key {key!r}",
                line=key_node.start_mark.line + 1,
            )
        mapping[key] = loader.construct_object(value_node, deep=True)
    return mapping


_UniqueKeyLoader.add_constructor(yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_unique_mapping)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

class _Parser:
    """Converts the raw YAML structure into model objects."""

    def __init__(self, strict: bool):
        self.strict = strict

    def check_keys(self, data: Mapping, allowed: set, where: str, job: Optional[str] = None) -> None:
        for key in data:
            if key in allowed:
                continue
            if self.strict:
                raise UnknownField(str(key), where, job=job)
            get_console().print_warning(f"ignoring unknown field {key!r} in {where}")

    @staticmethod
    def as_str_map(data: Any, where: str, job: Optional[str] = None) -> Mapping[str, str]:
        if data is None:
            return frozen_map()
        if not isinstance(data, Mapping):
            raise MalformedDocument(f"{where}: env must be a mapping", job=job)
        return frozen_map({str(k): _scalar_str(v) for k, v in data.items()})

    @staticmethod
    def as_list(value: Any, where: str, job: Optional[str] = None) -> List[Any]:
        if value is None:
            return []
        if isinstance(value, (str, int, float, bool)):
            return [value]
        if not isinstance(value, list):
            raise MalformedDocument(f"{where} must be a list", job=job)
        return list(value)

    # --------------------------------------------------------------
    def triggers(self, raw: Any) -> Mapping[str, TriggerFilter]:
        if raw is None:
            return frozen_map()
        if isinstance(raw, str):
            raw = [raw]
        if isinstance(raw, list):
            return frozen_map({str(kind): TriggerFilter(branches=("**",)) for kind in raw})
        if not isinstance(raw, Mapping):
            raise MalformedDocument("'on' must be a string, list or mapping")

        out: Dict[str, TriggerFilter] = {}
        for kind, spec in raw.items():
            spec = spec or {}
            if not isinstance(spec, Mapping):
                raise MalformedDocument(f"trigger {kind!r} must be a mapping")
            self.check_keys(spec, TRIGGER_KEYS, f"on.{kind}")
            if "branches" in spec:
                branches = tuple(str(b) for b in self.as_list(spec["branches"], f"on.{kind}.branches"))
            else:
                branches = ("**",)
            out[str(kind)] = TriggerFilter(
                branches=branches,
                branches_ignore=tuple(str(b) for b in self.as_list(spec.get("branches-ignore"), f"on.{kind}.branches-ignore")),
                paths=tuple(str(p) for p in self.as_list(spec.get("paths"), f"on.{kind}.paths")),
                paths_ignore=tuple(str(p) for p in self.as_list(spec.get("paths-ignore"), f"on.{kind}.paths-ignore")),
            )
        return frozen_map(out)

    def matrix(self, raw: Any, job_id: str) -> Tuple[Optional[MatrixSpec], bool, Optional[int]]:
        if raw is None:
            return None, False, None
        if not isinstance(raw, Mapping):
            raise MalformedDocument("strategy must be a mapping", job=job_id)
        self.check_keys(raw, STRATEGY_KEYS, f"jobs.{job_id}.strategy", job=job_id)

        fail_fast = bool(raw.get("fail-fast", False))
        max_parallel = raw.get("max-parallel")
        if max_parallel is not None and (not isinstance(max_parallel, int) or max_parallel < 1):
            raise MalformedDocument("max-parallel must be a positive integer", job=job_id)

        matrix = raw.get("matrix")
        if matrix is None:
            return None, fail_fast, max_parallel
        if not isinstance(matrix, Mapping):
            raise MalformedDocument("matrix must be a mapping of axis -> values", job=job_id)
        if "include" in matrix:
            raise MalformedDocument("matrix 'include' is not supported", job=job_id)

        axes: List[Tuple[str, Tuple[Any, ...]]] = []
        for axis, values in matrix.items():
            if axis == "exclude":
                continue
            if not isinstance(values, list):
                raise MalformedDocument(f"matrix axis {axis!r} must be a list", job=job_id)
            if len(set(map(repr, values))) != len(values):
                raise MalformedDocument(f"matrix axis {axis!r} has duplicate values", job=job_id)
            axes.append((str(axis), tuple(values)))

        exclude = self.as_list(matrix.get("exclude"), f"jobs.{job_id}.strategy.matrix.exclude", job=job_id)
        for entry in exclude:
            if not isinstance(entry, Mapping):
                raise MalformedDocument("matrix exclude entries must be mappings", job=job_id)
        return (
            MatrixSpec(axes=tuple(axes), exclude=tuple(frozen_map(e) for e in exclude)),
            fail_fast,
            max_parallel,
        )

    def step(self, raw: Any, job_id: str, index: int) -> Step:
        where = f"jobs.{job_id}.steps[{index}]"
        if not isinstance(raw, Mapping):
            raise MalformedDocument(f"{where} must be a mapping", job=job_id)
        self.check_keys(raw, STEP_KEYS, where, job=job_id)

        uses, run = raw.get("uses"), raw.get("run")
        if (uses is None) == (run is None):
            raise MalformedDocument(f"{where} must have exactly one of 'uses' or 'run'", job=job_id)

        params = raw.get("with") or {}
        if not isinstance(params, Mapping):
            raise MalformedDocument(f"{where}.with must be a mapping", job=job_id)

        condition = raw.get("if")
        if isinstance(condition, str):
            check_syntax(condition)
        if isinstance(run, str) and "${{" in run:
            check_syntax(run)

        name = raw.get("name") or (f"Run {uses}" if uses else f"Run {str(run).splitlines()[0] if run else ''}")
        return Step(
            name=str(name),
            run=str(run) if run is not None else None,
            uses=str(uses) if uses is not None else None,
            params=frozen_map({str(k): _scalar_str(v) for k, v in params.items()}),
            id=str(raw["id"]) if raw.get("id") is not None else None,
            condition=_condition(condition),
            continue_on_error=bool(raw.get("continue-on-error", False)),
            env=self.as_str_map(raw.get("env"), where, job=job_id),
            cwd=raw.get("working-directory"),
            shell=raw.get("shell"),
            timeout_minutes=_positive_float(raw.get("timeout-minutes"), where, job_id),
        )

    def job(self, job_id: str, raw: Any) -> Job:
        where = f"jobs.{job_id}"
        if not isinstance(raw, Mapping):
            raise MalformedDocument(f"{where} must be a mapping", job=job_id)
        self.check_keys(raw, JOB_KEYS, where, job=job_id)

        steps_raw = raw.get("steps")
        if not isinstance(steps_raw, list) or not steps_raw:
            raise MalformedDocument(f"job {job_id!r} must have at least one step", job=job_id)
        steps = tuple(self.step(s, job_id, i) for i, s in enumerate(steps_raw))

        matrix, fail_fast, max_parallel = self.matrix(raw.get("strategy"), job_id)

        runs_on = raw.get("runs-on", "ubuntu-latest")
        if isinstance(runs_on, list):
            if not runs_on:
                raise MalformedDocument("runs-on must not be empty", job=job_id)
            runs_on = runs_on[0]

        condition = raw.get("if")
        if isinstance(condition, str):
            check_syntax(condition)

        return Job(
            id=job_id,
            name=str(raw.get("name") or job_id),
            steps=steps,
            needs=tuple(str(n) for n in self.as_list(raw.get("needs"), f"{where}.needs", job=job_id)),
            env=self.as_str_map(raw.get("env"), where, job=job_id),
            matrix=matrix,
            runs_on=str(runs_on),
            condition=_condition(condition),
            continue_on_error=bool(raw.get("continue-on-error", False)),
            timeout_minutes=_positive_float(raw.get("timeout-minutes"), where, job_id),
            fail_fast=fail_fast,
            max_parallel=max_parallel,
        )


def _scalar_str(value: Any) -> str:
    # YAML scalars -> the strings a shell would see
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _condition(value: Any) -> Optional[str]:
    if value is None:
        return None
    return _scalar_str(value)


def _positive_float(value: Any, where: str, job_id: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise MalformedDocument(f"{where}: timeout-minutes must be a positive number", job=job_id)
    return float(value)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def parse_workflow(text: str, *, strict: bool = False, source: str = "<workflow>") -> Workflow:
    """
    Parse workflow YAML text into a Workflow.

    Raises:
      MalformedDocument: missing/invalid structure, duplicate job ids or names
      UnknownField: unrecognized key (strict mode only; otherwise a warning)
    """
    try:
        data = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise MalformedDocument(f"invalid YAML: {e}", source=source) from e

    if not isinstance(data, Mapping):
        raise MalformedDocument("workflow document must be a mapping", source=source)

    # YAML 1.1 reads a bare `on` key as boolean True
    if True in data:
        data = {("on" if k is True else k): v for k, v in data.items()}

    parser = _Parser(strict=strict)
    parser.check_keys(data, WORKFLOW_KEYS, "workflow")

    jobs_raw = data.get("jobs")
    if not isinstance(jobs_raw, Mapping) or not jobs_raw:
        raise MalformedDocument("workflow must define at least one job under 'jobs'", source=source)

    jobs: Dict[str, Job] = {}
    names: Dict[str, str] = {}
    for job_id, raw in jobs_raw.items():
        job = parser.job(str(job_id), raw)
        if job.name in names:
            raise MalformedDocument(
                f"jobs {names[job.name]!r} and {job.id!r} share the name {job.name!r}",
                job=job.id,
            )
        names[job.name] = job.id
        jobs[job.id] = job

    for job in jobs.values():
        for dep in job.needs:
            if dep not in jobs:
                raise MalformedDocument(
                    f"job {job.id!r} needs missing job {dep!r}",
                    job=job.id,
                    known=", ".join(sorted(jobs)),
                )

    return Workflow(
        name=str(data.get("name") or Path(source).stem),
        jobs=frozen_map(jobs),
        triggers=parser.triggers(data.get("on")),
        env=parser.as_str_map(data.get("env"), "workflow"),
    )


def load_workflow(path: str | Path, *, strict: bool = False) -> Workflow:
    """
    Load a workflow from a file.

      - *.yml / *.yaml: parsed as a workflow document
      - *.py: must define workflow() -> Workflow or WORKFLOW = Workflow(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        return parse_workflow(wf_path.read_text(encoding="utf-8"), strict=strict, source=str(wf_path))

    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    module_name = f"flowci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    wf = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            wf = globals_dict["workflow"]()
        except TypeError as e:
            if "missing" in str(e) and "argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from flowci.dsl import wf, job, sh` then "
                    "`def workflow(): return wf('ci', job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        wf = globals_dict["WORKFLOW"]

    if not isinstance(wf, Workflow):
        raise TypeError(
            "Workflow module must return/define a Workflow. "
            "Define workflow() -> Workflow or WORKFLOW = workflow(...)."
        )
    return wf
