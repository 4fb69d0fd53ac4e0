# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - per-job / per-step status reporting
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Pre-run errors (abort the whole run, nothing is scheduled)
# ----------------------------------------------------------------------

class MalformedDocument(CIError):
    def __init__(self, message: str, *, job: Optional[str] = None, **details: Any):
        super().__init__(kind="malformed_document", message=message, job=job, details=details)


class UnknownField(CIError):
    """Unrecognized key in a workflow document (fatal only in strict mode)."""

    def __init__(self, field_name: str, where: str, *, job: Optional[str] = None):
        super().__init__(
            kind="unknown_field",
            message=f"unknown field {field_name!r} in {where}",
            job=job,
            details={"field": field_name},
        )
        self.field_name = field_name
        self.where = where


class CyclicDependency(CIError):
    def __init__(self, stuck: List[str]):
        super().__init__(
            kind="cyclic_dependency",
            message="job graph has a cycle",
            details={"stuck": ", ".join(stuck)},
        )
        self.stuck = list(stuck)


# ----------------------------------------------------------------------
# Run-time errors (scoped to a job instance)
# ----------------------------------------------------------------------

class StepFailure(CIError):
    def __init__(self, job: str, step: str, cmd: str, exit_code: int):
        super().__init__(
            kind="step_failure",
            message=f"step '{step}' failed (exit={exit_code}): {cmd}",
            job=job,
            step=step,
            details={"exit_code": exit_code},
        )
        self.cmd = cmd
        self.exit_code = exit_code


class CacheBackendError(CIError):
    """Raised by cache backends; callers treat it as a miss."""

    def __init__(self, message: str, *, key: Optional[str] = None):
        super().__init__(kind="cache_backend", message=message, details={"key": key} if key else {})
        self.key = key


class Cancelled(CIError):
    def __init__(self, job: Optional[str] = None, reason: str = "run cancelled"):
        super().__init__(kind="cancelled", message=reason, job=job)


# ----------------------------------------------------------------------
# Engine invariants
# ----------------------------------------------------------------------

class InvalidTransition(CIError):
    def __init__(self, job: str, current: str, target: str):
        super().__init__(
            kind="invalid_transition",
            message=f"cannot move from {current} to {target}",
            job=job,
        )


class RunIncomplete(CIError):
    def __init__(self, pending: List[str]):
        super().__init__(
            kind="run_incomplete",
            message="verdict requested before every job finished",
            details={"pending": ", ".join(pending)},
        )
