# triggers.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Tuple

from .globs import glob_matches
from .model import TriggerFilter, Workflow

RUN = "run"
SKIP = "skip"

EVENT_KINDS = ("push", "pull_request")


@dataclass(frozen=True)
class Event:
    """
    An incoming event. `branch` is the pushed branch for `push` and the
    target (base) branch for `pull_request`.

    `changed_files` is None when unknown; path filters are then not applied.
    """
    kind: str
    branch: str
    pull_request: Optional[int] = None
    changed_files: Optional[Tuple[str, ...]] = None

    @property
    def group(self) -> str:
        """Concurrency group: a newer event in the same group supersedes older runs."""
        if self.kind == "pull_request" and self.pull_request is not None:
            return f"pull_request/{self.pull_request}"
        return f"{self.kind}/{self.branch}"


def _paths_selected(flt: TriggerFilter, changed: Sequence[str]) -> bool:
    if flt.paths and not any(glob_matches(f, flt.paths) for f in changed):
        return False
    if flt.paths_ignore and changed and all(glob_matches(f, flt.paths_ignore) for f in changed):
        return False
    return True


def evaluate(triggers: Mapping[str, TriggerFilter], event: Event) -> str:
    """Return RUN if the event kind is declared and its branch is selected, else SKIP."""
    flt = triggers.get(event.kind)
    if flt is None:
        return SKIP
    if not glob_matches(event.branch, flt.branches):
        return SKIP
    if flt.branches_ignore and glob_matches(event.branch, flt.branches_ignore):
        return SKIP
    if event.changed_files is not None and not _paths_selected(flt, event.changed_files):
        return SKIP
    return RUN


def should_run(workflow: Workflow, event: Event) -> bool:
    return evaluate(workflow.triggers, event) == RUN
