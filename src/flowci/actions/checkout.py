# actions/checkout.py
# Local stand-in for actions/checkout: copy the repository tree into the
# job workspace. No git operations; `.git` and `.flowci` are never copied.
from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING, List

from .registry import InvocationResult, StepCall

if TYPE_CHECKING:
    from ..executor import RunnerContext

SKIP_NAMES = {".git", ".flowci"}


def _ignore_for(excluded: List[Path]):
    def _ignore(directory: str, names: List[str]) -> List[str]:
        skipped = [n for n in names if n in SKIP_NAMES]
        base = Path(directory).resolve()
        skipped.extend(n for n in names if (base / n).resolve() in excluded)
        return skipped
    return _ignore


def checkout_action(call: StepCall, ctx: "RunnerContext") -> InvocationResult:
    """
    with:
      path:            subdirectory of the workspace to copy into
      sparse-checkout: newline separated paths; only these are copied
    """
    src = ctx.repo_root.resolve()
    dest = (ctx.workspace / call.params.get("path", "")).resolve()
    dest.mkdir(parents=True, exist_ok=True)
    ignore = _ignore_for([ctx.workspaces_root.resolve()])

    sparse = [line.strip() for line in call.params.get("sparse-checkout", "").splitlines() if line.strip()]
    copied: List[str] = []

    if not sparse:
        shutil.copytree(src, dest, dirs_exist_ok=True, ignore=ignore)
        return InvocationResult(exit_code=0, output=f"checked out {src} -> {dest}")

    for entry in sparse:
        rel = entry.strip("/")
        item = src / rel
        if not item.exists():
            continue
        target = dest / rel
        if item.is_dir():
            shutil.copytree(item, target, dirs_exist_ok=True, ignore=ignore)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item, target)
        copied.append(rel)

    return InvocationResult(exit_code=0, output="sparse checkout: " + (", ".join(copied) or "(nothing matched)"))
