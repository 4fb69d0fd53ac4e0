# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import click

from .config import RunConfig
from .dag import instance_stages
from .errors import CIError
from .git_facts.git import current_branch, head_sha, merge_base, changed_files, working_tree_changes
from .loader import load_workflow
from .matrix import expand_workflow
from .model import Workflow
from .runs import run_workflow
from .triggers import EVENT_KINDS, Event
from .ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_INTERRUPTED = 130

DEFAULT_WORKFLOW = "flowci.yml"
GITHUB_WORKFLOW = Path(".github/workflows/ci.yml")


def find_workflow_files(root: Path = Path(".")) -> List[Path]:
    """
    Find all workflow files in a directory.

    Returns:
        flowci.yml and *.flowci.yml, or .github/workflows/ci.yml when
        neither exists.
    """
    workflow_files = []
    default_workflow = root / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in root.glob("*.flowci.yml"):
        if path != default_workflow:
            workflow_files.append(path)

    if not workflow_files and (root / GITHUB_WORKFLOW).exists():
        workflow_files.append(root / GITHUB_WORKFLOW)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: Optional[str]) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If no workflow, or more than one, can be found
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  flowci run --workflow ci.yml",
            )
            sys.exit(EXIT_INVALID)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *.flowci.yml",
                f"  {GITHUB_WORKFLOW}",
            ],
            suggestion="Create a workflow file:\n  flowci.yml\n\nOr specify a workflow explicitly:\n  flowci run --workflow ci.yml",
        )
        sys.exit(EXIT_INVALID)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  flowci run --workflow flowci.yml",
        )
        sys.exit(EXIT_INVALID)

    return workflow_files[0]


def _report_ci_error(title: str, e: CIError) -> None:
    details = []
    if e.job:
        details.append(f"job: {e.job}")
    if e.step:
        details.append(f"step: {e.step}")
    details.extend(f"{k}: {v}" for k, v in e.details.items())
    get_console().print_error(title, e.message, details=details)


def _load_or_exit(workflow_arg: Optional[str], strict: bool) -> Workflow:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        wf = load_workflow(workflow_path, strict=strict)
    except CIError as e:
        _report_ci_error(f"Invalid workflow {workflow_path}", e)
        sys.exit(EXIT_INVALID)
    except (OSError, ValueError, TypeError) as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        sys.exit(EXIT_INVALID)
    console.print_debug(f"Loaded workflow {wf.name!r} from {workflow_path}")
    return wf


def _git_or_none(fn, *args):
    try:
        return fn(*args)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def _diff_files(compare_ref: str) -> Optional[List[str]]:
    """Files changed since the merge-base with compare_ref, plus uncommitted changes."""
    base = _git_or_none(merge_base, compare_ref)
    if base is None:
        return None
    committed = _git_or_none(changed_files, base, "HEAD") or []
    local = _git_or_none(working_tree_changes) or []
    return sorted(set(committed) | set(local))


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and full step output)",
)
@click.pass_context
def cli(ctx, debug):
    """flowci: run GitHub-Actions style workflows locally."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to flowci.yml if present)")
@click.option("--event", "event_kind", type=click.Choice(EVENT_KINDS), default="push", show_default=True)
@click.option("--branch", default=None, help="Branch for the event (defaults to the current git branch)")
@click.option("--pr", "pull_request", type=int, default=None, help="Pull request number (pull_request events)")
@click.option("--changed", "changed", multiple=True, help="Changed file for path filters (repeatable)")
@click.option("--git-diff/--no-git-diff", default=False, help="Take changed files from git diff against --compare-ref")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.option("--workers", default=None, type=int, help="Number of parallel job instances")
@click.option("--cache-dir", default=None, help="Cache directory (default .flowci/cache)")
@click.option("--no-cache", is_flag=True, default=False, help="Disable actions/cache")
@click.option("--strict/--no-strict", default=None, help="Reject unknown workflow fields")
@click.option("--stub-actions", is_flag=True, default=False, help="Treat unknown `uses:` actions as successful")
@click.option("--required", "required", multiple=True, help="Only these job ids decide the verdict (repeatable)")
@click.option("--keep-workspaces", is_flag=True, default=False, help="Do not delete job workspaces")
@click.pass_context
def run(
    ctx,
    workflow,
    event_kind,
    branch,
    pull_request,
    changed,
    git_diff,
    compare_ref,
    workers,
    cache_dir,
    no_cache,
    strict,
    stub_actions,
    required,
    keep_workspaces,
):
    """Run a workflow for an event."""
    console = get_console()

    try:
        config = RunConfig.from_env(
            max_workers=workers,
            cache_dir=cache_dir,
            strict=strict,
            stub_actions=stub_actions or None,
            required_jobs=required or None,
            keep_workspaces=keep_workspaces or None,
            cache_enabled=False if no_cache else None,
        )
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_INVALID)

    wf = _load_or_exit(workflow, config.strict)

    branch = branch or _git_or_none(current_branch) or "main"
    changed_files_list = list(changed) if changed else None
    if git_diff:
        changed_files_list = _diff_files(compare_ref)
        if changed_files_list is None:
            console.print_warning(f"could not diff against {compare_ref}; path filters are not applied")

    event = Event(
        kind=event_kind,
        branch=branch,
        pull_request=pull_request,
        changed_files=tuple(changed_files_list) if changed_files_list is not None else None,
    )

    try:
        result = run_workflow(wf, event, config, console=console, sha=_git_or_none(head_sha))
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except CIError as e:
        _report_ci_error("Run aborted", e)
        sys.exit(EXIT_INVALID)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if result is not None and not result.succeeded:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to flowci.yml if present)")
@click.option("--strict/--no-strict", default=False, help="Reject unknown workflow fields")
def validate(workflow, strict):
    """Check a workflow document without running it."""
    console = get_console()
    wf = _load_or_exit(workflow, strict)
    try:
        stages = instance_stages(wf.jobs.values(), expand_workflow(wf))
    except CIError as e:
        _report_ci_error("Invalid job graph", e)
        sys.exit(EXIT_INVALID)
    instance_count = sum(len(s) for s in stages)
    console.print_info(f"OK: {wf.name} ({len(wf.jobs)} jobs, {instance_count} instances)")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to flowci.yml if present)")
def plan(workflow):
    """Print the job instances stage by stage."""
    console = get_console()
    wf = _load_or_exit(workflow, False)
    try:
        stages = instance_stages(wf.jobs.values(), expand_workflow(wf))
    except CIError as e:
        _report_ci_error("Invalid job graph", e)
        sys.exit(EXIT_INVALID)
    console.print_header(f"Plan: {wf.name}")
    console.print_plan(stages)


if __name__ == "__main__":
    cli()
