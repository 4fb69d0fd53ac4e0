# runs.py
from __future__ import annotations

import itertools
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, List, Optional

from .actions import ActionRegistry, default_registry
from .aggregator import RunAggregator, RunResult
from .cache import CacheClient, LocalCacheBackend
from .config import RunConfig
from .executor import ActionInvoker, StepExecutor
from .matrix import expand_workflow
from .model import JobInstance, Workflow
from .scheduler import InstanceExecutor, JobScheduler
from .triggers import Event, should_run
from .ui.console import Console, get_console

# local dev ---> event ---> trigger check ---> expand ---> schedule ---> verdict

_run_ids = itertools.count(1)


def github_context(event: Event, sha: Optional[str] = None) -> Dict[str, str]:
    ctx = {
        "event_name": event.kind,
        "ref_name": event.branch,
        "ref": f"refs/heads/{event.branch}",
    }
    if event.kind == "pull_request":
        ctx["base_ref"] = event.branch
        if event.pull_request is not None:
            ctx["ref"] = f"refs/pull/{event.pull_request}/merge"
    if sha:
        ctx["sha"] = sha
    return ctx


def build_cache_client(config: RunConfig, console: Console) -> Optional[CacheClient]:
    if not config.cache_enabled:
        return None
    backend = LocalCacheBackend(config.resolve(config.cache_dir))
    return CacheClient(backend, retries=config.cache_retries, on_warning=console.print_warning)


class Run:
    """
    One execution of a workflow for one event.

        run = Run(workflow, Event("push", "main"), RunConfig.from_env())
        result = run.execute()   # None when the event does not trigger the workflow
    """

    def __init__(
        self,
        workflow: Workflow,
        event: Event,
        config: Optional[RunConfig] = None,
        *,
        registry: Optional[ActionRegistry] = None,
        executor: Optional[InstanceExecutor] = None,
        console: Optional[Console] = None,
        sha: Optional[str] = None,
    ):
        self.id = next(_run_ids)
        self.workflow = workflow
        self.event = event
        self.config = config or RunConfig()
        self.console = console or get_console()
        self.github = github_context(event, sha)
        self.registry = registry or default_registry(stub_unknown=self.config.stub_actions)
        self.executor = executor
        self.aggregator = RunAggregator(self.config.required_jobs)
        self.scheduler: Optional[JobScheduler] = None
        self.result: Optional[RunResult] = None
        self._cancelled = threading.Event()
        self._lock = threading.Lock()

    @property
    def group(self) -> str:
        return self.event.group

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def instances(self) -> List[JobInstance]:
        return expand_workflow(self.workflow)

    def _default_executor(self) -> StepExecutor:
        return StepExecutor(
            repo_root=self.config.repo_root,
            workspaces_root=self.config.resolve(self.config.workspace_dir),
            workflow_env=self.workflow.env,
            invoker=ActionInvoker(self.registry),
            cache=build_cache_client(self.config, self.console),
            console=self.console,
            github=self.github,
            keep_workspaces=self.config.keep_workspaces,
        )

    def cancel(self) -> None:
        """Cooperative: stops dispatch and signals in-flight jobs. Safe from any thread."""
        with self._lock:
            self._cancelled.set()
            scheduler = self.scheduler
        if scheduler is not None:
            scheduler.cancel()

    def execute(self) -> Optional[RunResult]:
        if not should_run(self.workflow, self.event):
            self.console.print_run_skipped(self.workflow.name, f"{self.event.kind} to {self.event.branch}")
            return None

        instances = self.instances()
        scheduler = JobScheduler(
            self.workflow.jobs.values(),
            instances,
            self.executor or self._default_executor(),
            max_workers=self.config.max_workers,
            aggregator=self.aggregator,
            console=self.console,
            github=self.github,
            env=self.workflow.env,
        )
        with self._lock:
            self.scheduler = scheduler
            cancelled_early = self.cancelled
        if cancelled_early:
            scheduler.cancel()

        self.console.print_run_started(self.workflow.name, f"{self.event.kind} to {self.event.branch}", len(instances))
        scheduler.run()
        self.result = self.aggregator.finalize()
        self.console.print_results(self.result)
        return self.result


def run_workflow(
    workflow: Workflow,
    event: Event,
    config: Optional[RunConfig] = None,
    **kwargs,
) -> Optional[RunResult]:
    """Evaluate triggers, expand, schedule and aggregate. None -> not triggered."""
    return Run(workflow, event, config, **kwargs).execute()


class RunSupervisor:
    """
    Keeps at most one live run per concurrency group (same branch for
    pushes, same pull request number for PRs). Starting a run cancels the
    run it supersedes.
    """

    def __init__(self, max_runs: int = 4):
        self._active: Dict[str, Run] = {}
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_runs, thread_name_prefix="flowci-run")

    def active(self, group: str) -> Optional[Run]:
        with self._lock:
            return self._active.get(group)

    def start(self, run: Run) -> "Future[Optional[RunResult]]":
        with self._lock:
            previous = self._active.get(run.group)
            self._active[run.group] = run
        if previous is not None:
            run.console.print_info(f"Cancelling run #{previous.id}: superseded by run #{run.id} ({run.group})")
            previous.cancel()
        return self._pool.submit(self._execute, run)

    def _execute(self, run: Run) -> Optional[RunResult]:
        try:
            return run.execute()
        finally:
            with self._lock:
                if self._active.get(run.group) is run:
                    del self._active[run.group]

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
