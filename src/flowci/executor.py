# executor.py
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

from .actions.registry import ActionRegistry, InvocationResult, StepCall, default_registry
from .cache import CacheClient, hash_files_function
from .errors import Cancelled, StepFailure
from .expressions import ExpressionContext, evaluate_condition, interpolate
from .model import JobInstance, JobStatus, Step, StepOutcome, StepResult, frozen_map
from .ui.console import Console, get_console

# exit code conventions for steps that never got a real one
EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127
EXIT_INTERNAL = 1

KILL_GRACE_SECONDS = 5.0
POLL_SECONDS = 0.2
SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)

SHELLS = {
    "bash": ["bash", "--noprofile", "--norc", "-eo", "pipefail", "{0}"],
    "sh": ["sh", "-e", "{0}"],
    "python": ["python", "{0}"],
    "pwsh": ["pwsh", "-command", ". '{0}'"],
}

SCRIPT_SUFFIXES = {"python": ".py", "pwsh": ".ps1"}


def runner_os(label: str) -> str:
    """`windows-latest` -> Windows, `macos-14` -> macOS, anything else -> Linux."""
    lowered = label.lower()
    if "windows" in lowered:
        return "Windows"
    if "macos" in lowered or "mac-" in lowered:
        return "macOS"
    return "Linux"


def resolve_runs_on(instance: JobInstance) -> str:
    """`runs-on` may reference the matrix: `${{ matrix.os }}`."""
    return str(interpolate(instance.job.runs_on, ExpressionContext(contexts={"matrix": instance.matrix})))


def _safe_dirname(key: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in key)[:80]


def parse_output_file(output_file: Path) -> Dict[str, str]:
    """Parse `name=value` lines and `name<<DELIM ... DELIM` blocks."""
    outputs: Dict[str, str] = {}
    if not output_file.exists():
        return outputs

    lines = output_file.read_text(encoding="utf-8").split("\n")
    i = 0
    while i < len(lines):
        line = lines[i]
        if "<<" in line:
            key, delimiter = line.split("<<", 1)
            delimiter = delimiter.strip()
            i += 1
            value_lines = []
            while i < len(lines) and lines[i].strip() != delimiter:
                value_lines.append(lines[i])
                i += 1
            outputs[key.strip()] = "\n".join(value_lines)
        elif "=" in line:
            key, value = line.split("=", 1)
            outputs[key.strip()] = value
        i += 1
    return outputs


# ----------------------------------------------------------------------
# Runner context
# ----------------------------------------------------------------------

class RunnerContext:
    """
    Isolated execution environment for one job instance: its own workspace
    directory, a frozen environment snapshot, step outputs seen so far, and
    the child processes it has started (for cancellation).
    """

    def __init__(
        self,
        instance: JobInstance,
        *,
        root: Path,
        workspaces_root: Path,
        repo_root: Path,
        env: Mapping[str, str],
        cache: Optional[CacheClient],
        console: Console,
        cancel_event: threading.Event,
        github: Optional[Mapping[str, str]] = None,
        kill_grace: float = KILL_GRACE_SECONDS,
    ):
        self.instance = instance
        self.root = root
        self.workspace = root / "work"
        self.temp = root / "tmp"
        self.workspaces_root = workspaces_root
        self.repo_root = repo_root
        self.cache = cache
        self.console = console
        self.cancel_event = cancel_event
        self.kill_grace = kill_grace
        self.runs_on = resolve_runs_on(instance)
        self.runner_os = runner_os(self.runs_on)
        self.github = dict(github or {})
        self.step_contexts: Dict[str, Dict[str, object]] = {}
        self.post_hooks: List[Tuple[str, Callable[[], None]]] = []
        self._procs: Set[subprocess.Popen] = set()
        self._lock = threading.Lock()

        self.workspace.mkdir(parents=True, exist_ok=True)
        self.temp.mkdir(parents=True, exist_ok=True)

        # workflow and job env win over the runner defaults
        snapshot = {
            "CI": "true",
            "FLOWCI": "true",
            "FLOWCI_JOB": instance.job.id,
            "FLOWCI_WORKSPACE": str(self.workspace),
            "RUNNER_OS": self.runner_os,
            "RUNNER_TEMP": str(self.temp),
        }
        snapshot.update(env)
        self.env: Mapping[str, str] = frozen_map(snapshot)

    # --------------------------------------------------------------
    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def expression_context(self, extra_env: Optional[Mapping[str, str]] = None) -> ExpressionContext:
        env = dict(self.env)
        env.update(extra_env or {})
        return ExpressionContext(
            contexts={
                "matrix": self.instance.matrix,
                "env": env,
                "runner": {
                    "os": self.runner_os,
                    "name": self.runs_on,
                    "temp": str(self.temp),
                    "workspace": str(self.workspace),
                },
                "steps": self.step_contexts,
                "job": {"id": self.instance.job.id},
                "github": self.github,
            },
            functions={
                "hashFiles": hash_files_function(self.workspace),
                "success": lambda: not self._any_step_failed(),
                "failure": self._any_step_failed,
                "always": lambda: True,
                "cancelled": lambda: self.cancelled,
            },
        )

    def _any_step_failed(self) -> bool:
        return any(s.get("conclusion") == StepOutcome.FAILURE.value for s in self.step_contexts.values())

    def add_post_hook(self, name: str, fn: Callable[[], None]) -> None:
        self.post_hooks.append((name, fn))

    # --------------------------------------------------------------
    def track(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.add(proc)
        # cancel() may have run before the process was registered
        if self.cancelled:
            self._signal(proc, signal.SIGTERM)

    def untrack(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.discard(proc)

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        """
        Signal the whole process group on POSIX. The group outlives its
        leader, so this is sent even when the shell itself has exited.
        """
        if os.name == "posix":
            try:
                # start_new_session: pgid == pid of the leader
                os.killpg(proc.pid, sig)
            except ProcessLookupError:
                pass
            except PermissionError:
                # macOS reports EPERM for a group of zombies
                pass
            return
        if proc.poll() is not None:
            return
        if sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()

    def kill(self, proc: subprocess.Popen) -> None:
        self._signal(proc, SIGKILL)

    def terminate_processes(self) -> None:
        """SIGTERM every tracked process group; `run_command` escalates to SIGKILL after `kill_grace`."""
        with self._lock:
            procs = list(self._procs)
        for proc in procs:
            self._signal(proc, signal.SIGTERM)

    def teardown(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)


# ----------------------------------------------------------------------
# Invoker: the only boundary to external commands / actions
# ----------------------------------------------------------------------

class ActionInvoker:
    """Runs `run:` commands through a shell and `uses:` actions through a registry."""

    def __init__(self, registry: Optional[ActionRegistry] = None):
        self.registry = registry or default_registry()

    def invoke(self, call: StepCall, ctx: RunnerContext) -> InvocationResult:
        if call.uses is not None:
            return self.registry.invoke(call, ctx)
        return self.run_command(call, ctx)

    @staticmethod
    def _shell(call: StepCall) -> str:
        if call.shell is not None:
            return call.shell
        return "bash" if shutil.which("bash") else "sh"

    def _command_line(self, call: StepCall, script: Path) -> List[str]:
        shell = self._shell(call)
        template = SHELLS.get(shell)
        if template is None:
            # custom shell: "perl {0}"
            template = shell.split() if "{0}" in shell else [*shell.split(), "{0}"]
        return [part.replace("{0}", str(script)) for part in template]

    def run_command(self, call: StepCall, ctx: RunnerContext) -> InvocationResult:
        suffix = SCRIPT_SUFFIXES.get(self._shell(call), ".sh")
        fd, script_name = tempfile.mkstemp(prefix="step-", suffix=suffix, dir=str(ctx.temp))
        script = Path(script_name)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(call.run or "")
        output_file = ctx.temp / f"output-{script.stem}"
        output_file.touch()

        cwd = (ctx.workspace / (call.cwd or ".")).resolve()
        if not cwd.exists():
            return InvocationResult(exit_code=EXIT_INTERNAL, output=f"working directory not found: {cwd}")

        env = os.environ.copy()
        env.update(ctx.env)
        env.update(call.env)
        env["FLOWCI_OUTPUT"] = str(output_file)
        env["GITHUB_OUTPUT"] = str(output_file)

        argv = self._command_line(call, script)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError:
            return InvocationResult(exit_code=EXIT_NOT_FOUND, output=f"shell not found: {argv[0]}")

        ctx.track(proc)
        try:
            out, code = self._wait(proc, call, ctx)
        finally:
            ctx.untrack(proc)

        if ctx.cancelled:
            raise Cancelled(ctx.instance.key)
        return InvocationResult(exit_code=code, output=out, outputs=parse_output_file(output_file))

    def _wait(self, proc: subprocess.Popen, call: StepCall, ctx: RunnerContext) -> Tuple[str, int]:
        """
        Wait for the step in short slices so a timeout or a cancellation is
        noticed even while some child keeps the output pipe open. After
        cancellation the group gets `kill_grace` seconds before SIGKILL.
        """
        deadline = time.monotonic() + call.timeout if call.timeout is not None else None
        cancelled_at: Optional[float] = None
        while True:
            slice_ = POLL_SECONDS
            if deadline is not None:
                slice_ = min(slice_, max(0.0, deadline - time.monotonic()))
            try:
                out, _ = proc.communicate(timeout=slice_)
                return out or "", proc.returncode
            except subprocess.TimeoutExpired:
                pass

            now = time.monotonic()
            if deadline is not None and now >= deadline:
                ctx.kill(proc)
                out = self._drain(proc, ctx.kill_grace)
                return out + f"\nstep timed out after {call.timeout:.0f}s", EXIT_TIMEOUT
            if ctx.cancelled:
                if cancelled_at is None:
                    cancelled_at = now
                elif now - cancelled_at >= ctx.kill_grace:
                    ctx.kill(proc)
                    out = self._drain(proc, ctx.kill_grace)
                    return out, proc.returncode if proc.returncode is not None else EXIT_INTERNAL

    @staticmethod
    def _drain(proc: subprocess.Popen, grace: float) -> str:
        try:
            out, _ = proc.communicate(timeout=grace)
            return out or ""
        except subprocess.TimeoutExpired:
            # something left the process group and still holds the pipe
            if proc.stdout is not None:
                proc.stdout.close()
            return "(output lost: a child process outlived the step)"


# ----------------------------------------------------------------------
# Step executor
# ----------------------------------------------------------------------

@dataclass
class JobOutcome:
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[str] = None


class StepExecutor:
    """
    Executes a job instance's steps strictly in order inside a fresh
    RunnerContext:

      - a step whose `if` is false is skipped; the job is unaffected
      - a non-zero exit fails the job and stops it, unless the step is
        continue-on-error (then the failure is only recorded)
      - post-job hooks (cache saves) run only when the job succeeded
      - the workspace is always torn down
    """

    def __init__(
        self,
        *,
        repo_root: Path,
        workspaces_root: Path,
        workflow_env: Mapping[str, str],
        invoker: Optional[ActionInvoker] = None,
        cache: Optional[CacheClient] = None,
        console: Optional[Console] = None,
        github: Optional[Mapping[str, str]] = None,
        keep_workspaces: bool = False,
        kill_grace: float = KILL_GRACE_SECONDS,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.workspaces_root = Path(workspaces_root).resolve()
        self.workflow_env = dict(workflow_env)
        self.invoker = invoker or ActionInvoker()
        self.cache = cache
        self.console = console or get_console()
        self.github = dict(github or {})
        self.keep_workspaces = keep_workspaces
        self.kill_grace = kill_grace
        self.cancel_event = threading.Event()
        self._active: Dict[str, RunnerContext] = {}
        self._lock = threading.Lock()

    # --------------------------------------------------------------
    def cancel_all(self) -> None:
        """Cooperative cancellation of every in-flight job instance."""
        self.cancel_event.set()
        with self._lock:
            contexts = list(self._active.values())
        for ctx in contexts:
            ctx.terminate_processes()

    def _job_env(self, instance: JobInstance) -> Dict[str, str]:
        env = dict(self.workflow_env)
        base_ctx = ExpressionContext(
            contexts={
                "matrix": instance.matrix,
                "env": dict(env),
                "runner": {"os": runner_os(resolve_runs_on(instance))},
                "github": self.github,
            },
        )
        env.update({k: str(interpolate(v, base_ctx)) for k, v in instance.job.env.items()})
        return env

    def _new_context(self, instance: JobInstance) -> RunnerContext:
        self.workspaces_root.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix=_safe_dirname(instance.key) + "-", dir=str(self.workspaces_root)))
        return RunnerContext(
            instance,
            root=root,
            workspaces_root=self.workspaces_root,
            repo_root=self.repo_root,
            env=self._job_env(instance),
            cache=self.cache,
            console=self.console,
            cancel_event=self.cancel_event,
            github=self.github,
            kill_grace=self.kill_grace,
        )

    def execute(self, instance: JobInstance) -> JobOutcome:
        if self.cancel_event.is_set():
            return JobOutcome(status=JobStatus.CANCELLED, error="run cancelled")

        ctx = self._new_context(instance)
        with self._lock:
            self._active[instance.key] = ctx
        self.console.print_job_start(instance.key)
        try:
            outcome = self._run_steps(instance, ctx)
            if outcome.status is JobStatus.SUCCEEDED:
                self._run_post_hooks(ctx)
            return outcome
        finally:
            with self._lock:
                self._active.pop(instance.key, None)
            if not self.keep_workspaces:
                ctx.teardown()

    # --------------------------------------------------------------
    def _step_timeout(self, step: Step, deadline: Optional[float]) -> Optional[float]:
        timeout = step.timeout_minutes * 60 if step.timeout_minutes else None
        if deadline is not None:
            remaining = max(0.0, deadline - time.monotonic())
            timeout = remaining if timeout is None else min(timeout, remaining)
        return timeout

    def _build_call(self, step: Step, ctx: RunnerContext, deadline: Optional[float]) -> StepCall:
        step_env_ctx = ctx.expression_context()
        step_env = {k: str(interpolate(v, step_env_ctx)) for k, v in step.env.items()}
        expr = ctx.expression_context(step_env)
        return StepCall(
            name=str(interpolate(step.name, expr)),
            id=step.id,
            uses=step.uses,
            run=interpolate(step.run, expr) if step.run is not None else None,
            params={k: str(interpolate(v, expr)) for k, v in step.params.items()},
            env=step_env,
            cwd=interpolate(step.cwd, expr) if step.cwd else None,
            shell=step.shell,
            timeout=self._step_timeout(step, deadline),
        )

    def _record(self, ctx: RunnerContext, step: Step, result: StepResult) -> None:
        if step.id:
            ctx.step_contexts[step.id] = {
                "outputs": dict(result.outputs),
                "outcome": result.outcome.value,
                "conclusion": result.conclusion.value,
            }

    def _run_steps(self, instance: JobInstance, ctx: RunnerContext) -> JobOutcome:
        key = instance.key
        results: List[StepResult] = []
        deadline = None
        if instance.job.timeout_minutes:
            deadline = time.monotonic() + instance.job.timeout_minutes * 60

        for step in instance.job.steps:
            if ctx.cancelled:
                return JobOutcome(status=JobStatus.CANCELLED, steps=results, error="run cancelled")

            expr = ctx.expression_context()
            try:
                should_run = evaluate_condition(step.condition, expr)
            except Exception as e:
                results.append(StepResult(name=step.name, outcome=StepOutcome.FAILURE, error=f"bad condition: {e}"))
                return JobOutcome(status=JobStatus.FAILED, steps=results, error=f"step '{step.name}': bad condition: {e}")

            if not should_run:
                self.console.print_step_skipped(key, step.name)
                result = StepResult(name=step.name, outcome=StepOutcome.SKIPPED)
                results.append(result)
                self._record(ctx, step, result)
                continue

            try:
                call = self._build_call(step, ctx, deadline)
                self.console.print_step(key, call.name)
                if call.timeout is not None and call.timeout <= 0:
                    invocation = InvocationResult(exit_code=EXIT_TIMEOUT, output="job timed out")
                else:
                    invocation = self.invoker.invoke(call, ctx)
            except Cancelled:
                results.append(StepResult(name=step.name, outcome=StepOutcome.CANCELLED))
                return JobOutcome(status=JobStatus.CANCELLED, steps=results, error="run cancelled")
            except Exception as e:
                # never let one step's crash escape into the scheduler
                invocation = InvocationResult(exit_code=EXIT_INTERNAL, output=f"{type(e).__name__}: {e}")

            ok = invocation.exit_code == 0
            result = StepResult(
                name=step.name,
                outcome=StepOutcome.SUCCESS if ok else StepOutcome.FAILURE,
                exit_code=invocation.exit_code,
                output=invocation.output,
                outputs=dict(invocation.outputs),
                continue_on_error=step.continue_on_error,
            )
            results.append(result)
            self._record(ctx, step, result)
            if self.console.debug and invocation.output:
                self.console.print_debug(f"[{key}] {step.name} output:\n{invocation.output.rstrip()}")

            if ok:
                continue

            self.console.print_step_failure(
                key, step.name, invocation.exit_code, invocation.output, tolerated=step.continue_on_error
            )
            if step.continue_on_error:
                continue

            failure = StepFailure(job=key, step=step.name, cmd=step.label, exit_code=invocation.exit_code)
            result.error = str(failure.message)
            return JobOutcome(status=JobStatus.FAILED, steps=results, error=failure.message)

        return JobOutcome(status=JobStatus.SUCCEEDED, steps=results)

    def _run_post_hooks(self, ctx: RunnerContext) -> None:
        for name, hook in reversed(ctx.post_hooks):
            try:
                hook()
            except Exception as e:
                self.console.print_warning(f"[{ctx.instance.key}] post-job '{name}' failed: {e}")
