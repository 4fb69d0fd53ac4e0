import dataclasses
import datetime
import os
import shutil
import threading
import time

import pytest

from flowci.actions import default_registry
from flowci.cache import CacheClient, LocalCacheBackend
from flowci.dsl import job, sh, uses
from flowci.executor import ActionInvoker, StepExecutor, parse_output_file, runner_os
from flowci.matrix import expand
from flowci.model import JobStatus, StepOutcome

pytestmark = pytest.mark.skipif(
    os.name != "posix" or shutil.which("sh") is None,
    reason="needs a POSIX shell",
)


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    return root


def _executor(tmp_path, repo, **kwargs):
    workflow_env = kwargs.pop("workflow_env", {})
    return StepExecutor(repo_root=repo, workspaces_root=tmp_path / "ws", workflow_env=workflow_env, **kwargs)


def _run(executor, j):
    return executor.execute(next(expand(j)))


def test_steps_run_in_order(tmp_path, repo):
    outcome = _run(
        _executor(tmp_path, repo),
        job("j", sh("one", "echo 1 > order"), sh("two", "echo 2 >> order"), sh("check", "test \"$(cat order | tr -d '\\n')\" = 12")),
    )
    assert outcome.status is JobStatus.SUCCEEDED
    assert [s.outcome for s in outcome.steps] == [StepOutcome.SUCCESS] * 3


def test_failing_step_stops_the_job(tmp_path, repo):
    outcome = _run(
        _executor(tmp_path, repo),
        job("j", sh("boom", "echo broken; exit 3"), sh("never", "true")),
    )
    assert outcome.status is JobStatus.FAILED
    assert len(outcome.steps) == 1
    assert outcome.steps[0].exit_code == 3
    assert "broken" in outcome.steps[0].output
    assert "exit=3" in outcome.error


def test_continue_on_error_records_the_failure_and_continues(tmp_path, repo):
    outcome = _run(
        _executor(tmp_path, repo),
        job("j", sh("flaky", "exit 1", continue_on_error=True), sh("after", "true")),
    )
    assert outcome.status is JobStatus.SUCCEEDED
    assert outcome.steps[0].outcome is StepOutcome.FAILURE
    assert outcome.steps[0].conclusion is StepOutcome.SUCCESS
    assert outcome.steps[1].outcome is StepOutcome.SUCCESS


def test_false_step_condition_skips_the_step(tmp_path, repo):
    outcome = _run(
        _executor(tmp_path, repo),
        job("j", sh("windows only", "exit 1", condition="runner.os == 'Windows'"), sh("after", "true")),
    )
    assert outcome.status is JobStatus.SUCCEEDED
    assert outcome.steps[0].outcome is StepOutcome.SKIPPED


def test_step_outputs_are_visible_to_later_steps(tmp_path, repo):
    outcome = _run(
        _executor(tmp_path, repo),
        job(
            "j",
            sh("gen", 'echo "value=42" >> "$FLOWCI_OUTPUT"', id="gen"),
            sh("use", 'test "${{ steps.gen.outputs.value }}" = 42'),
        ),
    )
    assert outcome.status is JobStatus.SUCCEEDED
    assert outcome.steps[0].outputs == {"value": "42"}


def test_environment_layers(tmp_path, repo):
    executor = _executor(tmp_path, repo, workflow_env={"A": "wf", "B": "wf", "C": "wf"})
    outcome = _run(
        executor,
        job(
            "j",
            sh("check", 'test "$A-$B-$C" = "wf-job-step"', env={"C": "step"}),
            env={"B": "job", "C": "job"},
        ),
    )
    assert outcome.status is JobStatus.SUCCEEDED, outcome.steps[0].output


def test_matrix_values_are_interpolated(tmp_path, repo):
    j = job("j", sh("os is ${{ matrix.os }}", 'test "${{ matrix.os }}" = linux'), matrix={"os": ["linux"]})
    outcome = _run(_executor(tmp_path, repo), j)
    assert outcome.status is JobStatus.SUCCEEDED
    assert outcome.steps[0].name == "os is ${{ matrix.os }}"


def test_step_timeout_exits_124(tmp_path, repo):
    outcome = _run(_executor(tmp_path, repo), job("j", sh("hang", "sleep 5", timeout_minutes=0.01)))
    assert outcome.status is JobStatus.FAILED
    assert outcome.steps[0].exit_code == 124


def test_workspace_is_torn_down(tmp_path, repo):
    _run(_executor(tmp_path, repo), job("j", sh("write", "echo hi > file")))
    assert list((tmp_path / "ws").iterdir()) == []


def test_job_env_overrides_runner_defaults(tmp_path, repo):
    outcome = _run(
        _executor(tmp_path, repo),
        job("j", sh("check", 'test "$CI" = false && test "$RUNNER_OS" = Linux && test -d "$RUNNER_TEMP"'), env={"CI": "false"}),
    )
    assert outcome.status is JobStatus.SUCCEEDED, outcome.steps[0].output


@pytest.mark.skipif(shutil.which("python") is None, reason="needs `python` on PATH")
def test_python_steps_get_a_py_script(tmp_path, repo):
    step = dataclasses.replace(sh("py", "import sys\nassert sys.argv[0].endswith('.py'), sys.argv[0]"), shell="python")
    outcome = _run(_executor(tmp_path, repo), job("j", step))
    assert outcome.status is JobStatus.SUCCEEDED, outcome.steps[0].output


def _start_in_background(executor, j):
    box = {}

    def target():
        box["outcome"] = _run(executor, j)

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, box


def _wait_for(pattern_root, pattern, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if list(pattern_root.glob(pattern)):
            return
        time.sleep(0.05)
    raise AssertionError(f"{pattern} never appeared under {pattern_root}")


def test_cancel_stops_a_running_step_and_removes_the_workspace(tmp_path, repo):
    executor = _executor(tmp_path, repo)
    thread, box = _start_in_background(executor, job("j", sh("hang", "touch started; sleep 30"), sh("never", "true")))
    _wait_for(tmp_path / "ws", "*/work/started")

    started = time.monotonic()
    executor.cancel_all()
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert time.monotonic() - started < 10
    assert box["outcome"].status is JobStatus.CANCELLED
    assert [s.outcome for s in box["outcome"].steps] == [StepOutcome.CANCELLED]
    assert list((tmp_path / "ws").iterdir()) == []


def test_cancel_kills_children_that_ignore_sigterm(tmp_path, repo):
    executor = _executor(tmp_path, repo, kill_grace=0.5)
    # the shell dies on SIGTERM; its background child ignores it and keeps stdout open
    script = "(trap '' TERM; touch started; exec sleep 30) & wait"
    thread, box = _start_in_background(executor, job("j", sh("stubborn", script)))
    _wait_for(tmp_path / "ws", "*/work/started")

    started = time.monotonic()
    executor.cancel_all()
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert time.monotonic() - started < 10
    assert box["outcome"].status is JobStatus.CANCELLED
    assert list((tmp_path / "ws").iterdir()) == []


def test_unknown_action_fails_with_127(tmp_path, repo):
    outcome = _run(_executor(tmp_path, repo), job("j", uses("Typos", "crate-ci/typos@v1")))
    assert outcome.status is JobStatus.FAILED
    assert outcome.steps[0].exit_code == 127


def test_unknown_action_can_be_stubbed(tmp_path, repo, console):
    executor = _executor(tmp_path, repo, invoker=ActionInvoker(default_registry(stub_unknown=True)))
    outcome = _run(executor, job("j", uses("Typos", "crate-ci/typos@v1")))
    assert outcome.status is JobStatus.SUCCEEDED
    assert "not available locally" in console.stderr


def test_invoker_crash_becomes_a_failed_step(tmp_path, repo):
    class Crashing(ActionInvoker):
        def invoke(self, call, ctx):
            raise RuntimeError("invoker bug")

    outcome = _run(_executor(tmp_path, repo, invoker=Crashing()), job("j", sh("x", "true")))
    assert outcome.status is JobStatus.FAILED
    assert outcome.steps[0].exit_code == 1
    assert "invoker bug" in outcome.steps[0].output


def _copyright_job():
    return job(
        "copyright",
        uses("Checkout", "actions/checkout@v4", sparse_checkout="LICENSE-MIT\n"),
        sh(
            "Check that current year is included in copyright statement",
            'grep -q "^Copyright.*[[:space:]-]$(date +%Y)[[:space:]]" LICENSE-MIT',
            env={"LC_ALL": "C.UTF-8"},
        ),
        name="Check copyright statement",
    )


def test_copyright_check_passes_for_current_year(tmp_path, repo):
    year = datetime.date.today().year
    (repo / "LICENSE-MIT").write_text(f"MIT License\n\nCopyright (c) 2018-{year} The authors\n", encoding="utf-8")
    (repo / "README.md").write_text("not copied\n", encoding="utf-8")
    outcome = _run(_executor(tmp_path, repo, keep_workspaces=True), _copyright_job())
    assert outcome.status is JobStatus.SUCCEEDED, outcome.steps[-1].output

    workspaces = list((tmp_path / "ws").iterdir())
    assert (workspaces[0] / "work" / "LICENSE-MIT").exists()
    assert not (workspaces[0] / "work" / "README.md").exists()


def test_copyright_check_fails_for_stale_year(tmp_path, repo):
    (repo / "LICENSE-MIT").write_text("MIT License\n\nCopyright (c) 2018-2019 The authors\n", encoding="utf-8")
    outcome = _run(_executor(tmp_path, repo), _copyright_job())
    assert outcome.status is JobStatus.FAILED
    assert outcome.steps[-1].exit_code == 1


def test_cache_is_saved_after_success_and_restored_next_time(tmp_path, repo, console):
    (repo / "data.txt").write_text("inputs", encoding="utf-8")
    cache = CacheClient(LocalCacheBackend(tmp_path / "cache"))
    j = job(
        "build",
        uses("Checkout", "actions/checkout@v4"),
        uses("Cache", "actions/cache@v4", id="cache", path="out", key="k-${{ hashFiles('data.txt') }}"),
        sh("Build", "mkdir -p out && echo built > out/file", condition="steps.cache.outputs.cache-hit != 'true'"),
        sh("Check", "test -f out/file"),
    )

    first = _run(_executor(tmp_path, repo, cache=cache), j)
    assert first.status is JobStatus.SUCCEEDED
    assert first.steps[1].outputs["cache-hit"] == "false"
    assert "CACHE: saved" in console.stdout

    second = _run(_executor(tmp_path, repo, cache=cache), j)
    assert second.status is JobStatus.SUCCEEDED
    assert second.steps[1].outputs["cache-hit"] == "true"
    assert second.steps[2].outcome is StepOutcome.SKIPPED


def test_cache_is_not_saved_when_the_job_fails(tmp_path, repo):
    backend = LocalCacheBackend(tmp_path / "cache")
    j = job(
        "build",
        uses("Cache", "actions/cache@v4", path="out", key="k-fixed"),
        sh("Build", "mkdir -p out && echo built > out/file && exit 2"),
    )
    outcome = _run(_executor(tmp_path, repo, cache=CacheClient(backend)), j)
    assert outcome.status is JobStatus.FAILED
    assert backend.entries() == []


def test_parse_output_file(tmp_path):
    out = tmp_path / "out"
    out.write_text("a=1\nnotes<<EOF\nline one\nline two\nEOF\nb=x=y\n", encoding="utf-8")
    assert parse_output_file(out) == {"a": "1", "notes": "line one\nline two", "b": "x=y"}


def test_runner_os_from_label():
    assert runner_os("ubuntu-latest") == "Linux"
    assert runner_os("windows-2022") == "Windows"
    assert runner_os("macos-14") == "macOS"
