import threading

import pytest

from fakes import FakeExecutor
from flowci.aggregator import RunAggregator
from flowci.dsl import job, sh
from flowci.errors import CyclicDependency
from flowci.matrix import expand_jobs
from flowci.model import JobStatus
from flowci.scheduler import JobScheduler


def _job(id, needs=(), **kwargs):
    return job(id, sh("step", "true"), needs=list(needs), **kwargs)


def _schedule(jobs, executor, **kwargs):
    scheduler = JobScheduler(jobs, expand_jobs(jobs), executor, **kwargs)
    results = scheduler.run()
    return {k: r.status for k, r in results.items()}, scheduler


def test_independent_jobs_run_concurrently():
    # each job waits for the other two; only passes if all three run at once
    executor = FakeExecutor(barrier=threading.Barrier(3, timeout=5))
    statuses, _ = _schedule([_job("fmt"), _job("typos"), _job("mdlint")], executor, max_workers=3)
    assert set(statuses.values()) == {JobStatus.SUCCEEDED}
    assert executor.max_total == 3


def test_worker_limit_is_respected():
    executor = FakeExecutor(delay=0.02)
    statuses, _ = _schedule([_job(f"j{i}") for i in range(6)], executor, max_workers=2)
    assert set(statuses.values()) == {JobStatus.SUCCEEDED}
    assert executor.max_total <= 2


def test_dependents_run_after_every_instance_of_their_needs():
    jobs = [_job("build", matrix={"os": ["linux", "mac", "windows"]}), _job("release", ["build"])]
    executor = FakeExecutor()
    statuses, _ = _schedule(jobs, executor, max_workers=4)
    assert executor.calls[-1] == "release"
    assert len(executor.calls) == 4
    assert statuses["release"] is JobStatus.SUCCEEDED


def test_failure_skips_dependents_transitively():
    jobs = [_job("build"), _job("test", ["build"]), _job("deploy", ["test"]), _job("lint")]
    executor = FakeExecutor({"build": JobStatus.FAILED})
    statuses, _ = _schedule(jobs, executor, max_workers=2)

    assert statuses == {
        "build": JobStatus.FAILED,
        "test": JobStatus.SKIPPED,
        "deploy": JobStatus.SKIPPED,
        "lint": JobStatus.SUCCEEDED,
    }
    assert sorted(executor.calls) == ["build", "lint"]


def test_one_failed_matrix_instance_skips_the_dependent():
    jobs = [_job("build", matrix={"os": ["linux", "windows"]}), _job("release", ["build"])]
    executor = FakeExecutor({"build (windows)": JobStatus.FAILED})
    statuses, _ = _schedule(jobs, executor)
    assert statuses["build (linux)"] is JobStatus.SUCCEEDED
    assert statuses["release"] is JobStatus.SKIPPED


def test_always_runs_after_a_failed_dependency():
    jobs = [_job("build"), _job("report", ["build"], condition="always()")]
    executor = FakeExecutor({"build": JobStatus.FAILED})
    statuses, _ = _schedule(jobs, executor)
    assert statuses["report"] is JobStatus.SUCCEEDED


def test_failure_condition():
    jobs = [_job("build"), _job("notify", ["build"], condition="failure()")]
    statuses, _ = _schedule(jobs, FakeExecutor())
    assert statuses["notify"] is JobStatus.SKIPPED

    statuses, _ = _schedule(jobs, FakeExecutor({"build": JobStatus.FAILED}))
    assert statuses["notify"] is JobStatus.SUCCEEDED


def test_needs_context_in_job_condition():
    jobs = [_job("build"), _job("after", ["build"], condition="needs.build.result == 'success'")]
    statuses, _ = _schedule(jobs, FakeExecutor())
    assert statuses["after"] is JobStatus.SUCCEEDED


def test_false_matrix_condition_skips_only_that_instance():
    jobs = [_job("build", matrix={"os": ["linux", "windows"]}, condition="matrix.os != 'windows'")]
    executor = FakeExecutor()
    statuses, _ = _schedule(jobs, executor)
    assert statuses == {"build (linux)": JobStatus.SUCCEEDED, "build (windows)": JobStatus.SKIPPED}
    assert executor.calls == ["build (linux)"]


def test_cycle_starts_nothing():
    jobs = [_job("a", ["b"]), _job("b", ["a"]), _job("c")]
    executor = FakeExecutor()
    with pytest.raises(CyclicDependency):
        JobScheduler(jobs, expand_jobs(jobs), executor)
    assert executor.calls == []


def test_needed_job_with_zero_instances_is_satisfied():
    jobs = [_job("build", matrix={"os": []}), _job("release", ["build"])]
    statuses, _ = _schedule(jobs, FakeExecutor())
    assert statuses == {"release": JobStatus.SUCCEEDED}


def test_max_parallel_caps_instances_of_one_job():
    jobs = [_job("t", matrix={"n": [1, 2, 3, 4]}, max_parallel=1), _job("other")]
    executor = FakeExecutor(delay=0.02)
    statuses, _ = _schedule(jobs, executor, max_workers=4)
    assert set(statuses.values()) == {JobStatus.SUCCEEDED}
    assert executor.max_running["t"] == 1


def test_fail_fast_cancels_pending_siblings():
    jobs = [_job("t", matrix={"n": [1, 2, 3]}, max_parallel=1, fail_fast=True)]
    executor = FakeExecutor({"t (1)": JobStatus.FAILED})
    statuses, _ = _schedule(jobs, executor, max_workers=4)
    assert statuses == {
        "t (1)": JobStatus.FAILED,
        "t (2)": JobStatus.CANCELLED,
        "t (3)": JobStatus.CANCELLED,
    }
    assert executor.calls == ["t (1)"]


def test_without_fail_fast_siblings_keep_running():
    jobs = [_job("t", matrix={"n": [1, 2, 3]}, max_parallel=1)]
    executor = FakeExecutor({"t (1)": JobStatus.FAILED})
    statuses, _ = _schedule(jobs, executor)
    assert statuses["t (3)"] is JobStatus.SUCCEEDED


def test_cancel_stops_dispatch_and_cancels_pending():
    jobs = [_job("slow"), _job("after", ["slow"])]
    executor = FakeExecutor(block=True)
    scheduler = JobScheduler(jobs, expand_jobs(jobs), executor, max_workers=2)

    thread = threading.Thread(target=scheduler.run)
    thread.start()
    assert executor.started.wait(timeout=5)
    scheduler.cancel()
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert scheduler.results["slow"].status is JobStatus.CANCELLED
    assert scheduler.results["after"].status is JobStatus.CANCELLED
    assert executor.calls == ["slow"]


def test_results_feed_the_aggregator():
    jobs = [_job("a"), _job("flaky", continue_on_error=True)]
    aggregator = RunAggregator()
    _schedule(jobs, FakeExecutor({"flaky": JobStatus.FAILED}), aggregator=aggregator)
    result = aggregator.finalize()
    assert result.succeeded
    assert result.jobs["flaky"].required is False


def test_executor_crash_fails_only_that_instance():
    class Exploding(FakeExecutor):
        def execute(self, instance):
            if instance.key == "boom":
                raise RuntimeError("executor bug")
            return super().execute(instance)

    statuses, scheduler = _schedule([_job("boom"), _job("fine")], Exploding())
    assert statuses == {"boom": JobStatus.FAILED, "fine": JobStatus.SUCCEEDED}
    assert "executor bug" in scheduler.results["boom"].error


def test_bad_job_condition_fails_only_that_instance():
    jobs = [_job("ok"), _job("weird", condition="startsWith('a')")]
    aggregator = RunAggregator()
    statuses, scheduler = _schedule(jobs, FakeExecutor(), aggregator=aggregator)
    assert statuses == {"ok": JobStatus.SUCCEEDED, "weird": JobStatus.FAILED}
    assert "startsWith" in scheduler.results["weird"].error
    result = aggregator.finalize()
    assert not result.succeeded


def test_matrix_build_and_formatting_run_together():
    jobs = [_job("build", matrix={"os": ["linux", "windows"]}), _job("formatting")]
    executor = FakeExecutor(barrier=threading.Barrier(3, timeout=5))
    aggregator = RunAggregator()
    statuses, _ = _schedule(jobs, executor, max_workers=3, aggregator=aggregator)
    assert len(statuses) == 3
    assert executor.max_total == 3
    assert aggregator.finalize().succeeded
