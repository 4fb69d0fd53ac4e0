import pytest

from flowci.aggregator import RunAggregator
from flowci.dsl import job, sh
from flowci.errors import InvalidTransition, RunIncomplete
from flowci.model import JobResult, JobStatus


def _result(key, status):
    result = JobResult(key=key, job_id=key, name=key)
    if status is JobStatus.PENDING:
        return result
    if status in (JobStatus.SKIPPED, JobStatus.CANCELLED):
        result.transition(status)
        return result
    result.transition(JobStatus.RUNNING)
    if status is not JobStatus.RUNNING:
        result.transition(status)
    return result


def _aggregate(statuses, required_jobs=None, optional=()):
    aggregator = RunAggregator(required_jobs)
    for key, status in statuses.items():
        aggregator.track(_result(key, status), job(key, sh("x", "true"), continue_on_error=key in optional))
    return aggregator


def test_all_succeeded():
    result = _aggregate({"a": JobStatus.SUCCEEDED, "b": JobStatus.SUCCEEDED}).finalize()
    assert result.succeeded
    assert result.verdict is JobStatus.SUCCEEDED


@pytest.mark.parametrize("status", [JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED])
def test_any_unsuccessful_required_instance_fails_the_run(status):
    result = _aggregate({"a": JobStatus.SUCCEEDED, "b": status}).finalize()
    assert not result.succeeded
    assert result.failed_jobs == ["b"]


def test_continue_on_error_job_is_not_required():
    result = _aggregate({"a": JobStatus.SUCCEEDED, "flaky": JobStatus.FAILED}, optional=("flaky",)).finalize()
    assert result.succeeded


def test_explicit_required_list():
    statuses = {"build": JobStatus.SUCCEEDED, "spelling": JobStatus.FAILED}
    assert _aggregate(statuses, required_jobs=["build"]).finalize().succeeded
    assert not _aggregate(statuses, required_jobs=["build", "spelling"]).finalize().succeeded


def test_run_without_instances_succeeds():
    assert RunAggregator().finalize().succeeded


def test_finalize_before_completion_raises():
    aggregator = _aggregate({"a": JobStatus.SUCCEEDED, "b": JobStatus.RUNNING})
    with pytest.raises(RunIncomplete):
        aggregator.finalize()


def test_verdict_is_emitted_once():
    aggregator = _aggregate({"a": JobStatus.SUCCEEDED})
    seen = []
    aggregator.add_listener(seen.append)

    first = aggregator.finalize()
    second = aggregator.finalize()

    assert first is second
    assert seen == [first]

    late = []
    aggregator.add_listener(late.append)
    assert late == [first]


def test_terminal_states_are_final():
    result = _result("a", JobStatus.SUCCEEDED)
    with pytest.raises(InvalidTransition):
        result.transition(JobStatus.RUNNING)
    with pytest.raises(InvalidTransition):
        _result("b", JobStatus.PENDING).transition(JobStatus.SUCCEEDED)
