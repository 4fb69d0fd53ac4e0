import pytest

from flowci.dag import build_instance_graph, build_job_graph, check_acyclic, instance_stages, topo_levels
from flowci.dsl import job, sh
from flowci.errors import CyclicDependency, MalformedDocument
from flowci.matrix import expand_jobs


def _job(id, needs=(), **kwargs):
    return job(id, sh("step", "true"), needs=list(needs), **kwargs)


def test_topo_levels():
    jobs = [_job("a"), _job("b", ["a"]), _job("c", ["a"]), _job("d", ["b", "c"])]
    adj, indeg = build_job_graph(jobs)
    assert topo_levels(adj, indeg) == [["a"], ["b", "c"], ["d"]]


def test_cycle_is_reported_with_stuck_jobs():
    jobs = [_job("a", ["c"]), _job("b", ["a"]), _job("c", ["b"]), _job("free")]
    with pytest.raises(CyclicDependency) as exc:
        check_acyclic(jobs)
    assert exc.value.stuck == ["a", "b", "c"]


def test_missing_dependency():
    with pytest.raises(MalformedDocument):
        build_job_graph([_job("a", ["ghost"])])


def test_every_instance_waits_on_all_instances_of_a_needed_job():
    jobs = [_job("build", matrix={"os": ["linux", "mac", "windows"]}), _job("deploy", ["build"], matrix={"env": ["a", "b"]})]
    by_key, deps, dependents = build_instance_graph(jobs, expand_jobs(jobs))

    build_keys = {"build (linux)", "build (mac)", "build (windows)"}
    assert deps["deploy (a)"] == build_keys
    assert deps["deploy (b)"] == build_keys
    assert dependents["build (mac)"] == {"deploy (a)", "deploy (b)"}
    assert len(by_key) == 5


def test_needed_job_with_zero_instances_adds_no_edges():
    jobs = [_job("build", matrix={"os": []}), _job("deploy", ["build"])]
    _by_key, deps, _dependents = build_instance_graph(jobs, expand_jobs(jobs))
    assert deps == {"deploy": set()}


def test_instance_stages():
    jobs = [_job("build", matrix={"os": ["linux", "mac"]}), _job("lint"), _job("deploy", ["build", "lint"])]
    assert instance_stages(jobs, expand_jobs(jobs)) == [["build (linux)", "build (mac)", "lint"], ["deploy"]]
