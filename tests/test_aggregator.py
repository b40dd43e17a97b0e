"""Tests for the allocation aggregator."""

import random

import pytest

from nomad_otel_metrics_scraper import aggregator
from nomad_otel_metrics_scraper.nomadapi import types


def _alloc(job_id: str, status: str, namespace: str = "default") -> types.RawAllocation:
    return types.RawAllocation(job_id=job_id, client_status=status, namespace=namespace)


# ---------------------------------------------------------------------------
# aggregate
# ---------------------------------------------------------------------------


def test_job_without_allocations_reports_zero_running():
    """A listed job with no allocations is reported, not omitted."""
    jobs = [aggregator.Job(job_id="web", desired=3)]

    snapshots = aggregator.aggregate(jobs, {})

    assert len(snapshots) == 1
    snapshot = snapshots[0]
    assert (snapshot.job_id, snapshot.desired, snapshot.running) == ("web", 3, 0)
    assert snapshot.status_counts == {}


def test_mixed_statuses_count_only_running():
    jobs = [aggregator.Job(job_id="api", desired=2)]
    allocations = {"api": [_alloc("api", "running"), _alloc("api", "failed")]}

    [snapshot] = aggregator.aggregate(jobs, allocations)

    assert (snapshot.job_id, snapshot.desired, snapshot.running) == ("api", 2, 1)
    assert snapshot.status_counts == {"running": 1, "failed": 1}


@pytest.mark.parametrize(("desired", "running"), [(0, 0), (1, 1), (5, 3), (4, 0)])
def test_running_and_desired_reported_as_given(desired, running):
    jobs = [aggregator.Job(job_id="svc", desired=desired)]
    allocations = {
        "svc": [_alloc("svc", "running")] * running + [_alloc("svc", "complete")],
    }

    [snapshot] = aggregator.aggregate(jobs, allocations)

    assert snapshot.desired == desired
    assert snapshot.running == running
    assert snapshot.running <= snapshot.total_allocations


def test_unrecognized_status_is_bucketed():
    jobs = [aggregator.Job(job_id="api", desired=1)]
    allocations = {
        "api": [
            _alloc("api", "running"),
            _alloc("api", "evicting"),
            _alloc("api", ""),
            _alloc("api", "unknown"),
        ],
    }

    [snapshot] = aggregator.aggregate(jobs, allocations)

    assert snapshot.status_counts == {
        "running": 1,
        aggregator.UNRECOGNIZED_STATUS: 2,
        "unknown": 1,
    }
    assert snapshot.total_allocations == 4


def test_allocations_of_unlisted_jobs_are_ignored():
    jobs = [aggregator.Job(job_id="a", desired=1)]
    allocations = {
        "a": [_alloc("a", "running")],
        "zombie": [_alloc("zombie", "running")],
    }

    snapshots = aggregator.aggregate(jobs, allocations)

    assert [s.job_id for s in snapshots] == ["a"]


def test_same_job_id_in_two_namespaces_kept_apart():
    jobs = [
        aggregator.Job(job_id="web", namespace="prod", desired=2),
        aggregator.Job(job_id="web", namespace="dev", desired=1),
    ]
    allocations = {
        "web": [
            _alloc("web", "running", "prod"),
            _alloc("web", "running", "prod"),
            _alloc("web", "pending", "dev"),
        ],
    }

    snapshots = aggregator.aggregate(jobs, allocations)

    by_namespace = {s.namespace: s for s in snapshots}
    assert by_namespace["prod"].running == 2
    assert by_namespace["dev"].running == 0
    assert by_namespace["dev"].status_counts == {"pending": 1}


def test_output_independent_of_job_order():
    jobs = [aggregator.Job(job_id=name, desired=i) for i, name in enumerate("edcba")]
    allocations = {"c": [_alloc("c", "running")], "a": [_alloc("a", "lost")]}

    expected = aggregator.aggregate(jobs, allocations)
    shuffled = list(jobs)
    random.Random(7).shuffle(shuffled)

    assert aggregator.aggregate(shuffled, allocations) == expected
    assert [s.job_id for s in expected] == ["a", "b", "c", "d", "e"]


def test_health_counts_carried_into_snapshot():
    jobs = [aggregator.Job(job_id="api", desired=3, healthy=2, unhealthy=1)]

    [snapshot] = aggregator.aggregate(jobs, {"api": [_alloc("api", "running")]})

    assert (snapshot.healthy, snapshot.unhealthy) == (2, 1)
    assert snapshot.running == 1


def test_aggregate_does_not_mutate_inputs():
    jobs = [aggregator.Job(job_id="api", desired=2)]
    allocations = {"api": [_alloc("api", "running")]}

    aggregator.aggregate(jobs, allocations)
    aggregator.aggregate(jobs, allocations)

    assert allocations == {"api": [_alloc("api", "running")]}


# ---------------------------------------------------------------------------
# JobMetricSnapshot
# ---------------------------------------------------------------------------


def test_running_ratio():
    snapshot = aggregator.JobMetricSnapshot(
        job_id="api",
        namespace="default",
        desired=4,
        running=3,
    )
    assert snapshot.running_ratio == 0.75


def test_running_ratio_none_without_desired():
    snapshot = aggregator.JobMetricSnapshot(
        job_id="api",
        namespace="default",
        desired=0,
        running=0,
    )
    assert snapshot.running_ratio is None


# ---------------------------------------------------------------------------
# job_from_scale
# ---------------------------------------------------------------------------


def test_job_from_scale_sums_task_groups():
    entry = types.RawJobListEntry(id="api", namespace="prod")
    scale = types.RawJobScale.model_validate(
        {
            "JobID": "api",
            "TaskGroups": {"http": {"Desired": 3}, "worker": {"Desired": 2}},
        },
    )

    job = aggregator.job_from_scale(entry, scale)

    assert job == aggregator.Job(job_id="api", namespace="prod", desired=5)


def test_job_from_scale_sums_health_counts():
    entry = types.RawJobListEntry(id="api")
    scale = types.RawJobScale.model_validate(
        {
            "JobID": "api",
            "TaskGroups": {
                "http": {"Desired": 3, "Healthy": 2, "Unhealthy": 1},
                "worker": {"Desired": 2, "Healthy": 2},
            },
        },
    )

    job = aggregator.job_from_scale(entry, scale)

    assert (job.healthy, job.unhealthy) == (4, 1)


def test_job_from_scale_without_task_groups():
    entry = types.RawJobListEntry(id="empty")
    scale = types.RawJobScale(job_id="empty", task_groups=None)

    assert aggregator.job_from_scale(entry, scale).desired == 0
