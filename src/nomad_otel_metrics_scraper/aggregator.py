"""Job-level aggregation of Nomad allocations.

Turns raw job scale and allocation records into per-job snapshots of
desired and running counts. Everything here is a pure function of its
inputs; snapshots are rebuilt from scratch every poll cycle.
"""

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from . import nomadapi

RUNNING_STATUS = "running"

KNOWN_CLIENT_STATUSES = frozenset(
    {"pending", "running", "complete", "failed", "lost", "unknown"},
)

# Bucket for client statuses this exporter does not know about.
UNRECOGNIZED_STATUS = "unrecognized"


@dataclass(frozen=True)
class Job:
    """A scheduled job and the number of instances it asks for."""

    job_id: str
    namespace: str = "default"
    desired: int = 0
    healthy: int = 0
    unhealthy: int = 0


@dataclass
class JobMetricSnapshot:
    """Aggregated state of one job for one poll cycle."""

    job_id: str
    namespace: str
    desired: int
    running: int
    status_counts: dict[str, int] = field(default_factory=dict)
    healthy: int = 0
    unhealthy: int = 0

    @property
    def total_allocations(self) -> int:
        """Number of allocations seen for the job, in any status."""
        return sum(self.status_counts.values())

    @property
    def running_ratio(self) -> float | None:
        """Running relative to desired count, None if nothing is desired."""
        if self.desired <= 0:
            return None
        return self.running / self.desired


def job_from_scale(
    entry: nomadapi.types.RawJobListEntry,
    scale: nomadapi.types.RawJobScale,
) -> Job:
    """Build a Job from its listing entry and scale status.

    Desired, healthy and unhealthy counts are summed over every task group.

    Args:
        entry: Job stub from the job listing.
        scale: Scale status of the same job.

    Returns:
        Job with its summed counts.
    """
    groups = list((scale.task_groups or {}).values())
    return Job(
        job_id=entry.id,
        namespace=entry.namespace,
        desired=sum(max(group.desired, 0) for group in groups),
        healthy=sum(max(group.healthy, 0) for group in groups),
        unhealthy=sum(max(group.unhealthy, 0) for group in groups),
    )


def _count_by_status(
    allocations: Iterable[nomadapi.types.RawAllocation],
) -> dict[str, int]:
    """Count allocations grouped by client status.

    Args:
        allocations: Allocations of a single job.

    Returns:
        Dictionary mapping client status to allocation count.
    """
    counts: dict[str, int] = {}
    for alloc in allocations:
        status = alloc.client_status.lower()
        if status not in KNOWN_CLIENT_STATUSES:
            status = UNRECOGNIZED_STATUS
        counts[status] = counts.get(status, 0) + 1
    return counts


def aggregate(
    jobs: Iterable[Job],
    allocations_by_job: Mapping[str, Sequence[nomadapi.types.RawAllocation]],
) -> list[JobMetricSnapshot]:
    """Aggregate allocations into one snapshot per job.

    A job without an entry in ``allocations_by_job`` still produces a
    snapshot with a running count of 0. Snapshots are ordered by namespace
    and job id, independently of the order of ``jobs``.

    Args:
        jobs: Jobs to report on.
        allocations_by_job: Allocations keyed by job id. Allocations from
            another namespace than the job's are ignored.

    Returns:
        List of snapshots, one per distinct (namespace, job id).
    """
    snapshots: dict[tuple[str, str], JobMetricSnapshot] = {}
    for job in jobs:
        allocations = [
            alloc
            for alloc in allocations_by_job.get(job.job_id, ())
            if alloc.namespace == job.namespace
        ]
        status_counts = _count_by_status(allocations)
        snapshots[(job.namespace, job.job_id)] = JobMetricSnapshot(
            job_id=job.job_id,
            namespace=job.namespace,
            desired=job.desired,
            running=status_counts.get(RUNNING_STATUS, 0),
            status_counts=status_counts,
            healthy=job.healthy,
            unhealthy=job.unhealthy,
        )
    return [snapshots[key] for key in sorted(snapshots)]
