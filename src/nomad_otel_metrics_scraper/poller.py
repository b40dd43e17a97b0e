"""Fixed-rate poll loop driving fetch, aggregation and export.

A single thread runs poll cycles one after another. Per-job lookups within
a cycle are fanned out to a bounded thread pool that lives as long as the
poller, so each worker keeps its HTTP connections between cycles.
"""

import threading
import time
from collections.abc import Callable
from concurrent import futures
from dataclasses import dataclass, field

import structlog

from . import aggregator, nomadapi
from .emitter import ExportError, MetricEmitter

logger = structlog.get_logger(__name__)

DEFAULT_MAX_CONCURRENCY = 8

# How often a waiting cycle checks for shutdown.
_CANCEL_CHECK_INTERVAL = 0.2

DEAD_JOB_STATUS = "dead"

CYCLE_OK = "ok"
CYCLE_PARTIAL = "partial"
CYCLE_ABORTED = "aborted"
CYCLE_CANCELLED = "cancelled"

JobFetch = tuple[aggregator.Job, list[nomadapi.types.RawAllocation]]


@dataclass
class CycleResult:
    """Outcome of a single poll cycle."""

    status: str
    snapshots: list[aggregator.JobMetricSnapshot] = field(default_factory=list)
    failed_jobs: list[str] = field(default_factory=list)
    duration: float = 0.0


class _CycleAborted(Exception):
    """A fatal fetch error ended the cycle."""


class _CycleCancelled(Exception):
    """Shutdown was requested while the cycle was running."""


def fetch_job(
    client: nomadapi.NomadApiClient,
    entry: nomadapi.types.RawJobListEntry,
) -> JobFetch:
    """Fetch the desired count and allocations of one job.

    Args:
        client: API client to use for fetching.
        entry: Job stub from the job listing.

    Returns:
        Tuple of the job and its allocations.

    Raises:
        TransientFetchError: If either request can be retried next cycle.
        FatalFetchError: If either request was rejected.
    """
    scale = client.get_job_scale(entry.id, entry.namespace)
    allocations = client.list_allocations(entry.id, entry.namespace)
    return aggregator.job_from_scale(entry, scale), allocations


class Poller:
    """Runs poll cycles at a fixed rate until stopped.

    Cycles are scheduled at ``start + interval``. A cycle that overruns the
    interval is followed immediately by the next one; cycles never overlap.
    """

    def __init__(
        self,
        client: nomadapi.NomadApiClient,
        emitter: MetricEmitter,
        interval: float,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the poller.

        Args:
            client: Shared API client, reused by every cycle.
            emitter: Emitter receiving the snapshots of each cycle.
            interval: Seconds between the starts of consecutive cycles.
            max_concurrency: Maximum number of jobs fetched in parallel.
            clock: Monotonic time source.

        Raises:
            ValueError: If interval or max_concurrency is not positive.
        """
        if interval <= 0:
            msg = "interval must be positive"
            raise ValueError(msg)
        if max_concurrency <= 0:
            msg = "max_concurrency must be positive"
            raise ValueError(msg)

        self._client = client
        self._emitter = emitter
        self._interval = interval
        self._clock = clock
        self._stop_event = threading.Event()
        self._cycle_lock = threading.Lock()
        self._executor = futures.ThreadPoolExecutor(
            max_workers=max_concurrency,
            thread_name_prefix="nomad-fetch",
        )

    @property
    def stopped(self) -> bool:
        """Whether shutdown has been requested."""
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request shutdown. Safe to call from a signal handler."""
        self._stop_event.set()

    def close(self) -> None:
        """Release the worker pool and the client's HTTP connections."""
        self._executor.shutdown(wait=True, cancel_futures=True)
        self._client.close()

    def run(self) -> None:
        """Run poll cycles until :meth:`stop` is called."""
        logger.info("Poll loop started", interval_seconds=self._interval)
        try:
            while not self._stop_event.is_set():
                started = self._clock()
                try:
                    self.run_cycle()
                except Exception:
                    logger.exception("Poll cycle failed unexpectedly")
                    self._emitter.record_errors()
                delay = started + self._interval - self._clock()
                if delay <= 0:
                    logger.warning(
                        "Poll cycle overran interval",
                        overrun_seconds=round(-delay, 3),
                    )
                    continue
                self._stop_event.wait(delay)
        finally:
            self._executor.shutdown(wait=True, cancel_futures=True)
            logger.info("Poll loop stopped")

    def run_cycle(self) -> CycleResult:
        """Run one fetch, aggregate and emit cycle.

        Fetch and export failures are logged and reflected in the returned
        result rather than raised.

        Returns:
            The outcome of the cycle.
        """
        with self._cycle_lock:
            started = self._clock()
            result = self._poll()
            result.duration = self._clock() - started

            if result.status == CYCLE_CANCELLED:
                logger.info("Poll cycle cancelled, skipping export")
                return result

            if result.status == CYCLE_ABORTED:
                self._emitter.record_errors()
            else:
                self._emitter.record_errors(len(result.failed_jobs))

            try:
                self._emitter.emit(result.snapshots, cycle_duration=result.duration)
            except ExportError:
                logger.exception("Failed to export metrics")
                self._emitter.record_errors()

            log = logger.warning if result.failed_jobs else logger.info
            log(
                "Poll cycle finished",
                status=result.status,
                jobs=len(result.snapshots),
                failed_jobs=",".join(result.failed_jobs) or None,
                duration_seconds=round(result.duration, 3),
            )
            return result

    def _poll(self) -> CycleResult:
        try:
            entries = self._client.list_jobs()
        except nomadapi.TransientFetchError:
            logger.warning("Failed to list jobs, aborting cycle", exc_info=True)
            return CycleResult(status=CYCLE_ABORTED)
        except nomadapi.FatalFetchError:
            logger.exception("Job listing rejected, aborting cycle")
            return CycleResult(status=CYCLE_ABORTED)

        entries = [e for e in entries if e.status != DEAD_JOB_STATUS]
        logger.debug("Listed jobs", jobs=len(entries))

        try:
            fetched, failed = self._fetch_all(entries)
        except _CycleAborted:
            return CycleResult(status=CYCLE_ABORTED)
        except _CycleCancelled:
            return CycleResult(status=CYCLE_CANCELLED)

        if self._stop_event.is_set():
            return CycleResult(status=CYCLE_CANCELLED)

        allocations_by_job: dict[str, list[nomadapi.types.RawAllocation]] = {}
        for job, allocations in fetched:
            allocations_by_job.setdefault(job.job_id, []).extend(allocations)
        snapshots = aggregator.aggregate(
            [job for job, _ in fetched],
            allocations_by_job,
        )

        return CycleResult(
            status=CYCLE_PARTIAL if failed else CYCLE_OK,
            snapshots=snapshots,
            failed_jobs=sorted(failed),
        )

    def _fetch_all(
        self,
        entries: list[nomadapi.types.RawJobListEntry],
    ) -> tuple[list[JobFetch], list[str]]:
        """Fetch every job through the worker pool and join the results.

        Returns:
            Tuple of (fetched jobs, ids of jobs skipped after a transient error).

        Raises:
            _CycleAborted: If any job fetch failed fatally.
            _CycleCancelled: If shutdown was requested while waiting.
        """
        pending = {
            self._executor.submit(fetch_job, self._client, entry): entry
            for entry in entries
        }
        fetched: list[JobFetch] = []
        failed: list[str] = []

        try:
            while pending:
                done, _ = futures.wait(
                    pending,
                    timeout=_CANCEL_CHECK_INTERVAL,
                    return_when=futures.FIRST_COMPLETED,
                )
                if self._stop_event.is_set():
                    raise _CycleCancelled
                for future in done:
                    entry = pending.pop(future)
                    try:
                        fetched.append(future.result())
                    except nomadapi.TransientFetchError:
                        logger.warning(
                            "Failed to fetch job, skipping it this cycle",
                            job=entry.id,
                            namespace=entry.namespace,
                            exc_info=True,
                        )
                        failed.append(entry.id)
                    except nomadapi.FatalFetchError:
                        logger.exception(
                            "Job fetch rejected, aborting cycle",
                            job=entry.id,
                            namespace=entry.namespace,
                        )
                        raise _CycleAborted from None
        finally:
            for future in pending:
                future.cancel()

        return fetched, failed
