"""OpenTelemetry metric emitter for Nomad job snapshots.

Maps job snapshots onto named instruments of an injected meter provider.
Job gauges are observable instruments whose callbacks read the batch of the
latest completed poll cycle, so a job missing from a cycle leaves a gap
rather than repeating a stale reading.
"""

import threading
from collections.abc import Iterable, Sequence

import structlog
from opentelemetry.metrics import CallbackOptions, Observation
from opentelemetry.sdk.metrics import MeterProvider

from .aggregator import JobMetricSnapshot
from .telemetry import ExportFailures

logger = structlog.get_logger(__name__)

METER_NAME = "nomad_metrics"

# "job" is reserved by Prometheus, which commonly sits behind the collector.
JOB_ATTRIBUTE = "nomad_job"
NAMESPACE_ATTRIBUTE = "nomad_namespace"
STATUS_ATTRIBUTE = "client_status"

DEFAULT_FLUSH_TIMEOUT = 10.0


class ExportError(Exception):
    """Raised when the telemetry pipeline fails to flush a cycle."""


class MetricEmitter:
    """Records job snapshots through an OpenTelemetry meter provider.

    Each call to :meth:`emit` replaces the current batch of snapshots and
    forces a flush, yielding one export per poll cycle. The meter provider
    is passed in so tests can attach an in-memory reader.
    """

    def __init__(
        self,
        meter_provider: MeterProvider,
        flush_timeout: float = DEFAULT_FLUSH_TIMEOUT,
        export_failures: ExportFailures | None = None,
    ):
        """Initialize the emitter and register its instruments.

        Args:
            meter_provider: Provider owning the metric readers/exporters.
            flush_timeout: Upper bound in seconds for each flush.
            export_failures: Tally of failed exports filled by the exporters
                of the provider, checked after each flush.
        """
        self._provider = meter_provider
        self._flush_timeout_millis = flush_timeout * 1000
        self._export_failures = export_failures
        self._lock = threading.Lock()
        self._snapshots: tuple[JobMetricSnapshot, ...] = ()
        self._cycle_duration: float | None = None

        meter = meter_provider.get_meter(METER_NAME)
        meter.create_observable_gauge(
            "nomad_job_desired",
            callbacks=[self._observe_desired],
            description="Desired number of running allocations for each nomad job",
        )
        meter.create_observable_gauge(
            "nomad_job_running",
            callbacks=[self._observe_running],
            description="Number of running allocations for each nomad job",
        )
        meter.create_observable_gauge(
            "nomad_job_up",
            callbacks=[self._observe_healthy],
            description="Number of healthy allocations for each nomad job",
        )
        meter.create_observable_gauge(
            "nomad_job_down",
            callbacks=[self._observe_unhealthy],
            description="Number of unhealthy allocations for each nomad job",
        )
        meter.create_observable_gauge(
            "nomad_job_allocations",
            callbacks=[self._observe_allocations],
            description="Number of allocations for each nomad job per client status",
        )
        meter.create_observable_gauge(
            "nomad_job_status_ratio",
            callbacks=[self._observe_ratio],
            description="Running relative to desired count for each nomad job",
        )
        meter.create_observable_gauge(
            "nomad_scrape_duration",
            callbacks=[self._observe_duration],
            unit="s",
            description="Duration of the last completed poll cycle in seconds",
        )
        self._errors = meter.create_counter(
            "nomad_scrape_errors",
            description="Failed job fetches, aborted poll cycles and failed exports",
        )

    @staticmethod
    def _attributes(snapshot: JobMetricSnapshot) -> dict[str, str]:
        return {
            JOB_ATTRIBUTE: snapshot.job_id,
            NAMESPACE_ATTRIBUTE: snapshot.namespace,
        }

    def _current(self) -> tuple[JobMetricSnapshot, ...]:
        with self._lock:
            return self._snapshots

    def _observe_desired(self, _options: CallbackOptions) -> Iterable[Observation]:
        return [Observation(s.desired, self._attributes(s)) for s in self._current()]

    def _observe_running(self, _options: CallbackOptions) -> Iterable[Observation]:
        return [Observation(s.running, self._attributes(s)) for s in self._current()]

    def _observe_healthy(self, _options: CallbackOptions) -> Iterable[Observation]:
        return [Observation(s.healthy, self._attributes(s)) for s in self._current()]

    def _observe_unhealthy(self, _options: CallbackOptions) -> Iterable[Observation]:
        return [Observation(s.unhealthy, self._attributes(s)) for s in self._current()]

    def _observe_allocations(self, _options: CallbackOptions) -> Iterable[Observation]:
        observations = []
        for snapshot in self._current():
            for status, count in sorted(snapshot.status_counts.items()):
                attributes = self._attributes(snapshot)
                attributes[STATUS_ATTRIBUTE] = status
                observations.append(Observation(count, attributes))
        return observations

    def _observe_ratio(self, _options: CallbackOptions) -> Iterable[Observation]:
        return [
            Observation(s.running_ratio, self._attributes(s))
            for s in self._current()
            if s.running_ratio is not None
        ]

    def _observe_duration(self, _options: CallbackOptions) -> Iterable[Observation]:
        with self._lock:
            duration = self._cycle_duration
        if duration is None:
            return []
        return [Observation(duration)]

    def record_errors(self, count: int = 1) -> None:
        """Add to the scrape error counter."""
        if count > 0:
            self._errors.add(count)

    def emit(
        self,
        snapshots: Sequence[JobMetricSnapshot],
        cycle_duration: float | None = None,
    ) -> None:
        """Publish the snapshots of a poll cycle and flush the pipeline.

        Args:
            snapshots: Snapshots of the cycle; replaces the previous batch.
            cycle_duration: Duration of the cycle in seconds, if known.

        Raises:
            ExportError: If the flush fails, does not finish in time or an
                exporter reports a failed export.
        """
        with self._lock:
            self._snapshots = tuple(snapshots)
            if cycle_duration is not None:
                self._cycle_duration = cycle_duration

        logger.debug("Recorded job snapshots", jobs=len(snapshots))
        self.flush()

    def flush(self) -> None:
        """Force the meter provider to export what has been recorded.

        Raises:
            ExportError: If the flush fails, does not finish in time or an
                exporter reports a failed export.
        """
        try:
            flushed = self._provider.force_flush(
                timeout_millis=self._flush_timeout_millis,
            )
        except Exception as e:
            msg = f"Metric export failed: {e}"
            raise ExportError(msg) from e
        if not flushed:
            msg = "Metric export did not complete in time"
            raise ExportError(msg)
        if self._export_failures is None:
            return
        failed = self._export_failures.drain()
        if failed:
            msg = f"{failed} metric export(s) failed"
            raise ExportError(msg)
