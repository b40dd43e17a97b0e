"""Construction and teardown of the OpenTelemetry metrics pipeline.

Exporter endpoint, headers and TLS are read by the SDK exporters from the
standard ``OTEL_EXPORTER_OTLP_*`` environment variables. The export timeout
comes from the scraper configuration unless one of the OTLP timeout
variables is set. Readers never export on their own schedule; the emitter
flushes once per cycle.
"""

import math
import os
import sys
import threading
from collections.abc import Sequence

import structlog
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
    OTLPMetricExporter as GrpcMetricExporter,
)
from opentelemetry.exporter.otlp.proto.http.metric_exporter import (
    OTLPMetricExporter as HttpMetricExporter,
)
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricExporter,
    MetricExportResult,
    MetricReader,
    MetricsData,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

from .config import ConfigError

logger = structlog.get_logger(__name__)

DEFAULT_SERVICE_NAME = "nomad-scraper"

PROTOCOL_ENV_VARS = (
    "OTEL_EXPORTER_OTLP_METRICS_PROTOCOL",
    "OTEL_EXPORTER_OTLP_PROTOCOL",
)
DEFAULT_PROTOCOL = "http/protobuf"

TIMEOUT_ENV_VARS = (
    "OTEL_EXPORTER_OTLP_METRICS_TIMEOUT",
    "OTEL_EXPORTER_OTLP_TIMEOUT",
)

DEFAULT_SHUTDOWN_TIMEOUT = 10.0


class ExportFailures:
    """Thread-safe tally of failed exports since it was last drained."""

    def __init__(self):
        self._lock = threading.Lock()
        self._count = 0

    def record(self) -> None:
        with self._lock:
            self._count += 1

    def drain(self) -> int:
        """Return the number of failures recorded and reset the tally."""
        with self._lock:
            count, self._count = self._count, 0
        return count


class FailureRecordingExporter(MetricExporter):
    """Metric exporter that records the failed exports of another exporter.

    The SDK readers log and discard export results, so a failing collector
    would otherwise go unnoticed by the poll loop.
    """

    def __init__(self, exporter: MetricExporter, failures: ExportFailures):
        super().__init__(
            preferred_temporality=exporter._preferred_temporality,  # noqa: SLF001
            preferred_aggregation=exporter._preferred_aggregation,  # noqa: SLF001
        )
        self._exporter = exporter
        self._failures = failures

    def export(
        self,
        metrics_data: MetricsData,
        timeout_millis: float = 10_000,
        **kwargs,
    ) -> MetricExportResult:
        try:
            result = self._exporter.export(
                metrics_data,
                timeout_millis=timeout_millis,
                **kwargs,
            )
        except Exception:
            self._failures.record()
            raise
        if result is not MetricExportResult.SUCCESS:
            self._failures.record()
            logger.warning(
                "Metric export failed",
                exporter=type(self._exporter).__name__,
            )
        return result

    def force_flush(self, timeout_millis: float = 10_000) -> bool:
        return self._exporter.force_flush(timeout_millis=timeout_millis)

    def shutdown(self, timeout_millis: float = 30_000, **kwargs) -> None:
        self._exporter.shutdown(timeout_millis=timeout_millis, **kwargs)


def otlp_protocol() -> str:
    """Return the OTLP protocol selected through the environment."""
    for name in PROTOCOL_ENV_VARS:
        value = os.environ.get(name, "").strip().lower()
        if value:
            return value
    return DEFAULT_PROTOCOL


def _timeout_from_environment() -> bool:
    return any(os.environ.get(name, "").strip() for name in TIMEOUT_ENV_VARS)


def create_otlp_exporter(
    protocol: str | None = None,
    timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
) -> MetricExporter:
    """Create the OTLP metric exporter for the given protocol.

    The exporter retries within its timeout, so the timeout bounds every
    export including retries.

    Args:
        protocol: "grpc" or "http/protobuf"; read from the environment if None.
        timeout: Export timeout in seconds, ignored if an
            ``OTEL_EXPORTER_OTLP_[METRICS_]TIMEOUT`` variable is set.

    Returns:
        OTLP metric exporter.

    Raises:
        ConfigError: If the protocol is not supported.
    """
    protocol = protocol or otlp_protocol()
    if protocol == "grpc":
        exporter_class = GrpcMetricExporter
    elif protocol == "http/protobuf":
        exporter_class = HttpMetricExporter
    else:
        msg = f"Unsupported OTLP protocol: {protocol}"
        raise ConfigError(msg)
    if _timeout_from_environment():
        return exporter_class()
    return exporter_class(timeout=timeout)


def _manual_reader(exporter: MetricExporter, export_timeout: float) -> MetricReader:
    return PeriodicExportingMetricReader(
        exporter,
        export_interval_millis=math.inf,
        export_timeout_millis=export_timeout * 1000,
    )


def _service_name_in_resource_attributes() -> bool:
    for item in os.environ.get("OTEL_RESOURCE_ATTRIBUTES", "").split(","):
        key, _, _ = item.partition("=")
        if key.strip() == SERVICE_NAME:
            return True
    return False


def create_resource() -> Resource:
    """Create the resource describing this process.

    ``OTEL_SERVICE_NAME`` and a ``service.name`` entry of
    ``OTEL_RESOURCE_ATTRIBUTES`` take precedence over the default service
    name.
    """
    if os.environ.get("OTEL_SERVICE_NAME") or _service_name_in_resource_attributes():
        return Resource.create()
    return Resource.create({SERVICE_NAME: DEFAULT_SERVICE_NAME})


def create_meter_provider(
    debug: bool = False,
    export_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    extra_readers: Sequence[MetricReader] = (),
    otlp: bool = True,
    export_failures: ExportFailures | None = None,
) -> MeterProvider:
    """Build the meter provider used for the lifetime of the process.

    Args:
        debug: Also print exported metrics to stdout.
        export_timeout: Timeout in seconds for each export.
        extra_readers: Additional readers, e.g. an in-memory reader in tests.
        otlp: Whether to attach the OTLP exporter.
        export_failures: Tally receiving the failed exports of the OTLP and
            console exporters.

    Returns:
        Configured meter provider. It is not installed globally.

    Raises:
        ConfigError: If the configured OTLP protocol is not supported.
    """
    exporters: list[MetricExporter] = []
    if otlp:
        protocol = otlp_protocol()
        exporters.append(create_otlp_exporter(protocol, export_timeout))
        logger.info("Configured OTLP metric exporter", protocol=protocol)
    if debug:
        exporters.append(ConsoleMetricExporter(out=sys.stdout))
        logger.info("Mirroring metrics to stdout")

    if export_failures is not None:
        exporters = [FailureRecordingExporter(e, export_failures) for e in exporters]

    readers: list[MetricReader] = list(extra_readers)
    readers.extend(_manual_reader(e, export_timeout) for e in exporters)

    return MeterProvider(resource=create_resource(), metric_readers=readers)


def shutdown_meter_provider(
    provider: MeterProvider,
    timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
) -> None:
    """Flush recorded measurements and shut the pipeline down.

    Both steps are bounded by ``timeout``. Failures are logged, since the
    process is about to exit anyway.

    Args:
        provider: Meter provider created by :func:`create_meter_provider`.
        timeout: Upper bound in seconds for each step.
    """
    timeout_millis = timeout * 1000
    logger.info("Flushing metrics")
    try:
        if not provider.force_flush(timeout_millis=timeout_millis):
            logger.warning("Metric flush did not complete before shutdown")
    except Exception:
        logger.exception("Failed to flush metrics")

    logger.info("Shutting down meter provider")
    try:
        provider.shutdown(timeout_millis=timeout_millis)
    except Exception:
        logger.exception("Failed to shut down meter provider")
        return
    logger.info("Meter provider is shut down")
