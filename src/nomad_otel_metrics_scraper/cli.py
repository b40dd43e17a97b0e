"""Command line entry point for the Nomad OTLP metrics scraper."""

import argparse
import logging
import os
import signal
import sys
from collections.abc import Sequence

import structlog

from . import __version__, config, nomadapi, poller, telemetry
from .emitter import MetricEmitter

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1


def configure_logging(log_level_name: str) -> None:
    """Configure structlog for logfmt output.

    Records of the standard library ``logging`` module, such as those of
    the OpenTelemetry SDK, are rendered the same way.
    """
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)
    shared_processors = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.EventRenamer("msg"),
        structlog.processors.format_exc_info,
    ]
    renderer = structlog.processors.LogfmtRenderer(
        key_order=("timestamp", "level", "msg"),
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            *shared_processors,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[structlog.stdlib.add_logger_name, *shared_processors],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        ),
    )
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser.

    Flags default to None so that values from a configuration file are
    only overridden by flags that were actually given.
    """
    parser = argparse.ArgumentParser(
        prog="nomad-otel-metrics-scraper",
        description="Export per-job Nomad allocation metrics over OTLP.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-u",
        "--nomad-url",
        dest="nomad_url",
        help=f"URL of the nomad instance (default: {config.DEFAULT_NOMAD_URL})",
    )
    parser.add_argument(
        "-n",
        "--nomad-poll-interval",
        dest="poll_interval",
        help="How often to query nomad, e.g. 60s or 1m30s (default: 60s)",
    )
    parser.add_argument(
        "--nomad-namespace",
        dest="nomad_namespace",
        help="Namespace to poll, '*' for all namespaces (default: default)",
    )
    parser.add_argument(
        "--nomad-token-file",
        dest="nomad_token_file",
        help="File containing a Nomad ACL token",
    )
    parser.add_argument(
        "--request-timeout",
        dest="request_timeout",
        help="Timeout of each Nomad API request (default: min(10s, interval/2))",
    )
    parser.add_argument(
        "--max-concurrency",
        dest="max_concurrency",
        type=int,
        help="Maximum number of jobs fetched in parallel (default: 8)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Print the metrics we are publishing to stdout",
    )
    parser.add_argument("--log-level", dest="log_level", help="Logging level")
    parser.add_argument(
        "--config",
        dest="config_path",
        default=os.environ.get(config.CONFIG_ENV_VAR),
        help=f"JSON configuration file (env: {config.CONFIG_ENV_VAR})",
    )
    return parser


def create_poller(
    scraper_config: config.ScraperConfig,
    metric_emitter: MetricEmitter,
) -> poller.Poller:
    """Construct the API client and poll loop from validated config."""
    client = nomadapi.NomadApiClient(
        base_url=str(scraper_config.nomad_url),
        token_file=scraper_config.nomad_token_file,
        namespace=scraper_config.nomad_namespace,
        timeout=scraper_config.request_timeout,
    )
    logger.info("Created shared Nomad client", base_url=client.base_url)
    return poller.Poller(
        client=client,
        emitter=metric_emitter,
        interval=scraper_config.poll_interval,
        max_concurrency=scraper_config.max_concurrency,
    )


def _install_signal_handlers(poll_loop: poller.Poller) -> None:
    def handle(signum, _frame):
        logger.info("Received shutdown signal", signal=signal.Signals(signum).name)
        poll_loop.stop()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the scraper until SIGINT or SIGTERM.

    Returns:
        Process exit code.
    """
    args = build_parser().parse_args(argv)
    overrides = vars(args).copy()
    config_path = overrides.pop("config_path")

    try:
        scraper_config = config.load_config(config_path, overrides)
    except config.ConfigError as e:
        configure_logging(args.log_level or "INFO")
        logger.error("Invalid configuration", error=str(e))
        return EXIT_CONFIG_ERROR

    configure_logging(scraper_config.log_level)
    logger.info(
        "Polling nomad",
        nomad_url=str(scraper_config.nomad_url),
        interval_seconds=scraper_config.poll_interval,
        namespace=scraper_config.nomad_namespace,
    )

    export_failures = telemetry.ExportFailures()
    try:
        meter_provider = telemetry.create_meter_provider(
            debug=scraper_config.debug,
            export_timeout=scraper_config.export_timeout,
            export_failures=export_failures,
        )
    except config.ConfigError as e:
        logger.error("Invalid telemetry configuration", error=str(e))
        return EXIT_CONFIG_ERROR

    metric_emitter = MetricEmitter(
        meter_provider,
        flush_timeout=scraper_config.export_timeout,
        export_failures=export_failures,
    )
    try:
        poll_loop = create_poller(scraper_config, metric_emitter)
    except (ValueError, OSError) as e:
        logger.error("Unable to start poller", error=str(e))
        telemetry.shutdown_meter_provider(meter_provider, scraper_config.export_timeout)
        return EXIT_CONFIG_ERROR

    _install_signal_handlers(poll_loop)
    try:
        poll_loop.run()
    finally:
        poll_loop.close()
        telemetry.shutdown_meter_provider(meter_provider, scraper_config.export_timeout)

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
