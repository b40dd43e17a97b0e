"""Tests for the command line entry point."""

import logging
import signal
from unittest.mock import MagicMock, patch

import pytest
import structlog

from nomad_otel_metrics_scraper import cli, config, poller


@pytest.fixture(autouse=True)
def _no_config_file(monkeypatch):
    monkeypatch.delenv(config.CONFIG_ENV_VAR, raising=False)


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root_logger = logging.getLogger()
    level = root_logger.level
    yield
    for handler in list(root_logger.handlers):
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root_logger.removeHandler(handler)
    root_logger.setLevel(level)


def test_parser_leaves_unset_flags_empty():
    args = cli.build_parser().parse_args([])

    assert args.nomad_url is None
    assert args.poll_interval is None
    assert args.debug is None


def test_parser_reads_flags():
    args = cli.build_parser().parse_args(
        ["-u", "http://nomad:4646", "-n", "30s", "--debug"],
    )

    assert args.nomad_url == "http://nomad:4646"
    assert args.poll_interval == "30s"
    assert args.debug is True


@pytest.mark.parametrize(
    "argv",
    [
        ["--nomad-url", "not a url"],
        ["--nomad-poll-interval", "sometimes"],
        ["--nomad-poll-interval", "5s", "--request-timeout", "5s"],
    ],
)
def test_main_exits_nonzero_on_bad_config(argv):
    with patch.object(cli.telemetry, "create_meter_provider") as create_provider:
        exit_code = cli.main(argv)

    assert exit_code == cli.EXIT_CONFIG_ERROR
    create_provider.assert_not_called()


def test_main_exits_nonzero_on_missing_token_file(tmp_path):
    provider = MagicMock()
    with (
        patch.object(cli.telemetry, "create_meter_provider", return_value=provider),
        patch.object(cli.telemetry, "shutdown_meter_provider") as shutdown,
    ):
        exit_code = cli.main(["--nomad-token-file", str(tmp_path / "missing")])

    assert exit_code == cli.EXIT_CONFIG_ERROR
    shutdown.assert_called_once()


def test_main_runs_loop_then_shuts_down_exporter():
    provider = MagicMock()
    calls = []
    poll_loop = MagicMock(spec=poller.Poller)
    poll_loop.run.side_effect = lambda: calls.append("run")
    poll_loop.close.side_effect = lambda: calls.append("close")

    with (
        patch.object(cli.telemetry, "create_meter_provider", return_value=provider),
        patch.object(
            cli.telemetry,
            "shutdown_meter_provider",
            side_effect=lambda *_args: calls.append("shutdown"),
        ),
        patch.object(cli, "create_poller", return_value=poll_loop),
        patch.object(cli, "_install_signal_handlers"),
    ):
        exit_code = cli.main(["-n", "30s", "--debug"])

    assert exit_code == cli.EXIT_OK
    assert calls == ["run", "close", "shutdown"]


def test_create_poller_uses_configured_timeout():
    scraper_config = config.ScraperConfig(
        nomad_url="http://nomad:4646",
        poll_interval="30s",
        request_timeout="5s",
    )
    poll_loop = cli.create_poller(scraper_config, MagicMock())
    try:
        assert poll_loop._client.base_url == "http://nomad:4646"
        assert poll_loop._client._timeout == 5.0
    finally:
        poll_loop.close()


# ---------------------------------------------------------------------------
# Signals and logging
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("signum", [signal.SIGTERM, signal.SIGINT])
def test_shutdown_signal_stops_poll_loop(signum):
    poll_loop = MagicMock(spec=poller.Poller)
    previous = {s: signal.getsignal(s) for s in (signal.SIGINT, signal.SIGTERM)}
    try:
        cli._install_signal_handlers(poll_loop)
        handler = signal.getsignal(signum)
        handler(signum, None)
    finally:
        for s, h in previous.items():
            signal.signal(s, h)

    poll_loop.stop.assert_called_once_with()


def test_stdlib_logging_rendered_as_logfmt(capsys):
    cli.configure_logging("INFO")

    logging.getLogger("opentelemetry.sdk.metrics").warning("Failed to export batch")
    logging.getLogger("opentelemetry.sdk.metrics").debug("not shown")

    out = capsys.readouterr().out
    assert "level=warning" in out
    assert 'msg="Failed to export batch"' in out
    assert "logger=opentelemetry.sdk.metrics" in out
    assert "not shown" not in out
