"""Configuration for the Nomad OTLP metrics scraper."""

import json
import pathlib
import re
from typing import Any

import pydantic

from . import nomadapi

CONFIG_ENV_VAR = "NOMAD_SCRAPER_CONFIG_PATH"

DEFAULT_NOMAD_URL = "http://localhost:4646"
DEFAULT_POLL_INTERVAL = 60.0

_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)")


class ConfigError(Exception):
    """Raised when the scraper configuration is missing or invalid."""


def parse_duration(value: str | float) -> float:
    """Parse a duration into seconds.

    Accepts numbers (seconds) and strings made of one or more
    ``<number><unit>`` parts, e.g. "60s", "1m30s", "500ms" or "2h".

    Args:
        value: Duration as seconds or as a duration string.

    Returns:
        Duration in seconds.

    Raises:
        ValueError: If the string is not a valid duration.
    """
    if isinstance(value, int | float):
        return float(value)

    text = value.strip().lower()
    try:
        return float(text)
    except ValueError:
        pass

    seconds = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if text[position : match.start()].strip():
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or text[position:].strip():
        msg = f"invalid duration: {value!r}"
        raise ValueError(msg)
    return seconds


class ScraperConfig(pydantic.BaseModel):
    """Configuration for the Nomad OTLP metrics scraper."""

    nomad_url: pydantic.HttpUrl = pydantic.Field(
        DEFAULT_NOMAD_URL,
        description="URL of the nomad instance to contact",
        validate_default=True,
    )
    nomad_token_file: str | None = pydantic.Field(
        None,
        description="Path to file containing a Nomad ACL token",
    )
    nomad_namespace: str = pydantic.Field(
        "default",
        description="Namespace to poll, '*' for all namespaces",
        min_length=1,
    )
    poll_interval: float = pydantic.Field(
        DEFAULT_POLL_INTERVAL,
        description="Seconds between the starts of two poll cycles",
        gt=0,
    )
    request_timeout: float | None = pydantic.Field(
        None,
        description="Per-request timeout in seconds, shorter than the interval",
        gt=0,
    )
    export_timeout: float | None = pydantic.Field(
        None,
        description="Metric flush timeout in seconds, shorter than the interval",
        gt=0,
    )
    max_concurrency: int = pydantic.Field(
        8,
        description="Maximum number of jobs fetched in parallel",
        gt=0,
    )
    debug: bool = pydantic.Field(
        False,
        description="Mirror exported metrics to stdout",
    )
    log_level: str = pydantic.Field("INFO", description="Logging level")

    @pydantic.field_validator(
        "poll_interval",
        "request_timeout",
        "export_timeout",
        mode="before",
    )
    @classmethod
    def _parse_durations(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_duration(value)
        return value

    @pydantic.model_validator(mode="after")
    def _bound_timeouts(self) -> "ScraperConfig":
        default = min(nomadapi.DEFAULT_TIMEOUT, self.poll_interval / 2)
        if self.request_timeout is None:
            self.request_timeout = default
        if self.export_timeout is None:
            self.export_timeout = default
        if self.request_timeout >= self.poll_interval:
            msg = "request_timeout must be shorter than poll_interval"
            raise ValueError(msg)
        if self.export_timeout >= self.poll_interval:
            msg = "export_timeout must be shorter than poll_interval"
            raise ValueError(msg)
        return self


def load_config(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> ScraperConfig:
    """Build the configuration from an optional JSON file and overrides.

    Args:
        config_path: Path of a JSON configuration file, if any.
        overrides: Values taking precedence over the file, e.g. CLI flags.
            Entries set to None are ignored.

    Returns:
        Validated configuration.

    Raises:
        ConfigError: If the file is missing or unreadable, or a value is invalid.
    """
    data: dict[str, Any] = {}
    if config_path:
        path = pathlib.Path(config_path)
        if not path.exists():
            msg = f"Configuration file not found: {config_path}"
            raise ConfigError(msg)
        try:
            with path.open("r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            msg = f"Unable to read configuration file {config_path}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(data, dict):
            msg = f"Configuration file {config_path} must contain a JSON object"
            raise ConfigError(msg)

    data.update({k: v for k, v in (overrides or {}).items() if v is not None})

    try:
        return ScraperConfig(**data)
    except pydantic.ValidationError as e:
        raise ConfigError(str(e)) from e
