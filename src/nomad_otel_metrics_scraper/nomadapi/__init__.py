"""Nomad HTTP API client package.

Provides a lightweight HTTP client for the Nomad HTTP API that returns
raw, validated API response types with minimal processing. Aggregation
and metric recording are handled elsewhere.

Exports:
    NomadApiClient: HTTP client with authentication and error handling.
    FetchError, TransientFetchError, FatalFetchError: failure taxonomy.
    types: Module containing Pydantic models for API responses.
    DEFAULT_TIMEOUT: Default HTTP request timeout.
"""

from . import types
from .client import (
    DEFAULT_TIMEOUT,
    FatalFetchError,
    FetchError,
    NomadApiClient,
    TransientFetchError,
)

__all__ = [
    "DEFAULT_TIMEOUT",
    "FatalFetchError",
    "FetchError",
    "NomadApiClient",
    "TransientFetchError",
    "types",
]
