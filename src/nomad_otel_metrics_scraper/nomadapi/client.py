"""Nomad HTTP API client.

Provides HTTP client with optional ACL token authentication, thread safety,
and automatic response validation using Pydantic models. Failures are
classified into transient and fatal errors; retrying is left to the caller.
"""

import json
import threading
import time
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx
import pydantic
import structlog

from .types import RawAllocation, RawJobListEntry, RawJobScale

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 10.0

# 4xx codes that can resolve on their own by the next poll.
_RETRYABLE_CLIENT_STATUSES = frozenset({404, 408, 429})


class FetchError(Exception):
    """Base class for failures talking to the Nomad API."""


class TransientFetchError(FetchError):
    """Network failure, timeout or server-side error. Retry next cycle."""


class FatalFetchError(FetchError):
    """Authentication failure, bad request or unparsable response."""


class NomadApiClient:
    """HTTP client for the Nomad HTTP API.

    Lightweight client that handles authentication, makes HTTP requests,
    validates responses, and returns Pydantic-validated data objects.
    Aggregation is delegated to the aggregator module.

    Thread-safe through thread-local storage of httpx.Client instances, so
    a long-lived worker pool keeps one connection pool per worker thread.
    Can be used as a context manager for automatic cleanup.
    """

    def __init__(
        self,
        base_url: str,
        token_file: str | Path | None = None,
        namespace: str = "default",
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the API client.

        Args:
            base_url: Base URL of the Nomad agent (e.g., "http://localhost:4646").
            token_file: Path to file containing a Nomad ACL token.
            namespace: Namespace used to list jobs ("*" for all namespaces).
            timeout: Per-request timeout in seconds (default: 10.0).
            transport: Optional httpx transport, used by tests.

        Raises:
            ValueError: If base_url is empty or timeout is not positive.
            FileNotFoundError: If token_file is specified but doesn't exist.
        """
        if not base_url:
            msg = "base_url cannot be empty"
            raise ValueError(msg)
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)

        self.base_url = base_url.rstrip("/")
        self.namespace = namespace
        self._timeout = timeout
        self._transport = transport

        self._headers = {"Accept": "application/json"}

        if token_file:
            token_path = Path(token_file)
            if not token_path.exists():
                msg = f"Token file not found: {token_file}"
                raise FileNotFoundError(msg)
            self._headers["X-Nomad-Token"] = token_path.read_text().strip()

        self._local = threading.local()
        self._clients: list[httpx.Client] = []
        self._clients_lock = threading.Lock()

    @property
    def client(self) -> httpx.Client:
        """Get or create the httpx client of the calling thread."""
        if not hasattr(self._local, "client") or self._local.client.is_closed:
            http_client = httpx.Client(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            )
            with self._clients_lock:
                self._clients.append(http_client)
            self._local.client = http_client
        return self._local.client

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context manager and cleanup resources."""
        self.close()

    def close(self):
        """Close the httpx clients created by every thread."""
        with self._clients_lock:
            clients, self._clients = self._clients, []
        for http_client in clients:
            if not http_client.is_closed:
                http_client.close()

    def _make_request(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make a GET request to the Nomad API and decode the JSON body.

        Args:
            endpoint: API endpoint path (e.g., "/v1/jobs").
            params: Optional query parameters.

        Returns:
            Decoded JSON response.

        Raises:
            TransientFetchError: On transport errors, timeouts, 5xx and
                retryable 4xx responses.
            FatalFetchError: On other 4xx responses or an undecodable body.
        """
        start_time = time.time()
        params = params or {}

        logger.debug(
            "Making API request",
            method="GET",
            endpoint=endpoint,
            params=params,
        )
        try:
            response = self.client.get(endpoint, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            duration = round(time.time() - start_time, 3)
            msg = f"GET {endpoint} returned HTTP {status}"
            if status >= 500 or status in _RETRYABLE_CLIENT_STATUSES:  # noqa: PLR2004
                logger.warning(
                    "API request failed",
                    endpoint=endpoint,
                    status=status,
                    duration_seconds=duration,
                )
                raise TransientFetchError(msg) from e
            logger.error(
                "API request rejected",
                endpoint=endpoint,
                status=status,
                duration_seconds=duration,
            )
            raise FatalFetchError(msg) from e
        except httpx.RequestError as e:
            logger.warning(
                "API request failed",
                endpoint=endpoint,
                error=repr(e),
                duration_seconds=round(time.time() - start_time, 3),
            )
            msg = f"GET {endpoint} failed: {e!r}"
            raise TransientFetchError(msg) from e

        logger.debug(
            "API request completed",
            endpoint=endpoint,
            duration_seconds=round(time.time() - start_time, 3),
        )
        try:
            return response.json()
        except json.JSONDecodeError as e:
            msg = f"GET {endpoint} returned invalid JSON"
            raise FatalFetchError(msg) from e

    def _job_path(self, job_id: str, suffix: str) -> str:
        return f"/v1/job/{quote(job_id, safe='')}/{suffix}"

    def list_jobs(self) -> list[RawJobListEntry]:
        """Fetch the job listing of the configured namespace.

        Returns:
            List of validated RawJobListEntry objects.

        Raises:
            TransientFetchError: If the request can be retried next cycle.
            FatalFetchError: If the request was rejected or is unparsable.
        """
        data = self._make_request("/v1/jobs", params={"namespace": self.namespace})
        try:
            return [RawJobListEntry.model_validate(entry) for entry in data]
        except (TypeError, pydantic.ValidationError) as e:
            msg = "Unexpected job listing payload"
            raise FatalFetchError(msg) from e

    def get_job_scale(self, job_id: str, namespace: str | None = None) -> RawJobScale:
        """Fetch the per task group scale status of a job.

        Args:
            job_id: Job identifier.
            namespace: Job namespace, defaults to the client's namespace.

        Returns:
            Validated RawJobScale.

        Raises:
            TransientFetchError: If the request can be retried next cycle.
            FatalFetchError: If the request was rejected or is unparsable.
        """
        data = self._make_request(
            self._job_path(job_id, "scale"),
            params={"namespace": namespace or self.namespace},
        )
        try:
            return RawJobScale.model_validate(data)
        except pydantic.ValidationError as e:
            msg = f"Unexpected scale payload for job {job_id}"
            raise FatalFetchError(msg) from e

    def list_allocations(
        self,
        job_id: str,
        namespace: str | None = None,
    ) -> list[RawAllocation]:
        """Fetch the allocations of a job.

        Args:
            job_id: Job identifier.
            namespace: Job namespace, defaults to the client's namespace.

        Returns:
            List of validated RawAllocation objects.

        Raises:
            TransientFetchError: If the request can be retried next cycle.
            FatalFetchError: If the request was rejected or is unparsable.
        """
        data = self._make_request(
            self._job_path(job_id, "allocations"),
            params={"namespace": namespace or self.namespace},
        )
        try:
            return [RawAllocation.model_validate(alloc) for alloc in data]
        except (TypeError, pydantic.ValidationError) as e:
            msg = f"Unexpected allocation payload for job {job_id}"
            raise FatalFetchError(msg) from e
