"""
HTTP execution for loadrig.

HttpExecutor issues requests over one shared httpx.AsyncClient and turns
every outcome, including transport failures, into a RequestSample. It never
raises for network-level errors so a virtual user loop keeps going when the
target misbehaves.
"""

import asyncio
import json as jsonlib
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Collection, Optional, Union

import httpx

from .models import RequestSample

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_CONNECTIONS = 100
DEFAULT_EXPECTED_STATUSES = range(200, 400)

CANCELLED_ERROR = "request cancelled"

SampleCallback = Callable[[RequestSample], None]


def _describe_error(error: Exception) -> str:
    if isinstance(error, httpx.TimeoutException):
        return f"timeout: {error}" if str(error) else "timeout"
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


class HttpExecutor:
    """
    Executes HTTP requests and measures them.

    Example usage:
        async with HttpExecutor("http://localhost:3000") as executor:
            sample = await executor.execute("GET", "/health", tag="health")
            print(sample.status_code, sample.duration_ms)
    """

    def __init__(
        self,
        base_url: str = "",
        headers: Optional[dict[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the executor.

        Args:
            base_url: Base URL relative request paths are resolved against
            headers: Default headers sent with every request
            timeout: Default per-request timeout in seconds
            max_connections: Size of the shared connection pool
            transport: Optional transport override (e.g. httpx.MockTransport)
        """
        self.base_url = base_url
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.max_connections = max_connections
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "HttpExecutor":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def open(self) -> None:
        """Create the shared HTTP client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            limits=httpx.Limits(
                max_connections=self.max_connections,
                max_keepalive_connections=self.max_connections,
            ),
            transport=self._transport,
        )
        logger.debug(
            f"HTTP client opened (base_url={self.base_url!r}, "
            f"max_connections={self.max_connections})"
        )

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def execute(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: Optional[Union[str, bytes]] = None,
        timeout: Optional[float] = None,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        tag: Optional[str] = None,
        expected_statuses: Optional[Collection[int]] = None,
        on_sample: Optional[SampleCallback] = None,
    ) -> RequestSample:
        """Execute a single request.

        Args:
            method: HTTP method
            url: Absolute URL or path relative to the base URL
            headers: Extra headers merged over the defaults
            body: Raw request body
            timeout: Per-request timeout in seconds
            json: JSON-serializable body (mutually exclusive with body)
            params: Query string parameters
            tag: Endpoint tag for per-endpoint metrics (defaults to the path).
                Pass a fixed name such as "/products/{id}" for paths that
                carry ids; past the aggregator's max_endpoint_tags, new tags
                are folded into one overflow tag
            expected_statuses: Status codes that count as success
                (default 200-399)
            on_sample: Called with the sample before it is returned, and
                with an error sample if the request is cancelled

        Returns:
            RequestSample describing the outcome; transport failures have
            status_code None and error set

        Raises:
            RuntimeError: If the executor was not opened
            asyncio.CancelledError: If the calling task is cancelled
        """
        if self._client is None:
            raise RuntimeError("HttpExecutor is not open; use 'async with' or call open()")

        method = method.upper()
        tag = tag or url.split("?", 1)[0]
        expected = DEFAULT_EXPECTED_STATUSES if expected_statuses is None else expected_statuses
        if json is not None and body is None:
            body = jsonlib.dumps(json)
            headers = {"Content-Type": "application/json", **(headers or {})}

        started_at = datetime.now(timezone.utc)
        start_time = time.perf_counter()
        resolved_url = url
        bytes_sent = 0

        def elapsed_ms() -> float:
            return (time.perf_counter() - start_time) * 1000

        def error_sample(error: str) -> RequestSample:
            return RequestSample(
                endpoint_tag=tag,
                method=method,
                url=resolved_url,
                started_at=started_at,
                duration_ms=elapsed_ms(),
                error=error,
                bytes_sent=bytes_sent,
            )

        try:
            request = self._client.build_request(
                method,
                url,
                headers=headers,
                content=body,
                params=params,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
            resolved_url = str(request.url)
            bytes_sent = len(request.content)
            response = await self._client.send(request)
        except asyncio.CancelledError:
            sample = error_sample(CANCELLED_ERROR)
            if on_sample is not None:
                on_sample(sample)
            raise
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            sample = error_sample(_describe_error(e))
            logger.debug(f"{method} {resolved_url} failed: {sample.error}")
        else:
            content = response.content
            sample = RequestSample(
                endpoint_tag=tag,
                method=method,
                url=resolved_url,
                started_at=started_at,
                duration_ms=elapsed_ms(),
                status_code=response.status_code,
                expected=response.status_code in expected,
                bytes_sent=bytes_sent,
                bytes_received=len(content),
                headers=dict(response.headers),
                body=content,
            )

        if on_sample is not None:
            on_sample(sample)
        return sample
