"""
Workload scripts and the per-iteration API handed to them.

A workload is a plain coroutine function:

    async def browse(vu):
        response = await vu.get("/api/products", tag="products")
        vu.check(response, {"status is 200": lambda r: r.status == 200})
        await vu.sleep(1)

It is referenced from a run configuration as "package.module:function" or
"path/to/file.py:function".
"""

import asyncio
import importlib
import importlib.util
import inspect
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Collection, Optional, Union

from .executor import HttpExecutor
from .metrics import MetricsAggregator
from .models import MetricType, RequestSample

logger = logging.getLogger(__name__)

Workload = Callable[["VUContext"], Awaitable[None]]


class WorkloadResolutionError(Exception):
    """Raised when a workload reference cannot be turned into a coroutine function."""


def resolve_workload(reference: str, base_dir: Optional[Path] = None) -> Workload:
    """Import the workload a configuration refers to.

    Args:
        reference: "package.module:function" or "path/to/file.py:function"
        base_dir: Directory relative file paths are resolved against

    Returns:
        The workload coroutine function

    Raises:
        WorkloadResolutionError: If the module or function cannot be loaded,
            or the target is not a coroutine function
    """
    if not isinstance(reference, str) or ":" not in reference:
        raise WorkloadResolutionError(
            f"Workload reference must look like 'module:function', got {reference!r}"
        )

    module_ref, _, attribute = reference.rpartition(":")
    if not module_ref or not attribute:
        raise WorkloadResolutionError(f"Invalid workload reference: {reference!r}")

    if module_ref.endswith(".py") or "/" in module_ref or "\\" in module_ref:
        module = _load_module_from_file(module_ref, base_dir)
    else:
        try:
            module = importlib.import_module(module_ref)
        except ImportError as e:
            raise WorkloadResolutionError(f"Cannot import workload module '{module_ref}': {e}") from e

    try:
        target = getattr(module, attribute)
    except AttributeError as e:
        raise WorkloadResolutionError(
            f"Workload module '{module_ref}' has no attribute '{attribute}'"
        ) from e

    if not inspect.iscoroutinefunction(target):
        raise WorkloadResolutionError(
            f"Workload '{reference}' must be an 'async def' function"
        )

    logger.debug(f"Resolved workload {reference}")
    return target


def _load_module_from_file(path_ref: str, base_dir: Optional[Path]) -> Any:
    path = Path(path_ref)
    if not path.is_absolute() and base_dir is not None:
        path = Path(base_dir) / path
    if not path.is_file():
        raise WorkloadResolutionError(f"Workload file not found: {path}")

    spec = importlib.util.spec_from_file_location(f"loadrig_workload_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise WorkloadResolutionError(f"Cannot load workload file: {path}")

    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise WorkloadResolutionError(f"Error while loading workload file {path}: {e}") from e
    return module


class MetricHandle:
    """Base class for custom metric handles bound to one virtual user."""

    metric_type: MetricType

    def __init__(self, name: str, aggregator: MetricsAggregator, shard_key: Any):
        aggregator.register(name, self.metric_type)
        self.name = name
        self._aggregator = aggregator
        self._shard_key = shard_key


class CounterHandle(MetricHandle):
    metric_type = MetricType.COUNTER

    def add(self, delta: float = 1) -> None:
        self._aggregator.record_counter(self.name, delta, self._shard_key)


class RateHandle(MetricHandle):
    metric_type = MetricType.RATE

    def add(self, value: Union[bool, float]) -> None:
        self._aggregator.record_rate(self.name, value, self._shard_key)


class TrendHandle(MetricHandle):
    metric_type = MetricType.TREND

    def add(self, value: float) -> None:
        self._aggregator.record_trend(self.name, value, self._shard_key)


class GaugeHandle(MetricHandle):
    metric_type = MetricType.GAUGE

    def set(self, value: float) -> None:
        self._aggregator.set_gauge(self.name, value, self._shard_key)


class VUContext:
    """
    Everything a workload iteration can use.

    One context is created per virtual user and reused across its
    iterations; iteration is updated before each call. Use state to keep
    values (such as an auth token) between iterations of the same user.

    Attributes:
        vu_id: Run-wide unique virtual user id
        scenario: Name of the scenario the user belongs to
        iteration: Zero-based index of the current iteration
        tags: Scenario tags from the run configuration
        state: Per-user scratch space that survives across iterations
        logger: Logger that prefixes messages with scenario and user id
    """

    def __init__(
        self,
        vu_id: int,
        scenario: str,
        executor: HttpExecutor,
        aggregator: MetricsAggregator,
        tags: Optional[dict[str, str]] = None,
    ):
        self.vu_id = vu_id
        self.scenario = scenario
        self.iteration = 0
        self.tags = dict(tags or {})
        self.state: dict[str, Any] = {}
        self.logger = logging.LoggerAdapter(
            logging.getLogger(f"loadrig.vu.{scenario}"),
            {"vu_id": vu_id, "scenario": scenario},
        )
        self._executor = executor
        self._aggregator = aggregator
        self._handles: dict[str, MetricHandle] = {}

    def _record_sample(self, sample: RequestSample) -> None:
        self._aggregator.record_sample(sample, shard_key=self.vu_id)

    def url(self, path: str = "") -> str:
        """Join a path onto the configured base URL."""
        if path.startswith(("http://", "https://")):
            return path
        base = self._executor.base_url.rstrip("/")
        if not path:
            return base
        return f"{base}/{path.lstrip('/')}"

    @staticmethod
    def auth_headers(token: str, headers: Optional[dict[str, str]] = None) -> dict[str, str]:
        """Headers carrying a bearer token, merged over any extra headers."""
        result = dict(headers or {})
        result["Authorization"] = f"Bearer {token}"
        return result

    async def request(
        self,
        method: str,
        path: str,
        headers: Optional[dict[str, str]] = None,
        body: Optional[Union[str, bytes]] = None,
        timeout: Optional[float] = None,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        tag: Optional[str] = None,
        expected_statuses: Optional[Collection[int]] = None,
    ) -> RequestSample:
        """Issue a request and record it into the run's HTTP metrics."""
        return await self._executor.execute(
            method,
            path,
            headers=headers,
            body=body,
            timeout=timeout,
            json=json,
            params=params,
            tag=tag,
            expected_statuses=expected_statuses,
            on_sample=self._record_sample,
        )

    async def get(self, path: str, **kwargs: Any) -> RequestSample:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> RequestSample:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> RequestSample:
        return await self.request("PUT", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> RequestSample:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> RequestSample:
        return await self.request("DELETE", path, **kwargs)

    def check(self, value: Any, checks: dict[str, Callable[[Any], Any]]) -> bool:
        """Evaluate named predicates against a value and record each outcome.

        A predicate that raises counts as a failed check.

        Returns:
            True if every predicate passed
        """
        all_passed = True
        for name, predicate in checks.items():
            try:
                passed = bool(predicate(value))
            except Exception as e:
                self.logger.debug(f"check '{name}' raised {type(e).__name__}: {e}")
                passed = False
            self._aggregator.record_check(name, passed, shard_key=self.vu_id)
            all_passed = all_passed and passed
        return all_passed

    def _handle(self, name: str, handle_cls: type) -> Any:
        handle = self._handles.get(name)
        if handle is None or not isinstance(handle, handle_cls):
            handle = handle_cls(name, self._aggregator, self.vu_id)
            self._handles[name] = handle
        return handle

    def counter(self, name: str) -> CounterHandle:
        """Handle for a custom counter metric."""
        return self._handle(name, CounterHandle)

    def rate(self, name: str) -> RateHandle:
        """Handle for a custom rate metric."""
        return self._handle(name, RateHandle)

    def trend(self, name: str) -> TrendHandle:
        """Handle for a custom trend metric."""
        return self._handle(name, TrendHandle)

    def gauge(self, name: str) -> GaugeHandle:
        """Handle for a custom gauge metric."""
        return self._handle(name, GaugeHandle)

    async def sleep(self, seconds: float) -> None:
        """Pause the current iteration."""
        await asyncio.sleep(seconds)
