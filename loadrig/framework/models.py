"""
Data models for the loadrig load-generation harness.

This module defines the core data structures shared by the scheduler,
virtual user pool, HTTP executor and metrics aggregator, including
RequestSample, CheckResult and the run/virtual-user state enums.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class RunState(Enum):
    """Lifecycle states of a load test run."""

    CONFIGURING = "configuring"
    RAMPING = "ramping"
    STEADY = "steady"
    DRAINING = "draining"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        """Whether the run can no longer change state."""
        return self in (RunState.COMPLETED, RunState.ABORTED)


class VUState(Enum):
    """Lifecycle states of a virtual user."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class MetricType(Enum):
    """Types of metrics the aggregator can accumulate."""

    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"
    GAUGE = "gauge"


@dataclass(frozen=True)
class Stage:
    """
    A time-bounded segment of a ramp profile.

    Attributes:
        duration: Length of the stage in seconds
        target: Virtual user count reached at the end of the stage
    """

    duration: float
    target: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {"duration": self.duration, "target": self.target}


@dataclass(frozen=True)
class RequestSample:
    """
    Outcome of a single HTTP request.

    Samples are produced by the HTTP executor and are immutable once
    recorded. A transport failure (timeout, DNS, refused connection) leaves
    status_code as None and populates error.

    Attributes:
        endpoint_tag: Name used to group samples per endpoint
        method: HTTP method
        url: Fully resolved request URL
        started_at: Wall-clock time the request was dispatched
        duration_ms: Time from dispatch to full response, in milliseconds
        status_code: HTTP status code, None when no response was received
        error: Error description for transport-level failures
        expected: Whether the status code was in the expected set
        bytes_sent: Size of the request body
        bytes_received: Size of the response body
        headers: Response headers
        body: Raw response body
    """

    endpoint_tag: str
    method: str
    url: str
    started_at: datetime
    duration_ms: float
    status_code: Optional[int] = None
    error: Optional[str] = None
    expected: bool = False
    bytes_sent: int = 0
    bytes_received: int = 0
    headers: dict[str, str] = field(default_factory=dict, repr=False, compare=False)
    body: bytes = field(default=b"", repr=False, compare=False)

    @property
    def status(self) -> Optional[int]:
        """Alias for status_code."""
        return self.status_code

    @property
    def failed(self) -> bool:
        """Whether the sample counts towards http_req_failed."""
        return self.error is not None or not self.expected

    @property
    def text(self) -> str:
        """Response body decoded as UTF-8."""
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Parse the response body as JSON.

        Returns:
            Decoded JSON value, or None if the body is empty or not JSON
        """
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except (ValueError, UnicodeDecodeError):
            return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "endpoint_tag": self.endpoint_tag,
            "method": self.method,
            "url": self.url,
            "started_at": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 3),
            "status_code": self.status_code,
            "error": self.error,
            "expected": self.expected,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
        }


@dataclass(frozen=True)
class CheckResult:
    """A named boolean assertion recorded by a workload."""

    name: str
    passed: bool
