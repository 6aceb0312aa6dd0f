"""
Pytest configuration and fixtures for loadrig.

This module provides shared fixtures and configuration for all tests.
"""

import asyncio
from typing import Callable

import httpx
import pytest
from hypothesis import settings, Verbosity

from loadrig.framework.executor import HttpExecutor
from loadrig.framework.metrics import MetricsAggregator

# Configure Hypothesis profiles
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.verbose,
    deadline=None,
)

settings.register_profile(
    "dev",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)


def pytest_configure(config):
    """Configure pytest with custom settings."""
    # Load the default hypothesis profile
    settings.load_profile("default")


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--base-url",
        action="store",
        default="http://loadrig.test",
        help="Base URL used for mocked HTTP targets",
    )


@pytest.fixture
def base_url(request):
    """Get the base URL from command line."""
    return request.config.getoption("--base-url")


@pytest.fixture
def aggregator():
    """Fresh metrics aggregator."""
    return MetricsAggregator()


def make_transport(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.MockTransport:
    """Wrap a request handler in an httpx mock transport."""
    return httpx.MockTransport(handler)


@pytest.fixture
def ok_transport():
    """Transport that answers every request with 200 and a small JSON body."""
    return make_transport(lambda request: httpx.Response(200, json={"ok": True}))


@pytest.fixture
def run_async():
    """Run a coroutine to completion on a fresh event loop."""
    def runner(coro):
        return asyncio.run(coro)
    return runner


@pytest.fixture
def executor_factory(base_url):
    """Build an HttpExecutor bound to a mock transport."""
    def factory(transport: httpx.AsyncBaseTransport, **kwargs) -> HttpExecutor:
        return HttpExecutor(base_url=base_url, transport=transport, **kwargs)
    return factory
