"""Pytest configuration and shared fixtures."""

import asyncio

import pytest
import pytest_asyncio


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from qrpass.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def cleanup_aiohttp_sessions():
    """Give aiohttp sessions time to clean up their connectors."""
    yield
    await asyncio.sleep(0)


@pytest.fixture
def clock():
    """Fake clock starting at a fixed timestamp."""
    return FakeClock()
