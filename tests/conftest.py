"""Pytest configuration and shared fixtures."""

import asyncio

import pytest
import pytest_asyncio

from tests.fakes import FakeChannel


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from sidecar.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def cleanup_aiohttp_sessions():
    """Give aiohttp sessions time to clean up their connectors."""
    yield
    await asyncio.sleep(0)


@pytest.fixture
def channel():
    """In-memory gateway channel."""
    return FakeChannel()
