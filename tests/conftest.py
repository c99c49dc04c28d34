"""Pytest configuration and shared fixtures for tests."""

import pytest
from support import FakeSource, SleepRecorder

from jobsync.cache.store import CacheStore


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio backend for async tests.

    Returns:
        Backend name string.
    """
    return "asyncio"


@pytest.fixture
def store() -> CacheStore:
    """Create an empty cache store.

    Returns:
        CacheStore with no loader attached.
    """
    return CacheStore()


@pytest.fixture
def source() -> FakeSource:
    """Create a fetch source with scripted responses.

    Returns:
        FakeSource fetching job, queue and workbook keys.
    """
    return FakeSource()


@pytest.fixture
def sleep() -> SleepRecorder:
    """Create a zero-delay sleep that records requested delays.

    Returns:
        SleepRecorder usable wherever asyncio.sleep is injected.
    """
    return SleepRecorder()
