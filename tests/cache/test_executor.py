"""Tests for QueryExecutor de-duplication, ordering and cancellation."""

import asyncio
from typing import Any

import pytest
from support import FakeSource, flush_loop, make_job

from jobsync.cache.executor import QueryExecutor
from jobsync.cache.store import CacheStore
from jobsync.core.errors import NetworkError, NotFoundError, SyncError
from jobsync.core.result import Err, Ok
from jobsync.models.keys import job_key, logs_key


@pytest.fixture
def executor(store: CacheStore, source: FakeSource) -> QueryExecutor:
    """Create an executor attached to the store as its loader.

    Returns:
        QueryExecutor fetching through the fake source.
    """
    return QueryExecutor(store, source)


class TestDeduplication:
    """Tests for the at-most-one-in-flight guarantee."""

    @pytest.mark.asyncio
    async def test_concurrent_fetches_share_one_call(
        self, store: CacheStore, source: FakeSource, executor: QueryExecutor
    ) -> None:
        """N concurrent subscribe/fetch calls produce one network call."""
        key = job_key(42)
        store.subscribe(key)
        store.subscribe(key)
        fetches = [asyncio.create_task(executor.fetch(key)) for _ in range(5)]
        await flush_loop()

        assert source.count(key) == 1

        job = make_job()
        source.resolve(key, job)
        results = await asyncio.gather(*fetches)

        assert source.count(key) == 1
        assert all(result == Ok(job) for result in results)
        assert store.peek(key) == job

    @pytest.mark.asyncio
    async def test_attached_callers_share_the_error(
        self, store: CacheStore, source: FakeSource, executor: QueryExecutor
    ) -> None:
        """Every attached caller receives the same Err."""
        key = job_key(42)
        first = asyncio.create_task(executor.fetch(key))
        second = asyncio.create_task(executor.fetch(key))
        await flush_loop()

        error = NotFoundError("Not found.", 404)
        source.fail(key, error)

        assert await first == Err(error)
        assert await second == Err(error)
        assert source.count(key) == 1

    @pytest.mark.asyncio
    async def test_new_fetch_after_completion(
        self, source: FakeSource, executor: QueryExecutor
    ) -> None:
        """A fetch after the previous one settled issues a new call."""
        key = job_key(42)
        source.script(key, make_job("pending"), make_job("running"))

        await executor.fetch(key)
        result = await executor.fetch(key)

        assert result.unwrap().status.value == "running"
        assert source.count(key) == 2


class TestOrdering:
    """Tests for stale-write rejection and idempotent invalidation."""

    @pytest.mark.asyncio
    async def test_first_issued_resolving_last_is_discarded(
        self, store: CacheStore, source: FakeSource, executor: QueryExecutor
    ) -> None:
        """A slow older response never downgrades a newer one."""
        key = job_key(42)
        store.subscribe(key)
        await flush_loop()
        store.invalidate(key)
        await flush_loop()
        assert source.count(key) == 2

        source.resolve(key, make_job("succeeded"), index=1)
        await flush_loop()
        source.resolve(key, make_job("running"), index=0)
        await flush_loop()

        entry = store.get(key)
        assert entry.value.status.value == "succeeded"
        assert not entry.is_stale

    @pytest.mark.asyncio
    async def test_double_invalidate_refetches_once(
        self, store: CacheStore, source: FakeSource, executor: QueryExecutor
    ) -> None:
        """Invalidating twice in succession produces exactly one re-fetch."""
        key = job_key(42)
        store.subscribe(key)
        await flush_loop()
        source.resolve(key, make_job())
        await flush_loop()
        assert source.count(key) == 1

        store.invalidate(key)
        store.invalidate(key)
        await flush_loop()

        assert source.count(key) == 2

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_value_and_reports(
        self, store: CacheStore, source: FakeSource, executor: QueryExecutor
    ) -> None:
        """A failure surfaces to subscribers with the last known value."""
        key = job_key(42)
        job = make_job()
        store.set(key, job)
        errors: list[SyncError] = []
        store.subscribe(key, on_error=errors.append)
        source.script(key, NetworkError("connection refused"))

        result = await executor.fetch(key)

        assert isinstance(result, Err)
        assert errors == [result.error]
        assert result.error.last_value == job
        assert store.peek(key) == job


class TestCancellation:
    """Tests for cancelling in-flight fetches."""

    @pytest.mark.asyncio
    async def test_last_unsubscribe_discards_result(
        self, store: CacheStore, source: FakeSource, executor: QueryExecutor
    ) -> None:
        """Unsubscribing the last subscriber cancels the fetch's token."""
        key = job_key(42)
        subscription = store.subscribe(key)
        await flush_loop()

        subscription.unsubscribe()
        assert source.tokens[0].cancelled
        assert executor.in_flight(key) is None

        source.resolve(key, make_job())
        await flush_loop()

        assert store.peek(key) is None

    @pytest.mark.asyncio
    async def test_remaining_subscriber_keeps_fetch(
        self, store: CacheStore, source: FakeSource, executor: QueryExecutor
    ) -> None:
        """The fetch continues while any subscriber remains."""
        key = job_key(42)
        first = store.subscribe(key)
        store.subscribe(key)
        await flush_loop()

        first.unsubscribe()
        source.resolve(key, make_job())
        await flush_loop()

        assert store.peek(key) == make_job()

    @pytest.mark.asyncio
    async def test_aclose_cancels_outstanding_tasks(
        self, store: CacheStore, source: FakeSource, executor: QueryExecutor
    ) -> None:
        """Closing the executor cancels every fetch task."""
        store.subscribe(job_key(1))
        store.subscribe(job_key(2))
        await flush_loop()

        await executor.aclose()

        assert all(token.cancelled for token in source.tokens)
        assert executor.in_flight(job_key(1)) is None


class TestUnknownKeys:
    """Tests for keys without a fetch handler."""

    @pytest.mark.asyncio
    async def test_fetch_unknown_kind_raises(self, executor: QueryExecutor) -> None:
        """Fetching a key with no handler is a programming error."""
        with pytest.raises(LookupError):
            await executor.fetch(logs_key(42))

    @pytest.mark.asyncio
    async def test_subscribe_to_unfetchable_key_is_quiet(
        self, store: CacheStore, source: FakeSource, executor: QueryExecutor
    ) -> None:
        """Stream-fed keys are never fetched."""
        store.subscribe(logs_key(42))
        await flush_loop()

        assert source.calls == []

    @pytest.mark.asyncio
    async def test_handler_crash_becomes_sync_error(
        self, store: CacheStore, source: FakeSource, executor: QueryExecutor
    ) -> None:
        """Unexpected handler exceptions surface as a chained SyncError."""
        key = job_key(42)
        crash = KeyError("status")
        source.script(key, crash)
        received: list[Any] = []
        store.subscribe(key, on_error=received.append)

        result = await executor.fetch(key)

        assert isinstance(result, Err)
        assert type(result.error) is SyncError
        assert result.error.__cause__ is crash
        assert received == [result.error]
