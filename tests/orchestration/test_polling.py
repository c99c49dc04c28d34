"""Tests for the polling scheduler."""

import asyncio
from typing import Any

import pytest
from statemachine.exceptions import TransitionNotAllowed
from support import FakeSource, SleepRecorder, flush_loop, make_job, wait_until

from jobsync.cache.executor import QueryExecutor
from jobsync.cache.invalidator import Invalidator
from jobsync.cache.store import CacheStore
from jobsync.core.config import Settings
from jobsync.core.errors import NetworkError, PollingTimeoutError, ServerError, SyncError
from jobsync.core.result import Err
from jobsync.models.job import JobStatus
from jobsync.models.keys import CacheKey, job_key, key_kind, queue_key, workbook_key
from jobsync.orchestration.mutations import MutationCoordinator
from jobsync.orchestration.polling import (
    PollingOptions,
    PollingScheduler,
    PollState,
    PollStateMachine,
    always_poll,
    options_from_settings,
)


def _scheduler(
    store: CacheStore,
    source: FakeSource,
    sleep: SleepRecorder,
    options: PollingOptions,
    invalidator: Invalidator | None = None,
) -> PollingScheduler:
    executor = QueryExecutor(store, source)

    def options_for(key: CacheKey) -> PollingOptions | None:
        return options if key_kind(key) in ("job", "queue") else None

    return PollingScheduler(
        store,
        executor,
        invalidator=invalidator,
        options_for=options_for,
        sleep=sleep,
    )


class TestPollStateMachine:
    """Tests for poller lifecycle transitions."""

    def test_initial_state_is_idle(self) -> None:
        machine = PollStateMachine(job_key(1))
        assert machine.current_state.value == PollState.IDLE

    def test_begin_settle_cycle(self) -> None:
        """A settled poller can begin again."""
        machine = PollStateMachine(job_key(1))
        machine.begin()
        machine.settle()
        machine.begin()
        assert machine.current_state.value == PollState.POLLING

    def test_timed_out_is_final(self) -> None:
        machine = PollStateMachine(job_key(1))
        machine.begin()
        machine.time_out()

        assert machine.current_state.final
        with pytest.raises(TransitionNotAllowed):
            machine.begin()


class TestPolling:
    """Tests for polling an active job until it settles."""

    @pytest.mark.asyncio
    async def test_polls_until_terminal_then_stops(
        self, store: CacheStore, source: FakeSource, sleep: SleepRecorder
    ) -> None:
        """Running -> running -> succeeded stops polling and refreshes dependents."""
        key = job_key(42)
        store.set(queue_key(), [make_job("running")])
        source.script(
            key, make_job("running"), make_job("running"), make_job("succeeded")
        )
        scheduler = _scheduler(
            store,
            source,
            sleep,
            PollingOptions(interval_ms=2000),
            invalidator=Invalidator(store),
        )
        seen: list[Any] = []

        store.subscribe(key, on_data=lambda job: seen.append(job.status.value))
        await wait_until(lambda: scheduler.state(key) == PollState.IDLE and source.count(key) == 3)
        await flush_loop()

        assert seen == ["running", "running", "succeeded"]
        assert sleep.delays == [2.0, 2.0]
        assert source.count(key) == 3
        assert store.get(queue_key()).is_stale

    @pytest.mark.asyncio
    async def test_terminal_value_never_polls(
        self, store: CacheStore, source: FakeSource, sleep: SleepRecorder
    ) -> None:
        key = job_key(42)
        source.always(key, make_job("failed"))
        scheduler = _scheduler(store, source, sleep, PollingOptions(interval_ms=1000))

        store.subscribe(key)
        await flush_loop()

        assert scheduler.state(key) == PollState.IDLE
        assert source.count(key) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_polling(
        self, store: CacheStore, source: FakeSource, sleep: SleepRecorder
    ) -> None:
        """Detaching the last subscriber stops the poller."""
        key = job_key(42)
        source.script(key, make_job("running"))
        scheduler = _scheduler(store, source, sleep, PollingOptions(interval_ms=1000))

        subscription = store.subscribe(key)
        await wait_until(lambda: source.waiting(key) == 1)
        poller = scheduler.poller(key)
        assert poller is not None and poller.is_polling

        subscription.unsubscribe()
        await flush_loop()

        assert poller.state == PollState.STOPPED
        assert scheduler.poller(key) is None
        assert source.count(key) == 2

    @pytest.mark.asyncio
    async def test_queue_is_always_polled(
        self, store: CacheStore, source: FakeSource, sleep: SleepRecorder
    ) -> None:
        """Always-polled keys start without waiting for a value."""
        key = queue_key()
        source.script(key, [], [])
        scheduler = _scheduler(
            store,
            source,
            sleep,
            PollingOptions(interval_ms=5000, should_poll=always_poll),
        )

        store.subscribe(key)
        await wait_until(lambda: source.count(key) == 3)

        assert scheduler.state(key) == PollState.POLLING
        assert sleep.delays[:2] == [5.0, 5.0]


class TestTimeout:
    """Tests for the max_attempts ceiling."""

    @pytest.mark.asyncio
    async def test_times_out_with_last_value(
        self, store: CacheStore, source: FakeSource, sleep: SleepRecorder
    ) -> None:
        """A job stuck running surfaces PollingTimeoutError after max_attempts."""
        key = job_key(42)
        source.always(key, make_job("running"))
        timeouts: list[tuple[CacheKey, PollingTimeoutError]] = []
        scheduler = _scheduler(
            store,
            source,
            sleep,
            PollingOptions(
                interval_ms=2000,
                max_attempts=3,
                on_timeout=lambda key, error: timeouts.append((key, error)),
            ),
        )
        errors: list[SyncError] = []

        store.subscribe(key, on_error=errors.append)
        await wait_until(lambda: scheduler.state(key) == PollState.TIMED_OUT)
        await flush_loop()

        assert sleep.delays == [2.0, 2.0, 2.0]
        assert source.count(key) == 4
        assert len(errors) == 1
        error = errors[0]
        assert isinstance(error, PollingTimeoutError)
        assert error.attempts == 3
        assert error.last_value == make_job("running")
        assert timeouts == [(key, error)]

    @pytest.mark.asyncio
    async def test_invalidate_restarts_timed_out_key(
        self, store: CacheStore, source: FakeSource, sleep: SleepRecorder
    ) -> None:
        """An explicit invalidation gives a timed-out key a new poller."""
        key = job_key(42)
        source.always(key, make_job("running"))
        scheduler = _scheduler(
            store, source, sleep, PollingOptions(interval_ms=1000, max_attempts=1)
        )
        store.subscribe(key)
        await wait_until(lambda: scheduler.state(key) == PollState.TIMED_OUT)
        timed_out = scheduler.poller(key)

        store.invalidate(key)
        await wait_until(lambda: scheduler.poller(key) is not timed_out)
        await flush_loop()

        assert scheduler.state(key) in (PollState.POLLING, PollState.TIMED_OUT)
        assert source.count(key) >= 3


class TestPendingMutation:
    """Tests for polling a key while a mutation holds it."""

    @pytest.mark.asyncio
    async def test_optimistic_terminal_value_keeps_polling(
        self, store: CacheStore, source: FakeSource, sleep: SleepRecorder
    ) -> None:
        """Ticks continue into the buffer; the committed value settles the poller."""
        key = job_key(42)
        running = make_job("running")
        store.set(key, running)
        store.set(queue_key(), [running])
        source.always(key, running)
        scheduler = _scheduler(
            store,
            source,
            sleep,
            PollingOptions(interval_ms=2000),
            invalidator=Invalidator(store),
        )
        coordinator = MutationCoordinator(store)
        store.subscribe(key)
        confirm = asyncio.Event()

        async def commit() -> Any:
            await confirm.wait()
            return running.cancelled()

        task = asyncio.create_task(coordinator.mutate(key, running.cancelled(), commit))
        await wait_until(lambda: store.is_held(key))
        fetched = source.count(key)
        await wait_until(lambda: source.count(key) >= fetched + 3)

        assert scheduler.state(key) == PollState.POLLING
        assert store.peek(key).status == JobStatus.CANCELLED
        assert not store.get(queue_key()).is_stale

        confirm.set()
        result = await task

        assert result.ok
        assert scheduler.state(key) == PollState.IDLE
        assert store.peek(key).status == JobStatus.CANCELLED
        assert store.get(queue_key()).is_stale

    @pytest.mark.asyncio
    async def test_failed_mutations_keep_attempt_count(
        self, store: CacheStore, source: FakeSource, sleep: SleepRecorder
    ) -> None:
        """Rollbacks resume the same poller, so max_attempts still applies."""
        key = job_key(42)
        running = make_job("running")
        store.set(key, running)
        source.always(key, running)
        scheduler = _scheduler(
            store, source, sleep, PollingOptions(interval_ms=2000, max_attempts=6)
        )
        coordinator = MutationCoordinator(store)
        errors: list[SyncError] = []
        store.subscribe(key, on_error=errors.append)
        poller = scheduler.poller(key)

        async def rejected() -> Any:
            raise ServerError("Request failed with status 500", 500)

        for reached in (2, 4):
            await wait_until(lambda: poller.attempts >= reached)
            result = await coordinator.mutate(key, running.cancelled(), rejected)
            assert isinstance(result, Err)
            assert scheduler.poller(key) is poller
            assert poller.is_polling

        await wait_until(lambda: poller.state == PollState.TIMED_OUT)
        await flush_loop()

        assert source.count(key) == 6
        timeouts = [error for error in errors if isinstance(error, PollingTimeoutError)]
        assert [error.attempts for error in timeouts] == [6]


class TestFailures:
    """Tests for failed ticks."""

    @pytest.mark.asyncio
    async def test_failed_ticks_keep_polling_and_escalate_once(
        self,
        store: CacheStore,
        source: FakeSource,
        sleep: SleepRecorder,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Each failure reaches subscribers; the streak escalates at the threshold."""
        escalated: list[tuple[BaseException, dict[str, Any]]] = []
        monkeypatch.setattr(
            "jobsync.orchestration.polling.report_escalation",
            lambda error, **context: escalated.append((error, context)),
        )
        key = job_key(42)
        source.script(
            key,
            make_job("running"),
            NetworkError("connection reset"),
            NetworkError("connection reset"),
            NetworkError("connection reset"),
            NetworkError("connection reset"),
            make_job("running"),
        )
        scheduler = _scheduler(store, source, sleep, PollingOptions(interval_ms=1000))
        errors: list[SyncError] = []

        store.subscribe(key, on_error=errors.append)
        await wait_until(lambda: source.waiting(key) == 1)

        assert len(errors) == 4
        assert all(error.last_value == make_job("running") for error in errors)
        assert len(escalated) == 1
        assert escalated[0][1]["consecutive_failures"] == 3
        poller = scheduler.poller(key)
        assert poller is not None
        assert poller.is_polling
        assert poller.consecutive_failures == 0


class TestOptionsFromSettings:
    """Tests for resolving polling options from settings."""

    def test_job_and_queue_kinds(self) -> None:
        settings = Settings(status_poll_interval_ms=1500, status_poll_max_attempts=10)
        options_for = options_from_settings(settings)

        job_options = options_for(job_key(1))
        queue_options = options_for(queue_key())

        assert job_options is not None
        assert job_options.interval_ms == 1500
        assert job_options.max_attempts == 10
        assert queue_options is not None
        assert queue_options.should_poll is always_poll
        assert queue_options.max_attempts is None

    def test_unpolled_kind_returns_none(self) -> None:
        options_for = options_from_settings(Settings())
        assert options_for(workbook_key(1)) is None
