"""Polling scheduler keeping status keys warm while a job is active.

Each watched key gets a PollStateMachine:
- idle: not polling (initial; also after a terminal result)
- polling: re-fetching every ``interval_ms``
- stopped: last subscriber detached (final)
- timed_out: ``max_attempts`` exhausted while still active (final)

Transitions:
- begin: idle -> polling (subscriber attached to an active value)
- settle: polling -> idle (value reached a terminal status)
- stop: idle/polling -> stopped (unsubscribed)
- time_out: polling -> timed_out

A failed tick never stops polling; its error is delivered to subscribers
by the executor and escalated after repeated consecutive failures.

While a mutation holds a key its poller keeps ticking into the store's
buffer; the optimistic value neither settles nor restarts it, and the
attempt count carries on from where it was once the hold is released.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from statemachine import State, StateMachine

from jobsync.cache.executor import QueryExecutor
from jobsync.cache.invalidator import Invalidator
from jobsync.cache.store import CacheEntry, CacheStore, StoreObserver
from jobsync.core.errors import PollingTimeoutError
from jobsync.core.result import Err
from jobsync.core.sentry import report_escalation
from jobsync.models.job import JobRecord, is_job_active
from jobsync.models.keys import CacheKey, format_key, key_kind

if TYPE_CHECKING:
    from jobsync.core.config import Settings

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[Any]]
TimeoutCallback = Callable[[CacheKey, PollingTimeoutError], None]


class PollState(str, Enum):
    """Poller lifecycle states."""

    IDLE = "idle"
    POLLING = "polling"
    STOPPED = "stopped"
    TIMED_OUT = "timed_out"


def always_poll(value: Any) -> bool:
    """Poll on a fixed interval for as long as the key is observed."""
    return True


@dataclass
class PollingOptions:
    """Polling configuration for one key kind.

    Attributes:
        interval_ms: Base polling period.
        max_attempts: Hard ceiling of ticks before giving up. None polls
            until the value stops being active.
        on_timeout: Called once when max_attempts is exhausted.
        should_poll: Whether a cached value still needs polling.
    """

    interval_ms: int
    max_attempts: int | None = None
    on_timeout: TimeoutCallback | None = None
    should_poll: Callable[[Any], bool] = is_job_active


class PollStateMachine(StateMachine):
    """Lifecycle of the poller for one key."""

    idle = State(initial=True, value=PollState.IDLE)
    polling = State(value=PollState.POLLING)
    stopped = State(final=True, value=PollState.STOPPED)
    timed_out = State(final=True, value=PollState.TIMED_OUT)

    begin = idle.to(polling)
    settle = polling.to(idle)
    stop = idle.to(stopped) | polling.to(stopped)
    time_out = polling.to(timed_out)

    def __init__(self, key: CacheKey) -> None:
        """Initialize state machine for a key.

        Args:
            key: Cache key being polled
        """
        self.key = key
        super().__init__()

    def on_begin(self) -> None:
        logger.info("polling_started", cache_key=format_key(self.key))

    def on_settle(self) -> None:
        logger.info("polling_settled", cache_key=format_key(self.key))

    def on_stop(self) -> None:
        logger.debug("polling_stopped", cache_key=format_key(self.key))

    def on_time_out(self) -> None:
        logger.warning("polling_timed_out", cache_key=format_key(self.key))


@dataclass
class Poller:
    """Per-key polling state."""

    key: CacheKey
    options: PollingOptions
    machine: PollStateMachine
    attempts: int = 0
    consecutive_failures: int = 0
    task: "asyncio.Task[None] | None" = field(default=None, repr=False)

    @property
    def state(self) -> PollState:
        return self.machine.current_state.value

    @property
    def is_polling(self) -> bool:
        return self.machine.current_state == self.machine.polling


class PollingScheduler(StoreObserver):
    """Repeatedly fetches observed keys whose values are still active.

    Usage:
        scheduler = PollingScheduler(store, executor, invalidator)
        store.subscribe(job_key(42))   # polling begins once the job is active
    """

    def __init__(
        self,
        store: CacheStore,
        executor: QueryExecutor,
        invalidator: Invalidator | None = None,
        options_for: Callable[[CacheKey], PollingOptions | None] | None = None,
        escalation_threshold: int = 3,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize scheduler and register it with the store.

        Args:
            store: Cache whose subscriptions drive polling.
            executor: Performs (de-duplicated) fetches for each tick.
            invalidator: Notified when a polled job settles.
            options_for: Resolves a key to its options; None means the key
                is not polled.
            escalation_threshold: Consecutive failed ticks before escalation.
            sleep: Coroutine used to wait between ticks.
        """
        self._store = store
        self._executor = executor
        self._invalidator = invalidator
        self._options_for = options_for or options_from_settings()
        self._escalation_threshold = escalation_threshold
        self._sleep = sleep
        self._pollers: dict[CacheKey, Poller] = {}
        store.add_observer(self)

    def poller(self, key: CacheKey) -> Poller | None:
        return self._pollers.get(key)

    def state(self, key: CacheKey) -> PollState | None:
        poller = self._pollers.get(key)
        return poller.state if poller is not None else None

    # Store hooks

    def key_activated(self, key: CacheKey) -> None:
        poller = self._ensure_poller(key)
        if poller is None or self._store.is_held(key):
            return
        entry = self._store.get(key)
        self._follow(poller, entry.value if entry is not None else None)

    def entry_updated(self, key: CacheKey, entry: CacheEntry) -> None:
        # Optimistic and rolled-back values are followed once the hold is
        # released; fetch results keep arriving in the buffer meanwhile.
        if self._store.is_held(key) or not self._store.active_count(key):
            return
        poller = self._ensure_poller(key)
        if poller is not None:
            self._follow(poller, entry.value)

    def key_released(self, key: CacheKey) -> None:
        poller = self._pollers.pop(key, None)
        if poller is None:
            return
        self._cancel_task(poller)
        if not poller.machine.current_state.final:
            poller.machine.stop()

    def key_invalidated(self, key: CacheKey) -> None:
        poller = self._pollers.get(key)
        if poller is not None and poller.state == PollState.TIMED_OUT:
            # An explicit invalidation gives the key a fresh scheduler.
            del self._pollers[key]

    async def aclose(self) -> None:
        """Stop every poller and wait for their tasks."""
        tasks = []
        for key in list(self._pollers):
            poller = self._pollers.pop(key)
            if poller.task is not None:
                tasks.append(poller.task)
            self._cancel_task(poller)
            if not poller.machine.current_state.final:
                poller.machine.stop()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Internals

    def _ensure_poller(self, key: CacheKey) -> Poller | None:
        poller = self._pollers.get(key)
        if poller is not None:
            return poller
        options = self._options_for(key)
        if options is None:
            return None
        poller = Poller(key=key, options=options, machine=PollStateMachine(key))
        self._pollers[key] = poller
        return poller

    def _follow(self, poller: Poller, value: Any) -> None:
        """Start or settle polling to match the lifecycle of value."""
        active = poller.options.should_poll(value)
        if active and poller.state == PollState.IDLE:
            self._start(poller)
        elif not active and poller.is_polling:
            poller.machine.settle()
            self._cancel_task(poller)
            if (
                self._invalidator is not None
                and isinstance(value, JobRecord)
                and value.is_terminal
            ):
                self._invalidator.on_job_settled(poller.key)

    def _start(self, poller: Poller) -> None:
        poller.machine.begin()
        poller.attempts = 0
        poller.consecutive_failures = 0
        poller.task = asyncio.get_running_loop().create_task(self._run(poller))

    def _cancel_task(self, poller: Poller) -> None:
        task = poller.task
        poller.task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run(self, poller: Poller) -> None:
        key = poller.key
        options = poller.options
        interval = options.interval_ms / 1000

        while True:
            await self._sleep(interval)
            if not poller.is_polling:
                return

            poller.attempts += 1
            result = await self._executor.fetch(key)
            if not poller.is_polling:
                return

            if isinstance(result, Err):
                poller.consecutive_failures += 1
                if poller.consecutive_failures == self._escalation_threshold:
                    logger.error(
                        "poll_failures_escalated",
                        cache_key=format_key(key),
                        consecutive_failures=poller.consecutive_failures,
                        error_type=type(result.error).__name__,
                        error=result.error.message,
                    )
                    report_escalation(
                        result.error,
                        cache_key=format_key(key),
                        consecutive_failures=poller.consecutive_failures,
                    )
            else:
                poller.consecutive_failures = 0

            if (
                options.max_attempts is not None
                and poller.attempts >= options.max_attempts
                and not self._store.is_held(key)
                and options.should_poll(self._store.peek(key))
            ):
                self._time_out(poller)
                return

    def _time_out(self, poller: Poller) -> None:
        poller.machine.time_out()
        poller.task = None
        error = PollingTimeoutError(
            f"Polling {format_key(poller.key)} timed out after "
            f"{poller.attempts} attempts",
            attempts=poller.attempts,
        )
        self._store.report_error(poller.key, error)
        logger.error(
            "poll_timeout",
            cache_key=format_key(poller.key),
            attempts=poller.attempts,
        )
        report_escalation(error, cache_key=format_key(poller.key))
        if poller.options.on_timeout is not None:
            poller.options.on_timeout(poller.key, error)


def options_from_settings(
    settings: "Settings | None" = None,
) -> Callable[[CacheKey], PollingOptions | None]:
    """Build an options resolver backed by Settings.polling_options.

    Args:
        settings: Settings to read; defaults to the application settings.

    Returns:
        Callable returning the options for a key, or None for key kinds
        that are not polled.
    """
    if settings is None:
        from jobsync.core.config import settings as app_settings

        settings = app_settings

    def options_for(key: CacheKey) -> PollingOptions | None:
        try:
            return settings.polling_options(key_kind(key))
        except KeyError:
            return None

    return options_for


__all__ = [
    "PollState",
    "PollStateMachine",
    "Poller",
    "PollingOptions",
    "PollingScheduler",
    "always_poll",
    "options_from_settings",
]
