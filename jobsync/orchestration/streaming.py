"""Log stream connector feeding append-only log buffers into the cache.

One StreamSession per watched job, driven by a StreamStateMachine:
- connecting: opening the push connection (initial)
- open: receiving events
- reconnecting: waiting out an exponential backoff after a failure
- closed: torn down (final)

Transitions:
- connected: connecting/reconnecting -> open
- lost: connecting/open -> reconnecting
- close: any -> closed

A session opens when the first subscriber attaches to ``logs_key(id)`` and
closes when the last one detaches, when the job's cached status becomes
terminal, or when the reconnect budget is exhausted. Events are
deduplicated by id, since the backend replays events after a reconnect.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import structlog
from statemachine import State, StateMachine

from jobsync.cache.store import CacheEntry, CacheStore, StoreObserver
from jobsync.cache.tokens import CancellationToken
from jobsync.core.errors import StreamError, SyncError
from jobsync.core.logging import job_id_ctx
from jobsync.core.sentry import report_escalation
from jobsync.models import keys
from jobsync.models.job import JobRecord, LogEvent
from jobsync.models.keys import CacheKey, key_kind

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[Any]]


class LogTransport(Protocol):
    """Backend operations the connector needs (see BackendClient)."""

    def stream_logs(
        self, workbook_id: int, last_event_id: str | None = None
    ) -> AbstractAsyncContextManager[AsyncIterator[LogEvent]]: ...

    async def latest_logs(self, workbook_id: int, limit: int) -> list[LogEvent]: ...


class ConnectionState(str, Enum):
    """Connection states of a log stream session."""

    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class StreamStateMachine(StateMachine):
    """Connection lifecycle for one job's log stream."""

    connecting = State(initial=True, value=ConnectionState.CONNECTING)
    open = State(value=ConnectionState.OPEN)
    reconnecting = State(value=ConnectionState.RECONNECTING)
    closed = State(final=True, value=ConnectionState.CLOSED)

    connected = connecting.to(open) | reconnecting.to(open)
    lost = connecting.to(reconnecting) | open.to(reconnecting)
    close = connecting.to(closed) | open.to(closed) | reconnecting.to(closed)

    def __init__(self, job_id: int) -> None:
        """Initialize state machine for a job's stream.

        Args:
            job_id: Workbook whose processing logs are streamed
        """
        self.job_id = job_id
        super().__init__()

    def on_connected(self) -> None:
        logger.info("stream_opened", job_id=self.job_id)

    def on_lost(self, reason: str = "") -> None:
        logger.warning("stream_lost", job_id=self.job_id, reason=reason)

    def on_close(self, reason: str = "") -> None:
        logger.info("stream_closed", job_id=self.job_id, reason=reason)


@dataclass
class StreamSession:
    """Connection and buffer state for one job's log stream."""

    job_id: int
    machine: StreamStateMachine
    backoff_ms: int
    buffer: list[LogEvent] = field(default_factory=list)
    seen_ids: set[str] = field(default_factory=set)
    failures: int = 0
    last_event_id: str | None = None
    token: CancellationToken = field(default_factory=CancellationToken)
    task: "asyncio.Task[None] | None" = field(default=None, repr=False)

    @property
    def key(self) -> CacheKey:
        return keys.logs_key(self.job_id)

    @property
    def connection_state(self) -> ConnectionState:
        return self.machine.current_state.value


class StreamConnector(StoreObserver):
    """Manages log stream sessions for subscribed log keys.

    Usage:
        connector = StreamConnector(store, client)
        sub = store.subscribe(logs_key(42))   # opens the stream
        sub.unsubscribe()                     # closes it
    """

    def __init__(
        self,
        store: CacheStore,
        transport: LogTransport,
        initial_backoff_ms: int = 1000,
        max_backoff_ms: int = 30000,
        max_reconnect_attempts: int = 5,
        backfill_limit: int = 50,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize connector and register it with the store.

        Args:
            store: Cache receiving the log buffers.
            transport: Opens streams and loads recent events.
            initial_backoff_ms: First reconnect delay.
            max_backoff_ms: Cap for the doubling reconnect delay.
            max_reconnect_attempts: Consecutive connection failures before a
                StreamError is surfaced and the session closes.
            backfill_limit: Recent events loaded before connecting; 0
                disables backfill.
            sleep: Coroutine used to wait out backoff delays.
        """
        self._store = store
        self._transport = transport
        self._initial_backoff_ms = initial_backoff_ms
        self._max_backoff_ms = max_backoff_ms
        self._max_reconnect_attempts = max_reconnect_attempts
        self._backfill_limit = backfill_limit
        self._sleep = sleep
        self._sessions: dict[int, StreamSession] = {}
        # Jobs whose session closed because the job finished; only these
        # reopen on a later non-terminal value.
        self._closed_terminal: set[int] = set()
        store.add_observer(self)

    def session(self, job_id: int) -> StreamSession | None:
        return self._sessions.get(job_id)

    def open(self, job_id: int) -> StreamSession:
        """Open (or return the existing) session for job_id."""
        session = self._sessions.get(job_id)
        if session is not None:
            return session

        session = StreamSession(
            job_id=job_id,
            machine=StreamStateMachine(job_id),
            backoff_ms=self._initial_backoff_ms,
        )
        # Resume from whatever an earlier session already delivered.
        previous = self._store.peek(session.key) or []
        session.buffer = list(previous)
        session.seen_ids = {str(event.id) for event in previous}
        if previous:
            session.last_event_id = str(previous[-1].id)

        self._sessions[job_id] = session
        session.task = asyncio.get_running_loop().create_task(self._run(session))
        logger.debug("stream_session_created", job_id=job_id)
        return session

    def close(self, job_id: int, reason: str = "") -> bool:
        """Tear down the session for job_id.

        Returns:
            True if a session was open.
        """
        session = self._sessions.pop(job_id, None)
        if session is None:
            return False
        session.token.cancel(reason)
        if not session.machine.current_state.final:
            session.machine.close(reason=reason)
        task = session.task
        session.task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        return True

    async def aclose(self) -> None:
        """Close every session and wait for their tasks."""
        tasks = [s.task for s in self._sessions.values() if s.task is not None]
        for job_id in list(self._sessions):
            self.close(job_id, reason="connector closed")
        self._closed_terminal.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Store hooks

    def key_activated(self, key: CacheKey) -> None:
        if key_kind(key) == keys.LOGS:
            self._closed_terminal.discard(key[1])
            self.open(key[1])

    def key_released(self, key: CacheKey) -> None:
        if key_kind(key) == keys.LOGS:
            self._closed_terminal.discard(key[1])
            self.close(key[1], reason="unsubscribed")

    def key_invalidated(self, key: CacheKey) -> None:
        # Reopens sessions closed by reconnect_exhausted or crashed.
        if key_kind(key) == keys.LOGS and self._store.active_count(key):
            self._closed_terminal.discard(key[1])
            self.open(key[1])

    def entry_updated(self, key: CacheKey, entry: CacheEntry) -> None:
        if key_kind(key) != keys.JOB or not isinstance(entry.value, JobRecord):
            return
        if self._store.is_held(key):
            return
        job_id = key[1]
        if entry.value.is_terminal:
            self._close_terminal(job_id, reason="job_terminal")
        elif job_id in self._closed_terminal and self._store.active_count(
            keys.logs_key(job_id)
        ):
            # Retried job whose logs are still being watched.
            self._closed_terminal.discard(job_id)
            self.open(job_id)

    # Internals

    def _close_terminal(self, job_id: int, reason: str) -> None:
        self.close(job_id, reason=reason)
        if self._store.active_count(keys.logs_key(job_id)):
            self._closed_terminal.add(job_id)

    def _job_terminal(self, job_id: int) -> bool:
        value = self._store.peek(keys.job_key(job_id))
        return isinstance(value, JobRecord) and value.is_terminal

    async def _run(self, session: StreamSession) -> None:
        job_id_ctx.set(str(session.job_id))
        try:
            await self._backfill(session)
            if session.token.cancelled:
                return
            if self._job_terminal(session.job_id):
                self._close_terminal(session.job_id, reason="job_terminal")
                return
            await self._consume(session)
        except Exception as exc:
            logger.exception("stream_session_crashed", job_id=session.job_id)
            error = StreamError(f"Log stream for job {session.job_id} failed: {exc}")
            error.__cause__ = exc
            self._store.report_error(session.key, error)
            self.close(session.job_id, reason="crashed")

    async def _backfill(self, session: StreamSession) -> None:
        if not self._backfill_limit:
            return
        try:
            events = await self._transport.latest_logs(
                session.job_id, self._backfill_limit
            )
        except SyncError as exc:
            logger.warning(
                "log_backfill_failed",
                job_id=session.job_id,
                error_type=type(exc).__name__,
                error=exc.message,
            )
            return
        if not session.token.cancelled:
            self._append(session, events)

    async def _consume(self, session: StreamSession) -> None:
        while not session.token.cancelled:
            try:
                async with self._transport.stream_logs(
                    session.job_id, last_event_id=session.last_event_id
                ) as events:
                    session.machine.connected()
                    session.failures = 0
                    session.backoff_ms = self._initial_backoff_ms
                    async for event in events:
                        if session.token.cancelled:
                            return
                        self._append(session, [event])
            except SyncError as exc:
                error = exc
            else:
                if session.token.cancelled:
                    return
                if self._job_terminal(session.job_id):
                    self._close_terminal(session.job_id, reason="stream_ended")
                    return
                error = StreamError(f"Log stream for job {session.job_id} ended")

            if session.token.cancelled:
                return
            if not await self._recover(session, error):
                return

    async def _recover(self, session: StreamSession, error: SyncError) -> bool:
        """Back off after a connection failure.

        Returns:
            False once the reconnect budget is exhausted and the session
            has been closed.
        """
        session.failures += 1
        if session.machine.current_state != session.machine.reconnecting:
            session.machine.lost(reason=error.message)

        if session.failures >= self._max_reconnect_attempts:
            surfaced = error if isinstance(error, StreamError) else StreamError(
                error.message, error.status_code
            )
            if surfaced is not error:
                surfaced.__cause__ = error
            logger.error(
                "stream_reconnect_exhausted",
                job_id=session.job_id,
                failures=session.failures,
                error=error.message,
            )
            report_escalation(surfaced, job_id=session.job_id, failures=session.failures)
            self._store.report_error(session.key, surfaced)
            self.close(session.job_id, reason="reconnect_exhausted")
            return False

        delay_ms = session.backoff_ms
        logger.info(
            "stream_reconnecting",
            job_id=session.job_id,
            attempt=session.failures,
            delay_ms=delay_ms,
        )
        await self._sleep(delay_ms / 1000)
        session.backoff_ms = min(session.backoff_ms * 2, self._max_backoff_ms)
        return not session.token.cancelled

    def _append(self, session: StreamSession, events: list[LogEvent]) -> None:
        new_events: list[LogEvent] = []
        for event in events:
            event_id = str(event.id)
            if event_id in session.seen_ids:
                logger.debug(
                    "duplicate_log_event_skipped",
                    job_id=session.job_id,
                    event_id=event_id,
                )
                continue
            session.seen_ids.add(event_id)
            new_events.append(event)
        if not new_events:
            return

        session.buffer = [*session.buffer, *new_events]
        session.last_event_id = str(new_events[-1].id)
        self._store.set(session.key, session.buffer)


__all__ = [
    "ConnectionState",
    "LogTransport",
    "StreamConnector",
    "StreamSession",
    "StreamStateMachine",
]
