"""Query executor: de-duplicated fetches written through to the CacheStore.

Each fetch runs in a task owned by the executor and tagged with the
store-wide sequence number at which it was issued. Callers await a shared
future, so N concurrent ``fetch``/``subscribe`` calls for a key before the
first resolves produce exactly one network call.

A request is superseded (a new one is issued) only when the key was
invalidated after the outstanding request was issued. Results from the
superseded request still settle its waiters, but the store discards them
if a newer result has already been applied.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from jobsync.cache.store import CacheStore, StoreObserver
from jobsync.cache.tokens import CancellationToken
from jobsync.core.errors import SyncError
from jobsync.core.logging import cache_key_ctx
from jobsync.core.result import Err, Ok, Result
from jobsync.models.keys import CacheKey, format_key

logger = structlog.get_logger()


class FetchSource(Protocol):
    """Anything that can fetch a value for a key (see ResourceRouter)."""

    def can_fetch(self, key: CacheKey) -> bool: ...

    async def fetch(self, key: CacheKey, token: CancellationToken) -> Any: ...


@dataclass
class InFlightRequest:
    """Outstanding fetch for one key."""

    revision: int
    token: CancellationToken
    future: "asyncio.Future[Result[Any]]"
    task: "asyncio.Task[None] | None" = field(default=None, repr=False)


class QueryExecutor(StoreObserver):
    """Performs fetches for cache keys and writes results into the store.

    Registers itself as the store's loader and as an observer so that
    releasing the last subscription for a key cancels its in-flight fetch.
    """

    def __init__(self, store: CacheStore, source: FetchSource) -> None:
        """Initialize executor and attach it to the store.

        Args:
            store: Cache that receives results.
            source: Resolves keys to backend calls.
        """
        self._store = store
        self._source = source
        self._inflight: dict[CacheKey, InFlightRequest] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        store.attach_loader(self.schedule)
        store.add_observer(self)

    def can_fetch(self, key: CacheKey) -> bool:
        return self._source.can_fetch(key)

    def in_flight(self, key: CacheKey) -> InFlightRequest | None:
        """Return the outstanding request for key, if any."""
        return self._current(key)

    def schedule(self, key: CacheKey) -> None:
        """Start a fetch for key in the background unless one can be reused."""
        if not self.can_fetch(key):
            return
        if self._current(key) is None:
            self._start(key)

    async def fetch(self, key: CacheKey) -> Result[Any]:
        """Fetch key, attaching to an outstanding request when possible.

        Returns:
            Ok with the fetched value, or Err with the taxonomy error. All
            callers attached to one request receive the same Result.

        Raises:
            LookupError: If no fetch handler exists for the key's kind.
        """
        if not self.can_fetch(key):
            raise LookupError(f"No fetch handler registered for key: {format_key(key)}")
        request = self._current(key)
        if request is None:
            request = self._start(key)
        else:
            logger.debug(
                "fetch_attached",
                cache_key=format_key(key),
                revision=request.revision,
            )
        return await asyncio.shield(request.future)

    def cancel(self, key: CacheKey, reason: str = "") -> bool:
        """Cancel the in-flight fetch for key; its result will be discarded.

        Returns:
            True if a request was cancelled.
        """
        request = self._inflight.pop(key, None)
        if request is None or request.future.done():
            return False
        request.token.cancel(reason)
        self._store.mark_in_flight(key, None)
        logger.debug(
            "fetch_cancelled",
            cache_key=format_key(key),
            revision=request.revision,
            reason=reason,
        )
        return True

    def key_released(self, key: CacheKey) -> None:
        self.cancel(key, reason="last subscriber detached")

    async def aclose(self) -> None:
        """Cancel every outstanding fetch task and wait for them to finish."""
        for key in list(self._inflight):
            self.cancel(key, reason="executor closed")
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _current(self, key: CacheKey) -> InFlightRequest | None:
        request = self._inflight.get(key)
        if request is None or request.future.done():
            return None
        entry = self._store.get(key)
        if (
            entry is not None
            and entry.is_stale
            and request.revision < entry.invalidated_at
        ):
            return None
        return request

    def _start(self, key: CacheKey) -> InFlightRequest:
        loop = asyncio.get_running_loop()
        superseded = self._inflight.get(key)
        request = InFlightRequest(
            revision=self._store.next_revision(),
            token=CancellationToken(),
            future=loop.create_future(),
        )
        if superseded is not None and not superseded.future.done():
            logger.debug(
                "fetch_superseded",
                cache_key=format_key(key),
                revision=superseded.revision,
                superseded_by=request.revision,
            )
        self._inflight[key] = request
        self._store.mark_in_flight(key, request.revision)

        task = loop.create_task(self._run(key, request))
        request.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return request

    async def _run(self, key: CacheKey, request: InFlightRequest) -> None:
        cache_key_ctx.set(format_key(key))
        logger.debug(
            "fetch_started", cache_key=format_key(key), revision=request.revision
        )
        result: Result[Any]
        try:
            value = await self._source.fetch(key, request.token)
        except asyncio.CancelledError:
            self._finish(key, request)
            if not request.future.done():
                request.future.cancel()
            raise
        except SyncError as exc:
            result = Err(exc)
        except Exception as exc:
            logger.exception(
                "fetch_handler_crashed",
                cache_key=format_key(key),
                revision=request.revision,
            )
            error = SyncError(f"Unexpected failure fetching {format_key(key)}: {exc}")
            error.__cause__ = exc
            result = Err(error)
        else:
            result = Ok(value)

        self._finish(key, request)
        if request.token.cancelled:
            logger.debug(
                "fetch_result_discarded",
                cache_key=format_key(key),
                revision=request.revision,
                reason=request.token.reason,
            )
        elif isinstance(result, Ok):
            self._store.apply_fetch(key, result.value, request.revision)
        else:
            logger.info(
                "fetch_failed",
                cache_key=format_key(key),
                revision=request.revision,
                error_type=type(result.error).__name__,
                error=result.error.message,
            )
            self._store.report_error(key, result.error, request.revision)

        if not request.future.done():
            request.future.set_result(result)

    def _finish(self, key: CacheKey, request: InFlightRequest) -> None:
        if self._inflight.get(key) is request:
            del self._inflight[key]
            self._store.mark_in_flight(key, None)


__all__ = ["FetchSource", "InFlightRequest", "QueryExecutor"]
