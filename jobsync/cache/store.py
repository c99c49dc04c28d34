"""Keyed in-memory cache of server-derived state.

CacheStore is the single owner of CacheEntry values. Other components
read through ``get``/``subscribe`` and write through ``set``,
``apply_fetch``, ``report_error``, ``invalidate`` and ``restore``; none of
them keeps a private copy of server state.

Notification is message passing: every write pushes a Notification onto
each active subscription's queue in registration order. Subscriptions
with callbacks are then drained by a single non-reentrant flush loop, so
a callback that writes to the store enqueues further messages instead of
recursing into delivery.
"""

from __future__ import annotations

import asyncio
import copy
from collections import OrderedDict, deque
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from jobsync.core.errors import SyncError
from jobsync.models.keys import CacheKey, format_key, is_prefix

logger = structlog.get_logger()

DataCallback = Callable[[Any], None]
ErrorCallback = Callable[[SyncError], None]
Loader = Callable[[CacheKey], None]


@dataclass
class CacheEntry:
    """Cached value for one key plus freshness metadata.

    Attributes:
        key: Address of the entry.
        value: Last applied value (None until has_value is set).
        has_value: Whether a value has ever been applied.
        fetched_at: Wall-clock time the value was applied.
        is_stale: Marked by invalidate; cleared by a newer write.
        error: Last surfaced error, cleared by the next successful write.
        in_flight_request_id: Revision of the outstanding fetch, if any.
        revision: Sequence number of the write that produced the value.
            Fetch results carry the sequence number at which the request
            was issued; older results never overwrite newer ones.
        invalidated_at: Sequence number at which the entry became stale.
    """

    key: CacheKey
    value: Any = None
    has_value: bool = False
    fetched_at: datetime | None = None
    is_stale: bool = False
    error: SyncError | None = None
    in_flight_request_id: int | None = None
    revision: int = 0
    invalidated_at: int = 0


@dataclass(frozen=True)
class Notification:
    """Message pushed to subscriptions on every change to a key."""

    key: CacheKey
    value: Any = None
    error: SyncError | None = None
    is_stale: bool = False

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class CacheSnapshot:
    """Exact copy of an entry's state, used for rollback."""

    key: CacheKey
    exists: bool
    value: Any = None
    has_value: bool = False
    fetched_at: datetime | None = None
    is_stale: bool = False
    error: SyncError | None = None
    revision: int = 0
    invalidated_at: int = 0


class StoreObserver:
    """Hooks for components whose work follows subscription and value changes.

    All hooks run synchronously inside the store call that triggered them.
    """

    def key_activated(self, key: CacheKey) -> None:
        """First active subscription attached to key."""

    def key_released(self, key: CacheKey) -> None:
        """Last active subscription detached from key."""

    def entry_updated(self, key: CacheKey, entry: CacheEntry) -> None:
        """A value was applied, written or restored.

        Also called once when the last hold on key is released, with the
        value the mutation settled on.
        """

    def key_invalidated(self, key: CacheKey) -> None:
        """Key was explicitly invalidated."""


class Subscription:
    """Channel endpoint for one consumer observing one key.

    Consumers either pass callbacks (delivered synchronously by the store's
    flush loop) or read messages with ``drain()`` / ``async for``.
    """

    def __init__(
        self,
        store: CacheStore,
        key: CacheKey,
        on_data: DataCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.key = key
        self.on_data = on_data
        self.on_error = on_error
        self.active = True
        self._store = store
        self._messages: asyncio.Queue[Notification | None] = asyncio.Queue()

    @property
    def has_callbacks(self) -> bool:
        return self.on_data is not None or self.on_error is not None

    def unsubscribe(self) -> None:
        """Deactivate and decrement the key's ref count. Idempotent."""
        if not self.active:
            return
        self.active = False
        self._messages.put_nowait(None)
        self._store._detach(self)

    def drain(self) -> list[Notification]:
        """Return every queued message without waiting."""
        messages: list[Notification] = []
        while not self._messages.empty():
            message = self._messages.get_nowait()
            if message is not None:
                messages.append(message)
        return messages

    async def next(self) -> Notification | None:
        """Wait for the next message; None once unsubscribed."""
        if not self.active and self._messages.empty():
            return None
        return await self._messages.get()

    async def __aiter__(self) -> AsyncIterator[Notification]:
        while True:
            message = await self.next()
            if message is None:
                return
            yield message

    def _enqueue(self, message: Notification) -> None:
        if self.active:
            self._messages.put_nowait(message)

    def _deliver_next(self) -> None:
        if self._messages.empty():
            return
        message = self._messages.get_nowait()
        if message is None or not self.active:
            return
        try:
            if message.error is not None:
                if self.on_error is not None:
                    self.on_error(message.error)
            elif self.on_data is not None:
                self.on_data(message.value)
        except Exception:
            logger.exception(
                "subscriber_callback_failed",
                cache_key=format_key(self.key),
            )


class CacheStore:
    """In-memory store of fetched values with freshness metadata.

    Usage:
        store = CacheStore()
        executor = QueryExecutor(store, router)   # attaches itself as loader
        sub = store.subscribe(job_key(42), on_data=print)
        ...
        sub.unsubscribe()

    At most one fetch per key is in flight at any time; the loader is
    responsible for attaching repeated requests to the outstanding one.
    """

    def __init__(self, max_entries: int | None = None) -> None:
        """Initialize an empty store.

        Args:
            max_entries: Optional LRU ceiling. Entries with active
                subscriptions, pending mutations or in-flight fetches are
                never evicted.
        """
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._subscriptions: dict[CacheKey, list[Subscription]] = {}
        self._observers: list[StoreObserver] = []
        self._loader: Loader | None = None
        self._sequence = 0
        self._holds: dict[CacheKey, int] = {}
        self._buffered: dict[CacheKey, tuple[int, Any]] = {}
        self._ready: deque[Subscription] = deque()
        self._flushing = False
        self._max_entries = max_entries

    # Wiring

    def attach_loader(self, loader: Loader) -> None:
        """Register the callable that schedules a fetch for a key."""
        self._loader = loader

    def add_observer(self, observer: StoreObserver) -> None:
        self._observers.append(observer)

    def next_revision(self) -> int:
        """Return the next value of the store-wide write sequence."""
        self._sequence += 1
        return self._sequence

    # Reads

    def get(self, key: CacheKey) -> CacheEntry | None:
        """Return the entry for key without triggering network activity."""
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)
        return entry

    def peek(self, key: CacheKey) -> Any:
        """Return the cached value for key, or None."""
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def keys(self) -> list[CacheKey]:
        return list(self._entries.keys())

    def active_count(self, key: CacheKey) -> int:
        return len(self._subscriptions.get(key, ()))

    def active_keys(self) -> list[CacheKey]:
        return [key for key, subs in self._subscriptions.items() if subs]

    # Subscriptions

    def subscribe(
        self,
        key: CacheKey,
        on_data: DataCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Register a listener for key.

        The currently cached value, if any, is delivered as the first
        message. A fetch is scheduled when no fresh value exists.

        Args:
            key: Key to observe.
            on_data: Called with each new value.
            on_error: Called with each surfaced error.

        Returns:
            Subscription handle; call ``unsubscribe()`` to detach.
        """
        subscription = Subscription(self, key, on_data, on_error)
        subscriptions = self._subscriptions.setdefault(key, [])
        subscriptions.append(subscription)

        entry = self._entries.get(key)
        if entry is not None and entry.has_value:
            subscription._enqueue(
                Notification(key, entry.value, is_stale=entry.is_stale)
            )
            if subscription.has_callbacks:
                self._ready.append(subscription)
            self._flush()

        if len(subscriptions) == 1:
            logger.debug("key_activated", cache_key=format_key(key))
            for observer in self._observers:
                observer.key_activated(key)

        if entry is None or not entry.has_value or entry.is_stale:
            self._load(key)
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.key)
        if not subscriptions or subscription not in subscriptions:
            return
        subscriptions.remove(subscription)
        if subscriptions:
            return
        del self._subscriptions[subscription.key]
        logger.debug("key_released", cache_key=format_key(subscription.key))
        for observer in self._observers:
            observer.key_released(subscription.key)

    # Writes

    def set(self, key: CacheKey, value: Any) -> CacheEntry:
        """Overwrite the entry, mark it fresh and notify subscribers.

        Used for local authoritative writes (optimistic values, mutation
        results, stream buffers). Fetch results go through apply_fetch.
        """
        entry = self._ensure(key)
        self._write(entry, value, self.next_revision())
        entry.is_stale = False
        self._after_write(entry)
        return entry

    def apply_fetch(self, key: CacheKey, value: Any, revision: int) -> bool:
        """Apply a fetch result issued at ``revision``.

        While a mutation holds the key the result is buffered (latest
        issued wins) and replayed on release. A result issued before the
        entry's current revision is discarded.

        Returns:
            True if the value was applied.
        """
        if key in self._holds:
            buffered = self._buffered.get(key)
            if buffered is None or revision >= buffered[0]:
                self._buffered[key] = (revision, value)
            logger.debug(
                "fetch_result_buffered",
                cache_key=format_key(key),
                revision=revision,
            )
            return False

        entry = self._ensure(key)
        if revision < entry.revision:
            logger.debug(
                "stale_response_discarded",
                cache_key=format_key(key),
                revision=revision,
                current_revision=entry.revision,
            )
            return False

        self._write(entry, value, revision)
        # A request issued before the last invalidation does not make the
        # entry fresh again.
        entry.is_stale = entry.is_stale and revision < entry.invalidated_at
        self._after_write(entry)
        return True

    def report_error(
        self, key: CacheKey, error: SyncError, revision: int | None = None
    ) -> bool:
        """Record an error for key and deliver it to subscribers.

        The last cached value is kept and attached to the error.

        Args:
            key: Affected key.
            error: Error to surface.
            revision: Issue sequence of the failed request; errors from
                requests older than the current value are dropped.

        Returns:
            True if the error was surfaced.
        """
        entry = self._ensure(key)
        if revision is not None and revision < entry.revision:
            logger.debug(
                "stale_error_discarded",
                cache_key=format_key(key),
                revision=revision,
            )
            return False
        entry.error = error
        error.last_value = entry.value if entry.has_value else None
        self._publish(
            key, Notification(key, entry.value, error=error, is_stale=entry.is_stale)
        )
        return True

    def invalidate(self, key: CacheKey) -> bool:
        """Mark key stale and re-fetch if it is being observed.

        With zero active subscriptions the re-fetch is deferred until the
        next subscribe. Invalidating an already stale key does not move its
        staleness mark, so a fetch issued for the first invalidation
        satisfies the second.

        Returns:
            True if an entry existed for key.
        """
        entry = self._entries.get(key)
        if entry is None:
            return False
        if not entry.is_stale:
            entry.is_stale = True
            entry.invalidated_at = self.next_revision()
            logger.debug("key_invalidated", cache_key=format_key(key))
        for observer in self._observers:
            observer.key_invalidated(key)
        if self.active_count(key):
            self._load(key)
        return True

    def matching(self, prefix: CacheKey) -> list[CacheKey]:
        """Return cached keys that start with prefix."""
        return [key for key in self._entries if is_prefix(prefix, key)]

    def invalidate_prefix(self, prefix: CacheKey) -> list[CacheKey]:
        """Invalidate every cached key that starts with prefix."""
        matched = self.matching(prefix)
        for key in matched:
            self.invalidate(key)
        return matched

    def mark_in_flight(self, key: CacheKey, request_id: int | None) -> None:
        entry = self._ensure(key)
        entry.in_flight_request_id = request_id

    # Mutation support

    def hold(self, key: CacheKey) -> None:
        """Buffer fetch results for key until the matching release."""
        self._holds[key] = self._holds.get(key, 0) + 1

    def release(self, key: CacheKey) -> None:
        """Drop one hold; the last release replays the buffered result.

        Observers skip writes made under a hold, so the last release
        reports the settled entry to them once. Subscribers already saw
        that value and are not notified again.
        """
        count = self._holds.get(key, 0) - 1
        if count > 0:
            self._holds[key] = count
            return
        self._holds.pop(key, None)
        buffered = self._buffered.pop(key, None)
        if buffered is not None:
            revision, value = buffered
            if self.apply_fetch(key, value, revision):
                return
        entry = self._entries.get(key)
        if entry is not None and entry.has_value:
            for observer in self._observers:
                observer.entry_updated(key, entry)

    def is_held(self, key: CacheKey) -> bool:
        return key in self._holds

    def snapshot(self, key: CacheKey) -> CacheSnapshot:
        """Copy the entry's current state for a later exact restore."""
        entry = self._entries.get(key)
        if entry is None:
            return CacheSnapshot(key=key, exists=False)
        return CacheSnapshot(
            key=key,
            exists=True,
            value=copy.deepcopy(entry.value),
            has_value=entry.has_value,
            fetched_at=entry.fetched_at,
            is_stale=entry.is_stale,
            error=entry.error,
            revision=entry.revision,
            invalidated_at=entry.invalidated_at,
        )

    def restore(self, snapshot: CacheSnapshot) -> None:
        """Put an entry back exactly as captured and notify subscribers."""
        key = snapshot.key
        if not snapshot.exists:
            entry = self._entries.pop(key, None)
            if entry is not None:
                self._publish(key, Notification(key, None))
            return

        entry = self._ensure(key)
        entry.value = snapshot.value
        entry.has_value = snapshot.has_value
        entry.fetched_at = snapshot.fetched_at
        entry.is_stale = snapshot.is_stale
        entry.error = snapshot.error
        entry.revision = snapshot.revision
        entry.invalidated_at = snapshot.invalidated_at
        self._after_write(entry)

    def close(self) -> None:
        """Deactivate every subscription. Used on teardown."""
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                subscription.unsubscribe()

    # Internals

    def _load(self, key: CacheKey) -> None:
        if self._loader is not None:
            self._loader(key)

    def _ensure(self, key: CacheKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry
            self._evict(keep=key)
        else:
            self._entries.move_to_end(key)
        return entry

    def _evict(self, keep: CacheKey) -> None:
        if self._max_entries is None:
            return
        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return
        for key in list(self._entries.keys()):
            if overflow <= 0:
                break
            entry = self._entries[key]
            if (
                key == keep
                or self.active_count(key)
                or key in self._holds
                or entry.in_flight_request_id is not None
            ):
                continue
            del self._entries[key]
            overflow -= 1
            logger.debug("entry_evicted", cache_key=format_key(key))

    def _write(self, entry: CacheEntry, value: Any, revision: int) -> None:
        entry.value = value
        entry.has_value = True
        entry.revision = revision
        entry.fetched_at = datetime.now(timezone.utc)
        entry.error = None

    def _after_write(self, entry: CacheEntry) -> None:
        self._publish(
            entry.key, Notification(entry.key, entry.value, is_stale=entry.is_stale)
        )
        for observer in self._observers:
            observer.entry_updated(entry.key, entry)

    def _publish(self, key: CacheKey, message: Notification) -> None:
        for subscription in self._subscriptions.get(key, ()):
            subscription._enqueue(message)
            if subscription.has_callbacks:
                self._ready.append(subscription)
        self._flush()

    def _flush(self) -> None:
        if self._flushing:
            return
        self._flushing = True
        try:
            while self._ready:
                self._ready.popleft()._deliver_next()
        finally:
            self._flushing = False

    def __iter__(self) -> Iterator[CacheEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)


__all__ = [
    "CacheEntry",
    "CacheSnapshot",
    "CacheStore",
    "Notification",
    "StoreObserver",
    "Subscription",
]
