"""Optimistic mutations with exact rollback.

``mutate`` applies a local optimistic value, runs the backend write and
then either commits the server's authoritative value or restores the
pre-mutation snapshot. While a mutation is pending its key is held:
fetch results for the key are buffered by the store and replayed once
the mutation settles, so a poll tick cannot overwrite the optimistic
value.

Mutations of the same key are serialized; mutations of different keys
run concurrently.
"""

import asyncio
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from jobsync.cache.invalidator import Invalidator
from jobsync.cache.store import CacheSnapshot, CacheStore
from jobsync.core.errors import SyncError
from jobsync.core.result import Err, Ok, Result
from jobsync.models.keys import CacheKey, format_key

logger = structlog.get_logger()

CommitFn = Callable[[], Awaitable[Any]]
OptimisticUpdate = Callable[[Any], Any]

_intent_ids = itertools.count(1)


class CommitState(str, Enum):
    """Outcome of a mutation intent."""

    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class MutationIntent:
    """An outstanding optimistic change and the snapshot it replaced."""

    target_key: CacheKey
    optimistic_value: Any
    previous_snapshot: CacheSnapshot
    commit_state: CommitState = CommitState.PENDING
    id: int = 0


class MutationCoordinator:
    """Coordinates optimistic writes against the cache.

    Usage:
        coordinator = MutationCoordinator(store, invalidator)
        result = await coordinator.mutate(
            job_key(42), job.cancelled(), lambda: client.cancel_processing(42)
        )
    """

    def __init__(
        self, store: CacheStore, invalidator: Invalidator | None = None
    ) -> None:
        self._store = store
        self._invalidator = invalidator
        self._pending: dict[CacheKey, MutationIntent] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        # Callers holding or queued on each lock; the lock goes with the last.
        self._lock_users: dict[CacheKey, int] = {}

    def pending(self, key: CacheKey) -> MutationIntent | None:
        """Return the outstanding intent for key, if any."""
        return self._pending.get(key)

    async def mutate(
        self,
        key: CacheKey,
        optimistic: Any | OptimisticUpdate,
        commit_fn: CommitFn,
    ) -> Result[Any]:
        """Apply an optimistic value, run commit_fn and commit or roll back.

        Args:
            key: Key being changed.
            optimistic: The optimistic value, or a callable receiving the
                current cached value (None if absent) and returning it.
            commit_fn: Coroutine function performing the backend write and
                returning the authoritative post-mutation value.

        Returns:
            Ok with the server value, or Err with the commit error after the
            cache has been restored to its pre-mutation state.

        Raises:
            Exception: Any non-SyncError raised by commit_fn, re-raised
                after rollback.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                return await self._run(key, optimistic, commit_fn)
        finally:
            users = self._lock_users.pop(key) - 1
            if users:
                self._lock_users[key] = users
            else:
                del self._locks[key]

    async def _run(
        self, key: CacheKey, optimistic: Any | OptimisticUpdate, commit_fn: CommitFn
    ) -> Result[Any]:
        snapshot = self._store.snapshot(key)
        if callable(optimistic):
            optimistic = optimistic(snapshot.value if snapshot.has_value else None)

        intent = MutationIntent(
            target_key=key,
            optimistic_value=optimistic,
            previous_snapshot=snapshot,
            id=next(_intent_ids),
        )
        self._pending[key] = intent
        self._store.hold(key)
        logger.info(
            "mutation_started", cache_key=format_key(key), intent_id=intent.id
        )

        committed = False
        try:
            self._store.set(key, optimistic)
            try:
                value = await commit_fn()
            except SyncError as exc:
                self._roll_back(intent, exc)
                return Err(exc)
            except (Exception, asyncio.CancelledError) as exc:
                self._roll_back(intent, exc)
                raise

            self._store.set(key, value)
            intent.commit_state = CommitState.COMMITTED
            committed = True
            logger.info(
                "mutation_committed", cache_key=format_key(key), intent_id=intent.id
            )
            return Ok(value)
        finally:
            del self._pending[key]
            self._store.release(key)
            if committed and self._invalidator is not None:
                self._invalidator.on_mutation_committed(key)

    def _roll_back(self, intent: MutationIntent, error: BaseException) -> None:
        snapshot = intent.previous_snapshot
        self._store.restore(snapshot)
        intent.commit_state = CommitState.ROLLED_BACK
        if isinstance(error, SyncError):
            error.last_value = snapshot.value if snapshot.has_value else None
        logger.warning(
            "mutation_rolled_back",
            cache_key=format_key(intent.target_key),
            intent_id=intent.id,
            error_type=type(error).__name__,
            error=str(error),
        )


__all__ = ["CommitState", "MutationCoordinator", "MutationIntent"]
