"""JobSyncClient: one owned instance of every sync component.

The client is the only surface the rest of an application needs:
``subscribe``, ``mutate`` and ``invalidate`` plus domain operations for
workbook processing. It has an explicit lifecycle; use ``open_sync`` (or
``async with JobSyncClient.create(...)``) so pollers, streams and the
HTTP connection pool are torn down deterministically.
"""

import asyncio
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog

from jobsync.api.client import BackendClient
from jobsync.api.resources import register_backend_resources
from jobsync.cache.executor import QueryExecutor
from jobsync.cache.invalidator import Invalidator
from jobsync.cache.router import ResourceRouter
from jobsync.cache.store import CacheEntry, CacheStore, DataCallback, ErrorCallback, Subscription
from jobsync.core.config import Settings
from jobsync.core.logging import configure_logging
from jobsync.core.result import Err, Result
from jobsync.core.sentry import init_sentry
from jobsync.models import keys
from jobsync.models.job import JobRecord, JobStatus
from jobsync.models.keys import CacheKey
from jobsync.models.workbook import Sheet, Workbook
from jobsync.orchestration.mutations import CommitFn, MutationCoordinator, OptimisticUpdate
from jobsync.orchestration.polling import PollingScheduler, Sleep, options_from_settings
from jobsync.orchestration.streaming import StreamConnector

logger = structlog.get_logger()


class JobSyncClient:
    """Facade over the cache, executor, invalidator, poller, streams and mutations.

    Usage:
        async with JobSyncClient.create() as sync:
            sub = sync.watch_job(42, on_data=render)
            result = await sync.cancel_job(42)
    """

    def __init__(
        self,
        store: CacheStore,
        client: BackendClient,
        settings: Settings,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Wire every component around one store.

        Args:
            store: Cache owned by this client.
            client: Backend client; closed by ``aclose``.
            settings: Polling, streaming and escalation configuration.
            sleep: Coroutine used by pollers and streams to wait.
        """
        self.store = store
        self.client = client
        self.router = ResourceRouter()
        register_backend_resources(self.router, client)

        self.executor = QueryExecutor(store, self.router)
        self.invalidator = Invalidator(store)
        self.polling = PollingScheduler(
            store,
            self.executor,
            self.invalidator,
            options_for=options_from_settings(settings),
            escalation_threshold=settings.poll_failure_escalation_threshold,
            sleep=sleep,
        )
        self.streams = StreamConnector(
            store,
            client,
            initial_backoff_ms=settings.stream_initial_backoff_ms,
            max_backoff_ms=settings.stream_max_backoff_ms,
            max_reconnect_attempts=settings.stream_max_reconnect_attempts,
            backfill_limit=settings.log_backfill_limit,
            sleep=sleep,
        )
        self.mutations = MutationCoordinator(store, self.invalidator)
        self._closed = False

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> "JobSyncClient":
        """Build a client with a fresh store and backend connection.

        Args:
            settings: Configuration; defaults to the application settings.
            transport: Custom httpx transport for the backend client.
            sleep: Coroutine used by pollers and streams to wait.
        """
        if settings is None:
            from jobsync.core.config import settings as app_settings

            settings = app_settings
        store = CacheStore(max_entries=settings.cache_max_entries)
        client = BackendClient.from_settings(settings, transport=transport)
        return cls(store, client, settings, sleep=sleep)

    async def __aenter__(self) -> "JobSyncClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Detach every subscription, stop background work, close HTTP."""
        if self._closed:
            return
        self._closed = True
        self.store.close()
        await self.polling.aclose()
        await self.streams.aclose()
        await self.executor.aclose()
        await self.client.aclose()
        logger.info("job_sync_closed")

    # Generic surface

    def get(self, key: CacheKey) -> CacheEntry | None:
        return self.store.get(key)

    def subscribe(
        self,
        key: CacheKey,
        on_data: DataCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        return self.store.subscribe(key, on_data, on_error)

    async def fetch(self, key: CacheKey) -> Result[Any]:
        return await self.executor.fetch(key)

    def invalidate(self, key: CacheKey) -> bool:
        return self.store.invalidate(key)

    def invalidate_prefix(self, prefix: CacheKey) -> list[CacheKey]:
        return self.store.invalidate_prefix(prefix)

    async def mutate(
        self,
        key: CacheKey,
        optimistic: Any | OptimisticUpdate,
        commit_fn: CommitFn,
    ) -> Result[Any]:
        return await self.mutations.mutate(key, optimistic, commit_fn)

    # Watches

    def watch_job(
        self,
        workbook_id: int,
        on_data: DataCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Observe a workbook's processing job; polls while it is active."""
        return self.subscribe(keys.job_key(workbook_id), on_data, on_error)

    def watch_logs(
        self,
        workbook_id: int,
        on_data: DataCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Observe the append-only processing log; opens the log stream."""
        return self.subscribe(keys.logs_key(workbook_id), on_data, on_error)

    def watch_queue(
        self,
        on_data: DataCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        return self.subscribe(keys.queue_key(), on_data, on_error)

    def watch_queue_position(
        self,
        workbook_id: int,
        on_data: DataCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        return self.subscribe(keys.queue_position_key(workbook_id), on_data, on_error)

    def watch_workbook(
        self,
        workbook_id: int,
        on_data: DataCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        return self.subscribe(keys.workbook_key(workbook_id), on_data, on_error)

    def watch_workbooks(
        self,
        params: Mapping[str, Any] | None = None,
        on_data: DataCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        return self.subscribe(keys.workbook_list_key(params), on_data, on_error)

    def watch_sheets(
        self,
        workbook_id: int,
        on_data: DataCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        return self.subscribe(keys.sheets_key(workbook_id), on_data, on_error)

    def watch_tax_computation(
        self,
        workbook_id: int,
        on_data: DataCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        return self.subscribe(keys.tax_computation_key(workbook_id), on_data, on_error)

    # Processing mutations

    async def start_processing(
        self,
        workbook_id: int,
        mode: str | None = None,
        force_reprocess: bool = False,
    ) -> Result[JobRecord]:
        """Start processing; the job shows as pending until confirmed."""

        def optimistic(previous: Any) -> JobRecord:
            if isinstance(previous, JobRecord):
                return previous.retried()
            return JobRecord(
                id=workbook_id, workbook_id=workbook_id, status=JobStatus.PENDING
            )

        return await self.mutate(
            keys.job_key(workbook_id),
            optimistic,
            lambda: self.client.start_processing(
                workbook_id, mode=mode, force_reprocess=force_reprocess
            ),
        )

    async def cancel_job(self, workbook_id: int) -> Result[JobRecord]:
        """Cancel processing; the job shows as cancelled until confirmed."""
        key = keys.job_key(workbook_id)
        if (error := await self._ensure_loaded(key)) is not None:
            return error
        return await self.mutate(
            key,
            lambda previous: previous.cancelled(),
            lambda: self.client.cancel_processing(workbook_id),
        )

    async def retry_job(self, workbook_id: int) -> Result[JobRecord]:
        """Retry a failed job; the job resets to pending until confirmed."""
        key = keys.job_key(workbook_id)
        if (error := await self._ensure_loaded(key)) is not None:
            return error
        return await self.mutate(
            key,
            lambda previous: previous.retried(),
            lambda: self.client.retry_processing(workbook_id),
        )

    # Workbook mutations

    async def update_workbook(
        self, workbook_id: int, changes: Mapping[str, Any]
    ) -> Result[Workbook]:
        """Patch workbook fields, merging the changes into the cached value."""
        key = keys.workbook_key(workbook_id)
        if (error := await self._ensure_loaded(key)) is not None:
            return error
        return await self.mutate(
            key,
            lambda previous: previous.model_copy(update=dict(changes)),
            lambda: self.client.update_workbook(workbook_id, changes),
        )

    async def update_sheet(
        self, workbook_id: int, sheet_id: int, changes: Mapping[str, Any]
    ) -> Result[list[Sheet]]:
        """Patch one sheet inside the workbook's cached sheet list."""
        key = keys.sheets_key(workbook_id)
        if (error := await self._ensure_loaded(key)) is not None:
            return error

        def optimistic(previous: list[Sheet]) -> list[Sheet]:
            return [
                sheet.model_copy(update=dict(changes)) if sheet.id == sheet_id else sheet
                for sheet in previous
            ]

        async def commit() -> list[Sheet]:
            updated = await self.client.update_sheet(sheet_id, changes)
            current = self.store.peek(key) or []
            return [updated if sheet.id == sheet_id else sheet for sheet in current]

        return await self.mutate(key, optimistic, commit)

    async def _ensure_loaded(self, key: CacheKey) -> Err | None:
        """Fetch key if nothing is cached so optimistic updates have a base."""
        entry = self.store.get(key)
        if entry is not None and entry.has_value:
            return None
        result = await self.fetch(key)
        return result if isinstance(result, Err) else None


@asynccontextmanager
async def open_sync(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[JobSyncClient]:
    """Application lifecycle for the sync layer.

    Startup:
        - Configure structured logging
        - Initialize Sentry error tracking
        - Create the JobSyncClient

    Shutdown:
        - Stop pollers and streams, close the backend connection
    """
    configure_logging(settings)
    init_sentry(settings)

    sync = JobSyncClient.create(settings, transport=transport)
    logger.info("job_sync_started")
    try:
        yield sync
    finally:
        await sync.aclose()


__all__ = ["JobSyncClient", "open_sync"]
