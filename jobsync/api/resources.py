"""Fetch handlers binding cache key kinds to backend endpoints."""

from typing import Any

from jobsync.api.client import BackendClient
from jobsync.cache.router import ResourceRouter
from jobsync.cache.tokens import CancellationToken
from jobsync.models import keys
from jobsync.models.keys import CacheKey


def register_backend_resources(router: ResourceRouter, client: BackendClient) -> None:
    """Register a fetch handler for every backend-backed key kind.

    Log keys are deliberately absent: they are fed by the log stream.
    Handlers accept the fetch token to match FetchHandler; the router
    skips them when the token is cancelled before dispatch.

    Args:
        router: Router the QueryExecutor fetches through.
        client: Backend client performing the requests.
    """

    async def fetch_job(key: CacheKey, token: CancellationToken) -> Any:
        return await client.get_job(key[1])

    async def fetch_queue(key: CacheKey, token: CancellationToken) -> Any:
        return await client.get_queue()

    async def fetch_queue_position(key: CacheKey, token: CancellationToken) -> Any:
        return await client.get_queue_position(key[1])

    async def fetch_workbook(key: CacheKey, token: CancellationToken) -> Any:
        return await client.get_workbook(key[1])

    async def fetch_workbook_list(key: CacheKey, token: CancellationToken) -> Any:
        # ("workbooks", "list", ((name, value), ...))
        params = dict(key[2]) if len(key) > 2 else None
        return await client.list_workbooks(params)

    async def fetch_sheets(key: CacheKey, token: CancellationToken) -> Any:
        return await client.get_sheets(key[1])

    async def fetch_tax_computation(key: CacheKey, token: CancellationToken) -> Any:
        return await client.get_tax_computation(key[1])

    router.register(keys.JOB, fetch_job)
    router.register(keys.QUEUE, fetch_queue)
    router.register(keys.QUEUE_POSITION, fetch_queue_position)
    router.register(keys.WORKBOOK, fetch_workbook)
    router.register(keys.WORKBOOK_LIST, fetch_workbook_list)
    router.register(keys.SHEETS, fetch_sheets)
    router.register(keys.TAX_COMPUTATION, fetch_tax_computation)


__all__ = ["register_backend_resources"]
