"""Resource router mapping cache key kinds to fetch handlers.

Each key kind (job, queue, workbook, ...) is fetched by a registered
async handler. Kinds with no handler (log buffers) are never fetched by
the QueryExecutor; they are fed by the StreamConnector instead.

A fetch whose token is already cancelled when it is dispatched never
reaches its handler. Once a request is on the wire it runs to completion;
cancelling it afterwards only makes the executor discard the result.
"""

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from jobsync.cache.tokens import CancellationToken
from jobsync.models.keys import CacheKey, format_key, key_kind

logger = structlog.get_logger()

# Type alias for fetch handlers
FetchHandler = Callable[[CacheKey, CancellationToken], Awaitable[Any]]


class ResourceRouter:
    """Routes fetches to handlers by key kind.

    Usage:
        router = ResourceRouter()
        router.register("job", fetch_job_status)
        router.register("queue", fetch_queue)

        value = await router.fetch(("job", 42), token)

    Thread Safety:
        Handler registration is not thread-safe. Register all handlers
        before the first subscription.
    """

    def __init__(self) -> None:
        """Initialize router with empty handler registry."""
        self._handlers: dict[str, FetchHandler] = {}

    def register(self, kind: str, handler: FetchHandler) -> None:
        """Register a fetch handler for a key kind.

        Args:
            kind: Key kind identifier (first key component, e.g. "job")
            handler: Async function returning the current value for a key

        Raises:
            ValueError: If kind is empty
        """
        if not kind:
            raise ValueError("kind cannot be empty")

        if kind in self._handlers:
            logger.warning(
                "fetch_handler_replaced",
                kind=kind,
                message="Replacing existing handler for key kind",
            )

        self._handlers[kind] = handler
        logger.debug("fetch_handler_registered", kind=kind)

    def unregister(self, kind: str) -> bool:
        """Unregister the handler for a key kind.

        Returns:
            True if handler was removed, False if not found
        """
        if kind in self._handlers:
            del self._handlers[kind]
            return True
        return False

    def can_fetch(self, key: CacheKey) -> bool:
        return key_kind(key) in self._handlers

    @property
    def registered_kinds(self) -> list[str]:
        """Get list of registered key kinds."""
        return list(self._handlers.keys())

    async def fetch(self, key: CacheKey, token: CancellationToken) -> Any:
        """Fetch the current value for key through its handler.

        Returns:
            The handler's value, or None without calling it when token
            was cancelled before dispatch.

        Raises:
            LookupError: If no handler is registered for the key's kind
        """
        handler = self._handlers.get(key_kind(key))
        if handler is None:
            logger.error(
                "fetch_dispatch_failed",
                cache_key=format_key(key),
                registered_kinds=self.registered_kinds,
            )
            raise LookupError(f"No fetch handler registered for key: {format_key(key)}")
        if token.cancelled:
            logger.debug(
                "fetch_skipped", cache_key=format_key(key), reason=token.reason
            )
            return None
        return await handler(key, token)


__all__ = ["FetchHandler", "ResourceRouter"]
