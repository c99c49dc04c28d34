"""Cache store, query execution and invalidation."""

from jobsync.cache.executor import InFlightRequest, QueryExecutor
from jobsync.cache.invalidator import Invalidator, default_dependency_map
from jobsync.cache.router import ResourceRouter
from jobsync.cache.store import (
    CacheEntry,
    CacheSnapshot,
    CacheStore,
    Notification,
    StoreObserver,
    Subscription,
)
from jobsync.cache.tokens import CancellationToken

__all__ = [
    "CacheEntry",
    "CacheSnapshot",
    "CacheStore",
    "CancellationToken",
    "InFlightRequest",
    "Invalidator",
    "Notification",
    "QueryExecutor",
    "ResourceRouter",
    "StoreObserver",
    "Subscription",
    "default_dependency_map",
]
