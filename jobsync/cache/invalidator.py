"""Dependency-driven invalidation.

Maps a changed key to the keys that must be refreshed as a consequence
(e.g. a finished job refreshes the queue, its queue position, its
workbook and every workbook list). Targets are key prefixes so one rule
covers every parameterised variant of a list key.

Propagation is transitive with cycle protection: within one pass a key
is visited at most once.
"""

from collections import deque
from collections.abc import Callable, Iterable

import structlog

from jobsync.cache.store import CacheStore
from jobsync.models import keys
from jobsync.models.keys import CacheKey, format_key, key_kind

logger = structlog.get_logger()

DependencyRule = Callable[[CacheKey], Iterable[CacheKey]]


def _job_dependents(key: CacheKey) -> list[CacheKey]:
    workbook_id = key[1]
    return [
        keys.job_list_key(),
        keys.queue_position_key(workbook_id),
        keys.workbook_key(workbook_id),
        keys.tax_computation_key(workbook_id),
    ]


def _workbook_dependents(key: CacheKey) -> list[CacheKey]:
    return [keys.workbook_list_key()]


def _sheets_dependents(key: CacheKey) -> list[CacheKey]:
    return [keys.workbook_key(key[1])]


def default_dependency_map() -> dict[str, list[DependencyRule]]:
    """Dependency rules for the workbook processing resources."""
    return {
        keys.JOB: [_job_dependents],
        keys.WORKBOOK: [_workbook_dependents],
        keys.SHEETS: [_sheets_dependents],
    }


class Invalidator:
    """Walks the dependency map and invalidates dependent keys.

    Usage:
        invalidator = Invalidator(store)
        invalidator.on_mutation_committed(job_key(42))
    """

    def __init__(
        self,
        store: CacheStore,
        dependencies: dict[str, list[DependencyRule]] | None = None,
    ) -> None:
        self._store = store
        self._dependencies = (
            default_dependency_map() if dependencies is None else dependencies
        )

    def add_rule(self, kind: str, rule: DependencyRule) -> None:
        self._dependencies.setdefault(kind, []).append(rule)

    def dependents_of(self, key: CacheKey) -> list[CacheKey]:
        """Direct dependents of key according to the map."""
        dependents: list[CacheKey] = []
        for rule in self._dependencies.get(key_kind(key), ()):
            dependents.extend(rule(key))
        return dependents

    def on_mutation_committed(self, key: CacheKey) -> list[CacheKey]:
        """Invalidate everything that depends on a committed mutation.

        Returns:
            Cached keys that were invalidated, in propagation order.
        """
        return self._propagate(key, reason="mutation_committed")

    def on_job_settled(self, key: CacheKey) -> list[CacheKey]:
        """Invalidate dependents of a job that reached a terminal status."""
        return self._propagate(key, reason="job_settled")

    def _propagate(self, origin: CacheKey, reason: str) -> list[CacheKey]:
        visited_targets: set[CacheKey] = {origin}
        touched: set[CacheKey] = {origin}
        pending = deque(self.dependents_of(origin))
        invalidated: list[CacheKey] = []

        while pending:
            target = pending.popleft()
            if target in visited_targets:
                continue
            visited_targets.add(target)

            for matched in self._store.matching(target):
                if matched in touched:
                    continue
                touched.add(matched)
                self._store.invalidate(matched)
                invalidated.append(matched)
                pending.extend(self.dependents_of(matched))
            # Walk through targets that are not cached yet.
            pending.extend(self.dependents_of(target))

        logger.info(
            "dependents_invalidated",
            cache_key=format_key(origin),
            reason=reason,
            invalidated=[format_key(key) for key in invalidated],
        )
        return invalidated


__all__ = ["DependencyRule", "Invalidator", "default_dependency_map"]
