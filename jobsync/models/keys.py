"""Cache key factories.

Keys are plain tuples: the first component is the entity kind, the rest
identify the entity. Two keys are equal iff all components are equal, and
a key whose components start another key's components is that key's
prefix (``("workbooks", "list")`` covers every list variant).
"""

from collections.abc import Hashable, Mapping

CacheKey = tuple[Hashable, ...]

JOB = "job"
QUEUE = "queue"
QUEUE_POSITION = "queue-position"
WORKBOOK = "workbook"
WORKBOOK_LIST = "workbooks"
SHEETS = "sheets"
TAX_COMPUTATION = "tax-computation"
LOGS = "logs"


def job_key(workbook_id: int) -> CacheKey:
    """Processing job status for a workbook."""
    return (JOB, workbook_id)


def queue_key() -> CacheKey:
    """Snapshot list of in-flight jobs."""
    return (QUEUE,)


job_list_key = queue_key


def queue_position_key(workbook_id: int) -> CacheKey:
    return (QUEUE_POSITION, workbook_id)


def workbook_key(workbook_id: int) -> CacheKey:
    return (WORKBOOK, workbook_id)


def workbook_list_key(params: Mapping[str, Hashable] | None = None) -> CacheKey:
    """Workbook list, optionally filtered.

    Parameters are stored as a sorted tuple so equal filters produce equal
    keys regardless of argument order.
    """
    base: CacheKey = (WORKBOOK_LIST, "list")
    if not params:
        return base
    return base + (tuple(sorted(params.items())),)


def sheets_key(workbook_id: int) -> CacheKey:
    return (SHEETS, workbook_id)


def tax_computation_key(workbook_id: int) -> CacheKey:
    return (TAX_COMPUTATION, workbook_id)


def logs_key(workbook_id: int) -> CacheKey:
    """Append-only log buffer fed by the log stream."""
    return (LOGS, workbook_id)


def key_kind(key: CacheKey) -> str:
    return str(key[0]) if key else ""


def is_prefix(prefix: CacheKey, key: CacheKey) -> bool:
    return len(prefix) <= len(key) and key[: len(prefix)] == prefix


def format_key(key: CacheKey) -> str:
    """Render a key as ``kind:part:part`` for logs."""
    return ":".join(str(part) for part in key)


def key_from_string(text: str) -> CacheKey:
    """Parse ``job:42`` style keys; all-digit parts become ints."""
    parts: list[Hashable] = []
    for raw in text.split(":"):
        part = raw.strip()
        if not part:
            raise ValueError(f"Empty component in cache key: {text!r}")
        parts.append(int(part) if part.isdigit() else part)
    return tuple(parts)


__all__ = [
    "CacheKey",
    "JOB",
    "QUEUE",
    "QUEUE_POSITION",
    "WORKBOOK",
    "WORKBOOK_LIST",
    "SHEETS",
    "TAX_COMPUTATION",
    "LOGS",
    "job_key",
    "queue_key",
    "job_list_key",
    "queue_position_key",
    "workbook_key",
    "workbook_list_key",
    "sheets_key",
    "tax_computation_key",
    "logs_key",
    "key_kind",
    "is_prefix",
    "format_key",
    "key_from_string",
]
