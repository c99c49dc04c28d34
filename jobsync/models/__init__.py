"""Value models and cache keys for the job sync layer."""

from jobsync.models.job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobKind,
    JobRecord,
    JobStatus,
    LogEvent,
    is_job_active,
)
from jobsync.models.keys import CacheKey, format_key, key_from_string
from jobsync.models.workbook import Sheet, Workbook, WorkbookPage

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "CacheKey",
    "JobKind",
    "JobRecord",
    "JobStatus",
    "LogEvent",
    "Sheet",
    "Workbook",
    "WorkbookPage",
    "format_key",
    "is_job_active",
    "key_from_string",
]
