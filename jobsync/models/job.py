"""Pydantic models for processing jobs and their log events.

A JobRecord is the value most cache entries hold. Its invariants:
- progress == 100 iff status is SUCCEEDED
- error_message is set iff status is FAILED

Status transitions are monotonic except for an explicit retry, which
resets a job to PENDING.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class JobStatus(str, Enum):
    """Lifecycle status of a backend job."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: object) -> JobStatus:
        """Parse a status, accepting the backend's alternate spellings.

        Raises:
            ValueError: If the value is not a known status.
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        text = _STATUS_ALIASES.get(text, text)
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown job status: {value!r}") from None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


_STATUS_ALIASES = {
    "processing": "running",
    "in_progress": "running",
    "completed": "succeeded",
    "complete": "succeeded",
    "canceled": "cancelled",
}

TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.QUEUED, JobStatus.RUNNING})


class JobKind(str, Enum):
    """Stage of workbook handling a job performs."""

    UPLOAD = "upload"
    CLASSIFY = "classify"
    PROCESS = "process"


class JobRecord(BaseModel):
    """Processing job state as reported by the backend."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: int = Field(validation_alias=AliasChoices("id", "workbook_id"))
    kind: JobKind = JobKind.PROCESS
    status: JobStatus
    progress: int = Field(default=0, ge=0, le=100)
    workbook_id: int | None = Field(
        default=None, validation_alias=AliasChoices("workbook_id", "workbook")
    )
    current_step: str = ""
    total_steps: int = 0
    completed_steps: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, value: object) -> JobStatus:
        return JobStatus.parse(value)

    @field_validator("current_step", mode="before")
    @classmethod
    def parse_current_step(cls, value: object) -> str:
        return "" if value is None else str(value)

    @model_validator(mode="after")
    def check_invariants(self) -> JobRecord:
        """Enforce the progress and error message invariants."""
        if (self.progress == 100) != (self.status == JobStatus.SUCCEEDED):
            raise ValueError(
                f"progress {self.progress} is inconsistent with status "
                f"{self.status.value}"
            )
        if bool(self.error_message) != (self.status == JobStatus.FAILED):
            raise ValueError(
                "error_message must be set exactly when status is failed"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def cancelled(self) -> JobRecord:
        """Optimistic value for a cancel request."""
        return self.model_copy(
            update={"status": JobStatus.CANCELLED, "error_message": None}
        )

    def retried(self) -> JobRecord:
        """Optimistic value for a retry request (reset to PENDING)."""
        return self.model_copy(
            update={
                "status": JobStatus.PENDING,
                "progress": 0,
                "completed_steps": 0,
                "current_step": "",
                "started_at": None,
                "completed_at": None,
                "error_message": None,
            }
        )


class LogEvent(BaseModel):
    """One append-only event emitted by a job's log stream."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int | str
    timestamp: datetime | None = None
    level: str = "INFO"
    step: str = ""
    message: str = ""
    details: dict[str, Any] | None = None

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, value: object) -> str:
        return str(value or "INFO").upper()


def is_job_active(value: object) -> bool:
    """Whether a cached value describes a job that can still change."""
    return isinstance(value, JobRecord) and value.is_active


__all__ = [
    "JobStatus",
    "JobKind",
    "JobRecord",
    "LogEvent",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "is_job_active",
]
