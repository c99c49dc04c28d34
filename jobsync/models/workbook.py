"""Pydantic models for uploaded workbooks and their sheets.

Only the fields the sync layer reasons about are declared; any other
fields the backend returns are preserved as extras so consumers can read
them without a model change.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class Workbook(BaseModel):
    """An uploaded spreadsheet workbook."""

    model_config = ConfigDict(frozen=True, extra="allow")

    id: int
    file_name: str
    client_name: str = ""
    period: str = ""
    status: str = "pending"
    total_sheets: int = 0
    processed_sheets: int = 0
    error_message: str | None = None
    uploaded_at: datetime | None = None
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None


class WorkbookPage(BaseModel):
    """One page of the paginated workbook list."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    count: int = 0
    next: str | None = None
    previous: str | None = None
    results: tuple[Workbook, ...] = ()


class Sheet(BaseModel):
    """A single sheet detected inside a workbook."""

    model_config = ConfigDict(frozen=True, extra="allow")

    id: int
    workbook: int
    sheet_name: str
    sheet_type: str | None = None
    sheet_index: int = 0
    processed: bool = False
    detection_confidence: float = 0.0
    error_message: str | None = None


__all__ = ["Workbook", "WorkbookPage", "Sheet"]
