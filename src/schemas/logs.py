"""Schemas for the job log stream endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel


class LogEntryItem(BaseModel):
    id: int
    job_id: Optional[str]
    level: str
    source: str
    message: str
    metadata: Optional[Dict[str, Any]]
    timestamp: datetime


class LogTailResponse(BaseModel):
    account_id: str
    entries: list[LogEntryItem]
    cursor: Optional[datetime]
    cursor_id: Optional[int] = None
    poll_interval_seconds: int


class LogClearResponse(BaseModel):
    account_id: str
    deleted: int


class LogStatsResponse(BaseModel):
    account_id: str
    window_hours: int
    total: int
    by_level: Dict[str, int]
