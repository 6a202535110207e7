"""Schemas for job queue endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class JobCreateRequest(BaseModel):
    type: str = Field(min_length=1, max_length=40)
    payload: Dict[str, Any] = Field(default_factory=dict)
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)


class JobCreateResponse(BaseModel):
    job_id: str
    status: str
    deduplicated: bool = False


class JobItem(BaseModel):
    id: str
    account_id: str
    job_type: str
    status: str
    payload: Dict[str, Any]
    progress_percentage: int
    progress_details: Optional[str]
    results: Optional[Dict[str, Any]]
    error_message: Optional[str]
    retry_count: int
    max_retries: int
    cancel_requested: bool
    retry_of_job_id: Optional[str]
    worker_id: Optional[str]
    created_at: datetime
    started_at: Optional[datetime]
    heartbeat_at: Optional[datetime]
    completed_at: Optional[datetime]


class JobListResponse(BaseModel):
    account_id: str
    items: list[JobItem]


class JobCancelResponse(BaseModel):
    job: JobItem
    immediate: bool


class JobStatsResponse(BaseModel):
    account_id: str
    window_hours: int
    by_status: Dict[str, int]
    total: int
    queued_now: int
    processing_now: int
