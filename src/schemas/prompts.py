"""Schemas for prompt template and version endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class TemplateCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    category: str = Field(min_length=1, max_length=48)
    prompt_content: str = Field(min_length=1)
    description: Optional[str] = None
    system_message: Optional[str] = None


class TemplateSummaryItem(BaseModel):
    id: str
    name: str
    category: str
    description: Optional[str]
    current_version_id: Optional[str]
    current_version_number: Optional[int]
    version_count: int
    usage_count: int
    created_at: datetime
    updated_at: datetime


class TemplateListResponse(BaseModel):
    account_id: str
    items: list[TemplateSummaryItem]


class VersionItem(BaseModel):
    id: str
    template_id: str
    version_number: int
    prompt_content: str
    system_message: Optional[str]
    notes: Optional[str]
    created_by: Optional[str]
    is_current: bool
    created_at: datetime
    usage_count: Optional[int] = None


class TemplateDetailResponse(BaseModel):
    id: str
    name: str
    category: str
    description: Optional[str]
    is_active: bool
    current_version: Optional[VersionItem]
    created_at: datetime
    updated_at: datetime


class VersionCreateRequest(BaseModel):
    prompt_content: str = Field(min_length=1)
    system_message: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=255)


class VersionListResponse(BaseModel):
    template_id: str
    items: list[VersionItem]


class VersionTestRequest(BaseModel):
    variables: Dict[str, Any] = Field(default_factory=dict)
    model: Optional[str] = None
    provider: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1)


class VersionTestResponse(BaseModel):
    template_id: str
    version_id: str
    rendered_prompt: str
    system_message: Optional[str]
    output: str
    provider: str
    model_used: str
    tokens_used: int
    latency_ms: int
    attempts: int
    log_id: str


class HistoryItem(BaseModel):
    id: str
    template_id: Optional[str]
    version_id: Optional[str]
    version_number: Optional[int]
    job_id: Optional[str]
    content_id: Optional[str]
    ai_service: str
    model_used: str
    tokens_used: int
    generation_time_ms: int
    cost_estimate_usd: Optional[float]
    success: bool
    error: Optional[str]
    created_at: datetime


class HistoryResponse(BaseModel):
    account_id: str
    items: list[HistoryItem]


class VersionStatsItem(BaseModel):
    version_id: str
    version_number: int
    is_current: bool
    uses: int
    successes: int
    failures: int
    avg_tokens: float
    avg_generation_time_ms: float
    last_used_at: Optional[datetime]


class VersionStatsResponse(BaseModel):
    template_id: str
    items: list[VersionStatsItem]


class SeedResponse(BaseModel):
    account_id: str
    created: list[str]
    skipped_categories: list[str]
