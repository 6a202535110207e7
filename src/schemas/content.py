"""Schemas for generated content review endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ContentItemResponse(BaseModel):
    id: str
    story_id: Optional[str]
    prompt_category: str
    template_id: Optional[str]
    version_id: Optional[str]
    job_id: Optional[str]
    regenerated_from_id: Optional[str]
    status: str
    content_data: Dict[str, Any]
    raw_text: Optional[str]
    parse_error: Optional[str]
    created_at: datetime
    updated_at: datetime


class ContentListResponse(BaseModel):
    account_id: str
    items: list[ContentItemResponse]


class ContentStatusRequest(BaseModel):
    status: str = Field(min_length=1, max_length=24)
    reason: Optional[str] = Field(default=None, max_length=500)


class ContentRegenerateRequest(BaseModel):
    model: Optional[str] = None
    provider: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1)


class ContentRegenerateResponse(BaseModel):
    job_id: str
    content_id: str
    deduplicated: bool = False
