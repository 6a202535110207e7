"""Schemas for workflow management endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class StepCondition(BaseModel):
    field: str = Field(min_length=1)
    operator: str = Field(min_length=1)
    value: Optional[str] = None


class StepCreateRequest(BaseModel):
    template_id: str = Field(min_length=1, max_length=36)
    display_name: str = Field(min_length=1, max_length=120)
    conditions: list[StepCondition] = Field(default_factory=list)
    continue_on_error: bool = False
    enabled: bool = True
    position: Optional[int] = Field(default=None, ge=1)


class StepUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    conditions: Optional[list[StepCondition]] = None
    continue_on_error: Optional[bool] = None
    enabled: Optional[bool] = None


class WorkflowCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None
    steps: list[StepCreateRequest] = Field(default_factory=list)


class StepReorderRequest(BaseModel):
    step_ids: list[str]


class WorkflowRunRequest(BaseModel):
    story_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    model: Optional[str] = None
    provider: Optional[str] = None


class StepItem(BaseModel):
    id: str
    step_order: int
    template_id: str
    display_name: str
    conditions: list[Dict[str, Any]]
    continue_on_error: bool
    enabled: bool


class WorkflowItem(BaseModel):
    id: str
    name: str
    description: Optional[str]
    is_active: bool
    steps: list[StepItem]
    created_at: datetime
    updated_at: datetime


class WorkflowListResponse(BaseModel):
    account_id: str
    items: list[WorkflowItem]


class WorkflowRunResponse(BaseModel):
    job_id: str
    workflow_id: str
    deduplicated: bool = False
