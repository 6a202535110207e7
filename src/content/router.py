"""Content review API routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.accounts.context import PERM_CONTENT_READ, PERM_CONTENT_REVIEW, PERM_JOBS_WRITE, AccountContext, require_permission
from src.accounts.dependencies import http_error, require_account_permission
from src.content.generator import content_data, get_content, list_content
from src.content.lifecycle import REGENERATABLE_STATUSES, transition_content_status
from src.core.errors import InvalidTransition, PipelineError
from src.jobs.queue import enqueue_job
from src.jobs.states import JOB_REGENERATE
from src.schemas.content import (
    ContentItemResponse,
    ContentListResponse,
    ContentRegenerateRequest,
    ContentRegenerateResponse,
    ContentStatusRequest,
)
from src.storage.db import get_session
from src.storage.models import ContentItem


router = APIRouter(prefix="/content", tags=["content"])


def to_content_item(item: ContentItem) -> ContentItemResponse:
    return ContentItemResponse(
        id=item.id,
        story_id=item.story_id,
        prompt_category=item.prompt_category,
        template_id=item.template_id,
        version_id=item.version_id,
        job_id=item.job_id,
        regenerated_from_id=item.regenerated_from_id,
        status=item.status,
        content_data=content_data(item),
        raw_text=item.raw_text,
        parse_error=item.parse_error,
        created_at=item.created_at,
        updated_at=item.updated_at,
    )


@router.get("", response_model=ContentListResponse)
def list_content_items(
    status: Optional[str] = None,
    category: Optional[str] = None,
    story_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    ctx: AccountContext = Depends(require_account_permission(PERM_CONTENT_READ)),
    session: Session = Depends(get_session),
) -> ContentListResponse:
    try:
        items = list_content(session, ctx, status=status, category=category, story_id=story_id, limit=limit)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return ContentListResponse(account_id=ctx.account_id, items=[to_content_item(item) for item in items])


@router.get("/{content_id}", response_model=ContentItemResponse)
def get_content_item(
    content_id: str,
    ctx: AccountContext = Depends(require_account_permission(PERM_CONTENT_READ)),
    session: Session = Depends(get_session),
) -> ContentItemResponse:
    try:
        return to_content_item(get_content(session, ctx, content_id))
    except PipelineError as exc:
        raise http_error(exc) from exc


@router.post("/{content_id}/status", response_model=ContentItemResponse)
def change_content_status(
    content_id: str,
    payload: ContentStatusRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_CONTENT_REVIEW)),
    session: Session = Depends(get_session),
) -> ContentItemResponse:
    try:
        item = transition_content_status(session, ctx, content_id, target=payload.status, reason=payload.reason)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return to_content_item(item)


@router.post("/{content_id}/regenerate", response_model=ContentRegenerateResponse, status_code=202)
def regenerate_content(
    content_id: str,
    payload: Optional[ContentRegenerateRequest] = None,
    ctx: AccountContext = Depends(require_account_permission(PERM_CONTENT_REVIEW)),
    session: Session = Depends(get_session),
) -> ContentRegenerateResponse:
    config = (payload or ContentRegenerateRequest()).model_dump(exclude_none=True)
    try:
        require_permission(ctx, PERM_JOBS_WRITE)
        item = get_content(session, ctx, content_id)
        if item.status not in REGENERATABLE_STATUSES:
            raise InvalidTransition(entity="content", current=item.status, target="regenerate")
        job_payload = {"content_id": item.id}
        if config:
            job_payload["config"] = config
        result = enqueue_job(session, ctx, job_type=JOB_REGENERATE, payload=job_payload)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return ContentRegenerateResponse(job_id=result.job.id, content_id=item.id, deduplicated=result.deduplicated)
