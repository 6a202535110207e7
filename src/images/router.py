"""Image generation API routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.accounts.context import PERM_CONTENT_READ, PERM_IMAGES_READ, PERM_IMAGES_WRITE, PERM_JOBS_WRITE, AccountContext, require_permission
from src.accounts.dependencies import http_error, require_account_permission
from src.content.generator import get_content
from src.core.config import get_settings
from src.core.errors import InvalidRequest, PipelineError
from src.images.options import options_for
from src.images.service import image_parameters, list_images, transition_image_status
from src.jobs.queue import enqueue_job
from src.jobs.states import JOB_GENERATE_IMAGE
from src.schemas.images import (
    IdeogramOptionsResponse,
    ImageGenerateRequest,
    ImageGenerateResponse,
    ImageItem,
    ImageListResponse,
    ImageStatusRequest,
)
from src.storage.db import get_session
from src.storage.models import ImageGenerationRecord


router = APIRouter(prefix="/images", tags=["images"])


def to_image_item(record: ImageGenerationRecord) -> ImageItem:
    return ImageItem(
        id=record.id,
        content_id=record.content_id,
        job_id=record.job_id,
        provider=record.provider,
        model_version=record.model_version,
        prompt_user=record.prompt_user,
        prompt_final=record.prompt_final,
        parameters=image_parameters(record),
        result_url=record.result_url,
        provider_url=record.provider_url,
        alt_text=record.alt_text,
        seed=record.seed,
        resolution=record.resolution,
        cost_estimate=record.cost_estimate,
        generation_time_s=record.generation_time_s,
        is_safe=record.is_safe,
        status=record.status,
        created_at=record.created_at,
    )


@router.post("/generate-for-content/{content_id}", response_model=ImageGenerateResponse, status_code=202)
def generate_for_content(
    content_id: str,
    payload: Optional[ImageGenerateRequest] = None,
    ctx: AccountContext = Depends(require_account_permission(PERM_IMAGES_WRITE)),
    session: Session = Depends(get_session),
) -> ImageGenerateResponse:
    params = (payload or ImageGenerateRequest()).model_dump(exclude_none=True, exclude_defaults=True)
    try:
        if not get_settings().image_generation_enabled:
            raise InvalidRequest("image_generation_disabled")
        require_permission(ctx, PERM_JOBS_WRITE)
        get_content(session, require_permission(ctx, PERM_CONTENT_READ), content_id)
        result = enqueue_job(
            session,
            ctx,
            job_type=JOB_GENERATE_IMAGE,
            payload={"content_id": content_id, "params": params},
        )
    except PipelineError as exc:
        raise http_error(exc) from exc
    return ImageGenerateResponse(job_id=result.job.id, content_id=content_id, deduplicated=result.deduplicated)


@router.get("/ideogram/options", response_model=IdeogramOptionsResponse)
def ideogram_options(
    model_version: Optional[str] = Query(default=None, alias="modelVersion"),
    ctx: AccountContext = Depends(require_account_permission(PERM_IMAGES_READ)),
) -> IdeogramOptionsResponse:
    del ctx
    try:
        return IdeogramOptionsResponse(**options_for(model_version))
    except PipelineError as exc:
        raise http_error(exc) from exc


@router.get("", response_model=ImageListResponse)
def list_generated_images(
    content_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    ctx: AccountContext = Depends(require_account_permission(PERM_IMAGES_READ)),
    session: Session = Depends(get_session),
) -> ImageListResponse:
    try:
        records = list_images(session, ctx, content_id=content_id, status=status, limit=limit)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return ImageListResponse(account_id=ctx.account_id, items=[to_image_item(record) for record in records])


@router.put("/{image_id}/status", response_model=ImageItem)
def change_image_status(
    image_id: str,
    payload: ImageStatusRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_IMAGES_WRITE)),
    session: Session = Depends(get_session),
) -> ImageItem:
    try:
        record = transition_image_status(session, ctx, image_id, target=payload.status)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return to_image_item(record)
