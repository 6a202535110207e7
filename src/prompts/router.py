"""Prompt template API routes: templates, immutable versions, history and stats."""

from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.accounts.context import PERM_TEMPLATES_READ, PERM_TEMPLATES_WRITE, AccountContext
from src.accounts.dependencies import http_error, require_account_permission
from src.ai.orchestrator import GenerationConfig, test_version
from src.core.errors import PipelineError
from src.prompts import store
from src.prompts.defaults import seed_default_templates
from src.schemas.prompts import (
    HistoryItem,
    HistoryResponse,
    SeedResponse,
    TemplateCreateRequest,
    TemplateDetailResponse,
    TemplateListResponse,
    TemplateSummaryItem,
    VersionCreateRequest,
    VersionItem,
    VersionListResponse,
    VersionStatsItem,
    VersionStatsResponse,
    VersionTestRequest,
    VersionTestResponse,
)
from src.storage.db import get_session
from src.storage.models import TemplateVersion


router = APIRouter(prefix="/prompts", tags=["prompts"])


def _version_item(version: TemplateVersion, *, usage_count: Optional[int] = None) -> VersionItem:
    return VersionItem(
        id=version.id,
        template_id=version.template_id,
        version_number=version.version_number,
        prompt_content=version.prompt_content,
        system_message=version.system_message,
        notes=version.notes,
        created_by=version.created_by,
        is_current=version.is_current,
        created_at=version.created_at,
        usage_count=usage_count,
    )


def _detail_response(detail: store.TemplateDetail) -> TemplateDetailResponse:
    template = detail.template
    return TemplateDetailResponse(
        id=template.id,
        name=template.name,
        category=template.category,
        description=template.description,
        is_active=template.is_active,
        current_version=_version_item(detail.current_version) if detail.current_version is not None else None,
        created_at=template.created_at,
        updated_at=template.updated_at,
    )


@router.get("/templates", response_model=TemplateListResponse)
def list_templates(
    category: Optional[str] = None,
    ctx: AccountContext = Depends(require_account_permission(PERM_TEMPLATES_READ)),
    session: Session = Depends(get_session),
) -> TemplateListResponse:
    try:
        summaries = store.list_templates(session, ctx, category=category)
    except PipelineError as exc:
        raise http_error(exc) from exc
    items = []
    for summary in summaries:
        data = asdict(summary)
        data["id"] = data.pop("template_id")
        items.append(TemplateSummaryItem(**data))
    return TemplateListResponse(account_id=ctx.account_id, items=items)


@router.post("/templates", response_model=TemplateDetailResponse, status_code=201)
def create_template(
    payload: TemplateCreateRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_TEMPLATES_WRITE)),
    session: Session = Depends(get_session),
) -> TemplateDetailResponse:
    try:
        template = store.create_template(
            session,
            ctx,
            name=payload.name,
            category=payload.category,
            prompt_content=payload.prompt_content,
            description=payload.description,
            system_message=payload.system_message,
        )
        detail = store.get_template(session, ctx, template.id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _detail_response(detail)


@router.get("/templates/{template_id}", response_model=TemplateDetailResponse)
def get_template(
    template_id: str,
    ctx: AccountContext = Depends(require_account_permission(PERM_TEMPLATES_READ)),
    session: Session = Depends(get_session),
) -> TemplateDetailResponse:
    try:
        return _detail_response(store.get_template(session, ctx, template_id))
    except PipelineError as exc:
        raise http_error(exc) from exc


@router.get("/templates/{template_id}/versions", response_model=VersionListResponse)
def list_versions(
    template_id: str,
    ctx: AccountContext = Depends(require_account_permission(PERM_TEMPLATES_READ)),
    session: Session = Depends(get_session),
) -> VersionListResponse:
    try:
        versions = store.list_versions(session, ctx, template_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return VersionListResponse(
        template_id=template_id,
        items=[_version_item(item.version, usage_count=item.usage_count) for item in versions],
    )


@router.post("/templates/{template_id}/versions", response_model=VersionItem, status_code=201)
def create_version(
    template_id: str,
    payload: VersionCreateRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_TEMPLATES_WRITE)),
    session: Session = Depends(get_session),
) -> VersionItem:
    try:
        version = store.create_version(
            session,
            ctx,
            template_id,
            prompt_content=payload.prompt_content,
            system_message=payload.system_message,
            notes=payload.notes,
            created_by=ctx.user_id,
        )
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _version_item(version)


@router.put("/templates/{template_id}/versions/{version_id}/current", response_model=VersionItem)
def set_current_version(
    template_id: str,
    version_id: str,
    ctx: AccountContext = Depends(require_account_permission(PERM_TEMPLATES_WRITE)),
    session: Session = Depends(get_session),
) -> VersionItem:
    try:
        version = store.set_current_version(session, ctx, template_id, version_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _version_item(version)


@router.post("/templates/{template_id}/versions/{version_id}/test", response_model=VersionTestResponse)
def test_template_version(
    template_id: str,
    version_id: str,
    payload: VersionTestRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_TEMPLATES_WRITE)),
    session: Session = Depends(get_session),
) -> VersionTestResponse:
    config = GenerationConfig(
        model=payload.model,
        provider=payload.provider,
        temperature=payload.temperature,
        max_tokens=payload.max_tokens,
    )
    try:
        result = test_version(session, ctx, template_id, version_id, variables=payload.variables, config=config)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return VersionTestResponse(
        template_id=template_id,
        version_id=version_id,
        rendered_prompt=result.rendered.prompt,
        system_message=result.rendered.system_message,
        output=result.output.text,
        provider=result.output.provider,
        model_used=result.output.model_used,
        tokens_used=result.output.tokens_used,
        latency_ms=result.output.latency_ms,
        attempts=result.attempts,
        log_id=result.log_id,
    )


@router.get("/history", response_model=HistoryResponse)
def generation_history(
    template_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    ctx: AccountContext = Depends(require_account_permission(PERM_TEMPLATES_READ)),
    session: Session = Depends(get_session),
) -> HistoryResponse:
    try:
        history = store.get_history(session, ctx, template_id=template_id, limit=limit)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return HistoryResponse(
        account_id=ctx.account_id,
        items=[
            HistoryItem(
                id=item.log.id,
                template_id=item.log.template_id,
                version_id=item.log.version_id,
                version_number=item.version_number,
                job_id=item.log.job_id,
                content_id=item.log.content_id,
                ai_service=item.log.ai_service,
                model_used=item.log.model_used,
                tokens_used=item.log.tokens_used,
                generation_time_ms=item.log.generation_time_ms,
                cost_estimate_usd=item.log.cost_estimate_usd,
                success=item.log.success,
                error=item.log.error,
                created_at=item.log.created_at,
            )
            for item in history
        ],
    )


@router.get("/templates/{template_id}/stats", response_model=VersionStatsResponse)
def version_stats(
    template_id: str,
    ctx: AccountContext = Depends(require_account_permission(PERM_TEMPLATES_READ)),
    session: Session = Depends(get_session),
) -> VersionStatsResponse:
    try:
        stats = store.get_stats(session, ctx, template_id)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return VersionStatsResponse(template_id=template_id, items=[VersionStatsItem(**asdict(item)) for item in stats])


@router.post("/seed", response_model=SeedResponse)
def seed_templates(
    ctx: AccountContext = Depends(require_account_permission(PERM_TEMPLATES_WRITE)),
    session: Session = Depends(get_session),
) -> SeedResponse:
    try:
        result = seed_default_templates(session, ctx)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return SeedResponse(account_id=ctx.account_id, created=result.created, skipped_categories=result.skipped_categories)
