"""Per-account image settings routes: prompt affixes, defaults, brand colors, style codes."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.accounts.context import PERM_SETTINGS_READ, PERM_SETTINGS_WRITE, AccountContext
from src.accounts.dependencies import http_error, require_account_permission
from src.core.errors import PipelineError
from src.images import settings as image_settings
from src.schemas.images import (
    BrandColorsRequest,
    BrandColorsResponse,
    ImageSettingsResponse,
    ImageSettingsUpdateRequest,
    StyleCodeRequest,
    StyleCodesResponse,
)
from src.storage.db import get_session


router = APIRouter(prefix="/settings", tags=["settings"])


def _settings_response(ctx: AccountContext, view: image_settings.ImageSettingsView) -> ImageSettingsResponse:
    return ImageSettingsResponse(
        account_id=ctx.account_id,
        prompt_prefix=view.prompt_prefix,
        prompt_suffix=view.prompt_suffix,
        defaults=view.defaults,
        brand_colors=view.brand_colors,
        preferred_style_codes=view.preferred_style_codes,
    )


@router.get("/image-generation", response_model=ImageSettingsResponse)
def get_image_settings(
    ctx: AccountContext = Depends(require_account_permission(PERM_SETTINGS_READ)),
    session: Session = Depends(get_session),
) -> ImageSettingsResponse:
    try:
        view = image_settings.get_image_settings(session, ctx)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _settings_response(ctx, view)


@router.put("/image-generation", response_model=ImageSettingsResponse)
def update_image_settings(
    payload: ImageSettingsUpdateRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_SETTINGS_WRITE)),
    session: Session = Depends(get_session),
) -> ImageSettingsResponse:
    try:
        view = image_settings.update_image_settings(
            session,
            ctx,
            prompt_prefix=payload.prompt_prefix,
            prompt_suffix=payload.prompt_suffix,
            defaults=payload.defaults or None,
            clear_affixes=payload.clear_affixes,
        )
    except PipelineError as exc:
        raise http_error(exc) from exc
    return _settings_response(ctx, view)


@router.get("/brand-colors", response_model=BrandColorsResponse)
def list_brand_colors(
    ctx: AccountContext = Depends(require_account_permission(PERM_SETTINGS_READ)),
    session: Session = Depends(get_session),
) -> BrandColorsResponse:
    try:
        items = image_settings.list_brand_colors(session, ctx)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return BrandColorsResponse(account_id=ctx.account_id, items=items)


@router.post("/brand-colors", response_model=BrandColorsResponse, status_code=201)
def add_brand_colors(
    payload: BrandColorsRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_SETTINGS_WRITE)),
    session: Session = Depends(get_session),
) -> BrandColorsResponse:
    try:
        items = image_settings.add_brand_colors(session, ctx, name=payload.name, colors=payload.colors)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return BrandColorsResponse(account_id=ctx.account_id, items=items)


@router.delete("/brand-colors/{index}", response_model=BrandColorsResponse)
def remove_brand_colors(
    index: int,
    ctx: AccountContext = Depends(require_account_permission(PERM_SETTINGS_WRITE)),
    session: Session = Depends(get_session),
) -> BrandColorsResponse:
    try:
        items = image_settings.remove_brand_colors(session, ctx, index)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return BrandColorsResponse(account_id=ctx.account_id, items=items)


@router.get("/style-codes", response_model=StyleCodesResponse)
def list_style_codes(
    ctx: AccountContext = Depends(require_account_permission(PERM_SETTINGS_READ)),
    session: Session = Depends(get_session),
) -> StyleCodesResponse:
    try:
        items = image_settings.list_style_codes(session, ctx)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return StyleCodesResponse(account_id=ctx.account_id, items=items)


@router.post("/style-codes", response_model=StyleCodesResponse, status_code=201)
def add_style_code(
    payload: StyleCodeRequest,
    ctx: AccountContext = Depends(require_account_permission(PERM_SETTINGS_WRITE)),
    session: Session = Depends(get_session),
) -> StyleCodesResponse:
    try:
        items = image_settings.add_style_code(session, ctx, payload.model_dump(exclude_none=True))
    except PipelineError as exc:
        raise http_error(exc) from exc
    return StyleCodesResponse(account_id=ctx.account_id, items=items)


@router.delete("/style-codes/{index}", response_model=StyleCodesResponse)
def remove_style_code(
    index: int,
    ctx: AccountContext = Depends(require_account_permission(PERM_SETTINGS_WRITE)),
    session: Session = Depends(get_session),
) -> StyleCodesResponse:
    try:
        items = image_settings.remove_style_code(session, ctx, index)
    except PipelineError as exc:
        raise http_error(exc) from exc
    return StyleCodesResponse(account_id=ctx.account_id, items=items)
