"""Generate, record and review images for content items."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import httpx
from sqlalchemy.orm import Session

from src.accounts.context import (
    PERM_IMAGES_READ,
    PERM_IMAGES_WRITE,
    AccountContext,
    require_account,
    require_permission,
    scoped,
)
from src.ai.orchestrator import NullStepHooks, StepHooks, call_provider_step
from src.ai.providers.base import GeneratedImage, ImageGenerationRequest, ImageProvider, ReferenceImage
from src.ai.providers.factory import get_image_provider
from src.ai.providers.ideogram_provider import MAX_REFERENCE_IMAGES
from src.content.generator import build_variables, content_data
from src.core.config import get_settings
from src.core.errors import InvalidRequest, InvalidTransition, NoTemplate, NotFound, PipelineError, UnsafeContent
from src.core.logger import get_logger
from src.core.metrics import record_images_generated, record_provider_call
from src.images.cdn import CDNUploadError, ImageUploader, get_image_uploader
from src.images.options import coerce_style_type, validate_model_version
from src.images.settings import (
    STYLE_CODE_PATTERN,
    ImageSettingsView,
    find_brand_colors,
    load_image_settings,
    normalize_defaults,
)
from src.prompts.categories import CATEGORY_IMAGE_GENERATION
from src.prompts.store import resolve_current_version
from src.prompts.substitutor import render_text
from src.storage.models import ContentItem, GenerationLog, ImageGenerationRecord, Story, Template, TemplateVersion


logger = get_logger("eden.images.service")

LOG_SOURCE = "image_service"

IMAGE_STATUS_PENDING_REVIEW = "pending_review"
IMAGE_STATUS_APPROVED = "approved"
IMAGE_STATUS_ARCHIVED = "archived"
IMAGE_STATUSES = (IMAGE_STATUS_PENDING_REVIEW, IMAGE_STATUS_APPROVED, IMAGE_STATUS_ARCHIVED)
IMAGE_TRANSITIONS = {
    IMAGE_STATUS_PENDING_REVIEW: frozenset({IMAGE_STATUS_APPROVED, IMAGE_STATUS_ARCHIVED}),
    IMAGE_STATUS_ARCHIVED: frozenset({IMAGE_STATUS_PENDING_REVIEW}),
    IMAGE_STATUS_APPROVED: frozenset(),
}

ReferenceLoader = Callable[[ImageGenerationRecord], ReferenceImage]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


@dataclass(frozen=True)
class ImageRequestParams:
    """Caller-facing request; unset fields fall back to the account's image defaults."""

    prompt: Optional[str] = None
    model_version: Optional[str] = None
    style_type: Optional[str] = None
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    rendering_speed: Optional[str] = None
    magic_prompt: Optional[str] = None
    num_images: Optional[int] = None
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None
    style_codes: Tuple[str, ...] = ()
    use_preferred_style_codes: bool = False
    reference_image_ids: Tuple[str, ...] = ()
    use_account_colors: bool = False
    selected_color_template_name: Optional[str] = None
    apply_account_prompt_affixes: bool = True

    @classmethod
    def from_payload(cls, payload: Optional[Mapping[str, Any]]) -> ImageRequestParams:
        data = dict(payload or {})
        seed = _first(data, "seed")
        num_images = _first(data, "num_images", "numImages")
        affixes = _first(data, "apply_account_prompt_affixes", "applyAccountPromptAffixes")
        return cls(
            prompt=_first(data, "prompt", "custom_prompt", "customPrompt"),
            model_version=_first(data, "model_version", "modelVersion"),
            style_type=_first(data, "style_type", "styleType"),
            aspect_ratio=_first(data, "aspect_ratio", "aspectRatio"),
            resolution=_first(data, "resolution"),
            rendering_speed=_first(data, "rendering_speed", "renderingSpeed"),
            magic_prompt=_first(data, "magic_prompt", "magicPrompt"),
            num_images=int(num_images) if num_images is not None else None,
            negative_prompt=_first(data, "negative_prompt", "negativePrompt"),
            seed=int(seed) if seed is not None else None,
            style_codes=tuple(str(code) for code in (_first(data, "style_codes", "styleCodes") or [])),
            use_preferred_style_codes=bool(_first(data, "use_preferred_style_codes", "usePreferredStyleCodes")),
            reference_image_ids=tuple(
                str(item) for item in (_first(data, "reference_image_ids", "referenceImageIds") or [])
            ),
            use_account_colors=bool(_first(data, "use_account_colors", "useAccountColors")),
            selected_color_template_name=_first(data, "selected_color_template_name", "selectedColorTemplateName"),
            apply_account_prompt_affixes=True if affixes is None else bool(affixes),
        )


@dataclass(frozen=True)
class PreparedImageRequest:
    request: ImageGenerationRequest
    prompt_user: str
    requested_style_type: Optional[str]
    template: Optional[Template] = None
    version: Optional[TemplateVersion] = None
    reference_image_ids: Tuple[str, ...] = ()
    palette_name: Optional[str] = None

    @property
    def style_coerced(self) -> bool:
        requested = (self.requested_style_type or "").strip().upper()
        return bool(requested) and requested != self.request.style_type

    def parameters(self) -> Dict[str, Any]:
        request = self.request
        return {
            "style_type": request.style_type,
            "requested_style_type": self.requested_style_type,
            "aspect_ratio": None if request.resolution else request.aspect_ratio,
            "resolution": request.resolution,
            "rendering_speed": request.rendering_speed,
            "magic_prompt": request.magic_prompt,
            "negative_prompt": request.negative_prompt,
            "seed": request.seed,
            "num_images": request.num_images,
            "style_codes": list(request.style_codes),
            "color_palette": list(request.color_palette),
            "palette_name": self.palette_name,
            "reference_image_ids": list(self.reference_image_ids),
        }


@dataclass(frozen=True)
class ImageGenerationOutcome:
    records: List[ImageGenerationRecord]
    prepared: PreparedImageRequest
    attempts: int
    unsafe_count: int = 0
    upload_failures: int = 0
    log_ids: List[str] = field(default_factory=list)

    @property
    def image_ids(self) -> List[str]:
        return [record.id for record in self.records if record.is_safe]


def image_parameters(record: ImageGenerationRecord) -> Dict[str, Any]:
    try:
        parsed = json.loads(record.parameters_json or "{}")
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def compose_prompt(prompt: str, settings: ImageSettingsView, *, apply_affixes: bool) -> str:
    parts = [prompt.strip()]
    if apply_affixes:
        parts = [settings.prompt_prefix or "", prompt.strip(), settings.prompt_suffix or ""]
    return " ".join(part.strip() for part in parts if part and part.strip())


def default_image_prompt(title: str, summary: str) -> str:
    cleaned = " ".join((summary or "").split())
    if len(cleaned) > 300:
        cleaned = cleaned[:300].rstrip() + "..."
    parts = [f'Editorial illustration for "{title.strip()}".' if title.strip() else "Editorial illustration.", cleaned]
    parts.append("Warm natural light, no text overlay.")
    return " ".join(part for part in parts if part)


def _content_variables(session: Session, ctx: AccountContext, content: ContentItem) -> Dict[str, Any]:
    story = session.get(Story, content.story_id) if content.story_id else None
    data = content_data(content)
    body = str(data.get("body") or data.get("text") or content.raw_text or "")
    extra: Dict[str, Any] = {"content_id": content.id, "content_category": content.prompt_category, "content_text": body}
    if data.get("title"):
        extra["title"] = str(data["title"])
    variables = build_variables(session, ctx, story=story, extra=extra)
    variables.setdefault("title", "")
    variables.setdefault("summary", body[:300])
    return variables


def _resolve_palette(settings: ImageSettingsView, params: ImageRequestParams) -> Tuple[Optional[str], Tuple[str, ...]]:
    if params.selected_color_template_name:
        name = params.selected_color_template_name
        return name, tuple(find_brand_colors(settings, name))
    if params.use_account_colors and settings.brand_colors:
        first = settings.brand_colors[0]
        return str(first.get("name") or ""), tuple(str(color) for color in first.get("colors", []))
    return None, ()


def _resolve_style_codes(settings: ImageSettingsView, params: ImageRequestParams) -> Tuple[str, ...]:
    codes: List[str] = []
    for code in params.style_codes:
        normalized = code.strip().upper()
        if not STYLE_CODE_PATTERN.match(normalized):
            raise InvalidRequest(f"invalid_style_code {normalized or '<empty>'}")
        codes.append(normalized)
    if params.use_preferred_style_codes:
        for entry in settings.preferred_style_codes:
            if entry.get("type") == "style_code":
                codes.append(str(entry.get("value")))
    return tuple(dict.fromkeys(codes))


def _preferred_seed(settings: ImageSettingsView, params: ImageRequestParams) -> Optional[int]:
    if params.seed is not None:
        return params.seed
    if not params.use_preferred_style_codes:
        return None
    for entry in settings.preferred_style_codes:
        if entry.get("type") == "seed":
            return int(entry["value"])
    return None


def download_reference_image(record: ImageGenerationRecord) -> ReferenceImage:
    timeout = get_settings().image_step_timeout_seconds
    try:
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            response = client.get(record.result_url)
    except httpx.HTTPError as exc:
        raise InvalidRequest("reference_image_download_failed", details={"image_id": record.id}) from exc
    if response.status_code >= 400:
        raise InvalidRequest("reference_image_download_failed", details={"image_id": record.id})
    mime_type = response.headers.get("content-type", "image/png").split(";")[0].strip() or "image/png"
    return ReferenceImage(filename=f"{record.id}.png", content=response.content, mime_type=mime_type)


def _load_reference_images(
    session: Session,
    ctx: AccountContext,
    image_ids: Tuple[str, ...],
    loader: ReferenceLoader,
) -> Tuple[ReferenceImage, ...]:
    if len(image_ids) > MAX_REFERENCE_IMAGES:
        raise InvalidRequest(
            "too_many_reference_images",
            details={"max": MAX_REFERENCE_IMAGES, "received": len(image_ids)},
        )
    images: List[ReferenceImage] = []
    for image_id in image_ids:
        record = session.scalar(scoped(ctx, ImageGenerationRecord, ImageGenerationRecord.id == image_id))
        if record is None:
            raise NotFound("reference_image_not_found", details={"image_id": image_id})
        images.append(loader(record))
    return tuple(images)


def prepare_image_request(
    session: Session,
    ctx: AccountContext,
    *,
    content: ContentItem,
    params: ImageRequestParams,
    account_settings: Optional[ImageSettingsView] = None,
    reference_loader: ReferenceLoader = download_reference_image,
) -> PreparedImageRequest:
    """Apply account affixes, palette, defaults, style coercion and references."""

    bound = require_account(ctx)
    settings = account_settings or load_image_settings(session, bound)

    overrides = {
        key: value
        for key, value in {
            "model_version": params.model_version,
            "aspect_ratio": params.aspect_ratio,
            "resolution": params.resolution,
            "rendering_speed": params.rendering_speed,
            "magic_prompt": params.magic_prompt,
            "num_images": params.num_images,
            "negative_prompt": params.negative_prompt,
        }.items()
        if value is not None
    }
    defaults = normalize_defaults(overrides, base=settings.defaults)
    model_version = validate_model_version(defaults["model_version"])
    requested_style = params.style_type or settings.defaults.get("style_type")
    style_type = coerce_style_type(model_version, requested_style)

    template: Optional[Template] = None
    version: Optional[TemplateVersion] = None
    if params.prompt:
        prompt_user = params.prompt.strip()
    else:
        variables = _content_variables(session, bound, content)
        try:
            template, version = resolve_current_version(session, bound, category=CATEGORY_IMAGE_GENERATION)
        except NoTemplate:
            prompt_user = default_image_prompt(str(variables.get("title") or ""), str(variables.get("summary") or ""))
        else:
            prompt_user = render_text(version.prompt_content, variables).strip()
    if not prompt_user:
        raise InvalidRequest("image_prompt_empty")

    palette_name, palette = _resolve_palette(settings, params)
    style_codes: Tuple[str, ...] = ()
    references: Tuple[ReferenceImage, ...] = ()
    reference_ids: Tuple[str, ...] = ()
    if model_version == "v3":
        style_codes = _resolve_style_codes(settings, params)
        if params.reference_image_ids:
            references = _load_reference_images(session, bound, params.reference_image_ids, reference_loader)
            reference_ids = params.reference_image_ids
    elif params.reference_image_ids or params.style_codes:
        logger.info(
            "image_v3_only_options_ignored",
            account_id=bound.account_id,
            model_version=model_version,
            reference_images=len(params.reference_image_ids),
            style_codes=len(params.style_codes),
        )

    request = ImageGenerationRequest(
        prompt=compose_prompt(prompt_user, settings, apply_affixes=params.apply_account_prompt_affixes),
        model_version=model_version,
        style_type=style_type,
        rendering_speed=defaults["rendering_speed"],
        magic_prompt=defaults["magic_prompt"],
        num_images=defaults["num_images"],
        aspect_ratio=None if defaults["resolution"] else defaults["aspect_ratio"],
        resolution=defaults["resolution"],
        negative_prompt=defaults["negative_prompt"],
        seed=_preferred_seed(settings, params),
        style_codes=style_codes,
        color_palette=palette,
        reference_images=references,
    )
    return PreparedImageRequest(
        request=request,
        prompt_user=prompt_user,
        requested_style_type=requested_style,
        template=template,
        version=version,
        reference_image_ids=reference_ids,
        palette_name=palette_name,
    )


def _write_image_log(
    session: Session,
    *,
    account_id: str,
    prepared: PreparedImageRequest,
    provider_name: str,
    job_id: Optional[str],
    content_id: str,
    images: Optional[List[GeneratedImage]] = None,
    error: Optional[PipelineError] = None,
    elapsed_ms: int = 0,
) -> GenerationLog:
    # Prompts given inline or built without an image template are logged without a version.
    cost = round(sum(image.cost_estimate_usd for image in images), 6) if images else None
    if images:
        elapsed_ms = int(max(image.generation_time_s for image in images) * 1000)
    row = GenerationLog(
        account_id=account_id,
        template_id=prepared.template.id if prepared.template is not None else None,
        version_id=prepared.version.id if prepared.version is not None else None,
        job_id=job_id,
        content_id=content_id,
        ai_service=provider_name,
        model_used=f"{provider_name}-{prepared.request.model_version}",
        tokens_used=0,
        generation_time_ms=max(0, elapsed_ms),
        cost_estimate_usd=cost,
        prompt_text=prepared.request.prompt,
        success=error is None,
        error=f"{error.kind}: {error.message}" if error is not None else None,
    )
    session.add(row)
    session.commit()
    return row


def generate_images_for_content(
    session: Session,
    ctx: AccountContext,
    content_id: str,
    *,
    params: Optional[ImageRequestParams] = None,
    job_id: Optional[str] = None,
    hooks: Optional[StepHooks] = None,
    provider: Optional[ImageProvider] = None,
    uploader: Optional[ImageUploader] = None,
    reference_loader: ReferenceLoader = download_reference_image,
) -> ImageGenerationOutcome:
    """One provider step, then one record per returned image.

    Safe images start in ``pending_review``. Unsafe images are kept as archived
    records for audit; if none is safe the call raises ``UnsafeContent``.
    """

    bound = require_account(ctx)
    settings = get_settings()
    if not settings.image_generation_enabled:
        raise InvalidRequest("image_generation_disabled")
    step_hooks = hooks or NullStepHooks()

    content = session.scalar(scoped(bound, ContentItem, ContentItem.id == content_id))
    if content is None:
        raise NotFound("content_not_found", details={"content_id": content_id})

    prepared = prepare_image_request(
        session,
        bound,
        content=content,
        params=params or ImageRequestParams(),
        reference_loader=reference_loader,
    )
    if prepared.style_coerced:
        step_hooks.log(
            "warn",
            f"style {prepared.requested_style_type} is not supported by {prepared.request.model_version}; using {prepared.request.style_type}",
            source=LOG_SOURCE,
            metadata={"content_id": content.id, "model_version": prepared.request.model_version},
        )

    image_provider = provider or get_image_provider()
    provider_name = image_provider.provider_name
    log_ids: List[str] = []

    def record_failure(exc: PipelineError, elapsed_ms: int) -> None:
        row = _write_image_log(
            session,
            account_id=bound.account_id,
            prepared=prepared,
            provider_name=provider_name,
            job_id=job_id,
            content_id=content.id,
            error=exc,
            elapsed_ms=elapsed_ms,
        )
        log_ids.append(row.id)

    images, attempts = call_provider_step(
        lambda: image_provider.generate_image(prepared.request),
        provider_name=provider_name,
        timeout_seconds=settings.image_step_timeout_seconds,
        hooks=step_hooks,
        metadata={"content_id": content.id, "model_version": prepared.request.model_version},
        on_failure=record_failure,
    )
    record_provider_call(provider=provider_name, outcome="success")
    success_log = _write_image_log(
        session,
        account_id=bound.account_id,
        prepared=prepared,
        provider_name=provider_name,
        job_id=job_id,
        content_id=content.id,
        images=images,
    )
    log_ids.append(success_log.id)

    cdn = uploader if uploader is not None else get_image_uploader()
    parameters_json = _json_dumps(prepared.parameters())
    records: List[ImageGenerationRecord] = []
    unsafe_count = 0
    upload_failures = 0
    for index, image in enumerate(images):
        record = ImageGenerationRecord(
            account_id=bound.account_id,
            content_id=content.id,
            job_id=job_id,
            provider=provider_name,
            model_version=prepared.request.model_version,
            prompt_user=prepared.prompt_user,
            prompt_final=prepared.request.prompt,
            parameters_json=parameters_json,
            result_url=image.url,
            provider_url=image.url,
            alt_text=(image.alt_text or prepared.prompt_user)[:250],
            seed=image.seed,
            resolution=image.resolution,
            cost_estimate=image.cost_estimate_usd,
            generation_time_s=image.generation_time_s,
            is_safe=image.is_safe,
            status=IMAGE_STATUS_PENDING_REVIEW if image.is_safe else IMAGE_STATUS_ARCHIVED,
            created_at=_now_utc(),
            updated_at=_now_utc(),
        )
        session.add(record)
        session.flush()
        if not image.is_safe:
            unsafe_count += 1
            step_hooks.log(
                "warn",
                f"image {index + 1}/{len(images)} flagged unsafe by {provider_name}",
                source=LOG_SOURCE,
                metadata={"content_id": content.id, "image_id": record.id},
            )
        elif cdn is not None:
            try:
                record.result_url = cdn.upload_from_url(image.url, f"{content.id}-{record.id}.jpg")
            except CDNUploadError as exc:
                upload_failures += 1
                logger.warning("image_cdn_upload_failed", account_id=bound.account_id, image_id=record.id, error=str(exc))
        records.append(record)
    session.commit()

    safe_count = len(images) - unsafe_count
    record_images_generated(provider=provider_name, count=safe_count)
    logger.info(
        "images_generated",
        account_id=bound.account_id,
        content_id=content.id,
        provider=provider_name,
        model_version=prepared.request.model_version,
        style_type=prepared.request.style_type,
        safe=safe_count,
        unsafe=unsafe_count,
        attempts=attempts,
    )
    if safe_count == 0:
        raise UnsafeContent("all_generated_images_unsafe", details={"content_id": content.id, "returned": len(images)})

    return ImageGenerationOutcome(
        records=records,
        prepared=prepared,
        attempts=attempts,
        unsafe_count=unsafe_count,
        upload_failures=upload_failures,
        log_ids=log_ids,
    )


def list_images(
    session: Session,
    ctx: AccountContext,
    *,
    content_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
) -> List[ImageGenerationRecord]:
    bound = require_permission(ctx, PERM_IMAGES_READ)
    statement = scoped(bound, ImageGenerationRecord)
    if content_id:
        statement = statement.where(ImageGenerationRecord.content_id == content_id)
    if status:
        normalized = status.strip().lower()
        if normalized not in IMAGE_STATUSES:
            raise InvalidRequest(f"unknown_image_status {normalized}", details={"allowed": list(IMAGE_STATUSES)})
        statement = statement.where(ImageGenerationRecord.status == normalized)
    statement = statement.order_by(
        ImageGenerationRecord.created_at.desc(),
        ImageGenerationRecord.id.desc(),
    ).limit(max(1, min(limit, 200)))
    return list(session.scalars(statement).all())


def get_image(session: Session, ctx: AccountContext, image_id: str) -> ImageGenerationRecord:
    bound = require_permission(ctx, PERM_IMAGES_READ)
    record = session.scalar(scoped(bound, ImageGenerationRecord, ImageGenerationRecord.id == image_id))
    if record is None:
        raise NotFound("image_not_found", details={"image_id": image_id})
    return record


def transition_image_status(session: Session, ctx: AccountContext, image_id: str, *, target: str) -> ImageGenerationRecord:
    bound = require_permission(ctx, PERM_IMAGES_WRITE)
    normalized = (target or "").strip().lower()
    if normalized not in IMAGE_STATUSES:
        raise InvalidRequest(f"unknown_image_status {normalized or '<empty>'}", details={"allowed": list(IMAGE_STATUSES)})
    record = session.scalar(scoped(bound, ImageGenerationRecord, ImageGenerationRecord.id == image_id))
    if record is None:
        raise NotFound("image_not_found", details={"image_id": image_id})
    if normalized not in IMAGE_TRANSITIONS.get(record.status, frozenset()):
        raise InvalidTransition(entity="image", current=record.status, target=normalized)
    if not record.is_safe and normalized != IMAGE_STATUS_ARCHIVED:
        raise InvalidRequest("unsafe_image_cannot_be_reviewed", details={"image_id": image_id})

    previous = record.status
    record.status = normalized
    record.updated_at = _now_utc()
    session.commit()
    logger.info(
        "image_status_changed",
        account_id=bound.account_id,
        image_id=record.id,
        from_status=previous,
        to_status=normalized,
    )
    return record
