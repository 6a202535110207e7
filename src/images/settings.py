"""Account image settings: prompt affixes, generation defaults, brand palettes and style codes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import re
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.accounts.context import (
    PERM_SETTINGS_READ,
    PERM_SETTINGS_WRITE,
    AccountContext,
    require_account,
    require_permission,
    scoped,
)
from src.core.errors import InvalidRequest, NotFound
from src.core.logger import get_logger
from src.images.options import (
    coerce_style_type,
    validate_aspect_ratio,
    validate_magic_prompt,
    validate_model_version,
    validate_rendering_speed,
)
from src.storage.models import ImageSettings


logger = get_logger("eden.images.settings")

DEFAULT_IMAGE_DEFAULTS: Dict[str, Any] = {
    "model_version": "v2",
    "aspect_ratio": "16:9",
    "resolution": None,
    "style_type": "GENERAL",
    "rendering_speed": "DEFAULT",
    "magic_prompt": "AUTO",
    "negative_prompt": None,
    "num_images": 1,
}
MAX_NUM_IMAGES = 4
MAX_BRAND_COLOR_SETS = 20
MAX_STYLE_CODES = 50

STYLE_CODE_TYPES = ("style_code", "seed")
HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
STYLE_CODE_PATTERN = re.compile(r"^[0-9A-Fa-f]{8}$")


@dataclass(frozen=True)
class ImageSettingsView:
    prompt_prefix: Optional[str]
    prompt_suffix: Optional[str]
    brand_colors: List[Dict[str, Any]]
    preferred_style_codes: List[Dict[str, Any]]
    defaults: Dict[str, Any]
    updated_at: Optional[datetime]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def _json_list(raw: Optional[str]) -> List[Dict[str, Any]]:
    try:
        parsed = json.loads(raw or "[]")
    except ValueError:
        return []
    if not isinstance(parsed, list):
        return []
    return [item for item in parsed if isinstance(item, dict)]


def _json_dict(raw: Optional[str]) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _clean_affix(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def normalize_defaults(values: Mapping[str, Any], *, base: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Merge ``values`` over ``base`` and validate each field against the chosen model version."""

    merged: Dict[str, Any] = dict(base or DEFAULT_IMAGE_DEFAULTS)
    for key, value in values.items():
        if key not in DEFAULT_IMAGE_DEFAULTS:
            raise InvalidRequest(f"unknown_image_default {key}", details={"allowed": sorted(DEFAULT_IMAGE_DEFAULTS)})
        merged[key] = value

    version = validate_model_version(merged.get("model_version"))
    num_images = merged.get("num_images") or 1
    try:
        num_images = int(num_images)
    except (TypeError, ValueError) as exc:
        raise InvalidRequest("num_images_must_be_integer") from exc
    if num_images < 1 or num_images > MAX_NUM_IMAGES:
        raise InvalidRequest("num_images_out_of_range", details={"min": 1, "max": MAX_NUM_IMAGES})

    resolution = (str(merged.get("resolution") or "").strip()) or None
    return {
        "model_version": version,
        "aspect_ratio": validate_aspect_ratio(merged.get("aspect_ratio") or DEFAULT_IMAGE_DEFAULTS["aspect_ratio"]),
        "resolution": resolution,
        "style_type": coerce_style_type(version, merged.get("style_type")),
        "rendering_speed": validate_rendering_speed(merged.get("rendering_speed") or "DEFAULT"),
        "magic_prompt": validate_magic_prompt(merged.get("magic_prompt") or "AUTO"),
        "negative_prompt": (str(merged.get("negative_prompt") or "").strip()) or None,
        "num_images": num_images,
    }


def _view(row: Optional[ImageSettings]) -> ImageSettingsView:
    if row is None:
        return ImageSettingsView(
            prompt_prefix=None,
            prompt_suffix=None,
            brand_colors=[],
            preferred_style_codes=[],
            defaults=dict(DEFAULT_IMAGE_DEFAULTS),
            updated_at=None,
        )
    stored_defaults = {
        key: value for key, value in _json_dict(row.defaults_json).items() if key in DEFAULT_IMAGE_DEFAULTS
    }
    return ImageSettingsView(
        prompt_prefix=row.prompt_prefix,
        prompt_suffix=row.prompt_suffix,
        brand_colors=_json_list(row.brand_colors_json),
        preferred_style_codes=_json_list(row.preferred_style_codes_json),
        defaults={**DEFAULT_IMAGE_DEFAULTS, **stored_defaults},
        updated_at=row.updated_at,
    )


def _load_row(session: Session, ctx: AccountContext) -> Optional[ImageSettings]:
    return session.scalar(scoped(ctx, ImageSettings))


def _load_or_create_row(session: Session, ctx: AccountContext) -> ImageSettings:
    row = _load_row(session, ctx)
    if row is not None:
        return row
    row = ImageSettings(
        account_id=ctx.account_id,
        brand_colors_json="[]",
        preferred_style_codes_json="[]",
        defaults_json=_json_dumps(DEFAULT_IMAGE_DEFAULTS),
    )
    session.add(row)
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        existing = _load_row(session, ctx)
        if existing is None:
            raise
        return existing
    return row


def load_image_settings(session: Session, ctx: AccountContext) -> ImageSettingsView:
    """Settings as used by generation; no permission beyond account membership."""

    bound = require_account(ctx)
    return _view(_load_row(session, bound))


def get_image_settings(session: Session, ctx: AccountContext) -> ImageSettingsView:
    bound = require_permission(ctx, PERM_SETTINGS_READ)
    return _view(_load_row(session, bound))


def update_image_settings(
    session: Session,
    ctx: AccountContext,
    *,
    prompt_prefix: Optional[str] = None,
    prompt_suffix: Optional[str] = None,
    defaults: Optional[Mapping[str, Any]] = None,
    clear_affixes: bool = False,
) -> ImageSettingsView:
    bound = require_permission(ctx, PERM_SETTINGS_WRITE)
    row = _load_or_create_row(session, bound)

    if clear_affixes:
        row.prompt_prefix = None
        row.prompt_suffix = None
    if prompt_prefix is not None:
        row.prompt_prefix = _clean_affix(prompt_prefix)
    if prompt_suffix is not None:
        row.prompt_suffix = _clean_affix(prompt_suffix)
    if defaults is not None:
        current = _view(row).defaults
        row.defaults_json = _json_dumps(normalize_defaults(defaults, base=current))
    row.updated_at = _now_utc()
    session.commit()
    logger.info(
        "image_settings_updated",
        account_id=bound.account_id,
        has_prefix=bool(row.prompt_prefix),
        has_suffix=bool(row.prompt_suffix),
        defaults_changed=defaults is not None,
    )
    return _view(row)


def list_brand_colors(session: Session, ctx: AccountContext) -> List[Dict[str, Any]]:
    bound = require_permission(ctx, PERM_SETTINGS_READ)
    return _view(_load_row(session, bound)).brand_colors


def find_brand_colors(settings: ImageSettingsView, name: str) -> List[str]:
    wanted = name.strip().lower()
    for entry in settings.brand_colors:
        if str(entry.get("name", "")).strip().lower() == wanted:
            return [str(color) for color in entry.get("colors", [])]
    raise NotFound("brand_color_set_not_found", details={"name": name})


def add_brand_colors(session: Session, ctx: AccountContext, *, name: str, colors: List[str]) -> List[Dict[str, Any]]:
    bound = require_permission(ctx, PERM_SETTINGS_WRITE)
    cleaned_name = (name or "").strip()
    if not cleaned_name:
        raise InvalidRequest("brand_color_name_required")
    if not colors:
        raise InvalidRequest("brand_colors_required")
    normalized_colors: List[str] = []
    for color in colors:
        value = str(color or "").strip()
        if not HEX_COLOR_PATTERN.match(value):
            raise InvalidRequest(f"invalid_hex_color {value or '<empty>'}")
        normalized_colors.append(value.upper())

    row = _load_or_create_row(session, bound)
    entries = _json_list(row.brand_colors_json)
    if any(str(entry.get("name", "")).strip().lower() == cleaned_name.lower() for entry in entries):
        raise InvalidRequest("brand_color_name_taken", details={"name": cleaned_name})
    if len(entries) >= MAX_BRAND_COLOR_SETS:
        raise InvalidRequest("brand_color_sets_limit_reached", details={"max": MAX_BRAND_COLOR_SETS})
    entries.append({"name": cleaned_name, "colors": normalized_colors})
    row.brand_colors_json = _json_dumps(entries)
    row.updated_at = _now_utc()
    session.commit()
    logger.info("brand_colors_added", account_id=bound.account_id, name=cleaned_name, colors=len(normalized_colors))
    return entries


def remove_brand_colors(session: Session, ctx: AccountContext, index: int) -> List[Dict[str, Any]]:
    bound = require_permission(ctx, PERM_SETTINGS_WRITE)
    row = _load_row(session, bound)
    entries = _json_list(row.brand_colors_json) if row is not None else []
    if row is None or index < 0 or index >= len(entries):
        raise NotFound("brand_color_set_not_found", details={"index": index})
    removed = entries.pop(index)
    row.brand_colors_json = _json_dumps(entries)
    row.updated_at = _now_utc()
    session.commit()
    logger.info("brand_colors_removed", account_id=bound.account_id, name=removed.get("name"))
    return entries


def list_style_codes(session: Session, ctx: AccountContext) -> List[Dict[str, Any]]:
    bound = require_permission(ctx, PERM_SETTINGS_READ)
    return _view(_load_row(session, bound)).preferred_style_codes


def normalize_style_code(entry: Mapping[str, Any]) -> Dict[str, Any]:
    code_type = str(entry.get("type") or "style_code").strip().lower()
    if code_type not in STYLE_CODE_TYPES:
        raise InvalidRequest(f"unknown_style_code_type {code_type}", details={"allowed": list(STYLE_CODE_TYPES)})
    raw_value = entry.get("value")
    if code_type == "seed":
        try:
            value: Any = int(raw_value)
        except (TypeError, ValueError) as exc:
            raise InvalidRequest("style_seed_must_be_integer") from exc
        if value < 0:
            raise InvalidRequest("style_seed_must_be_non_negative")
    else:
        value = str(raw_value or "").strip().upper()
        if not STYLE_CODE_PATTERN.match(value):
            raise InvalidRequest(f"invalid_style_code {value or '<empty>'}")

    normalized: Dict[str, Any] = {"type": code_type, "value": value}
    for key in ("name", "source", "image_url", "prompt"):
        extra = entry.get(key)
        if extra:
            normalized[key] = str(extra)[:500]
    return normalized


def add_style_code(session: Session, ctx: AccountContext, entry: Mapping[str, Any]) -> List[Dict[str, Any]]:
    bound = require_permission(ctx, PERM_SETTINGS_WRITE)
    normalized = normalize_style_code(entry)
    row = _load_or_create_row(session, bound)
    entries = _json_list(row.preferred_style_codes_json)
    if any(item.get("type") == normalized["type"] and item.get("value") == normalized["value"] for item in entries):
        return entries
    if len(entries) >= MAX_STYLE_CODES:
        raise InvalidRequest("style_codes_limit_reached", details={"max": MAX_STYLE_CODES})
    entries.append(normalized)
    row.preferred_style_codes_json = _json_dumps(entries)
    row.updated_at = _now_utc()
    session.commit()
    logger.info("style_code_added", account_id=bound.account_id, code_type=normalized["type"])
    return entries


def remove_style_code(session: Session, ctx: AccountContext, index: int) -> List[Dict[str, Any]]:
    bound = require_permission(ctx, PERM_SETTINGS_WRITE)
    row = _load_row(session, bound)
    entries = _json_list(row.preferred_style_codes_json) if row is not None else []
    if row is None or index < 0 or index >= len(entries):
        raise NotFound("style_code_not_found", details={"index": index})
    entries.pop(index)
    row.preferred_style_codes_json = _json_dumps(entries)
    row.updated_at = _now_utc()
    session.commit()
    logger.info("style_code_removed", account_id=bound.account_id, index=index)
    return entries
