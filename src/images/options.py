"""Per-model-version option sets for image requests."""

from __future__ import annotations

from typing import Any, Dict, Optional

from src.ai.providers.ideogram_provider import (
    ASPECT_RATIOS,
    COST_PER_IMAGE_USD,
    MAGIC_PROMPT_OPTIONS,
    MAX_REFERENCE_IMAGES,
    MODEL_VERSIONS,
    RENDERING_SPEEDS,
    STYLE_TYPES_BY_VERSION,
)
from src.core.errors import InvalidRequest


DEFAULT_STYLE_TYPE = "GENERAL"
DEFAULT_MODEL_VERSION = "v2"

STYLE_LABELS = {
    "AUTO": "Auto",
    "GENERAL": "General",
    "REALISTIC": "Realistic",
    "DESIGN": "Design",
    "RENDER_3D": "3D Render",
    "ANIME": "Anime",
}


def validate_model_version(model_version: Optional[str]) -> str:
    normalized = (model_version or DEFAULT_MODEL_VERSION).strip().lower()
    if normalized not in MODEL_VERSIONS:
        raise InvalidRequest(
            f"unsupported_model_version {normalized or '<empty>'}",
            details={"allowed": list(MODEL_VERSIONS)},
        )
    return normalized


def coerce_style_type(model_version: str, style_type: Optional[str]) -> str:
    """Style types the version does not support fall back to GENERAL."""

    normalized = (style_type or DEFAULT_STYLE_TYPE).strip().upper()
    if normalized not in STYLE_TYPES_BY_VERSION[validate_model_version(model_version)]:
        return DEFAULT_STYLE_TYPE
    return normalized


def _pick(value: Optional[str], allowed: tuple[str, ...], *, field: str, upper: bool = True) -> str:
    normalized = (value or "").strip()
    if upper:
        normalized = normalized.upper()
    if normalized not in allowed:
        raise InvalidRequest(f"unsupported_{field} {normalized or '<empty>'}", details={"allowed": list(allowed)})
    return normalized


def validate_aspect_ratio(value: Optional[str]) -> str:
    return _pick(value, ASPECT_RATIOS, field="aspect_ratio", upper=False)


def validate_rendering_speed(value: Optional[str]) -> str:
    return _pick(value, RENDERING_SPEEDS, field="rendering_speed")


def validate_magic_prompt(value: Optional[str]) -> str:
    return _pick(value, MAGIC_PROMPT_OPTIONS, field="magic_prompt")


def options_for(model_version: Optional[str]) -> Dict[str, Any]:
    version = validate_model_version(model_version)
    return {
        "model_version": version,
        "style_types": [
            {"value": style, "label": STYLE_LABELS.get(style, style.title())}
            for style in STYLE_TYPES_BY_VERSION[version]
        ],
        "aspect_ratios": list(ASPECT_RATIOS),
        "rendering_speeds": list(RENDERING_SPEEDS),
        "magic_prompt_options": list(MAGIC_PROMPT_OPTIONS),
        "supports_reference_images": version == "v3",
        "supports_style_codes": version == "v3",
        "max_reference_images": MAX_REFERENCE_IMAGES if version == "v3" else 0,
        "cost_per_image_usd": {
            speed: COST_PER_IMAGE_USD[(version, speed)] for speed in RENDERING_SPEEDS if (version, speed) in COST_PER_IMAGE_USD
        },
    }
