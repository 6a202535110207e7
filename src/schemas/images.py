"""Schemas for image generation and image settings endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ImageGenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: Optional[str] = Field(default=None, alias="customPrompt")
    model_version: Optional[str] = Field(default=None, alias="modelVersion")
    style_type: Optional[str] = Field(default=None, alias="styleType")
    aspect_ratio: Optional[str] = Field(default=None, alias="aspectRatio")
    resolution: Optional[str] = None
    rendering_speed: Optional[str] = Field(default=None, alias="renderingSpeed")
    magic_prompt: Optional[str] = Field(default=None, alias="magicPrompt")
    num_images: Optional[int] = Field(default=None, ge=1, le=4, alias="numImages")
    negative_prompt: Optional[str] = Field(default=None, alias="negativePrompt")
    seed: Optional[int] = Field(default=None, ge=0)
    style_codes: list[str] = Field(default_factory=list, alias="styleCodes")
    use_preferred_style_codes: bool = Field(default=False, alias="usePreferredStyleCodes")
    reference_image_ids: list[str] = Field(default_factory=list, alias="referenceImageIds")
    use_account_colors: bool = Field(default=False, alias="useAccountColors")
    selected_color_template_name: Optional[str] = Field(default=None, alias="selectedColorTemplateName")
    apply_account_prompt_affixes: bool = Field(default=True, alias="applyAccountPromptAffixes")


class ImageGenerateResponse(BaseModel):
    job_id: str
    content_id: str
    deduplicated: bool = False


class ImageItem(BaseModel):
    id: str
    content_id: Optional[str]
    job_id: Optional[str]
    provider: str
    model_version: str
    prompt_user: str
    prompt_final: str
    parameters: Dict[str, Any]
    result_url: str
    provider_url: Optional[str]
    alt_text: Optional[str]
    seed: Optional[int]
    resolution: Optional[str]
    cost_estimate: Optional[float]
    generation_time_s: Optional[float]
    is_safe: bool
    status: str
    created_at: datetime


class ImageListResponse(BaseModel):
    account_id: str
    items: list[ImageItem]


class ImageStatusRequest(BaseModel):
    status: str = Field(min_length=1, max_length=24)


class IdeogramOptionsResponse(BaseModel):
    model_version: str
    style_types: list[Dict[str, str]]
    aspect_ratios: list[str]
    rendering_speeds: list[str]
    magic_prompt_options: list[str]
    supports_reference_images: bool
    supports_style_codes: bool
    max_reference_images: int
    cost_per_image_usd: Dict[str, float]


class ImageSettingsResponse(BaseModel):
    account_id: str
    prompt_prefix: Optional[str]
    prompt_suffix: Optional[str]
    defaults: Dict[str, Any]
    brand_colors: list[Dict[str, Any]]
    preferred_style_codes: list[Dict[str, Any]]


class ImageSettingsUpdateRequest(BaseModel):
    prompt_prefix: Optional[str] = None
    prompt_suffix: Optional[str] = None
    defaults: Dict[str, Any] = Field(default_factory=dict)
    clear_affixes: bool = False


class BrandColorsRequest(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    colors: list[str] = Field(min_length=1, max_length=10)


class BrandColorsResponse(BaseModel):
    account_id: str
    items: list[Dict[str, Any]]


class StyleCodeRequest(BaseModel):
    type: str = Field(default="style_code")
    value: str = Field(min_length=1, max_length=40)
    name: Optional[str] = Field(default=None, max_length=120)
    source: Optional[str] = None
    image_url: Optional[str] = None
    prompt: Optional[str] = None


class StyleCodesResponse(BaseModel):
    account_id: str
    items: list[Dict[str, Any]]
