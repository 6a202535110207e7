"""Ideogram image provider covering the v1/v2 JSON API and the v3 endpoint."""

from __future__ import annotations

from time import perf_counter
from typing import Any, Dict, List, Optional, Tuple

import httpx

from src.ai.providers.base import (
    GeneratedImage,
    ImageGenerationRequest,
    ImageProvider,
    provider_post,
)
from src.core.errors import InvalidRequest, ProviderUnavailable


MODEL_VERSIONS: Tuple[str, ...] = ("v1", "v2", "v3")
V3_STYLE_TYPES: Tuple[str, ...] = ("AUTO", "GENERAL", "REALISTIC", "DESIGN")
V2_STYLE_TYPES: Tuple[str, ...] = V3_STYLE_TYPES + ("RENDER_3D", "ANIME")
STYLE_TYPES_BY_VERSION: Dict[str, Tuple[str, ...]] = {
    "v1": V2_STYLE_TYPES,
    "v2": V2_STYLE_TYPES,
    "v3": V3_STYLE_TYPES,
}
ASPECT_RATIOS: Tuple[str, ...] = ("1:1", "16:9", "9:16", "4:3", "3:4", "3:2", "2:3", "3:1", "1:3")
RENDERING_SPEEDS: Tuple[str, ...] = ("TURBO", "DEFAULT", "QUALITY")
MAGIC_PROMPT_OPTIONS: Tuple[str, ...] = ("AUTO", "ON", "OFF")
MAX_REFERENCE_IMAGES = 3

LEGACY_MODEL_NAMES = {
    ("v1", "TURBO"): "V_1_TURBO",
    ("v1", "DEFAULT"): "V_1",
    ("v1", "QUALITY"): "V_1",
    ("v2", "TURBO"): "V_2_TURBO",
    ("v2", "DEFAULT"): "V_2",
    ("v2", "QUALITY"): "V_2",
}

# USD per generated image.
COST_PER_IMAGE_USD: Dict[Tuple[str, str], float] = {
    ("v1", "TURBO"): 0.02,
    ("v1", "DEFAULT"): 0.06,
    ("v1", "QUALITY"): 0.06,
    ("v2", "TURBO"): 0.05,
    ("v2", "DEFAULT"): 0.08,
    ("v2", "QUALITY"): 0.08,
    ("v3", "TURBO"): 0.03,
    ("v3", "DEFAULT"): 0.06,
    ("v3", "QUALITY"): 0.09,
}


def estimate_cost(model_version: str, rendering_speed: str) -> float:
    return COST_PER_IMAGE_USD.get((model_version, rendering_speed.upper()), 0.08)


def _v3_aspect_ratio(value: str) -> str:
    return value.replace(":", "x")


def _legacy_aspect_ratio(value: str) -> str:
    return "ASPECT_" + value.replace(":", "_")


def _parse_seed(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class IdeogramImageProvider(ImageProvider):
    provider_name = "ideogram"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.ideogram.ai",
        timeout_seconds: int = 180,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key = api_key.strip()
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _headers(self, *, json_body: bool) -> Dict[str, str]:
        if not self._api_key:
            raise ProviderUnavailable("ideogram_api_key_missing")
        headers = {"Api-Key": self._api_key}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _v3_fields(self, request: ImageGenerationRequest) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "prompt": request.prompt,
            "style_type": request.style_type,
            "rendering_speed": request.rendering_speed,
            "magic_prompt": request.magic_prompt,
            "num_images": request.num_images,
        }
        if request.resolution:
            fields["resolution"] = request.resolution
        elif request.aspect_ratio:
            fields["aspect_ratio"] = _v3_aspect_ratio(request.aspect_ratio)
        if request.negative_prompt:
            fields["negative_prompt"] = request.negative_prompt
        if request.seed is not None:
            fields["seed"] = request.seed
        if request.style_codes:
            fields["style_codes"] = list(request.style_codes)
        return fields

    def _post_v3(self, request: ImageGenerationRequest) -> Dict[str, Any]:
        url = f"{self._base_url}/v1/ideogram-v3/generate"
        fields = self._v3_fields(request)
        if not request.reference_images:
            if request.color_palette:
                fields["color_palette"] = {
                    "members": [{"color_hex": color} for color in request.color_palette],
                }
            return provider_post(
                provider_name=self.provider_name,
                url=url,
                timeout_seconds=self._timeout_seconds,
                client=self._client,
                headers=self._headers(json_body=True),
                json=fields,
            )

        if len(request.reference_images) > MAX_REFERENCE_IMAGES:
            raise InvalidRequest(
                "too_many_reference_images",
                details={"max": MAX_REFERENCE_IMAGES, "received": len(request.reference_images)},
            )
        data: Dict[str, Any] = {
            key: [str(item) for item in value] if isinstance(value, list) else str(value)
            for key, value in fields.items()
        }
        if request.color_palette:
            data["color_palette"] = list(request.color_palette)
        files = [
            ("style_reference_images", (image.filename, image.content, image.mime_type))
            for image in request.reference_images
        ]
        return provider_post(
            provider_name=self.provider_name,
            url=url,
            timeout_seconds=self._timeout_seconds,
            client=self._client,
            headers=self._headers(json_body=False),
            data=data,
            files=files,
        )

    def _post_legacy(self, request: ImageGenerationRequest) -> Dict[str, Any]:
        image_request: Dict[str, Any] = {
            "prompt": request.prompt,
            "model": LEGACY_MODEL_NAMES.get((request.model_version, request.rendering_speed.upper()), "V_2"),
            "magic_prompt_option": request.magic_prompt,
            "style_type": request.style_type,
            "num_images": request.num_images,
        }
        if request.resolution:
            image_request["resolution"] = "RESOLUTION_" + request.resolution.replace("x", "_")
        elif request.aspect_ratio:
            image_request["aspect_ratio"] = _legacy_aspect_ratio(request.aspect_ratio)
        if request.negative_prompt:
            image_request["negative_prompt"] = request.negative_prompt
        if request.seed is not None:
            image_request["seed"] = request.seed
        if request.color_palette:
            image_request["color_palette"] = {
                "members": [{"color_hex": color} for color in request.color_palette],
            }
        return provider_post(
            provider_name=self.provider_name,
            url=f"{self._base_url}/generate",
            timeout_seconds=self._timeout_seconds,
            client=self._client,
            headers=self._headers(json_body=True),
            json={"image_request": image_request},
        )

    def generate_image(self, request: ImageGenerationRequest) -> List[GeneratedImage]:
        if request.model_version not in MODEL_VERSIONS:
            raise InvalidRequest(f"unsupported_model_version {request.model_version}")

        started = perf_counter()
        if request.model_version == "v3":
            body = self._post_v3(request)
        else:
            body = self._post_legacy(request)
        elapsed = round(perf_counter() - started, 3)

        data = body.get("data")
        if not isinstance(data, list) or not data:
            raise ProviderUnavailable("ideogram_missing_data")

        unit_cost = estimate_cost(request.model_version, request.rendering_speed)
        images: List[GeneratedImage] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            url = str(item.get("url") or "").strip()
            if not url:
                continue
            images.append(
                GeneratedImage(
                    url=url,
                    seed=_parse_seed(item.get("seed")),
                    resolution=str(item.get("resolution") or "") or None,
                    is_safe=bool(item.get("is_image_safe", True)),
                    generation_time_s=elapsed,
                    cost_estimate_usd=unit_cost,
                    alt_text=(str(item.get("prompt") or request.prompt))[:500],
                    prompt=str(item.get("prompt") or "") or None,
                    style_type=str(item.get("style_type") or request.style_type),
                )
            )
        if not images:
            raise ProviderUnavailable("ideogram_response_without_images")
        return images
