"""Provider contracts for text and image generation backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from src.core.errors import (
    InvalidRequest,
    PipelineError,
    ProviderTimeout,
    ProviderUnavailable,
    QuotaExceeded,
    RateLimited,
    UnsafeContent,
)


@dataclass(frozen=True)
class TextGenerationRequest:
    prompt: str
    model: str
    temperature: float = 0.7
    max_tokens: int = 2000
    system: Optional[str] = None


@dataclass(frozen=True)
class TextGenerationOutput:
    provider: str
    text: str
    tokens_used: int
    model_used: str
    latency_ms: int
    payload: Dict[str, Any] = field(default_factory=dict)


class TextProvider(Protocol):
    provider_name: str

    def generate_text(self, request: TextGenerationRequest) -> TextGenerationOutput:
        raise NotImplementedError


@dataclass(frozen=True)
class ReferenceImage:
    filename: str
    content: bytes
    mime_type: str = "image/png"


@dataclass(frozen=True)
class ImageGenerationRequest:
    prompt: str
    model_version: str = "v2"
    style_type: str = "GENERAL"
    rendering_speed: str = "DEFAULT"
    magic_prompt: str = "AUTO"
    num_images: int = 1
    aspect_ratio: Optional[str] = "16:9"
    resolution: Optional[str] = None
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None
    style_codes: tuple[str, ...] = ()
    color_palette: tuple[str, ...] = ()
    reference_images: tuple[ReferenceImage, ...] = ()


@dataclass(frozen=True)
class GeneratedImage:
    url: str
    seed: Optional[int]
    resolution: Optional[str]
    is_safe: bool
    generation_time_s: float
    cost_estimate_usd: float
    alt_text: Optional[str] = None
    prompt: Optional[str] = None
    style_type: Optional[str] = None


class ImageProvider(Protocol):
    provider_name: str

    def generate_image(self, request: ImageGenerationRequest) -> List[GeneratedImage]:
        raise NotImplementedError


def _short_detail(response: httpx.Response) -> str:
    detail = response.text.strip()
    if len(detail) > 240:
        detail = detail[:240] + "..."
    return detail


def error_for_response(provider_name: str, response: httpx.Response) -> PipelineError:
    """Map a non-2xx provider response onto the error taxonomy."""

    status = response.status_code
    detail = _short_detail(response)
    lowered = detail.lower()
    message = f"{provider_name}_request_failed status={status} detail={detail}"
    if status == 402 or "insufficient_quota" in lowered or "quota exceeded" in lowered:
        return QuotaExceeded(message)
    if status == 429:
        return RateLimited(message)
    if status >= 500:
        return ProviderUnavailable(message)
    if "safety" in lowered or "unsafe" in lowered or "content_policy" in lowered:
        return UnsafeContent(message)
    if status in {401, 403}:
        return ProviderUnavailable(message)
    return InvalidRequest(message)


def provider_post(
    *,
    provider_name: str,
    url: str,
    timeout_seconds: float,
    client: Optional[httpx.Client] = None,
    **kwargs: Any,
) -> Dict[str, Any]:
    """POST to a provider and return its JSON body, raising taxonomy errors."""

    try:
        if client is not None:
            response = client.post(url, **kwargs)
        else:
            with httpx.Client(timeout=timeout_seconds) as owned:
                response = owned.post(url, **kwargs)
    except httpx.TimeoutException as exc:
        raise ProviderTimeout(f"{provider_name}_request_timeout") from exc
    except httpx.TransportError as exc:
        raise ProviderUnavailable(f"{provider_name}_transport_error {exc}") from exc

    if response.status_code < 200 or response.status_code >= 300:
        raise error_for_response(provider_name, response)

    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderUnavailable(f"{provider_name}_invalid_json_response") from exc
    if not isinstance(body, dict):
        raise ProviderUnavailable(f"{provider_name}_unexpected_response_shape")
    return body
