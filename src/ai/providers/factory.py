"""Factories resolving concrete providers from settings and the runtime selection table."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping, Optional

from src.ai.providers.base import ImageProvider, TextProvider
from src.ai.providers.gemini_provider import GeminiTextProvider
from src.ai.providers.ideogram_provider import IdeogramImageProvider
from src.ai.providers.mock_provider import MockImageProvider, MockTextProvider
from src.ai.providers.openai_provider import OpenAITextProvider
from src.core.config import get_settings
from src.core.errors import InvalidRequest
from src.core.runtime import TEXT_PROVIDERS, RuntimeConfig, load_runtime_config
from src.prompts.categories import canonicalize_category


@dataclass(frozen=True)
class TextBindingChoice:
    provider: str
    model: str
    temperature: float
    max_tokens: int


def provider_for_model(model: str, runtime: Optional[RuntimeConfig] = None) -> Optional[str]:
    """Longest matching model-family prefix wins."""

    families = (runtime or load_runtime_config()).model_families
    normalized = model.strip().lower()
    best: Optional[str] = None
    best_length = -1
    for prefix, provider in families.items():
        if normalized.startswith(prefix) and len(prefix) > best_length:
            best = provider
            best_length = len(prefix)
    return best


def select_text_binding(category: Optional[str], overrides: Optional[Mapping[str, Any]] = None) -> TextBindingChoice:
    """Merge settings defaults, the runtime default, the category row and caller overrides."""

    settings = get_settings()
    runtime = load_runtime_config()
    provider: Optional[str] = None
    model = settings.default_text_model
    temperature = settings.default_temperature
    max_tokens = settings.default_max_tokens

    layers = [runtime.text_default]
    category_binding = runtime.text_categories.get(canonicalize_category(category))
    if category_binding is not None:
        layers.append(category_binding)
    for layer in layers:
        provider = layer.provider or provider
        model = layer.model or model
        temperature = layer.temperature if layer.temperature is not None else temperature
        max_tokens = layer.max_tokens or max_tokens

    requested = dict(overrides or {})
    if requested.get("model"):
        model = str(requested["model"]).strip()
        provider = provider_for_model(model, runtime) or provider
    if requested.get("provider"):
        provider = str(requested["provider"]).strip().lower()
        if provider not in TEXT_PROVIDERS:
            raise InvalidRequest(f"unknown_text_provider {provider}", details={"allowed": list(TEXT_PROVIDERS)})
    if requested.get("temperature") is not None:
        temperature = float(requested["temperature"])
        if temperature < 0 or temperature > 2:
            raise InvalidRequest("temperature_out_of_range")
    if requested.get("max_tokens") is not None:
        max_tokens = int(requested["max_tokens"])
        if max_tokens <= 0:
            raise InvalidRequest("max_tokens_must_be_positive")

    if provider is None:
        provider = provider_for_model(model, runtime) or "openai"
    if settings.ai_demo_mode:
        provider = "mock"
    return TextBindingChoice(provider=provider, model=model, temperature=temperature, max_tokens=max_tokens)


@lru_cache(maxsize=8)
def get_text_provider(name: str) -> TextProvider:
    settings = get_settings()
    provider = name.strip().lower()
    if provider == "openai":
        return OpenAITextProvider(
            api_key=settings.openai_api_key,
            base_url=settings.openai_api_base_url,
            timeout_seconds=settings.text_step_timeout_seconds,
        )
    if provider == "gemini":
        return GeminiTextProvider(
            api_key=settings.gemini_api_key,
            base_url=settings.gemini_api_base_url,
            timeout_seconds=settings.text_step_timeout_seconds,
        )
    if provider == "mock":
        return MockTextProvider()
    raise InvalidRequest(f"unknown_text_provider {provider}")


@lru_cache(maxsize=4)
def get_image_provider(name: Optional[str] = None) -> ImageProvider:
    settings = get_settings()
    provider = (name or load_runtime_config().image.provider).strip().lower()
    if settings.ai_demo_mode or provider == "mock":
        return MockImageProvider()
    if provider == "ideogram":
        return IdeogramImageProvider(
            api_key=settings.ideogram_api_key,
            base_url=settings.ideogram_api_base_url,
            timeout_seconds=settings.image_step_timeout_seconds,
        )
    raise InvalidRequest(f"unknown_image_provider {provider}")


def reset_provider_cache() -> None:
    get_text_provider.cache_clear()
    get_image_provider.cache_clear()
