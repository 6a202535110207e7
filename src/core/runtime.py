"""Runtime configuration loader (provider selection table)."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from src.core.config import get_settings


TEXT_PROVIDERS = ("openai", "gemini", "mock")
IMAGE_PROVIDERS = ("ideogram", "mock")


class TextBinding(BaseModel):
    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0)

    @field_validator("provider")
    @classmethod
    def _validate_provider(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in TEXT_PROVIDERS:
            raise ValueError(f"text provider must be one of: {', '.join(TEXT_PROVIDERS)}")
        return normalized


class ImageBinding(BaseModel):
    provider: str = "ideogram"
    model_version: str = "v2"

    @field_validator("provider")
    @classmethod
    def _validate_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in IMAGE_PROVIDERS:
            raise ValueError(f"image provider must be one of: {', '.join(IMAGE_PROVIDERS)}")
        return normalized


class RuntimeConfig(BaseModel):
    text_default: TextBinding = Field(default_factory=lambda: TextBinding(provider="openai"))
    text_categories: Dict[str, TextBinding] = Field(default_factory=dict)
    model_families: Dict[str, str] = Field(
        default_factory=lambda: {
            "gpt": "openai",
            "o1": "openai",
            "o3": "openai",
            "gemini": "gemini",
            "mock": "mock",
        }
    )
    image: ImageBinding = Field(default_factory=ImageBinding)

    @field_validator("text_categories", mode="before")
    @classmethod
    def _normalize_category_keys(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        return {str(key).strip().lower(): item for key, item in value.items()}

    @field_validator("model_families")
    @classmethod
    def _validate_families(cls, value: Dict[str, str]) -> Dict[str, str]:
        normalized: Dict[str, str] = {}
        for prefix, provider in value.items():
            provider_name = str(provider).strip().lower()
            if provider_name not in TEXT_PROVIDERS:
                raise ValueError(f"model family {prefix!r} maps to unknown provider {provider!r}")
            normalized[str(prefix).strip().lower()] = provider_name
        return normalized


def _resolve_runtime_path() -> Path:
    settings = get_settings()
    configured = Path(settings.runtime_file_path)
    if configured.is_absolute():
        return configured
    return Path.cwd() / configured


@lru_cache(maxsize=1)
def load_runtime_config() -> RuntimeConfig:
    path = _resolve_runtime_path()
    if not path.exists():
        return RuntimeConfig()

    content = path.read_text(encoding="utf-8")
    parsed = yaml.safe_load(content) or {}
    if not isinstance(parsed, dict):
        raise ValueError("Runtime config must be a YAML object")

    data: Dict[str, Any] = dict(parsed)
    return RuntimeConfig.model_validate(data)


def reset_runtime_config_cache() -> None:
    load_runtime_config.cache_clear()
