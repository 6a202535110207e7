"""OpenAI chat-completions text provider."""

from __future__ import annotations

from time import perf_counter
from typing import Any, Dict, List, Optional

import httpx

from src.ai.providers.base import (
    TextGenerationOutput,
    TextGenerationRequest,
    TextProvider,
    provider_post,
)
from src.core.errors import ProviderUnavailable, UnsafeContent


class OpenAITextProvider(TextProvider):
    provider_name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: int = 120,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key = api_key.strip()
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _headers(self) -> Dict[str, str]:
        if not self._api_key:
            raise ProviderUnavailable("openai_api_key_missing")
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def generate_text(self, request: TextGenerationRequest) -> TextGenerationOutput:
        messages: List[Dict[str, str]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})

        started = perf_counter()
        body = provider_post(
            provider_name=self.provider_name,
            url=f"{self._base_url}/chat/completions",
            timeout_seconds=self._timeout_seconds,
            client=self._client,
            headers=self._headers(),
            json={
                "model": request.model,
                "messages": messages,
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
            },
        )
        latency_ms = int((perf_counter() - started) * 1000)

        choices = body.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProviderUnavailable("openai_missing_choices")
        first: Dict[str, Any] = choices[0] if isinstance(choices[0], dict) else {}
        if first.get("finish_reason") == "content_filter":
            raise UnsafeContent("openai_content_filtered")
        message = first.get("message") if isinstance(first.get("message"), dict) else {}
        text = str(message.get("content") or "").strip()
        if not text:
            raise ProviderUnavailable("openai_empty_completion")

        usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
        tokens_used = int(usage.get("total_tokens") or 0)
        return TextGenerationOutput(
            provider=self.provider_name,
            text=text,
            tokens_used=max(0, tokens_used),
            model_used=str(body.get("model") or request.model),
            latency_ms=latency_ms,
            payload={"id": body.get("id"), "finish_reason": first.get("finish_reason")},
        )
