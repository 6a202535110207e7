"""Gemini generateContent text provider."""

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


BLOCKING_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"}


class GeminiTextProvider(TextProvider):
    provider_name = "gemini"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_seconds: int = 120,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key = api_key.strip()
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _endpoint(self, model: str) -> str:
        if not self._api_key:
            raise ProviderUnavailable("gemini_api_key_missing")
        if not model.strip():
            raise ProviderUnavailable("gemini_model_missing")
        return f"{self._base_url}/models/{model.strip()}:generateContent?key={self._api_key}"

    def generate_text(self, request: TextGenerationRequest) -> TextGenerationOutput:
        request_body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_tokens,
            },
        }
        if request.system:
            request_body["systemInstruction"] = {"parts": [{"text": request.system}]}

        started = perf_counter()
        body = provider_post(
            provider_name=self.provider_name,
            url=self._endpoint(request.model),
            timeout_seconds=self._timeout_seconds,
            client=self._client,
            json=request_body,
        )
        latency_ms = int((perf_counter() - started) * 1000)

        feedback = body.get("promptFeedback")
        if isinstance(feedback, dict) and feedback.get("blockReason"):
            raise UnsafeContent(f"gemini_prompt_blocked reason={feedback.get('blockReason')}")

        candidates = body.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise ProviderUnavailable("gemini_missing_candidates")

        candidate = candidates[0] if isinstance(candidates[0], dict) else {}
        finish_reason = str(candidate.get("finishReason") or "")
        if finish_reason in BLOCKING_FINISH_REASONS:
            raise UnsafeContent(f"gemini_candidate_blocked reason={finish_reason}")

        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        texts: List[str] = []
        if isinstance(parts, list):
            for part in parts:
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    texts.append(part["text"])
        text = "".join(texts).strip()
        if not text:
            raise ProviderUnavailable("gemini_empty_completion")

        usage = body.get("usageMetadata") if isinstance(body.get("usageMetadata"), dict) else {}
        return TextGenerationOutput(
            provider=self.provider_name,
            text=text,
            tokens_used=max(0, int(usage.get("totalTokenCount") or 0)),
            model_used=str(body.get("modelVersion") or request.model),
            latency_ms=latency_ms,
            payload={"finish_reason": finish_reason or None},
        )
