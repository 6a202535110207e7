"""Deterministic mock providers for demo mode and tests."""

from __future__ import annotations

import hashlib
import json
from typing import Callable, List, Optional

from src.ai.providers.base import (
    GeneratedImage,
    ImageGenerationRequest,
    ImageProvider,
    TextGenerationOutput,
    TextGenerationRequest,
    TextProvider,
)


Responder = Callable[[TextGenerationRequest], str]


def _digest(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


def _default_text(request: TextGenerationRequest) -> str:
    prompt = request.prompt
    lowered = prompt.lower()
    short = _digest(prompt)[:8]
    if "facebook" in lowered and "instagram" in lowered:
        return json.dumps(
            {
                "facebook": {"text": f"Community update {short}", "hashtags": ["#faith", "#news"]},
                "instagram": {"text": f"Today's reflection {short}", "hashtags": ["#hope"]},
                "linkedin": {"text": f"Sector briefing {short}", "hashtags": []},
                "twitter": {"text": f"Breaking {short}", "hashtags": ["#church"]},
            }
        )
    if '"segments"' in prompt:
        return json.dumps(
            {
                "title": f"Video {short}",
                "segments": [
                    {"text": "Opening hook", "duration": 15},
                    {"text": "Main story", "duration": 30},
                    {"text": "Call to reflection", "duration": 15},
                ],
                "visualSuggestions": ["church exterior", "open bible"],
            }
        )
    if '"key_points"' in prompt:
        return json.dumps(
            {
                "summary": f"Summary {short}",
                "key_points": ["First point", "Second point"],
                "relevance_score": 0.8,
                "themes": ["hope"],
            }
        )
    if "prayer" in lowered:
        return "\n\n".join(
            [
                "1. Pray for healing for all who are affected by these events.",
                "2. Pray for guidance for leaders making difficult decisions.",
                "3. Pray for peace in communities facing division.",
                "4. Pray for provision for families in need this season.",
                "5. Pray for hope to be restored where it has been lost.",
            ]
        )
    return f"Mock Article {short}\n\nThis is deterministic mock content generated for prompt {short}."


class MockTextProvider(TextProvider):
    provider_name = "mock"

    def __init__(self, *, responder: Optional[Responder] = None) -> None:
        self._responder = responder or _default_text
        self.calls: List[TextGenerationRequest] = []

    def generate_text(self, request: TextGenerationRequest) -> TextGenerationOutput:
        self.calls.append(request)
        text = self._responder(request)
        return TextGenerationOutput(
            provider=self.provider_name,
            text=text,
            tokens_used=max(1, (len(request.prompt) + len(text)) // 4),
            model_used=request.model,
            latency_ms=1,
            payload={"mock": True},
        )


class MockImageProvider(ImageProvider):
    provider_name = "mock"

    def __init__(self, *, unsafe_indexes: tuple[int, ...] = ()) -> None:
        self._unsafe_indexes = set(unsafe_indexes)
        self.calls: List[ImageGenerationRequest] = []

    def generate_image(self, request: ImageGenerationRequest) -> List[GeneratedImage]:
        self.calls.append(request)
        images: List[GeneratedImage] = []
        for index in range(max(1, request.num_images)):
            seed_hex = _digest(f"{request.prompt}:{request.style_type}:{index}")[:16]
            seed = request.seed if request.seed is not None else int(seed_hex[:8], 16)
            images.append(
                GeneratedImage(
                    url=f"https://picsum.photos/seed/{seed_hex}/1280/720",
                    seed=seed,
                    resolution=request.resolution or "1280x720",
                    is_safe=index not in self._unsafe_indexes,
                    generation_time_s=0.01,
                    cost_estimate_usd=0.0,
                    alt_text=request.prompt[:120],
                    prompt=request.prompt,
                    style_type=request.style_type,
                )
            )
        return images
