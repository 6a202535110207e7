"""Text and image provider integrations."""

from src.ai.providers.base import (
    GeneratedImage,
    ImageGenerationRequest,
    ImageProvider,
    ReferenceImage,
    TextGenerationOutput,
    TextGenerationRequest,
    TextProvider,
)
from src.ai.providers.factory import (
    get_image_provider,
    get_text_provider,
    reset_provider_cache,
    select_text_binding,
)
from src.ai.providers.gemini_provider import GeminiTextProvider
from src.ai.providers.ideogram_provider import IdeogramImageProvider
from src.ai.providers.mock_provider import MockImageProvider, MockTextProvider
from src.ai.providers.openai_provider import OpenAITextProvider

__all__ = [
    "GeneratedImage",
    "ImageGenerationRequest",
    "ImageProvider",
    "ReferenceImage",
    "TextGenerationOutput",
    "TextGenerationRequest",
    "TextProvider",
    "GeminiTextProvider",
    "IdeogramImageProvider",
    "MockImageProvider",
    "MockTextProvider",
    "OpenAITextProvider",
    "get_image_provider",
    "get_text_provider",
    "reset_provider_cache",
    "select_text_binding",
]
