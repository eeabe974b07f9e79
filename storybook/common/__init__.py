"""
Common utilities shared across storybook modules.
"""

from .llm import (
    ChatResult,
    CompletionCallable,
    ImageGenerationCallable,
    ImageResult,
    call_chat_completion,
    call_image_generation,
    extract_json_payload,
)

__all__ = [
    "ChatResult",
    "CompletionCallable",
    "ImageGenerationCallable",
    "ImageResult",
    "call_chat_completion",
    "call_image_generation",
    "extract_json_payload",
]
