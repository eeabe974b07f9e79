"""
AI image generation package for the storybook pipeline.
"""

from .image_service import (
    ImageGenerator,
    OpenAIImageGenerator,
    classify_image_failure,
    error_from_exception,
)
from .prompting import (
    AVATAR_STYLES,
    SafetyTier,
    banned_terms,
    build_avatar_prompt,
    build_illustration_prompt,
    sanitize_scene_description,
)
from .replicate_service import ReplicateImageGenerator

__all__ = [
    "AVATAR_STYLES",
    "ImageGenerator",
    "OpenAIImageGenerator",
    "ReplicateImageGenerator",
    "SafetyTier",
    "banned_terms",
    "build_avatar_prompt",
    "build_illustration_prompt",
    "classify_image_failure",
    "error_from_exception",
    "sanitize_scene_description",
]
