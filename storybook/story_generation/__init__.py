"""
Story writing and character analysis for the storybook pipeline.
"""

from .character_sheet import AvatarResult, CharacterSheetAnalyzer, normalize_image_input
from .outline import (
    OutlinePage,
    StoryOutline,
    StoryOutlineGenerator,
    fallback_outline,
    parse_story_outline,
)
from .prompting import StoryPrompt, build_character_sheet_prompt, build_story_prompt

__all__ = [
    "AvatarResult",
    "CharacterSheetAnalyzer",
    "OutlinePage",
    "StoryOutline",
    "StoryOutlineGenerator",
    "StoryPrompt",
    "build_character_sheet_prompt",
    "build_story_prompt",
    "fallback_outline",
    "normalize_image_input",
    "parse_story_outline",
]
