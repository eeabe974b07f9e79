"""
Storybook package exposing story generation, illustration and PDF tooling.
"""

from .config import IllustrationSettings, Settings
from .models import CharacterSheet, Story, StoryBundle, StoryPage, StoryStatus
from .pdf_generation import StoryExporter, StorybookPDFBuilder
from .pipeline import IllustrationOrchestrator, StoryWorkflow

__all__ = [
    "CharacterSheet",
    "IllustrationOrchestrator",
    "IllustrationSettings",
    "Settings",
    "Story",
    "StoryBundle",
    "StoryExporter",
    "StoryPage",
    "StoryStatus",
    "StoryWorkflow",
    "StorybookPDFBuilder",
]
