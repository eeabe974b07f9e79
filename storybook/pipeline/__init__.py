"""
Illustration orchestration and story workflows.
"""

from .illustrations import (
    IllustrationOrchestrator,
    IllustrationRunResult,
    PageOutcome,
    ProgressCallback,
    page_storage_key,
)
from .workflow import StoryWorkflow, build_image_generator, build_storage

__all__ = [
    "IllustrationOrchestrator",
    "IllustrationRunResult",
    "PageOutcome",
    "ProgressCallback",
    "StoryWorkflow",
    "build_image_generator",
    "build_storage",
    "page_storage_key",
]
