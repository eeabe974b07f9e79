"""
Persistence for stories and object storage for generated artefacts.
"""

from .database import SqlStoryRepository, create_database_engine
from .objects import LocalObjectStorage, ObjectStorage, SupabaseObjectStorage
from .repository import StoryRepository

__all__ = [
    "LocalObjectStorage",
    "ObjectStorage",
    "SqlStoryRepository",
    "StoryRepository",
    "SupabaseObjectStorage",
    "create_database_engine",
]
