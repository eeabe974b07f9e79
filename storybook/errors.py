"""
Exception hierarchy shared across the storybook pipeline.
"""

from __future__ import annotations


class StorybookError(Exception):
    """Base class for all pipeline errors."""


class StoryNotFoundError(StorybookError):
    """Raised when a story (or one of its pages) cannot be loaded."""


class InvalidStatusTransition(StorybookError):
    """Raised when a story status change is not allowed."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move story from '{current}' to '{requested}'.")
        self.current = current
        self.requested = requested


class RepositoryError(StorybookError):
    """Raised by repositories when the underlying database call fails."""


class StorageError(StorybookError):
    """Raised by object storage backends when a read or write fails."""


class ImageResolutionError(StorybookError):
    """Raised when an image reference cannot be turned into embeddable bytes."""


class ImageGenerationError(StorybookError):
    """
    Failure reported by an image-generation backend.

    Attributes
    ----------
    kind:
        One of ``rate_limit``, ``content_policy`` or ``generation_failed``.
    status:
        HTTP status code reported by the upstream API, when known.
    body:
        Raw error body or message returned by the upstream API.
    """

    RATE_LIMIT = "rate_limit"
    CONTENT_POLICY = "content_policy"
    GENERATION_FAILED = "generation_failed"

    def __init__(self, kind: str, *, status: int | None = None, body: str = "") -> None:
        message = f"Image generation failed ({kind}"
        if status is not None:
            message += f", HTTP {status}"
        message += ")"
        if body:
            message += f": {body[:300]}"
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.body = body
