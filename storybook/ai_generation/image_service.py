"""
Image-generation backends and upstream failure classification.

Every backend exposes the same coroutine::

    await generator.generate(prompt, size="1024x1024", quality="medium")

returning an :class:`~storybook.common.ImageResult` or raising
:class:`~storybook.errors.ImageGenerationError` whose ``kind`` tells the
orchestrator whether to wait longer (``rate_limit``) or soften the prompt
(``content_policy``).
"""

from __future__ import annotations

import asyncio
import logging

import litellm

from storybook.common import ImageGenerationCallable, ImageResult, call_image_generation
from storybook.errors import ImageGenerationError

logger = logging.getLogger(__name__)

_CONTENT_POLICY_MARKERS = (
    "content_policy_violation",
    "content policy",
    "safety system",
    "nsfw",
)


def classify_image_failure(status: int | None, body: str | None) -> str:
    """
    Map an upstream failure onto ``rate_limit``, ``content_policy`` or ``generation_failed``.
    """
    if status == 429:
        return ImageGenerationError.RATE_LIMIT

    lowered = (body or "").lower()
    if any(marker in lowered for marker in _CONTENT_POLICY_MARKERS):
        return ImageGenerationError.CONTENT_POLICY

    return ImageGenerationError.GENERATION_FAILED


def error_from_exception(exc: BaseException) -> ImageGenerationError:
    """Translate an SDK exception into an :class:`ImageGenerationError`."""
    if isinstance(exc, ImageGenerationError):
        return exc

    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    try:
        status = int(status) if status is not None else None
    except (TypeError, ValueError):
        status = None

    body = str(getattr(exc, "message", "") or exc)

    if isinstance(exc, litellm.ContentPolicyViolationError):
        kind = ImageGenerationError.CONTENT_POLICY
    elif isinstance(exc, litellm.RateLimitError):
        kind = ImageGenerationError.RATE_LIMIT
        status = status or 429
    else:
        kind = classify_image_failure(status, body)

    return ImageGenerationError(kind, status=status, body=body)


class ImageGenerator:
    """Interface implemented by the image-generation backends."""

    async def generate(
        self,
        prompt: str,
        *,
        size: str = "1024x1024",
        quality: str = "medium",
    ) -> ImageResult:
        raise NotImplementedError


class OpenAIImageGenerator(ImageGenerator):
    """
    OpenAI image generation (``gpt-image-1`` by default) through LiteLLM.

    Parameters
    ----------
    model:
        LiteLLM model identifier.
    api_key:
        API key forwarded to LiteLLM. When ``None`` LiteLLM falls back to its
        own provider configuration.
    image_fn:
        Optional replacement for :func:`call_image_generation`. Mainly useful for testing.
    """

    def __init__(
        self,
        *,
        model: str = "gpt-image-1",
        api_key: str | None = None,
        image_fn: ImageGenerationCallable | None = None,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._image_fn: ImageGenerationCallable = image_fn or call_image_generation

    @property
    def model(self) -> str:
        return self._model

    async def generate(
        self,
        prompt: str,
        *,
        size: str = "1024x1024",
        quality: str = "medium",
    ) -> ImageResult:
        try:
            return await self._image_fn(
                model=self._model,
                prompt=prompt,
                size=size,
                quality=quality,
                api_key=self._api_key,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = error_from_exception(exc)
            logger.warning("Image generation via %s failed: %s", self._model, error)
            raise error from exc
