"""
Photo analysis into character sheets, plus avatar portraits in a few styles.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from storybook.ai_generation import AVATAR_STYLES, ImageGenerator, build_avatar_prompt
from storybook.common import CompletionCallable, call_chat_completion, extract_json_payload
from storybook.errors import ImageGenerationError, StorageError
from storybook.models import CharacterSheet
from storybook.storage import ObjectStorage

from .prompting import build_character_sheet_prompt

PathLike = str | Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvatarResult:
    style: str
    image_url: str | None = None
    error: str | None = None


def normalize_image_input(reference_image: PathLike | bytes, mime_type: str | None = None) -> str:
    """Return a URL or ``data:`` URL the vision model can read."""
    if isinstance(reference_image, bytes):
        encoded = base64.b64encode(reference_image).decode("ascii")
        return f"data:{mime_type or 'image/jpeg'};base64,{encoded}"

    candidate = str(reference_image)
    if candidate.lower().startswith(("http://", "https://", "data:")):
        return candidate

    image_path = Path(reference_image).expanduser()
    data = image_path.read_bytes()
    guessed, _ = mimetypes.guess_type(image_path.name)
    return normalize_image_input(data, guessed)


def _style_slug(style: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", style.lower()).strip("-")


class CharacterSheetAnalyzer:
    """
    Turn a child's photo into a :class:`CharacterSheet`.

    Parameters
    ----------
    model:
        Multimodal chat model used for the analysis.
    api_key:
        Forwarded to LiteLLM.
    completion_fn:
        Optional replacement for :func:`call_chat_completion`. Mainly useful for testing.
    image_generator, storage:
        Needed only for :meth:`generate_avatars`.
    """

    def __init__(
        self,
        *,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        completion_fn: CompletionCallable | None = None,
        image_generator: ImageGenerator | None = None,
        storage: ObjectStorage | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._completion_fn: CompletionCallable = completion_fn or call_chat_completion
        self._image_generator = image_generator
        self._storage = storage
        self._clock = clock

    def analyze(
        self,
        photo: PathLike | bytes,
        *,
        child_name: str,
        child_age: str | None = None,
        user_id: str | None = None,
        mime_type: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 500,
    ) -> CharacterSheet:
        """
        Raises
        ------
        ValueError
            If the model reply is not a JSON object of features.
        """
        image_payload = normalize_image_input(photo, mime_type)
        prompt = build_character_sheet_prompt(child_name, child_age)
        messages: Sequence[dict[str, Any]] = [
            {"role": "system", "content": prompt.system},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt.user},
                    {"type": "image_url", "image_url": {"url": image_payload}},
                ],
            },
        ]

        result = self._completion_fn(
            model=self._model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=self._api_key,
        )
        features = extract_json_payload(result.text)
        if not isinstance(features, Mapping):
            raise ValueError("Character analysis did not return a JSON object.")

        logger.info("Extracted character features for %s: %s", child_name, sorted(features))
        photo_url = image_payload if not image_payload.startswith("data:") else None
        return CharacterSheet.from_mapping(
            {
                **features,
                "name": child_name,
                "age": child_age,
                "user_id": user_id,
                "photo_url": photo_url,
            }
        )

    async def generate_avatars(
        self,
        sheet: CharacterSheet,
        *,
        styles: Sequence[str] = AVATAR_STYLES,
        size: str = "1024x1024",
        quality: str = "medium",
    ) -> list[AvatarResult]:
        """
        Generate one portrait per style concurrently; a failed style does not
        affect the others.
        """
        if self._image_generator is None or self._storage is None:
            raise RuntimeError("Avatar generation requires an image generator and a storage backend.")

        results = await asyncio.gather(
            *(self._generate_avatar(sheet, style, size, quality) for style in styles)
        )
        succeeded = sum(1 for result in results if result.image_url)
        logger.info("Generated %d of %d avatar styles for %s", succeeded, len(styles), sheet.name)
        return list(results)

    async def _generate_avatar(
        self,
        sheet: CharacterSheet,
        style: str,
        size: str,
        quality: str,
    ) -> AvatarResult:
        try:
            image = await self._image_generator.generate(
                build_avatar_prompt(sheet, style), size=size, quality=quality
            )
            owner = sheet.id or _style_slug(sheet.name)
            key = f"avatars/{owner}/{_style_slug(style)}-{int(self._clock() * 1000)}.png"
            url = await asyncio.to_thread(
                self._storage.put, key, image.data, content_type=image.mime_type
            )
        except (ImageGenerationError, StorageError) as exc:
            logger.warning("Avatar style %r failed: %s", style, exc)
            return AvatarResult(style=style, error=str(exc))
        return AvatarResult(style=style, image_url=url)
