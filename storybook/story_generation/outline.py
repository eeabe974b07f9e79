"""
Service layer for producing paged story outlines via LiteLLM-compatible models.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from storybook.common import ChatResult, CompletionCallable, call_chat_completion, extract_json_payload
from storybook.models import PageType, StoryPage

from .prompting import StoryPrompt, build_story_prompt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutlinePage:
    page_number: int
    page_type: PageType
    text: str
    scene_description: str

    def to_story_page(self, story_id: str = "") -> StoryPage:
        """The scene description is kept as the page's ``image_prompt``."""
        return StoryPage(
            story_id=story_id,
            page_number=self.page_number,
            page_type=self.page_type,
            text_content=self.text,
            image_prompt=self.scene_description,
        )


@dataclass(frozen=True)
class StoryOutline:
    """A story title plus its pages, as produced by the LLM (or the fallback)."""

    title: str
    pages: tuple[OutlinePage, ...]
    is_fallback: bool = False

    def story_pages(self, story_id: str = "") -> list[StoryPage]:
        return [page.to_story_page(story_id) for page in self.pages]


def parse_story_outline(payload: Any) -> StoryOutline:
    """
    Validate a decoded ``{title, pages}`` payload.

    Raises
    ------
    ValueError
        If the title or pages are missing or malformed.
    """
    if not isinstance(payload, Mapping):
        raise ValueError("Story payload must be a JSON object.")

    title = str(payload.get("title") or "").strip()
    raw_pages = payload.get("pages")
    if not title or not isinstance(raw_pages, Sequence) or isinstance(raw_pages, str) or not raw_pages:
        raise ValueError("Story payload must include a title and a non-empty pages list.")

    pages: list[OutlinePage] = []
    for index, entry in enumerate(raw_pages, start=1):
        if not isinstance(entry, Mapping):
            raise ValueError(f"Invalid page entry: {entry!r}")
        try:
            page_number = int(entry.get("pageNumber") or entry.get("page_number") or index)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid page number in entry: {entry!r}") from exc
        raw_type = str(entry.get("pageType") or entry.get("page_type") or "").strip().lower()
        page_type = PageType(raw_type) if raw_type in {t.value for t in PageType} else (
            PageType.COVER if index == 1 else PageType.STORY
        )
        text = str(entry.get("text") or "").strip()
        scene = str(entry.get("sceneDescription") or entry.get("scene_description") or text).strip()
        pages.append(OutlinePage(page_number, page_type, text, scene))

    numbers = [page.page_number for page in pages]
    if len(set(numbers)) != len(numbers) or min(numbers) < 1:
        raise ValueError("Page numbers must be unique and 1-based.")

    return StoryOutline(title=title, pages=tuple(sorted(pages, key=lambda p: p.page_number)))


def fallback_outline(child_name: str, child_age: str | None, page_count: int, themes: Sequence[str] = ()) -> StoryOutline:
    """Minimal deterministic story so a user can proceed when the LLM output is unusable."""
    page_count = max(1, page_count)
    pages = []
    for index in range(page_count):
        theme = themes[index % len(themes)] if themes else None
        if index == 0:
            text = f"{child_name}'s {themes[0] if themes else 'Magical'} Journey"
            scene = (
                f"Cover featuring {child_name}, age {child_age or 'young'}, smiling with a "
                f"{themes[0] if themes else 'whimsical'} background."
            )
            page_type = PageType.COVER
        else:
            text = f"{child_name} explores {theme or 'a new place'}."
            scene = f"A simple scene of {child_name} with {theme or 'friends'} in a child-friendly setting."
            page_type = PageType.STORY
        pages.append(OutlinePage(index + 1, page_type, text, scene))
    return StoryOutline(title=f"The Adventures of {child_name}", pages=tuple(pages), is_fallback=True)


class StoryOutlineGenerator:
    """
    High-level helper that turns a story prompt into a paged outline.

    Parameters
    ----------
    model:
        LiteLLM model identifier used for the chat call.
    api_key:
        Forwarded to LiteLLM.
    completion_fn:
        Optional replacement for :func:`call_chat_completion`. Mainly useful for testing.
    """

    def __init__(
        self,
        *,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        completion_fn: CompletionCallable | None = None,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._completion_fn: CompletionCallable = completion_fn or call_chat_completion

    @property
    def model(self) -> str:
        """Return the model identifier in use."""
        return self._model

    def generate_outline(
        self,
        *,
        prompt: str,
        child_name: str,
        child_age: str | None = None,
        page_count: int = 2,
        reading_level: str = "early reader",
        themes: Sequence[str] = (),
        lesson: str | None = None,
        language: str = "en",
        temperature: float = 0.7,
        max_output_tokens: int = 2000,
    ) -> StoryOutline:
        """
        Invoke the configured LLM and parse its JSON story.

        A response that cannot be parsed yields :func:`fallback_outline`; an
        empty response or a failing API call raises.
        """
        story_prompt: StoryPrompt = build_story_prompt(
            prompt=prompt,
            child_name=child_name,
            child_age=child_age,
            page_count=page_count,
            reading_level=reading_level,
            themes=tuple(themes),
            lesson=lesson,
            language=language,
        )
        messages = [
            {"role": "system", "content": story_prompt.system},
            {"role": "user", "content": story_prompt.user},
        ]

        result: ChatResult = self._completion_fn(
            model=self._model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_output_tokens,
            api_key=self._api_key,
        )

        if not result.text:
            raise RuntimeError("LLM response did not contain any text content.")

        try:
            return parse_story_outline(extract_json_payload(result.text))
        except ValueError as exc:
            logger.warning("Story response was not usable (%s); using fallback story.", exc)
            return fallback_outline(child_name, child_age, page_count, tuple(themes))
