"""
Persistence interface for stories, pages, character sheets and generation runs.
"""

from __future__ import annotations

from typing import Sequence

from storybook.models import (
    CharacterSheet,
    GenerationAttempt,
    GenerationStatus,
    Story,
    StoryBundle,
    StoryPage,
    StoryStatus,
)


class StoryRepository:
    """
    Row-level access to the relational store.

    Implementations raise :class:`~storybook.errors.RepositoryError` for
    database failures and :class:`~storybook.errors.StoryNotFoundError` for
    missing stories. Every write touches a single row.
    """

    def create_character_sheet(self, sheet: CharacterSheet) -> CharacterSheet:
        raise NotImplementedError

    def get_character_sheet(self, sheet_id: str) -> CharacterSheet | None:
        raise NotImplementedError

    def create_story(self, story: Story) -> Story:
        raise NotImplementedError

    def get_story(self, story_id: str) -> Story:
        raise NotImplementedError

    def delete_story(self, story_id: str) -> None:
        raise NotImplementedError

    def transition_story(self, story_id: str, target: StoryStatus) -> Story:
        """Move a story to ``target``, enforcing the allowed status transitions."""
        raise NotImplementedError

    def set_story_pdf(self, story_id: str, pdf_url: str) -> None:
        raise NotImplementedError

    def create_pages(self, story_id: str, pages: Sequence[StoryPage]) -> list[StoryPage]:
        raise NotImplementedError

    def list_pages(self, story_id: str) -> list[StoryPage]:
        """Return the story's pages ordered by ``page_number``."""
        raise NotImplementedError

    def update_page_image(
        self,
        story_id: str,
        page_number: int,
        *,
        image_url: str,
        image_prompt: str | None = None,
    ) -> None:
        raise NotImplementedError

    def update_page_text(self, story_id: str, page_number: int, text_content: str) -> None:
        raise NotImplementedError

    def pages_missing_images(self, story_id: str) -> list[int]:
        """Return page numbers whose image reference is empty, ascending."""
        raise NotImplementedError

    def create_generation_attempt(self, attempt: GenerationAttempt) -> GenerationAttempt:
        raise NotImplementedError

    def update_generation_attempt(
        self,
        attempt_id: str,
        status: GenerationStatus,
        *,
        error_message: str | None = None,
    ) -> None:
        raise NotImplementedError

    def latest_generation_attempt(self, story_id: str) -> GenerationAttempt | None:
        raise NotImplementedError

    def load_bundle(self, story_id: str) -> StoryBundle:
        story = self.get_story(story_id)
        sheet = (
            self.get_character_sheet(story.character_sheet_id)
            if story.character_sheet_id
            else None
        )
        return StoryBundle(story=story, pages=self.list_pages(story_id), character_sheet=sheet)
