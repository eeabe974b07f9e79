"""
Service-layer entry points: create, illustrate, retry and export stories.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Sequence

from storybook.ai_generation import ImageGenerator, OpenAIImageGenerator, ReplicateImageGenerator
from storybook.config import Settings
from storybook.models import CharacterSheet, Story, StoryBundle, StoryStatus
from storybook.pdf_generation import ExportResult, ImageResolver, StoryExporter, StorybookPDFBuilder
from storybook.storage import (
    LocalObjectStorage,
    ObjectStorage,
    SqlStoryRepository,
    StoryRepository,
    SupabaseObjectStorage,
)
from storybook.story_generation import CharacterSheetAnalyzer, StoryOutlineGenerator

from .illustrations import IllustrationOrchestrator, IllustrationRunResult, PageOutcome, ProgressCallback

logger = logging.getLogger(__name__)


def build_image_generator(settings: Settings) -> ImageGenerator:
    match settings.image_backend:
        case "openai":
            return OpenAIImageGenerator(model=settings.image_model, api_key=settings.openai_api_key)
        case "replicate":
            return ReplicateImageGenerator(
                api_token=settings.replicate_api_token,
                model_identifier=settings.replicate_model,
            )
        case other:
            raise ValueError(f"Unknown image backend {other!r}; expected 'openai' or 'replicate'.")


def build_storage(settings: Settings, bucket: str) -> ObjectStorage:
    match settings.storage_backend:
        case "local":
            base_url = settings.storage_public_base_url
            return LocalObjectStorage(
                Path(settings.storage_root) / bucket,
                public_base_url=f"{base_url.rstrip('/')}/{bucket}" if base_url else None,
            )
        case "supabase":
            return SupabaseObjectStorage(
                url=settings.supabase_url or "",
                service_key=settings.supabase_service_key or "",
                bucket=bucket,
            )
        case other:
            raise ValueError(f"Unknown storage backend {other!r}; expected 'local' or 'supabase'.")


class StoryWorkflow:
    """
    High-level coordinator that chains story writing, illustration and export.

    The orchestrator owns every status change after creation; callers either
    await :meth:`illustrate` or schedule it as a background task and poll
    :meth:`get_bundle`.
    """

    def __init__(
        self,
        *,
        repository: StoryRepository,
        orchestrator: IllustrationOrchestrator,
        outline_generator: StoryOutlineGenerator,
        exporter: StoryExporter,
        analyzer: CharacterSheetAnalyzer | None = None,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self._outline_generator = outline_generator
        self._exporter = exporter
        self._analyzer = analyzer

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repository: StoryRepository | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> "StoryWorkflow":
        repository = repository or SqlStoryRepository.from_url(settings.database_url)
        image_storage = build_storage(settings, settings.image_bucket)
        pdf_storage = build_storage(settings, settings.pdf_bucket)
        image_generator = build_image_generator(settings)

        orchestrator = IllustrationOrchestrator(
            repository=repository,
            storage=image_storage,
            image_generator=image_generator,
            settings=settings.illustrations,
            progress_callback=progress_callback,
        )
        exporter = StoryExporter(
            repository=repository,
            storage=pdf_storage,
            builder=StorybookPDFBuilder(resolver=ImageResolver(storage=image_storage)),
        )
        return cls(
            repository=repository,
            orchestrator=orchestrator,
            outline_generator=StoryOutlineGenerator(
                model=settings.story_model, api_key=settings.openai_api_key
            ),
            exporter=exporter,
            analyzer=CharacterSheetAnalyzer(
                model=settings.vision_model,
                api_key=settings.openai_api_key,
                image_generator=image_generator,
                storage=image_storage,
            ),
        )

    @property
    def repository(self) -> StoryRepository:
        return self._repository

    def create_story(
        self,
        *,
        user_id: str,
        prompt: str,
        child_name: str,
        child_age: str | None = None,
        themes: Sequence[str] = (),
        art_style: str = "cartoon",
        length: int = 2,
        reading_level: str = "early_reader",
        language: str = "en",
        lesson: str | None = None,
        tone: str | None = None,
        character_sheet: CharacterSheet | None = None,
        photo: Any = None,
    ) -> StoryBundle:
        """
        Write the story, persist it with its pages and move it to ``generating``.

        ``photo`` (path, URL or bytes) is analysed into a character sheet when
        no ``character_sheet`` is given. Sheets without an id are saved first.
        """
        if character_sheet is None and photo is not None:
            if self._analyzer is None:
                raise RuntimeError("Photo analysis requires a CharacterSheetAnalyzer.")
            character_sheet = self._analyzer.analyze(
                photo, child_name=child_name, child_age=child_age, user_id=user_id
            )
        if character_sheet is not None and not character_sheet.id:
            character_sheet = self._repository.create_character_sheet(character_sheet)

        outline = self._outline_generator.generate_outline(
            prompt=prompt,
            child_name=child_name,
            child_age=child_age,
            page_count=length,
            reading_level=reading_level,
            themes=themes,
            lesson=lesson,
            language=language,
        )

        story = self._repository.create_story(
            Story(
                user_id=user_id,
                title=outline.title,
                prompt=prompt,
                child_name=child_name,
                child_age=child_age,
                themes=tuple(themes),
                lesson=lesson,
                tone=tone,
                art_style=art_style,
                length=length,
                reading_level=reading_level,
                language=language,
                character_sheet_id=character_sheet.id if character_sheet else None,
            )
        )
        story_id = story.id or ""
        pages = self._repository.create_pages(story_id, outline.story_pages(story_id))
        story = self._repository.transition_story(story_id, StoryStatus.GENERATING)
        logger.info(
            "Created story %s (%d pages%s)",
            story_id,
            len(pages),
            ", fallback outline" if outline.is_fallback else "",
        )
        return StoryBundle(story=story, pages=pages, character_sheet=character_sheet)

    async def illustrate(self, story_id: str) -> IllustrationRunResult:
        return await self._orchestrator.run(story_id)

    async def create_and_illustrate(self, **story_kwargs: Any) -> IllustrationRunResult:
        bundle = self.create_story(**story_kwargs)
        return await self.illustrate(bundle.story.id or "")

    async def retry_story(self, story_id: str) -> IllustrationRunResult:
        """
        Manually retry a ``failed`` story; only pages without images are regenerated.

        Raises
        ------
        InvalidStatusTransition
            If the story is not ``failed``.
        """
        self._repository.transition_story(story_id, StoryStatus.GENERATING)
        return await self._orchestrator.run(story_id)

    async def fix_missing_images(self, story_id: str) -> IllustrationRunResult | None:
        """
        Fill in pages that lack images. Returns ``None`` when nothing is missing.
        """
        if not self._repository.pages_missing_images(story_id):
            logger.info("Story %s has no missing images.", story_id)
            return None
        return await self._orchestrator.run(story_id)

    async def regenerate_page(
        self,
        story_id: str,
        page_number: int,
        *,
        custom_prompt: str | None = None,
    ) -> PageOutcome:
        return await self._orchestrator.regenerate_page(
            story_id, page_number, custom_prompt=custom_prompt
        )

    def update_page_text(self, story_id: str, page_number: int, text_content: str) -> None:
        self._repository.update_page_text(story_id, page_number, text_content.strip())

    def export_pdf(
        self,
        story_id: str,
        *,
        offset: int = 0,
        limit: int | None = None,
        include_all_pages: bool = False,
    ) -> ExportResult:
        return self._exporter.export(
            story_id, offset=offset, limit=limit, include_all_pages=include_all_pages
        )

    def get_bundle(self, story_id: str) -> StoryBundle:
        return self._repository.load_bundle(story_id)

    def delete_story(self, story_id: str) -> None:
        """Delete a story with its pages; its character sheet is kept."""
        self._repository.delete_story(story_id)
