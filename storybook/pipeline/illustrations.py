"""
Illustration orchestration: one persisted image per story page.

A run fans out one task per page, staggered so the upstream image API sees a
bounded burst, then retries pages that still lack an image for a fixed number
of rounds. Per-page failures are logged and aggregated; only failing to load
the story itself aborts a run. The story ends ``completed`` only when every
page has an image reference after a fresh read of the pages.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from storybook.ai_generation import ImageGenerator, SafetyTier, build_illustration_prompt
from storybook.config import IllustrationSettings
from storybook.errors import (
    ImageGenerationError,
    RepositoryError,
    StorageError,
    StorybookError,
    StoryNotFoundError,
)
from storybook.models import (
    CharacterSheet,
    GenerationAttempt,
    GenerationStatus,
    Story,
    StoryPage,
    StoryStatus,
)
from storybook.storage import ObjectStorage, StoryRepository

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, dict[str, Any]], None]
SleepCallable = Callable[[float], Awaitable[Any]]

STORAGE_FAILED = "storage_failed"
DATABASE_FAILED = "database_failed"
BUDGET_EXHAUSTED_MESSAGE = "time budget exhausted"


def page_storage_key(story_id: str, page_number: int, timestamp_ms: int, attempt: int) -> str:
    """Object-storage key for one generated illustration; unique per page attempt."""
    return f"story-{story_id}/page-{page_number}-{timestamp_ms}-a{attempt}.png"


@dataclass
class PageOutcome:
    """Result of the attempts made for one page during a run."""

    page_number: int
    attempts: int = 0
    image_url: str | None = None
    failure: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.image_url is not None


@dataclass
class IllustrationRunResult:
    """
    Summary of one orchestration run.

    Attributes
    ----------
    status:
        Final story status, ``completed`` or ``failed``.
    missing_pages:
        Page numbers that still lack an image after the run.
    retry_rounds:
        Retry rounds actually executed after the first pass.
    budget_exhausted:
        ``True`` when the run was cut short by its time budget.
    error_message:
        Human-readable summary stored on the generation attempt.
    """

    story_id: str
    status: StoryStatus
    total_pages: int
    missing_pages: tuple[int, ...] = ()
    outcomes: dict[int, PageOutcome] = field(default_factory=dict)
    retry_rounds: int = 0
    budget_exhausted: bool = False
    error_message: str | None = None

    @property
    def success_rate(self) -> float:
        if self.total_pages == 0:
            return 0.0
        return (self.total_pages - len(self.missing_pages)) / self.total_pages


@dataclass
class _RunContext:
    story: Story
    character: CharacterSheet | None
    outcomes: dict[int, PageOutcome]
    retry_rounds: int = 0
    db_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class IllustrationOrchestrator:
    """
    Generate, store and record an illustration for every page of a story.

    Parameters
    ----------
    repository:
        Relational store holding stories, pages and generation attempts.
    storage:
        Object storage receiving the generated images.
    image_generator:
        Backend used to produce images from prompts.
    settings:
        Stagger, retry, backoff and budget configuration.
    sleep:
        Awaitable used for every stagger and backoff pause. Tests pass a
        recorder so runs complete instantly.
    clock:
        Wall-clock source (seconds) used to timestamp storage keys.
    progress_callback:
        Optional ``callback(stage, payload)`` hook for progress reporting.
    """

    def __init__(
        self,
        *,
        repository: StoryRepository,
        storage: ObjectStorage,
        image_generator: ImageGenerator,
        settings: IllustrationSettings | None = None,
        sleep: SleepCallable = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        self._repository = repository
        self._storage = storage
        self._image_generator = image_generator
        self._settings = settings or IllustrationSettings()
        self._sleep = sleep
        self._clock = clock
        self._progress_callback = progress_callback

    @property
    def settings(self) -> IllustrationSettings:
        return self._settings

    async def run(self, story_id: str) -> IllustrationRunResult:
        """
        Illustrate every page of ``story_id`` that lacks an image.

        The story is moved to ``generating`` (when it is not already there)
        and finishes as ``completed`` or ``failed``. A generation attempt row
        records the outcome.

        Raises
        ------
        InvalidStatusTransition
            If the story is already ``completed``.
        """
        try:
            story = await asyncio.to_thread(self._repository.get_story, story_id)
            pages = await asyncio.to_thread(self._repository.list_pages, story_id)
            character = (
                await asyncio.to_thread(self._repository.get_character_sheet, story.character_sheet_id)
                if story.character_sheet_id
                else None
            )
        except (StoryNotFoundError, RepositoryError) as exc:
            logger.error("Unable to load story %s: %s", story_id, exc)
            return await asyncio.to_thread(self._abort, story_id, f"Failed to load story: {exc}")

        if story.status is not StoryStatus.GENERATING:
            try:
                story = await asyncio.to_thread(
                    self._repository.transition_story, story_id, StoryStatus.GENERATING
                )
            except RepositoryError as exc:
                logger.error("Unable to start illustrating story %s: %s", story_id, exc)
                return await asyncio.to_thread(
                    self._abort, story_id, f"Failed to start generation: {exc}"
                )

        attempt = await asyncio.to_thread(self._start_attempt, story_id)

        if not pages:
            return await asyncio.to_thread(
                self._finish,
                story_id,
                attempt,
                IllustrationRunResult(
                    story_id=story_id,
                    status=StoryStatus.FAILED,
                    total_pages=0,
                    error_message="Story has no pages to illustrate.",
                ),
            )

        ctx = _RunContext(
            story=story,
            character=character,
            outcomes={page.page_number: PageOutcome(page.page_number) for page in pages},
        )
        self._notify("illustrations:start", story_id=story_id, total_pages=len(pages))

        budget_exhausted = False
        deadline = self._settings.deadline_seconds
        try:
            if deadline is None:
                await self._illustrate(ctx, pages)
            else:
                await asyncio.wait_for(self._illustrate(ctx, pages), timeout=deadline)
        except asyncio.TimeoutError:
            budget_exhausted = True
            logger.warning(
                "Illustration run for story %s hit its %.0fs budget; keeping finished pages.",
                story_id,
                deadline,
            )

        try:
            missing = tuple(await asyncio.to_thread(self._repository.pages_missing_images, story_id))
        except (StoryNotFoundError, RepositoryError) as exc:
            logger.error("Could not verify pages of story %s: %s", story_id, exc)
            missing = tuple(sorted(ctx.outcomes))

        status = StoryStatus.FAILED if missing else StoryStatus.COMPLETED
        result = IllustrationRunResult(
            story_id=story_id,
            status=status,
            total_pages=len(pages),
            missing_pages=missing,
            outcomes=ctx.outcomes,
            retry_rounds=ctx.retry_rounds,
            budget_exhausted=budget_exhausted,
        )
        if status is StoryStatus.FAILED:
            result.error_message = self._failure_summary(result, deadline)
        return await asyncio.to_thread(self._finish, story_id, attempt, result)

    async def regenerate_page(
        self,
        story_id: str,
        page_number: int,
        *,
        custom_prompt: str | None = None,
    ) -> PageOutcome:
        """
        Generate a fresh image for a single page without touching the story status.

        ``custom_prompt`` replaces the stored scene description and is kept as
        the page's new ``image_prompt``.

        Raises
        ------
        StoryNotFoundError
            If the story or the page does not exist.
        ImageGenerationError, StorageError, RepositoryError
            If the single attempt fails.
        """
        story = await asyncio.to_thread(self._repository.get_story, story_id)
        pages = await asyncio.to_thread(self._repository.list_pages, story_id)
        page = next((p for p in pages if p.page_number == page_number), None)
        if page is None:
            raise StoryNotFoundError(f"Story {story_id!r} has no page {page_number}.")
        character = (
            await asyncio.to_thread(self._repository.get_character_sheet, story.character_sheet_id)
            if story.character_sheet_id
            else None
        )

        scene = (custom_prompt or "").strip() or _scene_for(page)
        prompt = build_illustration_prompt(scene, character, story.art_style)
        image = await self._image_generator.generate(
            prompt,
            size=self._settings.image_size,
            quality=self._settings.image_quality,
        )
        key = page_storage_key(story_id, page_number, self._timestamp_ms(), 1)
        url = await asyncio.to_thread(
            self._storage.put, key, image.data, content_type=image.mime_type
        )
        await asyncio.to_thread(
            self._repository.update_page_image,
            story_id,
            page_number,
            image_url=url,
            image_prompt=custom_prompt.strip() if custom_prompt else None,
        )
        logger.info("Regenerated illustration for story %s page %d", story_id, page_number)
        return PageOutcome(page_number=page_number, attempts=1, image_url=url)

    async def _illustrate(self, ctx: _RunContext, pages: Sequence[StoryPage]) -> None:
        story_id = ctx.story.id or ""
        pending = [page for page in pages if not page.has_image]
        for page in pages:
            if page.has_image:
                ctx.outcomes[page.page_number].image_url = page.image_url

        await self._run_pass(ctx, pending, retry_round=0)

        for retry_round in range(1, self._settings.max_retry_rounds + 1):
            missing_numbers = await self._still_missing(ctx)
            if not missing_numbers:
                return
            retry_pages = [page for page in pages if page.page_number in missing_numbers]

            delay = self._settings.retry_delay(retry_round)
            ctx.retry_rounds = retry_round
            logger.info(
                "Story %s: retry round %d for pages %s after %.1fs",
                story_id,
                retry_round,
                sorted(missing_numbers),
                delay,
            )
            self._notify(
                "illustrations:retry_round",
                story_id=story_id,
                retry_round=retry_round,
                pages=sorted(missing_numbers),
                delay=delay,
            )
            await self._sleep(delay)
            await self._run_pass(ctx, retry_pages, retry_round=retry_round)

    async def _still_missing(self, ctx: _RunContext) -> set[int]:
        try:
            missing = await self._in_thread(
                ctx, self._repository.pages_missing_images, ctx.story.id or ""
            )
            return set(missing)
        except RepositoryError as exc:
            logger.warning("Could not re-read pages of story %s: %s", ctx.story.id, exc)
            return {number for number, outcome in ctx.outcomes.items() if not outcome.succeeded}

    async def _run_pass(
        self,
        ctx: _RunContext,
        pages: Sequence[StoryPage],
        *,
        retry_round: int,
    ) -> None:
        ordered = sorted(pages, key=lambda page: page.page_number)
        tasks = [
            self._page_task(ctx, page, retry_round, index * self._settings.stagger_seconds)
            for index, page in enumerate(ordered)
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for page, result in zip(ordered, results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.error(
                    "Unexpected failure illustrating page %d: %r", page.page_number, result
                )
                ctx.outcomes[page.page_number].failure = ImageGenerationError.GENERATION_FAILED

    async def _page_task(
        self,
        ctx: _RunContext,
        page: StoryPage,
        retry_round: int,
        delay: float,
    ) -> None:
        if delay > 0:
            await self._sleep(delay)
        try:
            await self._generate_page(ctx, page, retry_round)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unexpected error illustrating page %d", page.page_number)
            ctx.outcomes[page.page_number].failure = ImageGenerationError.GENERATION_FAILED
            self._notify(
                "illustrations:page_failed",
                page_number=page.page_number,
                reason=ImageGenerationError.GENERATION_FAILED,
            )

    async def _generate_page(self, ctx: _RunContext, page: StoryPage, retry_round: int) -> None:
        story_id = ctx.story.id or ""
        outcome = ctx.outcomes[page.page_number]
        outcome.attempts += 1
        attempt = outcome.attempts

        tier = self._tier_for(retry_round, outcome.failure)
        prompt = build_illustration_prompt(_scene_for(page), ctx.character, ctx.story.art_style, tier)

        try:
            image = await self._image_generator.generate(
                prompt,
                size=self._settings.image_size,
                quality=self._settings.image_quality,
            )
        except ImageGenerationError as exc:
            self._record_failure(outcome, exc.kind, attempt, exc)
            return

        key = page_storage_key(story_id, page.page_number, self._timestamp_ms(), attempt)
        try:
            url = await asyncio.to_thread(
                self._storage.put, key, image.data, content_type=image.mime_type
            )
        except StorageError as exc:
            self._record_failure(outcome, STORAGE_FAILED, attempt, exc)
            return

        if not await self._persist_page_image(ctx, page.page_number, url):
            self._record_failure(outcome, DATABASE_FAILED, attempt, None)
            return

        outcome.image_url = url
        outcome.failure = None
        logger.info(
            "Story %s page %d illustrated on attempt %d (%s prompt)",
            story_id,
            page.page_number,
            attempt,
            tier.value,
        )
        self._notify(
            "illustrations:page_succeeded",
            page_number=page.page_number,
            attempt=attempt,
            image_url=url,
        )

    async def _persist_page_image(self, ctx: _RunContext, page_number: int, url: str) -> bool:
        story_id = ctx.story.id or ""
        attempts = max(1, self._settings.page_update_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await self._in_thread(
                    ctx, self._repository.update_page_image, story_id, page_number, image_url=url
                )
                return True
            except RepositoryError as exc:
                logger.warning(
                    "Updating page %d of story %s failed (attempt %d/%d): %s",
                    page_number,
                    story_id,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts:
                    await self._sleep(self._settings.page_update_delay_seconds)
        return False

    async def _in_thread(
        self, ctx: _RunContext, method: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        async with ctx.db_lock:
            return await asyncio.to_thread(method, *args, **kwargs)

    def _tier_for(self, retry_round: int, last_failure: str | None) -> SafetyTier:
        if retry_round >= self._settings.conservative_from_round:
            return SafetyTier.CONSERVATIVE
        # A content-policy rejection switches to the softer prompt straight away.
        if retry_round > 0 and last_failure == ImageGenerationError.CONTENT_POLICY:
            return SafetyTier.CONSERVATIVE
        return SafetyTier.NORMAL

    def _record_failure(
        self,
        outcome: PageOutcome,
        reason: str,
        attempt: int,
        exc: BaseException | None,
    ) -> None:
        outcome.failure = reason
        logger.warning(
            "Page %d attempt %d failed (%s)%s",
            outcome.page_number,
            attempt,
            reason,
            f": {exc}" if exc is not None else "",
        )
        self._notify(
            "illustrations:page_failed",
            page_number=outcome.page_number,
            attempt=attempt,
            reason=reason,
        )

    def _start_attempt(self, story_id: str) -> GenerationAttempt | None:
        try:
            return self._repository.create_generation_attempt(
                GenerationAttempt(story_id=story_id, status=GenerationStatus.IN_PROGRESS)
            )
        except RepositoryError as exc:
            logger.warning("Could not record generation attempt for %s: %s", story_id, exc)
            return None

    def _finish(
        self,
        story_id: str,
        attempt: GenerationAttempt | None,
        result: IllustrationRunResult,
    ) -> IllustrationRunResult:
        try:
            self._repository.transition_story(story_id, result.status)
        except StorybookError as exc:
            logger.error("Could not set story %s to %s: %s", story_id, result.status.value, exc)
            result.error_message = result.error_message or f"Could not update story status: {exc}"
            result.status = StoryStatus.FAILED

        if attempt is not None and attempt.id:
            generation_status = (
                GenerationStatus.COMPLETED
                if result.status is StoryStatus.COMPLETED
                else GenerationStatus.FAILED
            )
            try:
                self._repository.update_generation_attempt(
                    attempt.id, generation_status, error_message=result.error_message
                )
            except RepositoryError as exc:
                logger.warning("Could not update generation attempt %s: %s", attempt.id, exc)

        logger.info(
            "Story %s finished as %s (%d/%d pages illustrated)",
            story_id,
            result.status.value,
            result.total_pages - len(result.missing_pages),
            result.total_pages,
        )
        self._notify(
            "illustrations:finished",
            story_id=story_id,
            status=result.status.value,
            success_rate=result.success_rate,
            missing_pages=list(result.missing_pages),
            error_message=result.error_message,
        )
        return result

    def _abort(self, story_id: str, message: str) -> IllustrationRunResult:
        """Best-effort failure bookkeeping when the story could not be loaded."""
        try:
            story = self._repository.get_story(story_id)
            if story.status is StoryStatus.DRAFT or story.status is StoryStatus.FAILED:
                self._repository.transition_story(story_id, StoryStatus.GENERATING)
            self._repository.transition_story(story_id, StoryStatus.FAILED)
            self._repository.create_generation_attempt(
                GenerationAttempt(
                    story_id=story_id,
                    status=GenerationStatus.FAILED,
                    error_message=message,
                )
            )
        except StorybookError as exc:
            logger.warning("Could not mark story %s as failed: %s", story_id, exc)

        self._notify("illustrations:finished", story_id=story_id, status="failed", error_message=message)
        return IllustrationRunResult(
            story_id=story_id,
            status=StoryStatus.FAILED,
            total_pages=0,
            error_message=message,
        )

    @staticmethod
    def _failure_summary(result: IllustrationRunResult, deadline: float | None) -> str:
        done = result.total_pages - len(result.missing_pages)
        parts = []
        if result.budget_exhausted:
            parts.append(f"Illustration stopped: {BUDGET_EXHAUSTED_MESSAGE} after {deadline:.0f}s.")
        parts.append(
            f"Generated {done} of {result.total_pages} illustrations "
            f"({result.success_rate:.0%})."
        )
        if result.missing_pages:
            reasons = Counter(
                result.outcomes[number].failure or "not attempted"
                for number in result.missing_pages
                if number in result.outcomes
            )
            pages = ", ".join(str(number) for number in result.missing_pages)
            details = ", ".join(f"{reason}: {count}" for reason, count in sorted(reasons.items()))
            parts.append(f"Missing pages: {pages} ({details}). Retry to finish the story.")
        return " ".join(parts)

    def _timestamp_ms(self) -> int:
        return int(self._clock() * 1000)

    def _notify(self, stage: str, **payload: Any) -> None:
        if self._progress_callback is not None:
            self._progress_callback(stage, payload)


def _scene_for(page: StoryPage) -> str:
    return (page.image_prompt or page.text_content or "").strip()
