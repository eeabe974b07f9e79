"""
Export stories to PDF files in object storage.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable

from storybook.storage import ObjectStorage, StoryRepository

from .builder import StorybookPDFBuilder

logger = logging.getLogger(__name__)

SIGNED_URL_TTL_SECONDS = 60 * 60 * 24 * 7


def safe_title(title: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]+", "_", title).strip("_")
    return cleaned or "story"


@dataclass(frozen=True)
class ExportResult:
    story_id: str
    storage_key: str
    url: str
    size_bytes: int
    content_pages: int
    offset: int
    has_more: bool


class StoryExporter:
    """
    Render a stored story, upload the PDF and record where it lives.

    Parameters
    ----------
    repository:
        Source of the story and its pages.
    storage:
        Bucket receiving the PDF (``story-pdfs`` in production).
    builder:
        PDF renderer.
    clock:
        Wall-clock source used to timestamp file names.
    """

    def __init__(
        self,
        *,
        repository: StoryRepository,
        storage: ObjectStorage,
        builder: StorybookPDFBuilder | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repository = repository
        self._storage = storage
        self._builder = builder or StorybookPDFBuilder()
        self._clock = clock

    def export(
        self,
        story_id: str,
        *,
        offset: int = 0,
        limit: int | None = None,
        include_all_pages: bool = False,
        expires_in: int = SIGNED_URL_TTL_SECONDS,
    ) -> ExportResult:
        """
        Export one batch of a story.

        ``offset``/``limit`` select a slice of the pages (the cover only comes
        with the first batch); ``include_all_pages`` renders every page
        starting at ``offset`` in one document. Only a document holding every
        page is named ``_complete_``; others are ``_part_<first page>_``. The
        signed URL of a first batch is stored as the story's ``pdf_url``.

        Raises
        ------
        StoryNotFoundError
            If the story does not exist.
        StorageError
            If the upload or signing fails.
        """
        story = self._repository.get_story(story_id)
        pages = self._repository.list_pages(story_id)

        builder = self._builder
        if include_all_pages:
            builder = StorybookPDFBuilder(
                page_size=builder.page_size,
                layout=builder.layout,
                resolver=builder.resolver,
                max_content_pages=None,
                page_compression=builder.page_compression,
            )
            limit = None

        selected = builder.select_pages(pages, offset=offset, limit=limit)
        pdf_bytes = builder.render(story, pages, offset=offset, limit=limit)

        has_more = offset + len(selected) < len(pages)
        timestamp = int(self._clock() * 1000)
        suffix = "complete" if offset == 0 and not has_more else f"part_{offset + 1}"
        key = f"{story.user_id or 'anonymous'}/{story_id}/{safe_title(story.title)}_{suffix}_{timestamp}.pdf"

        self._storage.put(key, pdf_bytes, content_type="application/pdf")
        url = self._storage.signed_url(key, expires_in=expires_in)
        if offset == 0:
            self._repository.set_story_pdf(story_id, url)

        logger.info("Exported story %s to %s (%d bytes)", story_id, key, len(pdf_bytes))
        return ExportResult(
            story_id=story_id,
            storage_key=key,
            url=url,
            size_bytes=len(pdf_bytes),
            content_pages=len(selected),
            offset=offset,
            has_more=has_more,
        )
