from __future__ import annotations

import re

import pytest
from conftest import MemoryStorage, image_bytes, make_story

from storybook.errors import StoryNotFoundError
from storybook.pdf_generation import ImageResolver, StoryExporter, StorybookPDFBuilder
from storybook.pdf_generation.export import safe_title


def _exporter(repository, storage, image_storage=None):
    builder = StorybookPDFBuilder(
        resolver=ImageResolver(storage=image_storage or MemoryStorage()),
        page_compression=False,
    )
    return StoryExporter(
        repository=repository, storage=storage, builder=builder, clock=lambda: 1_700_000_000.0
    )


def _pdf_pages(pdf: bytes) -> int:
    return len(re.findall(rb"/Type /Page\b", pdf))


def test_full_export_uploads_pdf_and_records_url(repository, storage):
    story_id = make_story(repository, page_count=3)

    result = _exporter(repository, storage).export(story_id)

    assert result.storage_key == f"user-1/{story_id}/Mia_and_the_Moon_Garden_complete_1700000000000.pdf"
    assert storage.content_types[result.storage_key] == "application/pdf"
    assert storage.objects[result.storage_key].startswith(b"%PDF")
    assert result.url.startswith(f"memory://{result.storage_key}?expires_in=")
    assert result.content_pages == 3
    assert not result.has_more
    assert repository.get_story(story_id).pdf_url == result.url


def test_batched_export_reports_remaining_pages(repository, storage):
    story_id = make_story(repository, page_count=10)
    exporter = _exporter(repository, storage)

    first = exporter.export(story_id)
    second = exporter.export(story_id, offset=8)

    assert first.content_pages == 8
    assert first.has_more
    assert "_part_1_" in first.storage_key
    assert "_complete_" not in first.storage_key
    assert second.content_pages == 2
    assert not second.has_more
    assert "_part_9_" in second.storage_key
    assert _pdf_pages(storage.objects[second.storage_key]) == 2
    # Only the first batch becomes the story's PDF.
    assert repository.get_story(story_id).pdf_url == first.url


def test_include_all_pages_lifts_the_cap(repository, storage):
    story_id = make_story(repository, page_count=10)

    result = _exporter(repository, storage).export(story_id, include_all_pages=True)

    assert result.content_pages == 10
    assert "_complete_" in result.storage_key
    assert not result.has_more
    assert _pdf_pages(storage.objects[result.storage_key]) == 11


def test_export_embeds_stored_illustrations(repository, storage):
    images = MemoryStorage()
    story_id = make_story(repository, page_count=1)
    url = images.put("story/page-1.png", image_bytes(size=(40, 20)), content_type="image/png")
    repository.update_page_image(story_id, 1, image_url=url)

    result = _exporter(repository, storage, images).export(story_id)

    assert b"/Width 40" in storage.objects[result.storage_key]


def test_export_of_unknown_story(repository, storage):
    with pytest.raises(StoryNotFoundError):
        _exporter(repository, storage).export("missing")


def test_safe_title():
    assert safe_title("Mia & the Moon!") == "Mia_the_Moon"
    assert safe_title("???") == "story"
