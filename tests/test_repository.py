from __future__ import annotations

import pytest
from conftest import make_story

from storybook.errors import InvalidStatusTransition, RepositoryError, StoryNotFoundError
from storybook.models import GenerationAttempt, GenerationStatus, StoryPage, StoryStatus
from storybook.storage import SqlStoryRepository


def test_story_and_pages_round_trip(repository):
    story_id = make_story(repository, page_count=3)

    story = repository.get_story(story_id)
    pages = repository.list_pages(story_id)

    assert story.title == "Mia and the Moon Garden"
    assert story.themes == ("friendship",)
    assert story.status is StoryStatus.DRAFT
    assert story.created_at is not None
    assert [page.page_number for page in pages] == [1, 2, 3]
    assert pages[0].page_type.value == "cover"
    assert all(page.id for page in pages)


def test_character_sheet_is_linked(repository):
    story_id = make_story(repository)

    bundle = repository.load_bundle(story_id)

    assert bundle.character_sheet is not None
    assert bundle.character_sheet.hair_color == "auburn"
    assert len(bundle.pages) == 3


def test_duplicate_page_numbers_are_rejected(repository):
    story_id = make_story(repository, page_count=2)

    with pytest.raises(RepositoryError):
        repository.create_pages(story_id, [StoryPage(story_id=story_id, page_number=2)])

    assert len(repository.list_pages(story_id)) == 2


def test_missing_story_raises_not_found(repository):
    with pytest.raises(StoryNotFoundError):
        repository.get_story("nope")
    with pytest.raises(StoryNotFoundError):
        repository.list_pages("nope")
    with pytest.raises(StoryNotFoundError):
        repository.update_page_image("nope", 1, image_url="x")


def test_transitions_are_enforced(repository):
    story_id = make_story(repository)

    assert repository.transition_story(story_id, StoryStatus.GENERATING).status is StoryStatus.GENERATING
    assert repository.transition_story(story_id, StoryStatus.FAILED).status is StoryStatus.FAILED
    repository.transition_story(story_id, StoryStatus.GENERATING)
    repository.transition_story(story_id, StoryStatus.COMPLETED)

    with pytest.raises(InvalidStatusTransition):
        repository.transition_story(story_id, StoryStatus.GENERATING)
    assert repository.get_story(story_id).status is StoryStatus.COMPLETED


def test_page_updates_and_missing_images(repository):
    story_id = make_story(repository, page_count=3)

    repository.update_page_image(story_id, 2, image_url="memory://story/page-2.png")
    repository.update_page_image(story_id, 3, image_url="memory://story/page-3.png", image_prompt="new scene")
    repository.update_page_text(story_id, 1, "A brand new opening.")

    assert repository.pages_missing_images(story_id) == [1]
    pages = {page.page_number: page for page in repository.list_pages(story_id)}
    assert pages[2].image_prompt == "Mia smiling among tall sunflowers for page 2"
    assert pages[3].image_prompt == "new scene"
    assert pages[1].text_content == "A brand new opening."


def test_update_of_unknown_page_raises(repository):
    story_id = make_story(repository, page_count=1)

    with pytest.raises(StoryNotFoundError):
        repository.update_page_image(story_id, 7, image_url="x")


def test_pdf_url_is_recorded(repository):
    story_id = make_story(repository)

    repository.set_story_pdf(story_id, "memory://pdfs/story.pdf")

    assert repository.get_story(story_id).pdf_url == "memory://pdfs/story.pdf"


def test_delete_story_removes_pages_but_keeps_sheet(repository):
    story_id = make_story(repository)
    sheet_id = repository.get_story(story_id).character_sheet_id

    repository.delete_story(story_id)

    with pytest.raises(StoryNotFoundError):
        repository.get_story(story_id)
    assert repository.get_character_sheet(sheet_id) is not None


def test_generation_attempts(repository):
    story_id = make_story(repository)
    attempt = repository.create_generation_attempt(
        GenerationAttempt(story_id=story_id, status=GenerationStatus.IN_PROGRESS)
    )

    assert repository.latest_generation_attempt(story_id).status is GenerationStatus.IN_PROGRESS

    repository.update_generation_attempt(attempt.id, GenerationStatus.FAILED, error_message="1 page missing")

    latest = repository.latest_generation_attempt(story_id)
    assert latest.id == attempt.id
    assert latest.status is GenerationStatus.FAILED
    assert latest.error_message == "1 page missing"
    assert latest.completed_at is not None


def test_unknown_generation_attempt_raises(repository):
    with pytest.raises(RepositoryError):
        repository.update_generation_attempt("missing", GenerationStatus.COMPLETED)


def test_file_database_persists_between_repositories(tmp_path):
    url = f"sqlite:///{tmp_path / 'stories.db'}"
    story_id = make_story(SqlStoryRepository.from_url(url), page_count=2)

    reopened = SqlStoryRepository.from_url(url)

    assert [page.page_number for page in reopened.list_pages(story_id)] == [1, 2]
