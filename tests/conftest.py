from __future__ import annotations

import asyncio
import base64
import os
import re
from io import BytesIO
from typing import Any, Iterable

import pytest
import requests
from PIL import Image

from storybook.ai_generation import ImageGenerator
from storybook.common import ImageResult
from storybook.errors import ImageGenerationError, RepositoryError, StorageError
from storybook.models import CharacterSheet, PageType, Story, StoryPage
from storybook.storage import ObjectStorage, SqlStoryRepository, create_database_engine

_PAGE_PATTERN = re.compile(r"page (\d+)", re.IGNORECASE)


def image_bytes(fmt: str = "PNG", size: tuple[int, int] = (16, 16), color=(200, 120, 40)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def noise_png(size: tuple[int, int] = (64, 64)) -> bytes:
    buffer = BytesIO()
    Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3)).save(buffer, format="PNG")
    return buffer.getvalue()


def data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def rate_limited() -> ImageGenerationError:
    return ImageGenerationError(ImageGenerationError.RATE_LIMIT, status=429, body="Too many requests")


def content_rejected() -> ImageGenerationError:
    return ImageGenerationError(
        ImageGenerationError.CONTENT_POLICY, status=400, body="content_policy_violation"
    )


class FakeImageGenerator(ImageGenerator):
    """
    Image backend driven by a per-page script.

    The page number is read from the prompt ("... for page N"). ``scripted``
    maps a page to outcomes consumed one per call (``None`` succeeds);
    ``always_fail`` maps a page to an exception raised on every call.
    """

    def __init__(
        self,
        *,
        scripted: dict[int, Iterable[BaseException | None]] | None = None,
        always_fail: dict[int, BaseException] | None = None,
        hang_pages: Iterable[int] = (),
    ) -> None:
        self.scripted = {page: list(outcomes) for page, outcomes in (scripted or {}).items()}
        self.always_fail = dict(always_fail or {})
        self.hang_pages = set(hang_pages)
        self.calls: list[tuple[int | None, str]] = []

    def calls_for(self, page_number: int) -> list[str]:
        return [prompt for page, prompt in self.calls if page == page_number]

    async def generate(self, prompt: str, *, size: str = "1024x1024", quality: str = "medium") -> ImageResult:
        match = _PAGE_PATTERN.search(prompt)
        page = int(match.group(1)) if match else None
        self.calls.append((page, prompt))
        await asyncio.sleep(0)

        if page in self.hang_pages:
            await asyncio.sleep(30)
        if page in self.always_fail:
            raise self.always_fail[page]
        queue = self.scripted.get(page)
        if queue:
            outcome = queue.pop(0)
            if outcome is not None:
                raise outcome
        return ImageResult(data=image_bytes(), mime_type="image/png")


class MemoryStorage(ObjectStorage):
    def __init__(self, *, fail_puts: int = 0) -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.fail_puts = fail_puts

    def put(self, key: str, data: bytes, *, content_type: str = "application/octet-stream") -> str:
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise StorageError("bucket unavailable")
        self.objects[key] = data
        self.content_types[key] = content_type
        return f"memory://{key}"

    def get(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError as exc:
            raise StorageError(f"missing object {key}") from exc

    def signed_url(self, key: str, *, expires_in: int = 60) -> str:
        if key not in self.objects:
            raise StorageError(f"missing object {key}")
        return f"memory://{key}?expires_in={expires_in}"

    def key_for_url(self, url: str) -> str | None:
        if url.startswith("memory://"):
            return url[len("memory://") :].split("?", 1)[0]
        return None


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FlakyRepository(SqlStoryRepository):
    """Fails ``update_page_image`` for chosen pages a set number of times."""

    def __init__(self, engine, failures: dict[int, int]) -> None:
        super().__init__(engine)
        self.failures = dict(failures)
        self.update_calls: list[int] = []

    def update_page_image(self, story_id, page_number, *, image_url, image_prompt=None) -> None:
        self.update_calls.append(page_number)
        if self.failures.get(page_number, 0) > 0:
            self.failures[page_number] -= 1
            raise RepositoryError("database is locked")
        super().update_page_image(
            story_id, page_number, image_url=image_url, image_prompt=image_prompt
        )


class FakeResponse:
    def __init__(self, content: bytes = b"", *, status_code: int = 200, headers=None, payload: Any = None) -> None:
        self.content = content
        self.status_code = status_code
        self.headers = headers or {}
        self._payload = payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def iter_content(self, chunk_size: int = 1024):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def json(self) -> Any:
        return self._payload

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        return None


def make_story(
    repository: SqlStoryRepository,
    *,
    page_count: int = 3,
    with_sheet: bool = True,
    title: str = "Mia and the Moon Garden",
) -> str:
    sheet_id = None
    if with_sheet:
        sheet_id = repository.create_character_sheet(
            CharacterSheet(
                name="Mia",
                hair_color="auburn",
                hair_style="curly bob",
                eye_color="green",
                skin_tone="fair",
                typical_outfit="yellow raincoat",
            )
        ).id
    story = repository.create_story(
        Story(
            user_id="user-1",
            title=title,
            prompt="A garden adventure",
            child_name="Mia",
            child_age="5",
            themes=("friendship",),
            character_sheet_id=sheet_id,
        )
    )
    repository.create_pages(
        story.id,
        [
            StoryPage(
                story_id=story.id,
                page_number=number,
                page_type=PageType.COVER if number == 1 else PageType.STORY,
                text_content=f"Mia walks through the garden on page {number}.",
                image_prompt=f"Mia smiling among tall sunflowers for page {number}",
            )
            for number in range(1, page_count + 1)
        ],
    )
    return story.id


@pytest.fixture
def engine():
    return create_database_engine("sqlite://")


@pytest.fixture
def repository(engine) -> SqlStoryRepository:
    return SqlStoryRepository(engine)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
