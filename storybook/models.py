"""
Structured representations of stories, pages, character sheets and generation runs.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml

from .errors import InvalidStatusTransition


class StoryStatus(str, Enum):
    DRAFT = "draft"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    def can_transition_to(self, target: "StoryStatus") -> bool:
        return target in _STORY_TRANSITIONS[self]

    def transition_to(self, target: "StoryStatus | str") -> "StoryStatus":
        """
        Return ``target`` if moving there from this status is allowed.

        Raises
        ------
        InvalidStatusTransition
            If the move is not one of draft→generating, generating→completed,
            generating→failed or failed→generating.
        """
        resolved = StoryStatus(target)
        if not self.can_transition_to(resolved):
            raise InvalidStatusTransition(self.value, resolved.value)
        return resolved


_STORY_TRANSITIONS: dict[StoryStatus, frozenset[StoryStatus]] = {
    StoryStatus.DRAFT: frozenset({StoryStatus.GENERATING}),
    StoryStatus.GENERATING: frozenset({StoryStatus.COMPLETED, StoryStatus.FAILED}),
    StoryStatus.COMPLETED: frozenset(),
    StoryStatus.FAILED: frozenset({StoryStatus.GENERATING}),
}


class GenerationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PageType(str, Enum):
    COVER = "cover"
    STORY = "story"


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None

    text = str(value).strip()
    return text or None


def _coerce_optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None

    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected an integer-compatible value, got {value!r}") from exc


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _normalize_themes(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()

    if isinstance(value, str):
        parts = [item.strip() for item in value.split(",")]
    elif isinstance(value, Sequence):
        parts = [str(item).strip() for item in value]
    else:
        raise TypeError("themes must be a string or sequence of strings.")

    return tuple(filter(None, parts))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class CharacterSheet:
    """
    Reusable visual descriptor of a child, used to keep illustrations consistent.

    A sheet is referenced by stories but never owned by them; deleting a story
    leaves its character sheet in place.
    """

    name: str
    id: str | None = None
    user_id: str | None = None
    age: str | None = None
    hair_color: str | None = None
    hair_style: str | None = None
    eye_color: str | None = None
    skin_tone: str | None = None
    face_shape: str | None = None
    typical_outfit: str | None = None
    accessory: str | None = None
    distinctive_features: str | None = None
    photo_url: str | None = None
    cartoon_reference_url: str | None = None
    likes: int = 0
    created_at: datetime | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CharacterSheet":
        """
        Build a sheet from a database row or a vision-analysis payload.

        Both ``snake_case`` column names and the ``camelCase`` keys produced by
        the vision prompt are accepted.
        """
        name = _coerce_optional_str(data.get("name"))
        if not name:
            raise ValueError("Character sheet data must include a non-empty 'name' field.")

        def pick(*keys: str) -> str | None:
            for key in keys:
                text = _coerce_optional_str(data.get(key))
                if text:
                    return text
            return None

        return cls(
            name=name,
            id=pick("id"),
            user_id=pick("user_id"),
            age=pick("age"),
            hair_color=pick("hair_color", "hairColor"),
            hair_style=pick("hair_style", "hairStyle"),
            eye_color=pick("eye_color", "eyeColor"),
            skin_tone=pick("skin_tone", "skinTone"),
            face_shape=pick("face_shape", "faceShape"),
            typical_outfit=pick("typical_outfit", "typicalOutfit"),
            accessory=pick("accessory"),
            distinctive_features=pick("distinctive_features", "distinctiveFeatures"),
            photo_url=pick("photo_url", "photoUrl"),
            cartoon_reference_url=pick("cartoon_reference_url", "cartoonReferenceUrl"),
            likes=_coerce_optional_int(data.get("likes")) or 0,
            created_at=_coerce_datetime(data.get("created_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "age": self.age,
            "hair_color": self.hair_color,
            "hair_style": self.hair_style,
            "eye_color": self.eye_color,
            "skin_tone": self.skin_tone,
            "face_shape": self.face_shape,
            "typical_outfit": self.typical_outfit,
            "accessory": self.accessory,
            "distinctive_features": self.distinctive_features,
            "photo_url": self.photo_url,
            "cartoon_reference_url": self.cartoon_reference_url,
            "likes": self.likes,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class StoryPage:
    """One page of a story: text plus an optional illustration reference."""

    story_id: str
    page_number: int
    page_type: PageType = PageType.STORY
    text_content: str = ""
    image_url: str | None = None
    image_prompt: str | None = None
    id: str | None = None

    @property
    def has_image(self) -> bool:
        return bool(self.image_url and self.image_url.strip())

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StoryPage":
        try:
            page_number = int(data.get("page_number", data.get("pageNumber")))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid page entry: {dict(data)}") from exc
        if page_number < 1:
            raise ValueError(f"Page numbers are 1-based, got {page_number}.")

        raw_type = data.get("page_type") or data.get("pageType") or PageType.STORY.value
        return cls(
            id=_coerce_optional_str(data.get("id")),
            story_id=str(data.get("story_id") or ""),
            page_number=page_number,
            page_type=PageType(str(raw_type).strip().lower()),
            text_content=str(data.get("text_content") or data.get("text") or "").strip(),
            image_url=_coerce_optional_str(data.get("image_url")),
            image_prompt=_coerce_optional_str(data.get("image_prompt")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "story_id": self.story_id,
            "page_number": self.page_number,
            "page_type": self.page_type.value,
            "text_content": self.text_content,
            "image_url": self.image_url,
            "image_prompt": self.image_prompt,
        }


@dataclass(frozen=True)
class Story:
    """
    Canonical representation of a generated story.

    Attributes
    ----------
    title:
        Story title shown on the cover.
    prompt:
        The free-text prompt the user submitted.
    status:
        Lifecycle status; changed only through :meth:`StoryStatus.transition_to`.
    length:
        Target number of pages requested in the creation wizard.
    pdf_url:
        Storage reference of the last exported PDF, if any.
    """

    user_id: str
    title: str
    prompt: str
    id: str | None = None
    child_name: str | None = None
    child_age: str | None = None
    themes: tuple[str, ...] = ()
    lesson: str | None = None
    tone: str | None = None
    art_style: str = "cartoon"
    length: int = 2
    reading_level: str = "early_reader"
    language: str = "en"
    status: StoryStatus = StoryStatus.DRAFT
    likes: int = 0
    character_sheet_id: str | None = None
    pdf_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def with_status(self, target: StoryStatus | str) -> "Story":
        return replace(self, status=self.status.transition_to(target))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Story":
        title = _coerce_optional_str(data.get("title"))
        if not title:
            raise ValueError("Story data must include a non-empty 'title' field.")

        return cls(
            id=_coerce_optional_str(data.get("id")),
            user_id=str(data.get("user_id") or ""),
            title=title,
            prompt=str(data.get("prompt") or "").strip(),
            child_name=_coerce_optional_str(data.get("child_name")),
            child_age=_coerce_optional_str(data.get("child_age")),
            themes=_normalize_themes(data.get("themes")),
            lesson=_coerce_optional_str(data.get("lesson")),
            tone=_coerce_optional_str(data.get("tone")),
            art_style=_coerce_optional_str(data.get("art_style")) or "cartoon",
            length=_coerce_optional_int(data.get("length")) or 2,
            reading_level=_coerce_optional_str(data.get("reading_level")) or "early_reader",
            language=_coerce_optional_str(data.get("language")) or "en",
            status=StoryStatus(data.get("status") or StoryStatus.DRAFT.value),
            likes=_coerce_optional_int(data.get("likes")) or 0,
            character_sheet_id=_coerce_optional_str(data.get("character_sheet_id")),
            pdf_url=_coerce_optional_str(data.get("pdf_url")),
            created_at=_coerce_datetime(data.get("created_at")),
            updated_at=_coerce_datetime(data.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "prompt": self.prompt,
            "child_name": self.child_name,
            "child_age": self.child_age,
            "themes": list(self.themes),
            "lesson": self.lesson,
            "tone": self.tone,
            "art_style": self.art_style,
            "length": self.length,
            "reading_level": self.reading_level,
            "language": self.language,
            "status": self.status.value,
            "likes": self.likes,
            "character_sheet_id": self.character_sheet_id,
            "pdf_url": self.pdf_url,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class GenerationAttempt:
    """One orchestration run, kept for user-facing error reporting."""

    story_id: str
    generation_type: str = "illustrations"
    status: GenerationStatus = GenerationStatus.PENDING
    error_message: str | None = None
    id: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class StoryBundle:
    """A story together with its pages and optional character sheet."""

    story: Story
    pages: list[StoryPage]
    character_sheet: CharacterSheet | None = None

    def ordered_pages(self) -> list[StoryPage]:
        return sorted(self.pages, key=lambda page: page.page_number)

    def to_dict(self) -> dict[str, Any]:
        return {
            "story": self.story.to_dict(),
            "pages": [page.to_dict() for page in self.ordered_pages()],
            "character_sheet": (
                self.character_sheet.to_dict() if self.character_sheet else None
            ),
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "StoryBundle":
        if "story" not in payload:
            raise ValueError("Story bundle payload must include 'story'.")
        if "pages" not in payload:
            raise ValueError("Story bundle payload must include 'pages'.")

        story = Story.from_mapping(payload["story"])
        pages = [StoryPage.from_mapping(entry) for entry in payload.get("pages") or []]
        sheet_data = payload.get("character_sheet")
        sheet = CharacterSheet.from_mapping(sheet_data) if sheet_data else None
        return cls(story=story, pages=pages, character_sheet=sheet)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, allow_unicode=True)

    @classmethod
    def from_file(cls, source: str | Path) -> "StoryBundle":
        """Load a bundle from a YAML or JSON file (JSON is valid YAML)."""
        path = Path(source)
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        if not isinstance(data, Mapping):
            raise ValueError("Story bundle file must deserialize to a mapping.")
        return cls.from_mapping(data)
