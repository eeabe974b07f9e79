"""
SQLAlchemy-backed implementation of :class:`StoryRepository`.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Sequence

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from storybook.errors import RepositoryError, StoryNotFoundError
from storybook.models import (
    CharacterSheet,
    GenerationAttempt,
    GenerationStatus,
    PageType,
    Story,
    StoryPage,
    StoryStatus,
)

from .repository import StoryRepository

logger = logging.getLogger(__name__)

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CharacterSheetRow(Base):
    __tablename__ = "character_sheets"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), index=True, nullable=True)
    name = Column(String(255), nullable=False)
    age = Column(String(32), nullable=True)
    hair_color = Column(String(128), nullable=True)
    hair_style = Column(String(255), nullable=True)
    eye_color = Column(String(128), nullable=True)
    skin_tone = Column(String(128), nullable=True)
    face_shape = Column(String(128), nullable=True)
    typical_outfit = Column(Text, nullable=True)
    accessory = Column(String(255), nullable=True)
    distinctive_features = Column(Text, nullable=True)
    photo_url = Column(Text, nullable=True)
    cartoon_reference_url = Column(Text, nullable=True)
    likes = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class StoryRow(Base):
    __tablename__ = "stories"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), index=True, nullable=False)
    title = Column(String(255), nullable=False)
    prompt = Column(Text, nullable=False, default="")
    child_name = Column(String(255), nullable=True)
    child_age = Column(String(32), nullable=True)
    themes = Column(JSON, nullable=False, default=list)
    lesson = Column(Text, nullable=True)
    tone = Column(String(64), nullable=True)
    art_style = Column(String(64), nullable=False, default="cartoon")
    length = Column(Integer, nullable=False, default=2)
    reading_level = Column(String(64), nullable=False, default="early_reader")
    language = Column(String(16), nullable=False, default="en")
    status = Column(String(16), nullable=False, default=StoryStatus.DRAFT.value)
    likes = Column(Integer, nullable=False, default=0)
    # Sheets are shared across stories, so deleting a story leaves them alone.
    character_sheet_id = Column(
        String(36), ForeignKey("character_sheets.id", ondelete="SET NULL"), nullable=True
    )
    pdf_url = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    pages = relationship(
        "StoryPageRow",
        back_populates="story",
        cascade="all, delete-orphan",
        order_by="StoryPageRow.page_number",
    )
    generations = relationship(
        "GenerationAttemptRow", back_populates="story", cascade="all, delete-orphan"
    )


class StoryPageRow(Base):
    __tablename__ = "story_pages"

    id = Column(String(36), primary_key=True, default=_new_id)
    story_id = Column(String(36), ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    page_number = Column(Integer, nullable=False)
    page_type = Column(String(16), nullable=False, default=PageType.STORY.value)
    text_content = Column(Text, nullable=False, default="")
    image_url = Column(Text, nullable=True)
    image_prompt = Column(Text, nullable=True)

    story = relationship("StoryRow", back_populates="pages")

    __table_args__ = (UniqueConstraint("story_id", "page_number", name="_story_page_uc"),)


class GenerationAttemptRow(Base):
    __tablename__ = "story_generations"

    id = Column(String(36), primary_key=True, default=_new_id)
    story_id = Column(String(36), ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    generation_type = Column(String(32), nullable=False, default="illustrations")
    status = Column(String(16), nullable=False, default=GenerationStatus.PENDING.value)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    story = relationship("StoryRow", back_populates="generations")


def create_database_engine(database_url: str, *, echo: bool = False) -> Engine:
    """
    Create an engine for ``database_url`` and make sure the tables exist.

    In-memory SQLite URLs share one connection so every session sees the
    same database.
    """
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(database_url, echo=echo)
    Base.metadata.create_all(engine)
    return engine


def _sheet_from_row(row: CharacterSheetRow) -> CharacterSheet:
    return CharacterSheet(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        age=row.age,
        hair_color=row.hair_color,
        hair_style=row.hair_style,
        eye_color=row.eye_color,
        skin_tone=row.skin_tone,
        face_shape=row.face_shape,
        typical_outfit=row.typical_outfit,
        accessory=row.accessory,
        distinctive_features=row.distinctive_features,
        photo_url=row.photo_url,
        cartoon_reference_url=row.cartoon_reference_url,
        likes=row.likes or 0,
        created_at=row.created_at,
    )


def _story_from_row(row: StoryRow) -> Story:
    return Story(
        id=row.id,
        user_id=row.user_id,
        title=row.title,
        prompt=row.prompt or "",
        child_name=row.child_name,
        child_age=row.child_age,
        themes=tuple(row.themes or ()),
        lesson=row.lesson,
        tone=row.tone,
        art_style=row.art_style,
        length=row.length,
        reading_level=row.reading_level,
        language=row.language,
        status=StoryStatus(row.status),
        likes=row.likes or 0,
        character_sheet_id=row.character_sheet_id,
        pdf_url=row.pdf_url,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _page_from_row(row: StoryPageRow) -> StoryPage:
    return StoryPage(
        id=row.id,
        story_id=row.story_id,
        page_number=row.page_number,
        page_type=PageType(row.page_type),
        text_content=row.text_content or "",
        image_url=row.image_url,
        image_prompt=row.image_prompt,
    )


def _attempt_from_row(row: GenerationAttemptRow) -> GenerationAttempt:
    return GenerationAttempt(
        id=row.id,
        story_id=row.story_id,
        generation_type=row.generation_type,
        status=GenerationStatus(row.status),
        error_message=row.error_message,
        created_at=row.created_at,
        completed_at=row.completed_at,
    )


class SqlStoryRepository(StoryRepository):
    """
    Repository over a SQLAlchemy engine.

    Parameters
    ----------
    engine:
        Engine returned by :func:`create_database_engine`.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
        )

    @classmethod
    def from_url(cls, database_url: str) -> "SqlStoryRepository":
        return cls(create_database_engine(database_url))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("Database operation failed: %s", exc)
            raise RepositoryError(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _story_row(session: Session, story_id: str) -> StoryRow:
        row = session.get(StoryRow, story_id)
        if row is None:
            raise StoryNotFoundError(f"Story {story_id!r} does not exist.")
        return row

    @staticmethod
    def _page_row(session: Session, story_id: str, page_number: int) -> StoryPageRow:
        row = (
            session.query(StoryPageRow)
            .filter(StoryPageRow.story_id == story_id, StoryPageRow.page_number == page_number)
            .one_or_none()
        )
        if row is None:
            raise StoryNotFoundError(f"Story {story_id!r} has no page {page_number}.")
        return row

    def create_character_sheet(self, sheet: CharacterSheet) -> CharacterSheet:
        values = sheet.to_dict()
        values.pop("created_at", None)
        if not values.get("id"):
            values.pop("id", None)
        with self._session() as session:
            row = CharacterSheetRow(**values)
            session.add(row)
            session.flush()
            return _sheet_from_row(row)

    def get_character_sheet(self, sheet_id: str) -> CharacterSheet | None:
        with self._session() as session:
            row = session.get(CharacterSheetRow, sheet_id)
            return _sheet_from_row(row) if row is not None else None

    def create_story(self, story: Story) -> Story:
        values = story.to_dict()
        for key in ("created_at", "updated_at"):
            values.pop(key, None)
        if not values.get("id"):
            values.pop("id", None)
        with self._session() as session:
            row = StoryRow(**values)
            session.add(row)
            session.flush()
            return _story_from_row(row)

    def get_story(self, story_id: str) -> Story:
        with self._session() as session:
            return _story_from_row(self._story_row(session, story_id))

    def delete_story(self, story_id: str) -> None:
        with self._session() as session:
            session.delete(self._story_row(session, story_id))

    def transition_story(self, story_id: str, target: StoryStatus) -> Story:
        with self._session() as session:
            row = self._story_row(session, story_id)
            row.status = StoryStatus(row.status).transition_to(target).value
            session.flush()
            return _story_from_row(row)

    def set_story_pdf(self, story_id: str, pdf_url: str) -> None:
        with self._session() as session:
            self._story_row(session, story_id).pdf_url = pdf_url

    def create_pages(self, story_id: str, pages: Sequence[StoryPage]) -> list[StoryPage]:
        with self._session() as session:
            self._story_row(session, story_id)
            rows = [
                StoryPageRow(
                    story_id=story_id,
                    page_number=page.page_number,
                    page_type=page.page_type.value,
                    text_content=page.text_content,
                    image_url=page.image_url,
                    image_prompt=page.image_prompt,
                )
                for page in pages
            ]
            session.add_all(rows)
            session.flush()
            return sorted((_page_from_row(row) for row in rows), key=lambda p: p.page_number)

    def list_pages(self, story_id: str) -> list[StoryPage]:
        with self._session() as session:
            self._story_row(session, story_id)
            rows = (
                session.query(StoryPageRow)
                .filter(StoryPageRow.story_id == story_id)
                .order_by(StoryPageRow.page_number)
                .all()
            )
            return [_page_from_row(row) for row in rows]

    def update_page_image(
        self,
        story_id: str,
        page_number: int,
        *,
        image_url: str,
        image_prompt: str | None = None,
    ) -> None:
        with self._session() as session:
            row = self._page_row(session, story_id, page_number)
            row.image_url = image_url
            if image_prompt is not None:
                row.image_prompt = image_prompt

    def update_page_text(self, story_id: str, page_number: int, text_content: str) -> None:
        with self._session() as session:
            self._page_row(session, story_id, page_number).text_content = text_content

    def pages_missing_images(self, story_id: str) -> list[int]:
        return [page.page_number for page in self.list_pages(story_id) if not page.has_image]

    def create_generation_attempt(self, attempt: GenerationAttempt) -> GenerationAttempt:
        with self._session() as session:
            self._story_row(session, attempt.story_id)
            row = GenerationAttemptRow(
                story_id=attempt.story_id,
                generation_type=attempt.generation_type,
                status=attempt.status.value,
                error_message=attempt.error_message,
            )
            session.add(row)
            session.flush()
            return _attempt_from_row(row)

    def update_generation_attempt(
        self,
        attempt_id: str,
        status: GenerationStatus,
        *,
        error_message: str | None = None,
    ) -> None:
        with self._session() as session:
            row = session.get(GenerationAttemptRow, attempt_id)
            if row is None:
                raise RepositoryError(f"Generation attempt {attempt_id!r} does not exist.")
            row.status = GenerationStatus(status).value
            row.error_message = error_message
            if row.status in (GenerationStatus.COMPLETED.value, GenerationStatus.FAILED.value):
                row.completed_at = _utcnow()

    def latest_generation_attempt(self, story_id: str) -> GenerationAttempt | None:
        with self._session() as session:
            row = (
                session.query(GenerationAttemptRow)
                .filter(GenerationAttemptRow.story_id == story_id)
                .order_by(GenerationAttemptRow.created_at.desc())
                .first()
            )
            return _attempt_from_row(row) if row is not None else None
