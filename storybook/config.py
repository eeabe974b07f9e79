"""
Explicit configuration objects for the storybook services.

Nothing in the pipeline reads the environment on its own; callers build a
:class:`Settings` (usually via :meth:`Settings.from_env`) and hand the pieces to
constructors.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping


def _first_env(environ: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        value = environ.get(name)
        if value and value.strip():
            return value.strip()
    return None


def _float_env(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be numeric, got {raw!r}.") from exc


@dataclass(frozen=True)
class IllustrationSettings:
    """
    Knobs controlling the illustration orchestrator.

    Attributes
    ----------
    stagger_seconds:
        Delay between the start of consecutive page requests in one pass.
    max_retry_rounds:
        Number of retry rounds after the first pass.
    backoff_base_seconds:
        Base of the exponential retry delay, ``2 ** (round - 1) * base``.
    rate_limit_extra_seconds:
        Flat delay added on every retry round after the first.
    conservative_from_round:
        First retry round that builds prompts with the conservative safety tier.
    page_update_attempts:
        Attempts for persisting a page's image reference.
    page_update_delay_seconds:
        Pause between page-update attempts.
    deadline_seconds:
        Overall time budget for one run; ``None`` disables it.
    image_size, image_quality:
        Forwarded to the image-generation backend.
    """

    stagger_seconds: float = 2.0
    max_retry_rounds: int = 5
    backoff_base_seconds: float = 2.0
    rate_limit_extra_seconds: float = 15.0
    conservative_from_round: int = 2
    page_update_attempts: int = 3
    page_update_delay_seconds: float = 2.0
    deadline_seconds: float | None = 280.0
    image_size: str = "1024x1024"
    image_quality: str = "medium"

    def retry_delay(self, retry_round: int) -> float:
        delay = (2 ** (retry_round - 1)) * self.backoff_base_seconds
        if retry_round > 1:
            delay += self.rate_limit_extra_seconds
        return delay


@dataclass(frozen=True)
class Settings:
    """Top-level configuration resolved from the process environment."""

    openai_api_key: str | None = None
    story_model: str = "gpt-4o-mini"
    vision_model: str = "gpt-4o-mini"
    image_model: str = "gpt-image-1"
    image_backend: str = "openai"
    replicate_api_token: str | None = None
    replicate_model: str | None = None
    database_url: str = "sqlite:///storybook.db"
    storage_backend: str = "local"
    storage_root: str = "storage"
    storage_public_base_url: str | None = None
    supabase_url: str | None = None
    supabase_service_key: str | None = None
    image_bucket: str = "story-images"
    pdf_bucket: str = "story-pdfs"
    illustrations: IllustrationSettings = field(default_factory=IllustrationSettings)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()
        illustration_defaults = IllustrationSettings()

        deadline = _float_env(
            env,
            "STORYBOOK_ILLUSTRATION_DEADLINE",
            illustration_defaults.deadline_seconds or 0.0,
        )

        illustrations = IllustrationSettings(
            stagger_seconds=_float_env(
                env, "STORYBOOK_IMAGE_STAGGER", illustration_defaults.stagger_seconds
            ),
            max_retry_rounds=int(
                _float_env(
                    env, "STORYBOOK_IMAGE_RETRY_ROUNDS", illustration_defaults.max_retry_rounds
                )
            ),
            deadline_seconds=deadline if deadline > 0 else None,
            image_size=_first_env(env, "STORYBOOK_IMAGE_SIZE") or illustration_defaults.image_size,
            image_quality=_first_env(env, "STORYBOOK_IMAGE_QUALITY")
            or illustration_defaults.image_quality,
        )

        return cls(
            openai_api_key=_first_env(env, "STORYBOOK_OPENAI_API_KEY", "OPENAI_API_KEY", "LITELLM_API_KEY"),
            story_model=_first_env(
                env, "STORYBOOK_STORY_MODEL", "OPENAI_STORY_MODEL", "LITELLM_STORY_MODEL", "LITELLM_MODEL"
            )
            or defaults.story_model,
            vision_model=_first_env(
                env, "STORYBOOK_VISION_MODEL", "OPENAI_VISION_MODEL", "LITELLM_VISION_MODEL"
            )
            or defaults.vision_model,
            image_model=_first_env(env, "STORYBOOK_IMAGE_MODEL", "OPENAI_IMAGE_MODEL")
            or defaults.image_model,
            image_backend=(_first_env(env, "STORYBOOK_IMAGE_BACKEND") or defaults.image_backend).lower(),
            replicate_api_token=_first_env(env, "REPLICATE_API_TOKEN"),
            replicate_model=_first_env(env, "REPLICATE_MODEL"),
            database_url=_first_env(env, "STORYBOOK_DATABASE_URL", "DATABASE_URL")
            or defaults.database_url,
            storage_backend=(
                _first_env(env, "STORYBOOK_STORAGE_BACKEND") or defaults.storage_backend
            ).lower(),
            storage_root=_first_env(env, "STORYBOOK_STORAGE_ROOT") or defaults.storage_root,
            storage_public_base_url=_first_env(env, "STORYBOOK_STORAGE_PUBLIC_URL"),
            supabase_url=_first_env(env, "SUPABASE_URL"),
            supabase_service_key=_first_env(env, "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_KEY"),
            image_bucket=_first_env(env, "STORYBOOK_IMAGE_BUCKET") or defaults.image_bucket,
            pdf_bucket=_first_env(env, "STORYBOOK_PDF_BUCKET") or defaults.pdf_bucket,
            illustrations=illustrations,
        )
