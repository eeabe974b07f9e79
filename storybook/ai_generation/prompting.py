"""
Prompt construction utilities for storybook illustration generation.

Scene descriptions are passed through a word-substitution filter before they
reach the image model. The filter is a blunt heuristic that lowers the rate of
content-policy rejections; it is not a safety guarantee.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Sequence

from storybook.models import CharacterSheet


class SafetyTier(str, Enum):
    NORMAL = "normal"
    CONSERVATIVE = "conservative"


# Plurals, verb forms and comparatives of a listed word are rewritten too.
INFLECTIONS = ("s", "es", "d", "ed", "ing", "er", "ers", "est", "en", "ened", "y")


def _word_pattern(words: Sequence[str]) -> re.Pattern[str]:
    return re.compile(
        r"\b(?:" + "|".join(words) + r")(?:" + "|".join(INFLECTIONS) + r")?\b",
        re.IGNORECASE,
    )


NORMAL_SUBSTITUTIONS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("fight", "battle", "violence", "scary", "dangerous", "weapon", "hurt", "pain"), "adventure"),
    (("dark", "darkness", "shadow", "gloomy"), "mysterious"),
    (("monster", "beast", "creature"), "friendly character"),
)

CONSERVATIVE_SUBSTITUTIONS: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        (
            "fight", "battle", "violence", "scary", "dangerous", "weapon", "hurt",
            "pain", "fear", "afraid", "terror", "nightmare",
        ),
        "play",
    ),
    (("dark", "darkness", "shadow", "gloomy", "night", "black"), "bright"),
    (("monster", "beast", "creature", "dragon", "witch", "ghost"), "friendly animal"),
    (("lost", "alone", "sad", "crying", "worried", "anxious"), "happy"),
    (("fire", "flame", "burn", "smoke"), "sparkles"),
    (("storm", "rain", "thunder", "lightning"), "sunshine"),
)

_COMPILED_TABLES: dict[SafetyTier, tuple[tuple[re.Pattern[str], str], ...]] = {
    SafetyTier.NORMAL: tuple(
        (_word_pattern(words), replacement) for words, replacement in NORMAL_SUBSTITUTIONS
    ),
    SafetyTier.CONSERVATIVE: tuple(
        (_word_pattern(words), replacement) for words, replacement in CONSERVATIVE_SUBSTITUTIONS
    ),
}

STYLE_FOOTER = (
    "bright cheerful colors, safe family-friendly content, whimsical storybook illustration, "
    "detailed pleasant background"
)

AVATAR_STYLES: tuple[str, ...] = (
    "Disney-style cartoon",
    "Pixar-style 3D cartoon",
    "Studio Ghibli-style illustration",
)


def banned_terms(tier: SafetyTier | str = SafetyTier.NORMAL) -> tuple[str, ...]:
    """Return every word the given tier rewrites."""
    table = (
        NORMAL_SUBSTITUTIONS
        if SafetyTier(tier) is SafetyTier.NORMAL
        else CONSERVATIVE_SUBSTITUTIONS
    )
    return tuple(word for words, _ in table for word in words)


def sanitize_scene_description(
    scene_description: str,
    tier: SafetyTier | str = SafetyTier.NORMAL,
) -> str:
    """
    Replace violence, fear and darkness vocabulary with neutral words.

    Matching is whole-word and case-insensitive and also catches inflected
    forms ("monsters", "burning"). A capitalised match yields a capitalised
    replacement.
    """
    text = scene_description
    for pattern, replacement in _COMPILED_TABLES[SafetyTier(tier)]:
        text = pattern.sub(lambda match, word=replacement: _match_case(match.group(0), word), text)
    return text


def _match_case(original: str, replacement: str) -> str:
    if original[:1].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


def build_illustration_prompt(
    scene_description: str,
    character: CharacterSheet | None,
    art_style: str,
    tier: SafetyTier | str = SafetyTier.NORMAL,
) -> str:
    """
    Build the text prompt sent to the image-generation API for one page.

    Parameters
    ----------
    scene_description:
        Free-text description of what the page should show.
    character:
        Optional character sheet. When present, its physical attributes are
        listed with an instruction to keep them identical across pages.
    art_style:
        Style label such as ``"cartoon"`` or ``"watercolor"``.
    tier:
        ``normal`` for the first attempt, ``conservative`` for late retries.
    """
    style = (art_style or "cartoon").strip()
    tier = SafetyTier(tier)
    scene = " ".join(sanitize_scene_description(scene_description, tier).split())

    if tier is SafetyTier.CONSERVATIVE:
        return _build_conservative_prompt(scene, character, style)

    sections = [f"Create a wholesome {style} children's book illustration showing: {scene}"]

    if character is not None:
        sections.append(
            _format_bullet_section(
                "Character appearance (maintain consistency across every page):",
                _character_lines(character),
            )
        )
        footer = f"{STYLE_FOOTER}, consistent character design"
    else:
        footer = STYLE_FOOTER

    sections.append(f"Style: {style} art style, {footer}, appealing to young children ages 3-8")
    return "\n\n".join(sections)


def _build_conservative_prompt(scene: str, character: CharacterSheet | None, style: str) -> str:
    lines = [f"A simple {style} children's book illustration: {scene.rstrip('.')}."]
    if character is not None:
        traits = [
            f"{value} {label}"
            for value, label in (
                (character.hair_color, "hair"),
                (character.eye_color, "eyes"),
                (character.skin_tone, "skin"),
            )
            if value
        ]
        if traits:
            lines.append("Main character: child with " + ", ".join(traits) + ".")
    lines.append(
        "Happy, colorful, safe content for young children. Bright cartoon style with cheerful colors."
    )
    return "\n".join(lines)


def build_avatar_prompt(character: CharacterSheet, style: str) -> str:
    """Prompt for a single character portrait used to pick a reference style."""
    block = _format_bullet_section(
        f"Create a {style} portrait of a child character based on these features:",
        _character_lines(character, include_name=False),
    )
    return (
        f"{block}\n\nStyle: {style}, child-friendly, warm and appealing, suitable for a "
        "children's storybook, clean background, high quality illustration"
    )


def _character_lines(character: CharacterSheet, *, include_name: bool = True) -> list[str]:
    lines: list[str] = []
    if include_name:
        lines.append(f"Child named {character.name}")

    hair = " ".join(filter(None, (character.hair_color, character.hair_style)))
    if hair:
        lines.append(f"Hair: {hair}")
    if character.eye_color:
        lines.append(f"Eyes: {character.eye_color}")
    if character.skin_tone:
        lines.append(f"Skin: {character.skin_tone}")
    if character.face_shape:
        lines.append(f"Face: {character.face_shape} face")
    if character.typical_outfit:
        lines.append(f"Clothing: {character.typical_outfit}")
    if character.accessory:
        lines.append(f"Accessory: {character.accessory}")
    if character.distinctive_features:
        lines.append(f"Features: {character.distinctive_features}")
    return lines


def _format_bullet_section(title: str, lines: Sequence[str]) -> str:
    bullet_block = "\n".join(f"- {line}" for line in lines if line.strip())
    return f"{title}\n{bullet_block}" if bullet_block else title
