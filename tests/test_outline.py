from __future__ import annotations

import json

import pytest

from storybook.common import ChatResult, extract_json_payload
from storybook.models import PageType
from storybook.story_generation import (
    StoryOutlineGenerator,
    build_story_prompt,
    fallback_outline,
    parse_story_outline,
)

STORY_JSON = {
    "title": "Sam and the Sleepy Star",
    "pages": [
        {
            "pageNumber": 1,
            "pageType": "cover",
            "text": "Sam and the Sleepy Star",
            "sceneDescription": "Sam waving at a yawning star",
        },
        {
            "pageNumber": 2,
            "pageType": "story",
            "text": "Sam climbs the hill. The star yawns. Sam sings. The End",
            "sceneDescription": "Sam singing on a grassy hill at dusk",
        },
    ],
}


class _ScriptedCompletion:
    def __init__(self, text: str) -> None:
        self.text = text
        self.calls: list[dict] = []

    def __call__(self, **kwargs) -> ChatResult:
        self.calls.append(kwargs)
        return ChatResult(text=self.text, raw=None)


def test_generate_outline_parses_fenced_json():
    completion = _ScriptedCompletion(f"```json\n{json.dumps(STORY_JSON)}\n```")
    generator = StoryOutlineGenerator(model="test-model", api_key="k", completion_fn=completion)

    outline = generator.generate_outline(
        prompt="A star that cannot sleep",
        child_name="Sam",
        child_age="6",
        page_count=2,
        themes=("kindness",),
    )

    assert outline.title == "Sam and the Sleepy Star"
    assert not outline.is_fallback
    assert [page.page_type for page in outline.pages] == [PageType.COVER, PageType.STORY]

    call = completion.calls[0]
    assert call["model"] == "test-model"
    assert call["api_key"] == "k"
    assert call["temperature"] == 0.7
    assert call["max_tokens"] == 2000
    assert "2-page story" in call["messages"][0]["content"]
    assert "kindness" in call["messages"][0]["content"]
    assert "A star that cannot sleep" in call["messages"][1]["content"]


def test_scene_descriptions_become_image_prompts():
    outline = parse_story_outline(STORY_JSON)

    pages = outline.story_pages("story-9")

    assert pages[1].story_id == "story-9"
    assert pages[1].image_prompt == "Sam singing on a grassy hill at dusk"
    assert pages[1].text_content.endswith("The End")
    assert not pages[1].has_image


def test_unparseable_reply_falls_back():
    generator = StoryOutlineGenerator(completion_fn=_ScriptedCompletion("Once upon a time..."))

    outline = generator.generate_outline(prompt="p", child_name="Sam", page_count=3, themes=("space",))

    assert outline.is_fallback
    assert outline.title == "The Adventures of Sam"
    assert len(outline.pages) == 3
    assert outline.pages[0].page_type is PageType.COVER


def test_empty_reply_raises():
    generator = StoryOutlineGenerator(completion_fn=_ScriptedCompletion(""))

    with pytest.raises(RuntimeError):
        generator.generate_outline(prompt="p", child_name="Sam")


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"title": "", "pages": [{"text": "x"}]},
        {"title": "T", "pages": []},
        {"title": "T", "pages": "not a list"},
        {"title": "T", "pages": [{"pageNumber": 1}, {"pageNumber": 1}]},
        {"title": "T", "pages": ["oops"]},
    ],
)
def test_parse_rejects_malformed_payloads(payload):
    with pytest.raises(ValueError):
        parse_story_outline(payload)


def test_parse_defaults_types_and_scene():
    outline = parse_story_outline({"title": "T", "pages": [{"text": "Hello"}, {"text": "Bye"}]})

    assert [page.page_number for page in outline.pages] == [1, 2]
    assert outline.pages[0].page_type is PageType.COVER
    assert outline.pages[1].page_type is PageType.STORY
    assert outline.pages[1].scene_description == "Bye"


def test_fallback_outline_has_at_least_one_page():
    outline = fallback_outline("Ava", None, 0)

    assert len(outline.pages) == 1
    assert "Ava" in outline.pages[0].scene_description


def test_story_prompt_mentions_language_and_lesson():
    prompt = build_story_prompt(
        prompt="p",
        child_name="Ava",
        page_count=4,
        lesson="sharing is caring",
        language="es",
        reading_level="early_reader",
    )

    assert "Gently teach this lesson: sharing is caring" in prompt.system
    assert "Write the page text in es" in prompt.system
    assert "Reading level: early reader" in prompt.system
    assert '"sceneDescription": "Cover illustration description with Ava"' in prompt.system


def test_extract_json_payload_rejects_prose():
    with pytest.raises(ValueError):
        extract_json_payload("no json here")
