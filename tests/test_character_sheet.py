from __future__ import annotations

import asyncio
import json

import pytest
from conftest import FakeImageGenerator, MemoryStorage, image_bytes, rate_limited

from storybook.ai_generation import AVATAR_STYLES
from storybook.common import ChatResult
from storybook.models import CharacterSheet
from storybook.story_generation import CharacterSheetAnalyzer, normalize_image_input

FEATURES = {
    "hairColor": "golden blonde",
    "hairStyle": "curly shoulder-length",
    "eyeColor": "bright blue",
    "skinTone": "fair with rosy cheeks",
    "typicalOutfit": "striped t-shirt and jeans",
    "accessory": "hair bow",
    "faceShape": "round",
    "distinctiveFeatures": "freckles",
}


class _VisionCompletion:
    def __init__(self, text: str) -> None:
        self.text = text
        self.calls: list[dict] = []

    def __call__(self, **kwargs) -> ChatResult:
        self.calls.append(kwargs)
        return ChatResult(text=self.text, raw=None)


class _PickyGenerator(FakeImageGenerator):
    """Rejects every prompt mentioning ``Pixar``."""

    async def generate(self, prompt, *, size="1024x1024", quality="medium"):
        if "Pixar" in prompt:
            raise rate_limited()
        return await super().generate(prompt, size=size, quality=quality)


def test_analyze_photo_bytes_into_sheet():
    completion = _VisionCompletion(json.dumps(FEATURES))
    analyzer = CharacterSheetAnalyzer(model="vision-model", completion_fn=completion)

    sheet = analyzer.analyze(image_bytes("JPEG"), child_name="Lily", child_age="4", user_id="u-7")

    assert sheet.name == "Lily"
    assert sheet.age == "4"
    assert sheet.user_id == "u-7"
    assert sheet.hair_color == "golden blonde"
    assert sheet.distinctive_features == "freckles"
    assert sheet.photo_url is None

    call = completion.calls[0]
    assert call["model"] == "vision-model"
    assert call["temperature"] == 0.3
    assert call["max_tokens"] == 500
    content = call["messages"][1]["content"]
    assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")
    assert "Lily" in content[0]["text"]


def test_analyze_keeps_remote_photo_url():
    analyzer = CharacterSheetAnalyzer(completion_fn=_VisionCompletion(json.dumps(FEATURES)))

    sheet = analyzer.analyze("https://photos.example.com/lily.jpg", child_name="Lily")

    assert sheet.photo_url == "https://photos.example.com/lily.jpg"


def test_analyze_rejects_non_object_reply():
    analyzer = CharacterSheetAnalyzer(completion_fn=_VisionCompletion('["blonde"]'))

    with pytest.raises(ValueError):
        analyzer.analyze(b"raw", child_name="Lily")


def test_normalize_image_input_reads_files(tmp_path):
    photo = tmp_path / "child.png"
    photo.write_bytes(image_bytes())

    assert normalize_image_input(photo).startswith("data:image/png;base64,")
    assert normalize_image_input("data:image/gif;base64,AAAA") == "data:image/gif;base64,AAAA"


def test_avatars_are_generated_per_style_and_isolated():
    storage = MemoryStorage()
    analyzer = CharacterSheetAnalyzer(
        image_generator=_PickyGenerator(), storage=storage, clock=lambda: 1.0
    )
    sheet = CharacterSheet(name="Lily Rose", hair_color="golden blonde", eye_color="bright blue")

    results = asyncio.run(analyzer.generate_avatars(sheet))

    assert [result.style for result in results] == list(AVATAR_STYLES)
    by_style = {result.style: result for result in results}
    assert by_style["Pixar-style 3D cartoon"].image_url is None
    assert "rate_limit" in by_style["Pixar-style 3D cartoon"].error
    assert by_style["Disney-style cartoon"].image_url == "memory://avatars/lily-rose/disney-style-cartoon-1000.png"
    assert len(storage.objects) == 2


def test_avatars_require_generator_and_storage():
    with pytest.raises(RuntimeError):
        asyncio.run(CharacterSheetAnalyzer().generate_avatars(CharacterSheet(name="Lily")))
