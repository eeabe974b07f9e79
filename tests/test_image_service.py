from __future__ import annotations

import asyncio
import io

import litellm
import pytest
from conftest import image_bytes
from replicate.exceptions import ReplicateError

from storybook.ai_generation import (
    OpenAIImageGenerator,
    ReplicateImageGenerator,
    classify_image_failure,
    error_from_exception,
)
from storybook.ai_generation.replicate_service import _build_replicate_input_payload, _first_output
from storybook.common import ImageResult
from storybook.errors import ImageGenerationError


class _HttpFailure(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


@pytest.mark.parametrize(
    ("status", "body", "kind"),
    [
        (429, "slow down", ImageGenerationError.RATE_LIMIT),
        (400, "Your request was rejected by our safety system", ImageGenerationError.CONTENT_POLICY),
        (400, '{"code": "content_policy_violation"}', ImageGenerationError.CONTENT_POLICY),
        (500, "internal error", ImageGenerationError.GENERATION_FAILED),
        (None, None, ImageGenerationError.GENERATION_FAILED),
    ],
)
def test_classify_image_failure(status, body, kind):
    assert classify_image_failure(status, body) == kind


def test_error_from_plain_exception_reads_status():
    error = error_from_exception(_HttpFailure(429, "Too Many Requests"))

    assert error.kind == ImageGenerationError.RATE_LIMIT
    assert error.status == 429


def test_error_from_litellm_rate_limit():
    exc = litellm.RateLimitError(message="quota", llm_provider="openai", model="gpt-image-1")

    assert error_from_exception(exc).kind == ImageGenerationError.RATE_LIMIT


def test_openai_generator_forwards_arguments():
    calls = []

    async def image_fn(**kwargs):
        calls.append(kwargs)
        return ImageResult(data=b"png", mime_type="image/png")

    generator = OpenAIImageGenerator(model="gpt-image-1", api_key="k", image_fn=image_fn)

    result = asyncio.run(generator.generate("a kite", size="1024x1536", quality="low"))

    assert result.data == b"png"
    assert calls == [
        {"model": "gpt-image-1", "prompt": "a kite", "size": "1024x1536", "quality": "low", "api_key": "k"}
    ]


def test_openai_generator_classifies_failures():
    async def image_fn(**kwargs):
        raise _HttpFailure(400, "content_policy_violation: request rejected")

    generator = OpenAIImageGenerator(image_fn=image_fn)

    with pytest.raises(ImageGenerationError) as excinfo:
        asyncio.run(generator.generate("a kite"))

    assert excinfo.value.kind == ImageGenerationError.CONTENT_POLICY
    assert excinfo.value.status == 400


class _FakeReplicateClient:
    def __init__(self, output=None, error: Exception | None = None) -> None:
        self.output = output
        self.error = error
        self.runs: list[tuple[str, dict]] = []

    def run(self, model, input):
        self.runs.append((model, input))
        if self.error is not None:
            raise self.error
        return self.output


def test_replicate_generator_reads_file_output():
    client = _FakeReplicateClient(output=[io.BytesIO(image_bytes())])
    generator = ReplicateImageGenerator(client=client, model_identifier="black-forest-labs/flux-schnell")

    result = asyncio.run(generator.generate("a kite", size="1536x1024"))

    assert result.data == image_bytes()
    model, payload = client.runs[0]
    assert model == "black-forest-labs/flux-schnell"
    assert payload["aspect_ratio"] == "3:2"
    assert payload["output_format"] == "png"


def test_replicate_throttling_maps_to_rate_limit():
    client = _FakeReplicateClient(error=ReplicateError(status=429, detail="Request was throttled"))
    generator = ReplicateImageGenerator(client=client, model_identifier="black-forest-labs/flux-dev")

    with pytest.raises(ImageGenerationError) as excinfo:
        asyncio.run(generator.generate("a kite"))

    assert excinfo.value.kind == ImageGenerationError.RATE_LIMIT


def test_replicate_empty_output_is_a_generation_failure():
    generator = ReplicateImageGenerator(
        client=_FakeReplicateClient(output=[]), model_identifier="black-forest-labs/flux-dev"
    )

    with pytest.raises(ImageGenerationError) as excinfo:
        asyncio.run(generator.generate("a kite"))

    assert excinfo.value.kind == ImageGenerationError.GENERATION_FAILED


def test_replicate_requires_credentials_and_model():
    with pytest.raises(ValueError):
        ReplicateImageGenerator(model_identifier="black-forest-labs/flux-dev")
    with pytest.raises(ValueError):
        ReplicateImageGenerator(api_token="t")


def test_kontext_payload_carries_reference_image():
    payload = _build_replicate_input_payload(
        model_identifier="black-forest-labs/flux-kontext-pro:abc123",
        prompt="a kite",
        size="1024x1536",
        reference_image="https://example.com/avatar.png",
    )

    assert payload["input_image"] == "https://example.com/avatar.png"
    assert payload["aspect_ratio"] == "2:3"

    with pytest.raises(ValueError):
        _build_replicate_input_payload(
            model_identifier="someone/unknown", prompt="x", size="1024x1024", reference_image=None
        )


def test_first_output_handles_common_shapes():
    assert _first_output(None) is None
    assert _first_output("https://x/y.png") == "https://x/y.png"
    assert _first_output(["https://x/1.png", "https://x/2.png"]) == "https://x/1.png"
    assert _first_output(list("https://x/z.png")) == "https://x/z.png"
    assert _first_output([[], ["https://x/nested.png"]]) == "https://x/nested.png"
