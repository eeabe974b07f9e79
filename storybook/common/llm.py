"""
LiteLLM-powered chat and image generation helper utilities.
"""

from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, MutableMapping, Sequence

from litellm import aimage_generation, completion

ChatMessage = Mapping[str, Any]

_FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


@dataclass
class ChatResult:
    """
    Structured response returned from an LLM chat completion.
    """

    text: str
    raw: Any


@dataclass
class ImageResult:
    """
    Decoded payload of a single generated image.
    """

    data: bytes
    mime_type: str
    raw: Any = None


CompletionCallable = Callable[..., ChatResult]
ImageGenerationCallable = Callable[..., Awaitable[ImageResult]]


def call_chat_completion(
    *,
    model: str,
    messages: Sequence[ChatMessage],
    temperature: float | None = None,
    max_tokens: int | None = None,
    api_key: str | None = None,
    **extra_kwargs: Any,
) -> ChatResult:
    """
    Invoke LiteLLM's `completion` API and return the consolidated text.
    """
    payload: MutableMapping[str, Any] = {
        "model": model,
        "messages": list(messages),
    }

    if temperature is not None:
        payload["temperature"] = temperature

    if max_tokens is not None:
        payload["max_tokens"] = max_tokens

    if api_key is not None:
        payload["api_key"] = api_key

    payload.update(extra_kwargs)

    response = completion(**payload)

    try:
        message = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise RuntimeError("Unexpected LiteLLM response format.") from exc

    text = str(message or "").strip()
    return ChatResult(text=text, raw=response)


async def call_image_generation(
    *,
    model: str,
    prompt: str,
    size: str | None = None,
    quality: str | None = None,
    api_key: str | None = None,
    **extra_kwargs: Any,
) -> ImageResult:
    """
    Invoke LiteLLM's `aimage_generation` API and return the first image as bytes.

    Models that answer with a URL instead of inline base64 are asked for
    ``b64_json`` explicitly (DALL·E family); ``gpt-image-*`` models always
    return base64-encoded PNG.
    """
    payload: MutableMapping[str, Any] = {
        "model": model,
        "prompt": prompt,
        "n": 1,
    }

    if size is not None:
        payload["size"] = size

    if quality is not None:
        payload["quality"] = quality

    if api_key is not None:
        payload["api_key"] = api_key

    if model.startswith("dall-e"):
        payload["response_format"] = "b64_json"

    payload.update(extra_kwargs)

    response = await aimage_generation(**payload)

    try:
        item = response.data[0]
    except (AttributeError, IndexError, TypeError) as exc:
        raise RuntimeError("Unexpected LiteLLM image response format.") from exc

    encoded = item.get("b64_json") if isinstance(item, Mapping) else getattr(item, "b64_json", None)
    if not encoded:
        raise RuntimeError("Image response did not contain base64 image data.")

    return ImageResult(
        data=base64.b64decode(encoded),
        mime_type="image/png",
        raw=response,
    )


def extract_json_payload(text: str) -> Any:
    """
    Parse a JSON document from an LLM reply, tolerating Markdown code fences.

    Raises
    ------
    ValueError
        If no valid JSON can be found.
    """
    candidate = text.strip()
    match = _FENCED_JSON_PATTERN.search(candidate)
    if match:
        candidate = match.group(1)

    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ValueError("Failed to parse LLM response as JSON.") from exc
