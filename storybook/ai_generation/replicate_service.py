"""
Integration with Replicate as an alternate storybook image backend.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable as IterableABC
from typing import Any, Callable

import replicate
import requests
from replicate.exceptions import ModelError, ReplicateError

from storybook.common import ImageResult
from storybook.errors import ImageGenerationError

from .image_service import ImageGenerator, classify_image_failure

logger = logging.getLogger(__name__)


def _parse_size(size: str) -> tuple[int, int]:
    try:
        width, height = (int(part) for part in size.lower().split("x", maxsplit=1))
    except ValueError as exc:
        raise ValueError(f"Image size must look like '1024x1024', got {size!r}.") from exc
    return width, height


def _aspect_ratio(size: str) -> str:
    width, height = _parse_size(size)
    if width == height:
        return "1:1"
    return "3:2" if width > height else "2:3"


def _build_flux_input(
    *,
    prompt: str,
    size: str,
    reference_image: str | None,
) -> dict[str, Any]:
    return {
        "prompt": prompt,
        "aspect_ratio": _aspect_ratio(size),
        "output_format": "png",
        "num_outputs": 1,
    }


def _build_flux_kontext_input(
    *,
    prompt: str,
    size: str,
    reference_image: str | None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": prompt,
        "output_format": "png",
        "safety_tolerance": 2,
        "prompt_upsampling": True,
        "aspect_ratio": _aspect_ratio(size),
    }
    if reference_image:
        payload["input_image"] = reference_image
    return payload


_MODEL_INPUT_BUILDERS: dict[str, Callable[..., dict[str, Any]]] = {
    "black-forest-labs/flux-schnell": _build_flux_input,
    "black-forest-labs/flux-dev": _build_flux_input,
    "black-forest-labs/flux-kontext-pro": _build_flux_kontext_input,
}


def _build_replicate_input_payload(
    *,
    model_identifier: str,
    prompt: str,
    size: str,
    reference_image: str | None,
) -> dict[str, Any]:
    normalized_identifier = model_identifier.strip().lower()
    builder = _MODEL_INPUT_BUILDERS.get(normalized_identifier)
    if builder is None and ":" in normalized_identifier:
        base_identifier = normalized_identifier.split(":", maxsplit=1)[0]
        builder = _MODEL_INPUT_BUILDERS.get(base_identifier)
    if builder is None:
        supported_models = ", ".join(sorted(set(_MODEL_INPUT_BUILDERS)))
        raise ValueError(
            "Model identifier "
            f"'{model_identifier}' is not configured with a default input payload. "
            f"Supported models: {supported_models}."
        )

    return builder(prompt=prompt, size=size, reference_image=reference_image)


class ReplicateImageGenerator(ImageGenerator):
    """
    Convenience wrapper around the Replicate client for storybook image generation.

    Parameters
    ----------
    api_token:
        Replicate API token. Required unless ``client`` is given.
    model_identifier:
        Model string in the ``owner/model`` or ``owner/model:version`` format.
    reference_image:
        Optional URL of a cartoon reference portrait, forwarded to models that
        accept an input image.
    client:
        Optional pre-configured :class:`replicate.Client`. Mainly useful for testing.
    download_timeout:
        Timeout in seconds for fetching the generated image from Replicate's CDN.
    """

    def __init__(
        self,
        *,
        api_token: str | None = None,
        model_identifier: str | None = None,
        reference_image: str | None = None,
        client: replicate.Client | None = None,
        download_timeout: float = 30.0,
    ) -> None:
        if not api_token and not client:
            raise ValueError("Replicate API token is required. Pass api_token or client.")

        if not model_identifier:
            raise ValueError(
                "Replicate model identifier is required in the form 'owner/model[:version]'."
            )

        self._model_identifier = model_identifier
        self._reference_image = reference_image
        self._client = client or replicate.Client(api_token=api_token)
        self._download_timeout = download_timeout

    @property
    def model_identifier(self) -> str:
        """Return the model identifier currently used."""
        return self._model_identifier

    async def generate(
        self,
        prompt: str,
        *,
        size: str = "1024x1024",
        quality: str = "medium",
    ) -> ImageResult:
        replicate_input = _build_replicate_input_payload(
            model_identifier=self._model_identifier,
            prompt=prompt,
            size=size,
            reference_image=self._reference_image,
        )
        return await asyncio.to_thread(self._run_and_download, replicate_input)

    def _run_and_download(self, replicate_input: dict[str, Any]) -> ImageResult:
        try:
            outputs = self._client.run(self._model_identifier, input=replicate_input)
        except ModelError as exc:
            raise ImageGenerationError(
                classify_image_failure(None, str(exc)), body=str(exc)
            ) from exc
        except ReplicateError as exc:
            status = getattr(exc, "status", None)
            raise ImageGenerationError(
                classify_image_failure(status, str(exc)), status=status, body=str(exc)
            ) from exc

        first = _first_output(outputs)
        if first is None:
            raise ImageGenerationError(
                ImageGenerationError.GENERATION_FAILED, body="Replicate returned no output."
            )

        if hasattr(first, "read"):
            return ImageResult(data=first.read(), mime_type="image/png", raw=outputs)

        url = str(first)
        try:
            response = requests.get(url, timeout=self._download_timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Downloading Replicate output %s failed: %s", url, exc)
            raise ImageGenerationError(
                ImageGenerationError.GENERATION_FAILED, body=str(exc)
            ) from exc

        mime_type = response.headers.get("Content-Type", "image/png").split(";")[0].strip()
        return ImageResult(data=response.content, mime_type=mime_type or "image/png", raw=outputs)


def _first_output(raw: Any) -> Any:
    """
    Return the first usable output (URL string or file-like object) from a Replicate run.
    """
    if raw is None:
        return None

    if isinstance(raw, (str, bytes)) or hasattr(raw, "read"):
        return raw.decode("utf-8", errors="ignore") if isinstance(raw, bytes) else raw

    if isinstance(raw, IterableABC):
        collected = list(raw)
        if collected and all(isinstance(item, str) and len(item) == 1 for item in collected):
            return "".join(collected)
        for item in collected:
            found = _first_output(item)
            if found is not None:
                return found
        return None

    return str(raw)
