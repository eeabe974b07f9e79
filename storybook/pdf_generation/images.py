"""
Resolve page image references into bytes that reportlab can embed.

A reference is one of:

* an inline ``data:`` URL carrying base64 PNG, JPEG or WebP,
* a remote ``http(s)`` URL, fetched under a timeout and a byte ceiling,
* an object-storage key (or a public URL of the configured storage).

reportlab embeds PNG and JPEG only, so every other format is converted to PNG
with Pillow first.
"""

from __future__ import annotations

import base64
import binascii
import concurrent.futures
import logging
import re
import time
from dataclasses import dataclass
from io import BytesIO

import requests
from PIL import Image, UnidentifiedImageError

from storybook.errors import ImageResolutionError, StorageError
from storybook.storage import ObjectStorage

logger = logging.getLogger(__name__)

_DATA_URL_PATTERN = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(?:;[\w.+-]+=[\w.+-]+)*)(?P<base64>;base64)?,(?P<payload>.*)$",
    re.DOTALL,
)
_EMBEDDABLE_FORMATS = {"PNG", "JPEG"}
_FETCH_CHUNK_BYTES = 16 * 1024

# Downloads run here so a slow body cannot hold the caller past fetch_timeout.
_FETCH_POOL = concurrent.futures.ThreadPoolExecutor(max_workers=4, thread_name_prefix="image-fetch")


@dataclass(frozen=True)
class AssemblyLimits:
    """
    Resource budget for fetching and placing images.

    Attributes
    ----------
    fetch_timeout:
        Seconds allowed for a whole remote download, connect included.
    max_image_bytes:
        Largest accepted payload, before any conversion.
    max_upscale:
        Ceiling on the scale factor applied to an image on the page.
    """

    fetch_timeout: float
    max_image_bytes: int
    max_upscale: float


STANDARD_LIMITS = AssemblyLimits(fetch_timeout=3.0, max_image_bytes=5 * 1024 * 1024, max_upscale=1.2)
FAST_LIMITS = AssemblyLimits(fetch_timeout=1.5, max_image_bytes=512 * 1024, max_upscale=1.0)


@dataclass(frozen=True)
class ResolvedImage:
    data: bytes
    width: int
    height: int
    format: str
    converted: bool = False


def decode_data_url(reference: str) -> tuple[str | None, bytes]:
    """Split a ``data:`` URL into its MIME type and decoded payload."""
    match = _DATA_URL_PATTERN.match(reference.strip())
    if match is None:
        raise ImageResolutionError("Malformed data URL.")
    payload = match.group("payload")
    if not match.group("base64"):
        raise ImageResolutionError("Only base64-encoded data URLs are supported.")
    try:
        data = base64.b64decode(re.sub(r"\s+", "", payload), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageResolutionError(f"Invalid base64 payload: {exc}") from exc
    return match.group("mime"), data


def convert_to_png(data: bytes) -> bytes:
    """
    Re-encode any Pillow-readable raster (WebP, GIF, BMP, ...) as PNG.

    Raises
    ------
    ImageResolutionError
        If Pillow cannot decode the input.
    """
    try:
        with Image.open(BytesIO(data)) as image:
            image.load()
            if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                image = image.convert("RGBA")
            buffer = BytesIO()
            image.save(buffer, format="PNG")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageResolutionError(f"Could not convert image to PNG: {exc}") from exc
    return buffer.getvalue()


def data_url_to_png(reference: str) -> str:
    """Return ``reference`` as a PNG data URL, converting the payload when needed."""
    _, data = decode_data_url(reference)
    resolved = normalize_image_bytes(data)
    if resolved.format != "PNG":
        resolved = normalize_image_bytes(convert_to_png(resolved.data))
    return "data:image/png;base64," + base64.b64encode(resolved.data).decode("ascii")


def normalize_image_bytes(data: bytes) -> ResolvedImage:
    """
    Validate ``data`` and make sure it is PNG or JPEG.

    The whole image is decoded so truncated payloads are rejected here rather
    than inside the PDF writer.
    """
    try:
        with Image.open(BytesIO(data)) as image:
            image.load()
            image_format = (image.format or "").upper()
            width, height = image.size
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageResolutionError(f"Unreadable image data: {exc}") from exc

    if image_format in _EMBEDDABLE_FORMATS:
        return ResolvedImage(data=data, width=width, height=height, format=image_format)

    logger.debug("Converting %s image (%dx%d) to PNG", image_format or "unknown", width, height)
    return ResolvedImage(
        data=convert_to_png(data),
        width=width,
        height=height,
        format="PNG",
        converted=True,
    )


class ImageResolver:
    """
    Turn page image references into embeddable bytes.

    Parameters
    ----------
    limits:
        Timeout, size and upscale budget; :data:`STANDARD_LIMITS` by default.
    storage:
        Object storage used for bare keys and for this storage's own public URLs.
    session:
        Optional pre-configured :class:`requests.Session`. Mainly useful for testing.
    """

    def __init__(
        self,
        *,
        limits: AssemblyLimits = STANDARD_LIMITS,
        storage: ObjectStorage | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.limits = limits
        self._storage = storage
        self._session = session or requests.Session()

    def resolve(self, reference: str) -> ResolvedImage:
        """
        Raises
        ------
        ImageResolutionError
            For anything that keeps the image out of the document.
        """
        reference = (reference or "").strip()
        if not reference:
            raise ImageResolutionError("Empty image reference.")

        if reference.startswith("data:"):
            _, data = decode_data_url(reference)
        else:
            storage_key = self._storage.key_for_url(reference) if self._storage else None
            if storage_key is not None:
                data = self._read_storage(storage_key)
            elif reference.startswith(("http://", "https://")):
                data = self._fetch(reference)
            elif "://" in reference:
                raise ImageResolutionError(f"Unsupported image reference scheme: {reference[:40]}")
            else:
                data = self._read_storage(reference)

        self._check_size(len(data))
        return normalize_image_bytes(data)

    def _read_storage(self, key: str) -> bytes:
        if self._storage is None:
            raise ImageResolutionError(f"No object storage configured for key {key!r}.")
        try:
            return self._storage.get(key)
        except StorageError as exc:
            raise ImageResolutionError(str(exc)) from exc

    def _fetch(self, url: str) -> bytes:
        timeout = self.limits.fetch_timeout
        future = _FETCH_POOL.submit(self._download, url, time.monotonic() + timeout)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise ImageResolutionError(f"Fetching {url} took longer than {timeout}s.") from None

    def _download(self, url: str, deadline: float) -> bytes:
        ceiling = self.limits.max_image_bytes
        try:
            with self._session.get(url, timeout=self.limits.fetch_timeout, stream=True) as response:
                response.raise_for_status()
                declared = response.headers.get("Content-Length")
                if declared and declared.isdigit():
                    self._check_size(int(declared))

                buffer = bytearray()
                for chunk in response.iter_content(chunk_size=_FETCH_CHUNK_BYTES):
                    buffer.extend(chunk)
                    self._check_size(len(buffer))
                    if time.monotonic() > deadline:
                        raise ImageResolutionError(f"Fetching {url} ran past its deadline.")
        except requests.RequestException as exc:
            raise ImageResolutionError(f"Fetching {url} failed: {exc}") from exc
        logger.debug("Fetched %d bytes from %s (ceiling %d)", len(buffer), url, ceiling)
        return bytes(buffer)

    def _check_size(self, size: int) -> None:
        if size > self.limits.max_image_bytes:
            raise ImageResolutionError(
                f"Image is larger than {self.limits.max_image_bytes} bytes."
            )
