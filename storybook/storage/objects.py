"""
Object storage backends for illustrations and exported PDFs.
"""

from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import quote, unquote

import requests

from storybook.errors import StorageError

logger = logging.getLogger(__name__)


class ObjectStorage:
    """
    Minimal blob-store interface.

    Keys are hierarchical, ``/``-separated strings such as
    ``story-<id>/page-3-1700000000000-a1.png``.
    """

    def put(self, key: str, data: bytes, *, content_type: str = "application/octet-stream") -> str:
        """Store ``data`` under ``key`` and return its public URL."""
        raise NotImplementedError

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def signed_url(self, key: str, *, expires_in: int = 60 * 60 * 24 * 7) -> str:
        raise NotImplementedError

    def key_for_url(self, url: str) -> str | None:
        """Return the key behind one of this backend's public URLs, if it is one."""
        return None


def _validate_key(key: str) -> str:
    cleaned = key.strip().lstrip("/")
    if not cleaned or any(part in ("", ".", "..") for part in cleaned.split("/")):
        raise StorageError(f"Invalid storage key: {key!r}")
    return cleaned


class LocalObjectStorage(ObjectStorage):
    """
    Filesystem-backed storage, used for local runs and tests.

    Parameters
    ----------
    root:
        Directory that holds the objects.
    public_base_url:
        Optional URL prefix the directory is served under. When omitted,
        ``file://`` URLs are returned.
    """

    def __init__(self, root: Path | str, *, public_base_url: str | None = None) -> None:
        self._root = Path(root).expanduser().resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        return self._root / _validate_key(key)

    def put(self, key: str, data: bytes, *, content_type: str = "application/octet-stream") -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Failed to write object {key!r}: {exc}") from exc
        return self._public_url(key)

    def get(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read object {key!r}: {exc}") from exc

    def signed_url(self, key: str, *, expires_in: int = 60 * 60 * 24 * 7) -> str:
        if not self._path(key).exists():
            raise StorageError(f"Object {key!r} does not exist.")
        return self._public_url(key)

    def key_for_url(self, url: str) -> str | None:
        prefix = self._public_base_url or self._root.as_uri()
        if url.startswith(prefix + "/"):
            return unquote(url[len(prefix) + 1 :])
        return None

    def _public_url(self, key: str) -> str:
        cleaned = _validate_key(key)
        if self._public_base_url:
            return f"{self._public_base_url}/{quote(cleaned)}"
        return (self._root / cleaned).as_uri()


class SupabaseObjectStorage(ObjectStorage):
    """
    Supabase Storage bucket accessed through its REST API.

    Parameters
    ----------
    url:
        Project URL, e.g. ``https://abc.supabase.co``.
    service_key:
        Service-role key used for uploads and signing.
    bucket:
        Bucket name (``story-images`` or ``story-pdfs``).
    timeout:
        Per-request timeout in seconds.
    session:
        Optional pre-configured :class:`requests.Session`. Mainly useful for testing.
    """

    def __init__(
        self,
        *,
        url: str,
        service_key: str,
        bucket: str,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        if not url or not service_key:
            raise ValueError("Supabase URL and service key are required.")
        self._base = url.rstrip("/") + "/storage/v1"
        self._bucket = bucket
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {service_key}", "apikey": service_key}
        )

    def put(self, key: str, data: bytes, *, content_type: str = "application/octet-stream") -> str:
        cleaned = _validate_key(key)
        response = self._request(
            "post",
            f"{self._base}/object/{self._bucket}/{quote(cleaned)}",
            data=data,
            headers={
                "Content-Type": content_type,
                "Cache-Control": "3600",
                "x-upsert": "true",
            },
        )
        logger.debug("Uploaded %s (%d bytes): %s", cleaned, len(data), response.status_code)
        return self._public_url(cleaned)

    def get(self, key: str) -> bytes:
        cleaned = _validate_key(key)
        response = self._request("get", f"{self._base}/object/{self._bucket}/{quote(cleaned)}")
        return response.content

    def signed_url(self, key: str, *, expires_in: int = 60 * 60 * 24 * 7) -> str:
        cleaned = _validate_key(key)
        response = self._request(
            "post",
            f"{self._base}/object/sign/{self._bucket}/{quote(cleaned)}",
            json={"expiresIn": expires_in},
        )
        try:
            signed_path = response.json()["signedURL"]
        except (KeyError, ValueError) as exc:
            raise StorageError("Unexpected Supabase signed URL response.") from exc
        return f"{self._base}{signed_path}" if signed_path.startswith("/") else signed_path

    def key_for_url(self, url: str) -> str | None:
        prefix = f"{self._base}/object/public/{self._bucket}/"
        if url.startswith(prefix):
            return unquote(url[len(prefix) :])
        return None

    def _public_url(self, key: str) -> str:
        return f"{self._base}/object/public/{self._bucket}/{quote(key)}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise StorageError(f"Supabase storage {method.upper()} {url} failed: {exc}") from exc
        return response
