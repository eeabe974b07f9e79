from __future__ import annotations

import pytest
import requests
from conftest import FakeResponse

from storybook.errors import StorageError
from storybook.storage import LocalObjectStorage, SupabaseObjectStorage


def test_local_storage_round_trip(tmp_path):
    storage = LocalObjectStorage(tmp_path / "images")

    url = storage.put("story-1/page-1-5-a1.png", b"png-bytes", content_type="image/png")

    assert url.startswith("file://")
    assert storage.get("story-1/page-1-5-a1.png") == b"png-bytes"
    assert storage.key_for_url(url) == "story-1/page-1-5-a1.png"
    assert storage.signed_url("story-1/page-1-5-a1.png") == url
    assert (tmp_path / "images" / "story-1" / "page-1-5-a1.png").exists()


def test_local_storage_public_base_url(tmp_path):
    storage = LocalObjectStorage(tmp_path, public_base_url="https://cdn.example.com/images/")

    url = storage.put("story 1/page.png", b"x")

    assert url == "https://cdn.example.com/images/story%201/page.png"
    assert storage.key_for_url(url) == "story 1/page.png"
    assert storage.get(storage.key_for_url(url)) == b"x"
    assert storage.key_for_url("https://cdn.example.com/images/story-2/page.png") == "story-2/page.png"
    assert storage.key_for_url("https://elsewhere.example.com/page.png") is None


@pytest.mark.parametrize("key", ["", "../escape.png", "story/./page.png", "story//page.png"])
def test_invalid_keys_are_rejected(tmp_path, key):
    with pytest.raises(StorageError):
        LocalObjectStorage(tmp_path).put(key, b"x")


def test_missing_local_object(tmp_path):
    storage = LocalObjectStorage(tmp_path)

    with pytest.raises(StorageError):
        storage.get("nothing/here.png")
    with pytest.raises(StorageError):
        storage.signed_url("nothing/here.png")


class _FakeSupabaseSession:
    def __init__(self, responses=None, error: Exception | None = None) -> None:
        self.headers: dict[str, str] = {}
        self.responses = list(responses or [])
        self.error = error
        self.requests: list[tuple[str, str, dict]] = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if self.responses else FakeResponse()


def _supabase(session) -> SupabaseObjectStorage:
    return SupabaseObjectStorage(
        url="https://abc.supabase.co/", service_key="service-key", bucket="story-images", session=session
    )


def test_supabase_upload_returns_public_url():
    session = _FakeSupabaseSession()
    storage = _supabase(session)

    url = storage.put("story-1/page-1.png", b"png", content_type="image/png")

    assert url == "https://abc.supabase.co/storage/v1/object/public/story-images/story-1/page-1.png"
    method, request_url, kwargs = session.requests[0]
    assert method == "post"
    assert request_url == "https://abc.supabase.co/storage/v1/object/story-images/story-1/page-1.png"
    assert kwargs["headers"]["x-upsert"] == "true"
    assert kwargs["headers"]["Content-Type"] == "image/png"
    assert kwargs["data"] == b"png"
    assert session.headers["Authorization"] == "Bearer service-key"
    assert storage.key_for_url(url) == "story-1/page-1.png"
    spaced = storage.put("story 1/page 1.png", b"png")
    assert spaced.endswith("/story%201/page%201.png")
    assert storage.key_for_url(spaced) == "story 1/page 1.png"


def test_supabase_signed_url():
    session = _FakeSupabaseSession(
        [FakeResponse(payload={"signedURL": "/object/sign/story-images/a.pdf?token=t"})]
    )

    url = _supabase(session).signed_url("a.pdf", expires_in=60)

    assert url == "https://abc.supabase.co/storage/v1/object/sign/story-images/a.pdf?token=t"
    assert session.requests[0][2]["json"] == {"expiresIn": 60}


def test_supabase_get_reads_content():
    session = _FakeSupabaseSession([FakeResponse(b"bytes")])

    assert _supabase(session).get("story-1/page-1.png") == b"bytes"


def test_supabase_failures_become_storage_errors():
    with pytest.raises(StorageError):
        _supabase(_FakeSupabaseSession(error=requests.ConnectionError("down"))).put("k.png", b"x")
    with pytest.raises(StorageError):
        _supabase(_FakeSupabaseSession([FakeResponse(status_code=403)])).get("k.png")
    with pytest.raises(StorageError):
        _supabase(_FakeSupabaseSession([FakeResponse(payload={})])).signed_url("k.png")


def test_supabase_requires_credentials():
    with pytest.raises(ValueError):
        SupabaseObjectStorage(url="", service_key="k", bucket="b")
