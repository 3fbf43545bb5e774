from __future__ import annotations

from datetime import UTC, datetime

import httpx
import pytest

from facility_messaging.core.errors import ConflictError, TransportError
from facility_messaging.services.storage import (
    HttpObjectStore,
    MemoryObjectStore,
    attachment_path,
    media_kind,
    safe_filename,
)


def test_safe_filename_replaces_unsafe_characters():
    assert safe_filename("Menü plan (1).pdf") == "Men__plan__1_.pdf"
    assert safe_filename("") == "file"


def test_attachment_path_is_scoped_and_timestamped():
    moment = datetime(2024, 5, 6, 9, 0, tzinfo=UTC)

    path = attachment_path("sup-1", "t-1", "photo.jpg", moment)

    assert path == f"supervisor/sup-1/t-1/{int(moment.timestamp() * 1000)}_photo.jpg"


def test_media_kind_distinguishes_images():
    assert media_kind("image/png") == "image"
    assert media_kind("application/pdf") == "file"
    assert media_kind(None) == "file"


@pytest.mark.asyncio
async def test_http_upload_posts_bytes_and_returns_public_url():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"Key": "messenger/a/b.png"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    store = HttpObjectStore("https://storage.test/", "messenger", api_key="secret", client=client)

    stored = await store.upload(b"img", "image/png", path="a/b.png")
    await store.close()

    assert stored.url == "https://storage.test/storage/v1/object/public/messenger/a/b.png"
    assert stored.path == "a/b.png"
    [request] = seen
    assert request.method == "POST"
    assert str(request.url) == "https://storage.test/storage/v1/object/messenger/a/b.png"
    assert request.headers["Content-Type"] == "image/png"
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["Cache-Control"] == "max-age=3153600000"
    assert request.content == b"img"


@pytest.mark.asyncio
async def test_http_upload_maps_conflict_and_failures():
    responses = iter([httpx.Response(409), httpx.Response(500)])
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: next(responses)))
    store = HttpObjectStore("https://storage.test", "messenger", client=client)

    with pytest.raises(ConflictError):
        await store.upload(b"x", "text/plain", path="a.txt")
    with pytest.raises(TransportError):
        await store.upload(b"x", "text/plain", path="b.txt")
    await store.close()


@pytest.mark.asyncio
async def test_http_upload_maps_network_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    store = HttpObjectStore("https://storage.test", "messenger", client=client)

    with pytest.raises(TransportError):
        await store.upload(b"x", "text/plain", path="a.txt")
    await store.close()


@pytest.mark.asyncio
async def test_memory_store_never_overwrites():
    store = MemoryObjectStore()

    stored = await store.upload(b"one", "text/plain", path="a.txt")

    assert stored.url == "memory://messenger/a.txt"
    with pytest.raises(ConflictError):
        await store.upload(b"two", "text/plain", path="a.txt")
    assert store.objects["a.txt"] == (b"one", "text/plain")
