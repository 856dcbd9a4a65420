"""Tests for screenshot storage."""

from datetime import datetime

import httpx
import pytest

from src.db.models import ProductPage, Shop
from src.errors import StorageError
from src.storage.screenshots import LOCAL_PREFIX, ScreenshotStorage, build_key


def test_build_key_format():
    key = build_key("acme", "jacket", 42, timestamp=datetime(2024, 3, 5, 14, 30, 9))
    assert key == "acme/jacket/scan_42_20240305143009.png"


def test_build_key_placeholders():
    key = build_key(None, None, 1, timestamp=datetime(2024, 1, 1))
    assert key.startswith("unknown-shop/unknown-product/scan_1_")


@pytest.mark.asyncio
async def test_local_round_trip(tmp_path):
    storage = ScreenshotStorage(bucket_url="", local_root=tmp_path)
    shop = Shop(domain="acme.myshopify.com")
    page = ProductPage(handle="jacket", url="/products/jacket")

    key = await storage.upload(b"\x89PNG data", scan_id=9, shop=shop, page=page)

    assert key.startswith(f"{LOCAL_PREFIX}acme/jacket/scan_9_")
    assert await storage.download(key) == b"\x89PNG data"


@pytest.mark.asyncio
@pytest.mark.parametrize("key", [
    "local/../../etc/passwd",
    "local//etc/passwd",
    "local/",
    "local/a\x00b.png",
])
async def test_unsafe_local_keys_rejected(tmp_path, key):
    storage = ScreenshotStorage(bucket_url="", local_root=tmp_path)

    with pytest.raises(StorageError):
        await storage.download(key)


@pytest.mark.asyncio
async def test_missing_local_file_raises(tmp_path):
    storage = ScreenshotStorage(bucket_url="", local_root=tmp_path)

    with pytest.raises(StorageError):
        await storage.download("local/acme/jacket/scan_1_20240101000000.png")


@pytest.mark.asyncio
async def test_remote_key_without_remote_store_raises(tmp_path):
    storage = ScreenshotStorage(bucket_url="", local_root=tmp_path)

    with pytest.raises(StorageError):
        await storage.download("acme/jacket/scan_1_20240101000000.png")


@pytest.mark.asyncio
async def test_remote_upload_and_download(tmp_path):
    stored = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PUT":
            stored[request.url.path] = request.content
            return httpx.Response(200)
        if request.url.path in stored:
            return httpx.Response(200, content=stored[request.url.path])
        return httpx.Response(404)

    storage = ScreenshotStorage(bucket_url="https://objects.example.com/shots", local_root=tmp_path)
    storage._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    key = await storage.upload(b"remote png", scan_id=5)

    assert not key.startswith(LOCAL_PREFIX)
    assert await storage.download(key) == b"remote png"

    with pytest.raises(StorageError):
        await storage.download("acme/jacket/missing.png")
    await storage.close()


@pytest.mark.asyncio
async def test_remote_upload_failure_falls_back_to_local(tmp_path):
    storage = ScreenshotStorage(bucket_url="https://objects.example.com/shots", local_root=tmp_path)
    storage._client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))

    key = await storage.upload(b"fallback png", scan_id=6)

    assert key.startswith(LOCAL_PREFIX)
    assert await storage.download(key) == b"fallback png"
    await storage.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("key", [
    "../secrets/token.png",
    "acme/../../admin/config.png",
    "/etc/passwd",
    "acme//jacket.png",
    "acme/./jacket.png",
    "acme\\..\\jacket.png",
])
async def test_unsafe_remote_keys_never_reach_the_store(tmp_path, key):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=b"should not be served")

    storage = ScreenshotStorage(bucket_url="https://objects.example.com/shots", local_root=tmp_path)
    storage._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    with pytest.raises(StorageError):
        await storage.download(key)

    assert requests == []
    await storage.close()
