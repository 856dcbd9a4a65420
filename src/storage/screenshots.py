"""Screenshot storage: remote HTTP object store with a local filesystem fallback."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import httpx

from src.config import settings
from src.db.models import ProductPage, Shop
from src.errors import StorageError

logger = logging.getLogger(__name__)

LOCAL_PREFIX = "local/"


def build_key(
    shop_slug: Optional[str],
    handle: Optional[str],
    scan_id: int,
    timestamp: Optional[datetime] = None,
) -> str:
    """Object key: ``{shop_slug}/{handle}/scan_{scan_id}_{YYYYmmddHHMMSS}.png``."""
    timestamp = timestamp or datetime.utcnow()
    return (
        f"{shop_slug or 'unknown-shop'}/{handle or 'unknown-product'}/"
        f"scan_{scan_id}_{timestamp.strftime('%Y%m%d%H%M%S')}.png"
    )


def _check_remote_key(key: str) -> None:
    """Reject keys that could address anything outside the bucket."""
    if not key or key.startswith("/") or "\\" in key or "\x00" in key:
        raise StorageError(key, "invalid key")
    if any(segment in ("", ".", "..") for segment in key.split("/")):
        raise StorageError(key, "invalid key")


class ScreenshotStorage:
    """
    Stores scan screenshots and reads them back for AI review.

    Keys returned for locally stored files carry the ``local/`` prefix so
    download knows where to look regardless of current configuration.
    """

    def __init__(
        self,
        bucket_url: Optional[str] = None,
        api_token: Optional[str] = None,
        local_root: Optional[str | Path] = None,
        timeout: Optional[float] = None,
    ):
        self.bucket_url = (settings.storage_bucket_url if bucket_url is None else bucket_url).rstrip("/")
        self.api_token = settings.storage_api_token if api_token is None else api_token
        self.local_root = Path(local_root or settings.screenshot_local_root).resolve()
        self.timeout = timeout or settings.storage_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def remote_configured(self) -> bool:
        return bool(self.bucket_url)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def upload(
        self,
        data: bytes,
        scan_id: int,
        shop: Optional[Shop] = None,
        page: Optional[ProductPage] = None,
    ) -> str:
        """
        Store a PNG and return its key.

        Falls back to local storage when the remote store is not configured
        or the upload fails.
        """
        key = build_key(
            shop.slug if shop is not None else None,
            page.handle if page is not None else None,
            scan_id,
        )

        if self.remote_configured:
            try:
                _check_remote_key(key)
                client = await self._get_client()
                response = await client.put(
                    f"{self.bucket_url}/{key}",
                    content=data,
                    headers={"Content-Type": "image/png"},
                )
                response.raise_for_status()
                logger.info(f"Uploaded screenshot to object store: {key}")
                return key
            except Exception as e:
                logger.error(f"Object store upload failed for {key}: {e}, falling back to local")

        return self._write_local(key, data)

    async def download(self, key: str) -> bytes:
        """
        Read screenshot bytes back.

        Raises:
            StorageError: Key is unsafe, missing, or the remote read failed
        """
        if key.startswith(LOCAL_PREFIX):
            path = self._resolve_local(key[len(LOCAL_PREFIX):])
            if not path.is_file():
                raise StorageError(key, "local screenshot not found")
            return path.read_bytes()

        if not self.remote_configured:
            raise StorageError(key, "object store not configured and key is not local")
        _check_remote_key(key)

        try:
            client = await self._get_client()
            response = await client.get(f"{self.bucket_url}/{key}")
            response.raise_for_status()
            return response.content
        except httpx.HTTPError as e:
            logger.error(f"Object store download failed for {key}: {e}")
            raise StorageError(key, str(e)) from e

    def _resolve_local(self, relative_key: str) -> Path:
        """Map a key onto the local root, rejecting anything that escapes it."""
        if not relative_key or relative_key.startswith("/") or "\x00" in relative_key:
            raise StorageError(relative_key, "invalid key")
        path = (self.local_root / relative_key).resolve()
        if not path.is_relative_to(self.local_root):
            raise StorageError(relative_key, "key resolves outside storage root")
        return path

    def _write_local(self, key: str, data: bytes) -> str:
        path = self._resolve_local(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info(f"Stored screenshot locally: {path}")
        return f"{LOCAL_PREFIX}{key}"


screenshot_storage = ScreenshotStorage()
