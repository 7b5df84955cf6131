import asyncio
import logging
from typing import Optional

import httpx

from pixlmint.core.errors import AssetFetchError, AssetNotFoundError
from pixlmint.shared.storage import ObjectStore

logger = logging.getLogger(__name__)

_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


def default_asset_key(owner_address: str, artifact_id: str) -> str:
    """Where the creation service stores a finished masterpiece"""
    return f"creations/{owner_address}/{artifact_id}.png"


def sniff_media_type(data: bytes) -> str:
    for magic, media_type in _SIGNATURES:
        if data.startswith(magic):
            return media_type
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


def is_url(ref: str) -> bool:
    return ref.lower().startswith(("http://", "https://"))


class AssetResolver:
    """Loads the raw masterpiece bytes from the object store or a URL"""

    def __init__(
        self,
        store: ObjectStore,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.timeout = timeout
        self._transport = transport

    async def resolve(self, ref: str) -> bytes:
        if is_url(ref):
            return await self._fetch(ref)
        return await self._load(ref)

    def _storage_key(self, ref: str) -> str:
        if not ref.startswith("gs://"):
            return ref.lstrip("/")
        bucket, _, key = ref[len("gs://"):].partition("/")
        if bucket != self.store.bucket_name:
            raise AssetNotFoundError(f"Bucket {bucket} is not the configured asset bucket")
        return key

    async def _load(self, ref: str) -> bytes:
        key = self._storage_key(ref)
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, self.store.get, key)
        except ValueError as e:
            raise AssetNotFoundError(str(e)) from e
        except Exception as e:
            logger.error(f"Object store read failed for {key}: {e}")
            raise AssetFetchError(f"Could not read {key} from storage: {e}") from e
        if data is None:
            raise AssetNotFoundError(f"Image not found in storage: {key}")
        logger.info(f"Loaded {len(data)} bytes from storage key {key}")
        return data

    async def _fetch(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=True
            ) as client:
                resp = await client.get(url)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise AssetFetchError(
                f"Fetching {url} returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise AssetFetchError(f"Fetching {url} failed: {e!r}") from e
        logger.info(f"Fetched {len(resp.content)} bytes from {url}")
        return resp.content
