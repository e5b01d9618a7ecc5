"""
Upload deduplication.

Memoizes uploads of raw bytes to provider object storage by content hash,
so identical payloads are uploaded once per TTL window, across restarts.
"""

import logging
from typing import Optional, Protocol, Union

from media_guard.config.loader import DEFAULT_UPLOAD_TTL

from .cache import ContentAddressedCache
from .fingerprint import InputFile, content_hash, upload_key

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE = "image/png"


class Uploader(Protocol):
    """Object-storage upload primitive returning a remote reference."""

    async def upload(self, data: bytes, content_type: str) -> str: ...


def detect_media_type(data: bytes) -> Optional[str]:
    """Detect common image formats from magic bytes."""
    if data[:4] == b"\x89PNG":
        return "image/png"
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:3] == b"GIF":
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


class UploadDeduplicator:
    """Uploads bytes at most once per content hash.

    Usage:
        uploads = UploadDeduplicator(cache, fal_client)
        url = await uploads.upload(png_bytes)
        same_url = await uploads.upload(png_bytes)  # no second upload
    """

    def __init__(
        self,
        cache: ContentAddressedCache,
        uploader: Uploader,
        ttl: Union[float, str] = DEFAULT_UPLOAD_TTL,
    ):
        self.cache = cache
        self.uploader = uploader
        self.ttl = ttl
        self.upload_count = 0

    async def upload(self, data: bytes, media_type: Optional[str] = None) -> str:
        """Return a remote reference for the bytes, uploading only on a cache miss."""
        key = upload_key(content_hash(data))

        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug(f"Upload cache hit: {key}")
            return cached

        content_type = media_type or detect_media_type(data) or DEFAULT_MEDIA_TYPE
        url = await self.uploader.upload(data, content_type)
        self.upload_count += 1
        logger.info(f"Uploaded {len(data) / 1024:.1f} KB ({content_type}) -> {url}")

        await self.cache.set(key, url, self.ttl)
        return url

    async def resolve(self, file: InputFile) -> str:
        """Remote reference for an input file; remote files pass through."""
        if file.is_remote:
            return file.url
        return await self.upload(file.content(), file.media_type)
