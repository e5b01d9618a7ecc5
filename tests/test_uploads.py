"""
Unit tests for upload deduplication.
"""

import base64
import shutil
import tempfile

import pytest

from media_guard.core.cache import ContentAddressedCache
from media_guard.core.fingerprint import InputFile
from media_guard.core.uploads import UploadDeduplicator, detect_media_type

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 16


class RecordingUploader:
    """Uploader that returns predictable URLs and records calls."""

    def __init__(self):
        self.calls = []

    async def upload(self, data: bytes, content_type: str) -> str:
        self.calls.append((data, content_type))
        return f"https://cdn.example.com/{len(self.calls)}"


class TestDetectMediaType:

    def test_known_formats(self):
        assert detect_media_type(PNG) == "image/png"
        assert detect_media_type(JPEG) == "image/jpeg"
        assert detect_media_type(b"GIF89a....") == "image/gif"
        assert detect_media_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"

    def test_unknown(self):
        assert detect_media_type(b"plain text") is None


class TestUploadDeduplicator:
    """Test that identical bytes are uploaded once."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.cache = ContentAddressedCache(self.temp_dir)
        self.uploader = RecordingUploader()
        self.uploads = UploadDeduplicator(self.cache, self.uploader)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @pytest.mark.asyncio
    async def test_identical_bytes_upload_once(self):
        first = await self.uploads.upload(PNG)
        second = await self.uploads.upload(PNG)

        assert first == second == "https://cdn.example.com/1"
        assert len(self.uploader.calls) == 1
        assert self.uploads.upload_count == 1

    @pytest.mark.asyncio
    async def test_different_bytes_upload_separately(self):
        await self.uploads.upload(PNG)
        await self.uploads.upload(JPEG)
        assert len(self.uploader.calls) == 2

    @pytest.mark.asyncio
    async def test_content_type_detected_or_given(self):
        await self.uploads.upload(JPEG)
        await self.uploads.upload(b"\x00\x01", media_type="audio/mpeg")
        await self.uploads.upload(b"\x02\x03")
        assert [c[1] for c in self.uploader.calls] == ["image/jpeg", "audio/mpeg", "image/png"]

    @pytest.mark.asyncio
    async def test_dedup_survives_restart(self):
        await self.uploads.upload(PNG)

        uploader = RecordingUploader()
        restarted = UploadDeduplicator(ContentAddressedCache(self.temp_dir), uploader)
        assert await restarted.upload(PNG) == "https://cdn.example.com/1"
        assert uploader.calls == []

    @pytest.mark.asyncio
    async def test_resolve_passes_urls_through(self):
        url = await self.uploads.resolve(InputFile.from_url("https://x/a.png"))
        assert url == "https://x/a.png"
        assert self.uploader.calls == []

    @pytest.mark.asyncio
    async def test_resolve_base64_shares_upload_with_bytes(self):
        await self.uploads.upload(PNG)
        encoded = base64.b64encode(PNG).decode("ascii")
        assert await self.uploads.resolve(InputFile(data=encoded)) == "https://cdn.example.com/1"
        assert len(self.uploader.calls) == 1
