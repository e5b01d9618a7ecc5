"""
Tests for the fal queue client against a mocked HTTP transport.
"""

import json

import httpx
import pytest

from media_guard.core.executor import (
    JobFailedError,
    JobNotFoundError,
    JobStatus,
    QueueError,
    QueueTransientError,
)
from media_guard.sdk.fal_queue import FalQueueClient, app_id

ENDPOINT = "fal-ai/flux/schnell"


def make_client(handler) -> FalQueueClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FalQueueClient(api_key="test-key", http_client=http_client)


class TestAppId:

    def test_first_two_segments(self):
        assert app_id("fal-ai/flux/schnell") == "fal-ai/flux"
        assert app_id("fal-ai/kling-video/v2.5-turbo/pro/text-to-video") == "fal-ai/kling-video"
        assert app_id("fal-ai/veo-3") == "fal-ai/veo-3"


class TestFalQueueClient:

    def test_requires_api_key(self):
        with pytest.raises(ValueError, match="api_key"):
            FalQueueClient(api_key="")

    @pytest.mark.asyncio
    async def test_submit(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"request_id": "abc-123"})

        client = make_client(handler)
        request_id = await client.submit(ENDPOINT, {"prompt": "a fox"})
        await client.close()

        assert request_id == "abc-123"
        assert str(seen[0].url) == "https://queue.fal.run/fal-ai/flux/schnell"
        assert seen[0].headers["Authorization"] == "Key test-key"
        assert json.loads(seen[0].content) == {"prompt": "a fox"}

    @pytest.mark.asyncio
    async def test_submit_rejected(self):
        client = make_client(lambda request: httpx.Response(422, text="bad prompt"))
        with pytest.raises(QueueError, match="rejected"):
            await client.submit(ENDPOINT, {})
        await client.close()

    @pytest.mark.asyncio
    async def test_status_mapping(self):
        statuses = iter(["IN_QUEUE", "IN_PROGRESS", "COMPLETED"])
        urls = []

        def handler(request):
            urls.append(str(request.url))
            return httpx.Response(200, json={"status": next(statuses)})

        client = make_client(handler)
        results = [await client.status(ENDPOINT, "abc") for _ in range(3)]
        await client.close()

        assert results == [JobStatus.QUEUED, JobStatus.IN_PROGRESS, JobStatus.COMPLETED]
        assert urls[0] == "https://queue.fal.run/fal-ai/flux/requests/abc/status"

    @pytest.mark.asyncio
    async def test_completed_with_error_is_failed(self):
        client = make_client(
            lambda request: httpx.Response(200, json={"status": "COMPLETED", "error": "NSFW"})
        )
        assert await client.status(ENDPOINT, "abc") == JobStatus.FAILED
        await client.close()

    @pytest.mark.asyncio
    async def test_status_not_found(self):
        client = make_client(lambda request: httpx.Response(404))
        with pytest.raises(JobNotFoundError) as exc_info:
            await client.status(ENDPOINT, "gone")
        assert exc_info.value.request_id == "gone"
        await client.close()

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        client = make_client(lambda request: httpx.Response(502))
        with pytest.raises(QueueTransientError):
            await client.status(ENDPOINT, "abc")
        await client.close()

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(QueueTransientError, match="ConnectError"):
            await client.status(ENDPOINT, "abc")
        await client.close()

    @pytest.mark.asyncio
    async def test_result(self):
        def handler(request):
            assert str(request.url) == "https://queue.fal.run/fal-ai/flux/requests/abc"
            return httpx.Response(200, json={"images": [{"url": "https://cdn/x.png"}]})

        client = make_client(handler)
        assert await client.result(ENDPOINT, "abc") == {"images": [{"url": "https://cdn/x.png"}]}
        await client.close()

    @pytest.mark.asyncio
    async def test_result_client_error_is_failure(self):
        client = make_client(lambda request: httpx.Response(422, text="validation failed"))
        with pytest.raises(JobFailedError, match="422"):
            await client.result(ENDPOINT, "abc")
        await client.close()

    @pytest.mark.asyncio
    async def test_upload(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.path == "/storage/upload/initiate":
                return httpx.Response(200, json={
                    "upload_url": "https://storage.example.com/put/1",
                    "file_url": "https://v3.fal.media/files/1.png",
                })
            return httpx.Response(200)

        client = make_client(handler)
        url = await client.upload(b"\x89PNG...", "image/png")
        await client.close()

        assert url == "https://v3.fal.media/files/1.png"
        initiate, put = seen
        assert json.loads(initiate.content)["content_type"] == "image/png"
        assert json.loads(initiate.content)["file_name"].endswith(".png")
        assert put.method == "PUT"
        assert put.content == b"\x89PNG..."
        assert put.headers["Content-Type"] == "image/png"

    @pytest.mark.asyncio
    async def test_context_manager_closes(self):
        async with make_client(lambda request: httpx.Response(200, json={"request_id": "x"})) as client:
            await client.submit(ENDPOINT, {})
        assert client._http_client is None
