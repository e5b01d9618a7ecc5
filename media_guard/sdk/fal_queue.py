"""
fal.ai queue client.

Implements the submit / status / result queue protocol and the storage
upload primitive against the fal REST API.
"""

import logging
import uuid
from typing import Any, Dict, Optional

import httpx

from media_guard.core.executor import (
    JobFailedError,
    JobNotFoundError,
    JobStatus,
    QueueError,
    QueueTransientError,
)

logger = logging.getLogger(__name__)

FAL_QUEUE_BASE = "https://queue.fal.run"
FAL_STORAGE_BASE = "https://rest.alpha.fal.ai"

_STATUS_MAP = {
    "IN_QUEUE": JobStatus.QUEUED,
    "IN_PROGRESS": JobStatus.IN_PROGRESS,
    "COMPLETED": JobStatus.COMPLETED,
    "FAILED": JobStatus.FAILED,
    "ERROR": JobStatus.FAILED,
    "CANCELLED": JobStatus.FAILED,
}

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "audio/mpeg": "mp3",
    "video/mp4": "mp4",
}


def app_id(endpoint: str) -> str:
    """Queue app id of an endpoint: its first two path segments.

    ``fal-ai/flux/schnell`` is submitted to its full path but polled under
    ``fal-ai/flux``.
    """
    parts = endpoint.strip("/").split("/")
    return "/".join(parts[:2])


class FalQueueClient:
    """
    Async client for the fal queue and storage APIs.

    Usage:
        async with FalQueueClient(api_key=os.environ["FAL_KEY"]) as fal:
            request_id = await fal.submit("fal-ai/flux/schnell", {"prompt": "a fox"})
            status = await fal.status("fal-ai/flux/schnell", request_id)
    """

    def __init__(
        self,
        api_key: str,
        queue_base: str = FAL_QUEUE_BASE,
        storage_base: str = FAL_STORAGE_BASE,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("api_key is required (set FAL_KEY or FAL_API_KEY)")
        self.api_key = api_key
        self.queue_base = queue_base.rstrip("/")
        self.storage_base = storage_base.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    async def __aenter__(self) -> "FalQueueClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Key {self.api_key}"}

    async def _request(
        self,
        method: str,
        url: str,
        endpoint: str,
        request_id: Optional[str] = None,
        **kwargs: Any
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, url, headers=self._headers, **kwargs)
        except httpx.HTTPError as e:
            raise QueueTransientError(
                f"{method} {url} failed: {type(e).__name__}: {e}",
                endpoint=endpoint,
                request_id=request_id,
            ) from e

        if response.status_code >= 500:
            raise QueueTransientError(
                f"{method} {url} returned {response.status_code}",
                endpoint=endpoint,
                request_id=request_id,
            )
        if response.status_code == 404 and request_id is not None:
            raise JobNotFoundError(
                f"Request {request_id} not found at {endpoint}",
                endpoint=endpoint,
                request_id=request_id,
            )
        return response

    async def submit(self, endpoint: str, arguments: Dict[str, Any]) -> str:
        """Submit a job and return its request id."""
        response = await self._request(
            "POST", f"{self.queue_base}/{endpoint.strip('/')}", endpoint, json=arguments
        )
        if response.status_code >= 400:
            raise QueueError(
                f"Submit to {endpoint} rejected ({response.status_code}): {response.text[:200]}",
                endpoint=endpoint,
            )

        request_id = response.json().get("request_id")
        if not request_id:
            raise QueueError(f"Submit to {endpoint} returned no request_id", endpoint=endpoint)
        return request_id

    async def status(self, endpoint: str, request_id: str) -> JobStatus:
        """Query the status of a submitted job."""
        url = f"{self.queue_base}/{app_id(endpoint)}/requests/{request_id}/status"
        response = await self._request("GET", url, endpoint, request_id)
        if response.status_code >= 400:
            raise QueueError(
                f"Status query for {request_id} failed ({response.status_code})",
                endpoint=endpoint,
                request_id=request_id,
            )

        payload = response.json()
        if payload.get("error"):
            return JobStatus.FAILED
        status = _STATUS_MAP.get(str(payload.get("status", "")).upper())
        if status is None:
            logger.warning(f"Unknown fal status {payload.get('status')!r} for {request_id}")
            return JobStatus.IN_PROGRESS
        return status

    async def result(self, endpoint: str, request_id: str) -> Dict[str, Any]:
        """Fetch the output of a completed job."""
        url = f"{self.queue_base}/{app_id(endpoint)}/requests/{request_id}"
        response = await self._request("GET", url, endpoint, request_id)
        if response.status_code >= 400:
            raise JobFailedError(
                f"Job {request_id} failed at {endpoint} ({response.status_code}): {response.text[:200]}",
                endpoint=endpoint,
                request_id=request_id,
            )
        return response.json()

    async def upload(self, data: bytes, content_type: str) -> str:
        """Upload bytes to fal storage and return the public URL."""
        extension = _EXTENSIONS.get(content_type, "bin")
        initiate = await self._request(
            "POST",
            f"{self.storage_base}/storage/upload/initiate",
            "storage",
            params={"storage_type": "fal-cdn-v3"},
            json={"content_type": content_type, "file_name": f"{uuid.uuid4().hex}.{extension}"},
        )
        if initiate.status_code >= 400:
            raise QueueError(f"Upload initiation failed ({initiate.status_code}): {initiate.text[:200]}")

        target = initiate.json()
        client = await self._get_client()
        try:
            put = await client.put(
                target["upload_url"],
                content=data,
                headers={"Content-Type": content_type},
            )
        except httpx.HTTPError as e:
            raise QueueTransientError(f"Upload failed: {type(e).__name__}: {e}") from e
        if put.status_code >= 400:
            raise QueueError(f"Upload rejected ({put.status_code})")
        return target["file_url"]
