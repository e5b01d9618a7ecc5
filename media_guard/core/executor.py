"""
Durable job execution against asynchronous provider queues.

Submits generation jobs, persists a pending marker keyed by request
fingerprint before waiting, and on the next call with the same fingerprint
recovers the outstanding job instead of submitting it again.

State per fingerprint:
    no record -> submitted -> queued / in progress -> completed | failed | not found

Recovery contract:
- A confirmed completion or a confirmed not-found deletes the marker.
- A confirmed provider failure deletes the marker and raises JobFailedError.
- Anything else (local timeout, network errors, cancellation, process crash)
  leaves the marker in place, so the next call re-attaches to the job.

Concurrent calls with the same fingerprint are not serialized: two callers
that both see no marker will both submit.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Union

from media_guard.config.loader import DEFAULT_PENDING_TTL
from media_guard.storage.models import PendingJobRecord

from .cache import ContentAddressedCache
from .fingerprint import (
    FingerprintError,
    InputFile,
    compute_fingerprint,
    pending_key,
    result_key,
)
from .uploads import UploadDeduplicator

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Status reported by the provider queue."""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"


class QueueError(Exception):
    """Base class for provider queue errors."""

    def __init__(self, message: str, endpoint: Optional[str] = None, request_id: Optional[str] = None):
        self.endpoint = endpoint
        self.request_id = request_id
        super().__init__(message)


class QueueTransientError(QueueError):
    """Network or provider outage; the job may still be running."""


class JobNotFoundError(QueueError):
    """The provider has no record of the job (never existed or expired)."""


class JobFailedError(QueueError):
    """The provider reported a terminal failure for the job."""


class JobTimeoutError(QueueError, TimeoutError):
    """The local wait budget ran out; the job may still complete remotely."""


class QueueBackend(Protocol):
    """Submit / poll / fetch-result protocol of an asynchronous provider queue."""

    async def submit(self, endpoint: str, arguments: Dict[str, Any]) -> str: ...

    async def status(self, endpoint: str, request_id: str) -> JobStatus: ...

    async def result(self, endpoint: str, request_id: str) -> Dict[str, Any]: ...


@dataclass(frozen=True)
class JobOutcome:
    """Result of a durable execution."""
    data: Any
    request_id: Optional[str]
    endpoint: str
    fingerprint: Optional[str] = None
    cached: bool = False
    recovered: bool = False


class JobExecutor:
    """
    Executes provider jobs with crash recovery.

    Usage:
        executor = JobExecutor(queue, ContentAddressedCache(".cache/media-guard"))
        outcome = await executor.execute_durable(
            "fal-ai/flux/schnell",
            {"prompt": "a lion roaring"},
        )
        images = outcome.data["images"]
    """

    def __init__(
        self,
        queue: QueueBackend,
        cache: ContentAddressedCache,
        uploads: Optional[UploadDeduplicator] = None,
        pending_ttl: Union[float, str] = DEFAULT_PENDING_TTL,
        poll_interval: float = 2.0,
        max_wait: Optional[float] = None,
        result_ttl: Union[float, str, None] = None,
        file_field: str = "image_urls",
        max_poll_errors: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the executor.

        Args:
            queue: Provider queue client
            cache: Shared cache holding pending markers (and memoized results)
            uploads: Upload deduplicator, required when byte inputs are passed
            pending_ttl: Lifetime of a pending marker
            poll_interval: Seconds between status polls
            max_wait: Upper bound on how long one call waits for completion
            result_ttl: Memoize completed results for this long (None disables)
            file_field: Argument name receiving uploaded input URLs
            max_poll_errors: Consecutive transient poll errors tolerated
            clock: Time source
        """
        self.queue = queue
        self.cache = cache
        self.uploads = uploads
        self.pending_ttl = pending_ttl
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.result_ttl = result_ttl
        self.file_field = file_field
        self.max_poll_errors = max_poll_errors
        self._clock = clock

    async def execute_durable(
        self,
        endpoint: str,
        params: Dict[str, Any],
        files: Optional[Sequence[InputFile]] = None,
        fingerprint: Optional[str] = None,
        durable: bool = True,
        before_submit: Optional[Callable[[], None]] = None,
    ) -> JobOutcome:
        """
        Run a generation job, recovering an earlier submission if one exists.

        Args:
            endpoint: Provider endpoint identifier
            params: Request parameters
            files: Ordered input files; byte files are uploaded before submission
            fingerprint: Precomputed fingerprint (computed when omitted)
            durable: False skips fingerprinting, memoization and recovery
            before_submit: Called before a new submission; raising aborts it

        Returns:
            JobOutcome with the provider result

        Raises:
            JobFailedError: The provider reported a terminal failure
            JobTimeoutError: max_wait elapsed; a later call will recover the job
            JobNotFoundError: The job vanished while being awaited
            QueueError: Status lookup failed; the pending marker is kept
        """
        if durable and fingerprint is None:
            try:
                fingerprint = compute_fingerprint(endpoint, params, files)
            except FingerprintError as e:
                logger.info(f"Running {endpoint} without recovery: {e}")

        if not durable or fingerprint is None:
            if before_submit is not None:
                before_submit()
            arguments = await self._prepare_arguments(params, files)
            request_id = await self.queue.submit(endpoint, arguments)
            logger.info(f"Submitted {endpoint} request {request_id}")
            data = await self._wait_with_deadline(endpoint, request_id)
            return JobOutcome(data=data, request_id=request_id, endpoint=endpoint)

        if self.result_ttl is not None:
            cached = await self.cache.get(result_key(fingerprint))
            if isinstance(cached, dict) and "data" in cached:
                logger.info(f"Result cache hit for {endpoint} ({fingerprint[:12]})")
                return JobOutcome(
                    data=cached["data"],
                    request_id=cached.get("request_id"),
                    endpoint=endpoint,
                    fingerprint=fingerprint,
                    cached=True,
                )

        pending = await self._load_pending(fingerprint)
        if pending is not None:
            outcome = await self._recover(pending, fingerprint)
            if outcome is not None:
                return outcome

        if before_submit is not None:
            before_submit()
        arguments = await self._prepare_arguments(params, files)
        request_id = await self.queue.submit(endpoint, arguments)
        record = PendingJobRecord(
            request_id=request_id,
            endpoint_id=endpoint,
            submitted_at=int(self._clock() * 1000),
        )
        await self.cache.set(pending_key(fingerprint), record.to_dict(), self.pending_ttl)
        logger.info(f"Submitted {endpoint} request {request_id} ({fingerprint[:12]})")

        data = await self._await_job(endpoint, request_id, fingerprint)
        return await self._complete(endpoint, request_id, fingerprint, data, recovered=False)

    async def _prepare_arguments(
        self,
        params: Dict[str, Any],
        files: Optional[Sequence[InputFile]],
    ) -> Dict[str, Any]:
        arguments = dict(params)
        if not files:
            return arguments

        urls: List[str] = []
        for f in files:
            if f.is_remote:
                urls.append(f.url)
            elif self.uploads is None:
                raise ValueError("Byte inputs need an UploadDeduplicator")
            else:
                urls.append(await self.uploads.resolve(f))
        arguments[self.file_field] = urls
        return arguments

    async def find_pending(
        self,
        endpoint: str,
        params: Dict[str, Any],
        files: Optional[Sequence[InputFile]] = None,
    ) -> Optional[PendingJobRecord]:
        """Pending record an identical earlier call left behind, if any."""
        try:
            fingerprint = compute_fingerprint(endpoint, params, files)
        except FingerprintError:
            return None
        return await self._load_pending(fingerprint)

    async def _load_pending(self, fingerprint: str) -> Optional[PendingJobRecord]:
        raw = await self.cache.get(pending_key(fingerprint))
        if raw is None:
            return None
        try:
            return PendingJobRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Discarding malformed pending record for {fingerprint[:12]}")
            await self.cache.delete(pending_key(fingerprint))
            return None

    async def _recover(self, pending: PendingJobRecord, fingerprint: str) -> Optional[JobOutcome]:
        """Resume a previously submitted job; None when it no longer exists."""
        endpoint, request_id = pending.endpoint_id, pending.request_id

        # Errors other than not-found propagate with the marker intact
        try:
            status = await self.queue.status(endpoint, request_id)
        except JobNotFoundError:
            status = JobStatus.NOT_FOUND

        if status == JobStatus.NOT_FOUND:
            logger.info(f"Pending request {request_id} for {endpoint} not found, resubmitting")
            await self.cache.delete(pending_key(fingerprint))
            return None

        if status == JobStatus.FAILED:
            await self.cache.delete(pending_key(fingerprint))
            logger.error(f"Recovered request {request_id} for {endpoint} had failed")
            raise JobFailedError(
                f"Job {request_id} failed at {endpoint}",
                endpoint=endpoint,
                request_id=request_id,
            )

        if status == JobStatus.COMPLETED:
            logger.info(f"Recovered completed request {request_id} for {endpoint}")
            data = await self._fetch_result(endpoint, request_id, fingerprint)
        else:
            logger.info(f"Re-attaching to request {request_id} for {endpoint} ({status.value})")
            data = await self._await_job(endpoint, request_id, fingerprint)

        return await self._complete(endpoint, request_id, fingerprint, data, recovered=True)

    async def _complete(
        self,
        endpoint: str,
        request_id: str,
        fingerprint: str,
        data: Any,
        recovered: bool,
    ) -> JobOutcome:
        await self.cache.delete(pending_key(fingerprint))
        if self.result_ttl is not None:
            await self.cache.set(
                result_key(fingerprint),
                {"data": data, "request_id": request_id},
                self.result_ttl,
            )
        logger.info(f"Completed {endpoint} request {request_id}")
        return JobOutcome(
            data=data,
            request_id=request_id,
            endpoint=endpoint,
            fingerprint=fingerprint,
            recovered=recovered,
        )

    async def _await_job(self, endpoint: str, request_id: str, fingerprint: str) -> Any:
        """Wait for a tracked job, clearing the marker only on confirmed outcomes."""
        try:
            return await self._wait_with_deadline(endpoint, request_id)
        except (JobFailedError, JobNotFoundError):
            await self.cache.delete(pending_key(fingerprint))
            raise

    async def _fetch_result(self, endpoint: str, request_id: str, fingerprint: str) -> Any:
        try:
            return await self.queue.result(endpoint, request_id)
        except (JobFailedError, JobNotFoundError):
            await self.cache.delete(pending_key(fingerprint))
            raise

    async def _wait_with_deadline(self, endpoint: str, request_id: str) -> Any:
        if self.max_wait is None:
            return await self._poll_until_done(endpoint, request_id)
        try:
            return await asyncio.wait_for(
                self._poll_until_done(endpoint, request_id),
                timeout=self.max_wait,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Gave up waiting for {endpoint} request {request_id} after {self.max_wait}s")
            raise JobTimeoutError(
                f"Job {request_id} did not complete within {self.max_wait} seconds",
                endpoint=endpoint,
                request_id=request_id,
            ) from None

    async def _poll_until_done(self, endpoint: str, request_id: str) -> Any:
        consecutive_errors = 0
        last_status: Optional[JobStatus] = None

        while True:
            try:
                status = await self.queue.status(endpoint, request_id)
                consecutive_errors = 0
            except QueueTransientError as e:
                consecutive_errors += 1
                logger.warning(
                    f"Poll error for {request_id} (attempt {consecutive_errors}): {e}"
                )
                if consecutive_errors >= self.max_poll_errors:
                    raise
                await asyncio.sleep(self.poll_interval)
                continue

            if status != last_status:
                logger.debug(f"{endpoint} request {request_id}: {status.value}")
                last_status = status

            if status == JobStatus.COMPLETED:
                return await self.queue.result(endpoint, request_id)
            if status == JobStatus.FAILED:
                logger.error(f"{endpoint} request {request_id} failed")
                raise JobFailedError(
                    f"Job {request_id} failed at {endpoint}",
                    endpoint=endpoint,
                    request_id=request_id,
                )
            if status == JobStatus.NOT_FOUND:
                raise JobNotFoundError(
                    f"Job {request_id} not found at {endpoint}",
                    endpoint=endpoint,
                    request_id=request_id,
                )

            await asyncio.sleep(self.poll_interval)
