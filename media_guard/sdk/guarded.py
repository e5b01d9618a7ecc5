"""
Guarded generation client.

Checks daily limits before anything is submitted, runs the job durably and
records its usage afterwards.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence

from media_guard.config.loader import Settings
from media_guard.core.cache import ContentAddressedCache
from media_guard.core.executor import JobExecutor, JobOutcome
from media_guard.core.fingerprint import InputFile
from media_guard.core.ledger import UsageLedger
from media_guard.core.uploads import UploadDeduplicator
from media_guard.storage.models import GenerationMetrics, GenerationRecord, ResourceType

from .fal_queue import FalQueueClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationRequest:
    """One generation to run."""
    endpoint: str
    params: Dict[str, Any]
    resource_type: ResourceType
    files: Sequence[InputFile] = ()
    count: int = 1
    duration_seconds: Optional[float] = None
    character_count: Optional[int] = None


@dataclass(frozen=True)
class GenerationResult:
    """Provider output together with its usage record."""
    data: Any
    record: GenerationRecord
    outcome: JobOutcome


class GuardedGenerator:
    """Runs generations within daily limits and records their usage.

    Limits are checked against the estimated cost before submission, so a
    blocked generation never reaches the provider.
    """

    def __init__(self, executor: JobExecutor, ledger: UsageLedger, provider: str = "fal"):
        if not provider or not provider.strip():
            raise ValueError("provider is required and cannot be empty")
        self.executor = executor
        self.ledger = ledger
        self.provider = provider

    @classmethod
    def from_settings(cls, settings: Settings) -> "GuardedGenerator":
        """Wire a fal-backed generator from settings.

        Raises:
            ValueError: If no fal API key is configured
        """
        if not settings.fal_key:
            raise ValueError("FAL_KEY or FAL_API_KEY must be set")

        cache = ContentAddressedCache(settings.cache_dir)
        fal = FalQueueClient(api_key=settings.fal_key)
        executor = JobExecutor(
            queue=fal,
            cache=cache,
            uploads=UploadDeduplicator(cache, fal, ttl=settings.upload_ttl),
            pending_ttl=settings.pending_ttl,
        )
        return cls(executor, UsageLedger.from_settings(settings))

    async def close(self) -> None:
        """Close the queue client and any pricing clients."""
        close = getattr(self.executor.queue, "close", None)
        if close is not None:
            await close()
        await self.ledger.pricing.close()

    async def __aenter__(self) -> "GuardedGenerator":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Run one generation.

        A request matching a job submitted earlier (for example before a
        crash) re-attaches to that job without a limit check, since the
        provider has already accepted it. Limits are checked again before
        any new submission.

        Raises:
            UsageLimitError: If a daily limit blocks the generation
            JobFailedError: If the provider reports a failure
            JobTimeoutError: If the executor's max wait elapses
        """
        await self.ledger.load()

        prompt = request.params.get("prompt")
        metrics = GenerationMetrics(
            provider=self.provider,
            model_id=request.endpoint,
            resource_type=request.resource_type,
            count=request.count,
            duration_seconds=request.duration_seconds,
            character_count=request.character_count,
            prompt=prompt if isinstance(prompt, str) else None,
        )

        estimate = await self.ledger.pricing.calculate_cost(metrics)

        def check_limits() -> None:
            self.ledger.assert_limits(
                request.resource_type,
                estimated_cost=estimate.cost or 0.0,
                duration_seconds=request.duration_seconds,
            )

        files = list(request.files) or None
        pending = await self.executor.find_pending(request.endpoint, request.params, files)
        if pending is None:
            check_limits()
        else:
            # already submitted and paid for; only a resubmission is checked
            logger.info(f"Recovering {request.endpoint} request {pending.request_id} without a limit check")

        outcome = await self.executor.execute_durable(
            request.endpoint,
            request.params,
            files,
            before_submit=check_limits if pending is not None else None,
        )

        record = await self.ledger.record(
            replace(metrics, request_id=outcome.request_id, cached=outcome.cached)
        )
        await self.ledger.save()
        return GenerationResult(data=outcome.data, record=record, outcome=outcome)

    async def generate_many(
        self,
        requests: Sequence[GenerationRequest],
        concurrency: int = 4
    ) -> List[GenerationResult]:
        """Run generations concurrently, at most ``concurrency`` at a time.

        Each generation is checked against the limits when it starts, so
        in-flight generations are not yet counted by later checks.

        Returns:
            Results in request order
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        semaphore = asyncio.Semaphore(concurrency)

        async def run(request: GenerationRequest) -> GenerationResult:
            async with semaphore:
                return await self.generate(request)

        logger.info(f"Running {len(requests)} generations (concurrency {concurrency})")
        return list(await asyncio.gather(*(run(r) for r in requests)))
