"""
Usage ledger.

Tracks generations for the current session and the current usage day,
resolves their cost through the pricing registry and enforces daily limits
before new work is submitted.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from media_guard.config.loader import DEFAULT_USAGE_DIR, DailyLimits, Settings
from media_guard.storage.models import (
    DailyUsageState,
    GenerationMetrics,
    GenerationRecord,
    ResourceType,
)
from media_guard.storage.repository import (
    UsageRepository,
    get_time_until_reset,
    get_today_date,
)

from .limits import LimitCheckResult, UsageLimitError, calculate_percent, check_limits
from .pricing import (
    DEFAULT_AUDIO_SECONDS,
    DEFAULT_VIDEO_SECONDS,
    PricingRegistry,
    PricingUnavailableError,
    default_registry,
)

logger = logging.getLogger(__name__)

PROMPT_MAX_LENGTH = 100


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ResourceUsage:
    """Session usage of one resource type."""
    generated: int = 0
    cached: int = 0
    cost: float = 0.0
    duration: Optional[float] = None  # seconds for video, minutes for audio


@dataclass
class SessionSummary:
    """Usage of the current session, by resource type."""
    images: ResourceUsage
    videos: ResourceUsage
    speech: ResourceUsage
    music: ResourceUsage
    total_cost: float
    total_count: int
    saved_from_cache: float
    unpriced_count: int = 0


@dataclass(frozen=True)
class LimitStatus:
    """Current standing against one configured limit."""
    limit_type: str
    current: float
    limit: float
    percent: int


@dataclass
class _PricingErrors:
    errors: List[PricingUnavailableError] = field(default_factory=list)

    def add(self, error: PricingUnavailableError) -> bool:
        """Keep one error per provider; True when the provider is new."""
        if any(e.provider == error.provider for e in self.errors):
            return False
        self.errors.append(error)
        return True


def _minutes(duration_seconds: Optional[float], count: int) -> float:
    seconds = float(DEFAULT_AUDIO_SECONDS) if duration_seconds is None else duration_seconds
    return seconds / 60 * count


def _video_seconds(duration_seconds: Optional[float], count: int) -> float:
    seconds = float(DEFAULT_VIDEO_SECONDS) if duration_seconds is None else duration_seconds
    return seconds * count


class UsageLedger:
    """
    Session and daily usage accounting.

    Usage:
        ledger = UsageLedger(DailyLimits(images=50, total_cost=5.0))
        await ledger.load()
        ledger.assert_limits(ResourceType.IMAGE, estimated_cost=0.003)
        await ledger.record(GenerationMetrics("fal", "flux-schnell", ResourceType.IMAGE))
        await ledger.save()
    """

    def __init__(
        self,
        limits: Optional[DailyLimits] = None,
        usage_dir: Union[str, Path] = DEFAULT_USAGE_DIR,
        enabled: bool = True,
        pricing: Optional[PricingRegistry] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """
        Initialize the ledger.

        Args:
            limits: Daily ceilings (none when omitted)
            usage_dir: Directory holding one usage document per day
            enabled: False keeps session records only; nothing is persisted
            pricing: Price lookups by provider
            clock: Source of the current UTC time
        """
        self.limits = limits or DailyLimits()
        self.repository = UsageRepository(usage_dir)
        self.enabled = enabled
        self.pricing = pricing if pricing is not None else default_registry()
        self._clock = clock

        self._daily_state = DailyUsageState(date=self._today())
        self._session_records: List[GenerationRecord] = []
        self._pricing_errors = _PricingErrors()
        self._unsaved: List[DailyUsageState] = []
        self._loaded = False
        self._dirty = False
        self._mutations = 0
        self._save_lock: Optional[asyncio.Lock] = None
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: Settings, pricing: Optional[PricingRegistry] = None) -> "UsageLedger":
        return cls(
            limits=settings.limits,
            usage_dir=settings.usage_dir,
            enabled=settings.tracking_enabled,
            pricing=pricing if pricing is not None else default_registry(settings.fal_key),
        )

    def _today(self) -> str:
        return get_today_date(self.limits.reset_hour_utc, self._clock())

    def _roll_day(self) -> None:
        """Start a new partition when the usage day has changed."""
        today = self._today()
        if today == self._daily_state.date:
            return
        logger.info(f"Usage day changed from {self._daily_state.date} to {today}")
        if self._dirty:
            self._unsaved.append(self._daily_state)
        self._daily_state = DailyUsageState(date=today)
        self._loaded = False
        self._dirty = False

    @property
    def daily_state(self) -> DailyUsageState:
        """Usage of the current day."""
        self._roll_day()
        return self._daily_state

    async def load(self) -> None:
        """Load the current day's usage from disk (once per day)."""
        self._roll_day()
        if not self.enabled or self._loaded:
            return

        date = self._daily_state.date
        state = await asyncio.to_thread(self.repository.load_daily_usage, date)
        # a concurrent load may have finished first and records applied since
        if self._loaded or self._daily_state.date != date:
            return
        self._daily_state = state
        self._loaded = True

    async def save(self) -> None:
        """Persist usage if anything changed; a no-op when tracking is disabled.

        Saves run one at a time and write a snapshot taken on the event loop,
        so a slow earlier write can never replace a newer document.
        """
        if not self.enabled:
            return

        if self._save_lock is None:
            self._save_lock = asyncio.Lock()
        async with self._save_lock:
            while self._unsaved:
                state = self._unsaved[0]
                await asyncio.to_thread(self.repository.save_daily_usage, state)
                self._unsaved.pop(0)

            self._roll_day()
            if not self._dirty:
                return
            mutations = self._mutations
            snapshot = DailyUsageState.from_dict(self._daily_state.to_dict())
            await asyncio.to_thread(self.repository.save_daily_usage, snapshot)
            # records applied during the write stay dirty for the next save
            if self._mutations == mutations:
                self._dirty = False

    async def record(self, metrics: GenerationMetrics) -> GenerationRecord:
        """
        Record a completed generation.

        Cached generations cost nothing and leave the daily counters alone.
        When pricing is unavailable the record's cost is None and the daily
        total is not incremented.

        Returns:
            The stored GenerationRecord
        """
        await self.load()

        cost: Optional[float] = 0.0
        pricing_unavailable = False
        if not metrics.cached:
            result = await self.pricing.calculate_cost(metrics)
            if result.error is not None:
                pricing_unavailable = True
                if self._pricing_errors.add(result.error):
                    logger.warning(f"{result.error}; cost tracking is incomplete for this session")
            cost = result.cost

        now = self._clock()
        record = GenerationRecord(
            id=f"gen_{int(now.timestamp() * 1000)}_{next(self._ids)}",
            timestamp=now.isoformat(),
            provider=metrics.provider,
            model_id=metrics.model_id,
            resource_type=ResourceType(metrics.resource_type),
            estimated_cost=cost,
            cached=metrics.cached,
            count=metrics.count,
            duration_seconds=metrics.duration_seconds,
            request_id=metrics.request_id,
            prompt=metrics.prompt[:PROMPT_MAX_LENGTH] if metrics.prompt else None,
            pricing_unavailable=pricing_unavailable,
        )
        self._session_records.append(record)

        if not metrics.cached and self.enabled:
            self._apply(record)
        return record

    def _apply(self, record: GenerationRecord) -> None:
        state = self._daily_state
        state.generations.append(record)
        if record.estimated_cost is not None:
            state.total_cost += record.estimated_cost

        if record.resource_type == ResourceType.IMAGE:
            state.images += record.count
        elif record.resource_type == ResourceType.VIDEO:
            state.videos += record.count
            state.video_seconds += _video_seconds(record.duration_seconds, record.count)
        elif record.resource_type == ResourceType.SPEECH:
            state.speech_minutes += _minutes(record.duration_seconds, record.count)
        elif record.resource_type == ResourceType.MUSIC:
            state.music_minutes += _minutes(record.duration_seconds, record.count)

        self._mutations += 1
        self._dirty = True

    def check_limits(
        self,
        resource_type: ResourceType,
        estimated_cost: float = 0,
        duration_seconds: Optional[float] = None
    ) -> LimitCheckResult:
        """Check whether one more generation fits within today's limits."""
        if not self.enabled:
            return LimitCheckResult(allowed=True)

        result = check_limits(
            self.daily_state, self.limits, resource_type, estimated_cost, duration_seconds
        )
        if result.is_warning:
            logger.warning(
                f"Approaching daily {result.limit_type} limit: "
                f"{result.current:g}/{result.limit:g} ({result.percent}%)"
            )
        return result

    def assert_limits(
        self,
        resource_type: ResourceType,
        estimated_cost: float = 0,
        duration_seconds: Optional[float] = None
    ) -> None:
        """
        Raise if one more generation would exceed a daily limit.

        Raises:
            UsageLimitError: If the generation is blocked
        """
        result = self.check_limits(resource_type, estimated_cost, duration_seconds)
        if not result.allowed:
            logger.error(f"Daily {result.limit_type} limit reached: {result.current:g}/{result.limit:g}")
            raise UsageLimitError(result.limit_type, result.current, result.limit)

    def has_limits(self) -> bool:
        return self.limits.has_limits()

    def limit_statuses(self) -> List[LimitStatus]:
        """Standing against each configured limit."""
        state = self.daily_state
        statuses = []
        for name in ("images", "videos", "speech_minutes", "music_minutes", "total_cost"):
            limit = getattr(self.limits, name)
            if limit is None:
                continue
            current = getattr(state, name)
            statuses.append(LimitStatus(name, current, limit, calculate_percent(current, limit)))
        return statuses

    def time_until_reset(self) -> Tuple[int, int]:
        return get_time_until_reset(self.limits.reset_hour_utc, self._clock())

    @property
    def session_records(self) -> List[GenerationRecord]:
        return list(self._session_records)

    def pricing_errors(self) -> List[PricingUnavailableError]:
        """Pricing errors of this session, one per provider."""
        return list(self._pricing_errors.errors)

    def pricing_warning_message(self) -> Optional[str]:
        """Human-readable summary of pricing errors, None when there are none."""
        errors = self._pricing_errors.errors
        if not errors:
            return None
        providers = ", ".join(e.provider for e in errors)
        reasons = "\n".join(f"  - {e.provider}: {e.reason}" for e in errors)
        return (
            f"Pricing unavailable from: {providers}\n"
            f"{reasons}\n"
            f"Cost tracking is incomplete; unknown costs are not counted toward the daily total."
        )

    async def session_summary(self) -> SessionSummary:
        """Summarize the session, including what cached results saved."""
        usage: Dict[ResourceType, ResourceUsage] = {}
        for resource_type in ResourceType:
            records = [r for r in self._session_records if r.resource_type == resource_type]
            generated = [r for r in records if not r.cached]

            duration = None
            if resource_type == ResourceType.VIDEO:
                duration = sum(_video_seconds(r.duration_seconds, r.count) for r in generated)
            elif resource_type in (ResourceType.SPEECH, ResourceType.MUSIC):
                duration = sum(_minutes(r.duration_seconds, r.count) for r in generated)

            usage[resource_type] = ResourceUsage(
                generated=sum(r.count for r in generated),
                cached=sum(r.count for r in records if r.cached),
                cost=sum(r.estimated_cost or 0.0 for r in generated),
                duration=duration,
            )

        saved = 0.0
        for r in self._session_records:
            if not r.cached:
                continue
            result = await self.pricing.calculate_cost(GenerationMetrics(
                provider=r.provider,
                model_id=r.model_id,
                resource_type=r.resource_type,
                count=r.count,
                duration_seconds=r.duration_seconds,
            ))
            if result.cost is not None:
                saved += result.cost

        return SessionSummary(
            images=usage[ResourceType.IMAGE],
            videos=usage[ResourceType.VIDEO],
            speech=usage[ResourceType.SPEECH],
            music=usage[ResourceType.MUSIC],
            total_cost=sum(u.cost for u in usage.values()),
            total_count=len(self._session_records),
            saved_from_cache=saved,
            unpriced_count=sum(1 for r in self._session_records if r.pricing_unavailable),
        )
