"""
Daily limit checks.

Compares the current day's counters against configured ceilings and returns
a discriminated result: allowed, allowed with a warning, or blocked.

Check order:
1. The counter of the requested resource type (images, videos, speech or
   music minutes)
2. Total cost, including the estimated cost of the pending generation

A block from either check wins over a warning from the other.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from media_guard.config.loader import ENV_PREFIX, LIMIT_ENV, DailyLimits
from media_guard.storage.models import DailyUsageState, ResourceType

WARNING_PERCENT = 80
DEFAULT_AUDIO_SECONDS = 30

# resource type -> (limit / counter name on DailyLimits and DailyUsageState)
_RESOURCE_LIMITS = {
    ResourceType.IMAGE: "images",
    ResourceType.VIDEO: "videos",
    ResourceType.SPEECH: "speech_minutes",
    ResourceType.MUSIC: "music_minutes",
}

_AUDIO_TYPES = (ResourceType.SPEECH, ResourceType.MUSIC)


class UsageLimitError(Exception):
    """Raised when a generation would exceed a daily limit."""

    def __init__(self, limit_type: str, current: float, limit: float):
        self.limit_type = limit_type
        self.current = current
        self.limit = limit
        super().__init__(f"Daily limit exceeded for {limit_type}")

    def to_dict(self) -> Dict[str, Any]:
        """Machine-readable form with a remediation hint."""
        suffix = LIMIT_ENV[self.limit_type][0] if self.limit_type in LIMIT_ENV else self.limit_type.upper()
        suggested = self.limit * 2 if self.limit else 1
        return {
            "error": "USAGE_LIMIT_EXCEEDED",
            "limit_type": self.limit_type,
            "current": self.current,
            "limit": self.limit,
            "message": str(self),
            "hint": f"To increase: export {ENV_PREFIX}{suffix}={suggested:g}",
        }


@dataclass(frozen=True)
class LimitCheckResult:
    """Outcome of a limit check."""
    allowed: bool
    limit_type: Optional[str] = None
    current: Optional[float] = None
    limit: Optional[float] = None
    percent: Optional[int] = None
    is_warning: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"allowed": self.allowed}
        if self.limit_type is not None:
            data.update(
                limit_type=self.limit_type,
                current=self.current,
                limit=self.limit,
                percent=self.percent,
            )
        if self.is_warning:
            data["is_warning"] = True
        return data


ALLOWED = LimitCheckResult(allowed=True)


def calculate_percent(current: float, limit: float) -> int:
    """Usage as a whole percentage of the limit, rounded half up."""
    if limit <= 0:
        return 100
    return int(math.floor(current / limit * 100 + 0.5))


def _evaluate(limit_type: str, current: float, limit: float, incoming: float) -> LimitCheckResult:
    """Evaluate one counter.

    Blocks once the counter has reached the limit, or when the incoming
    amount would push it past the limit.
    """
    percent = calculate_percent(current, limit)
    if current >= limit or current + incoming > limit:
        return LimitCheckResult(
            allowed=False,
            limit_type=limit_type,
            current=current,
            limit=limit,
            percent=percent,
        )
    if percent >= WARNING_PERCENT:
        return LimitCheckResult(
            allowed=True,
            limit_type=limit_type,
            current=current,
            limit=limit,
            percent=percent,
            is_warning=True,
        )
    return ALLOWED


def check_limits(
    state: DailyUsageState,
    limits: DailyLimits,
    resource_type: ResourceType,
    estimated_cost: float = 0,
    duration_seconds: Optional[float] = None
) -> LimitCheckResult:
    """
    Check whether one more generation of a resource type is within limits.

    Args:
        state: Current day's usage
        limits: Configured ceilings
        resource_type: Type of the pending generation
        estimated_cost: Expected cost of the pending generation
        duration_seconds: Expected audio length (defaults to 30 seconds)

    Returns:
        LimitCheckResult: blocked, warning, or plain allowed
    """
    results = []

    name = _RESOURCE_LIMITS[ResourceType(resource_type)]
    limit = getattr(limits, name)
    if limit is not None:
        if resource_type in _AUDIO_TYPES:
            seconds = DEFAULT_AUDIO_SECONDS if duration_seconds is None else duration_seconds
            results.append(_evaluate(name, getattr(state, name), limit, seconds / 60))
        else:
            results.append(_evaluate(name, getattr(state, name), limit, 0))

    if limits.total_cost is not None:
        results.append(
            _evaluate("total_cost", state.total_cost, limits.total_cost, estimated_cost)
        )

    for result in results:
        if not result.allowed:
            return result
    for result in results:
        if result.is_warning:
            return result
    return ALLOWED
