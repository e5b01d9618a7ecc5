"""
Tests for daily limit checks.
"""

import pytest

from media_guard.config.loader import DailyLimits
from media_guard.core.limits import (
    LimitCheckResult,
    UsageLimitError,
    calculate_percent,
    check_limits,
)
from media_guard.storage.models import DailyUsageState, ResourceType


class TestCheckLimits:
    """Test the pure limit check."""

    def create_state(self, **counters):
        return DailyUsageState(date="2026-01-15", **counters)

    def test_no_limits_allows(self):
        result = check_limits(self.create_state(images=1000), DailyLimits(), ResourceType.IMAGE)
        assert result == LimitCheckResult(allowed=True)

    def test_under_warning_threshold(self):
        result = check_limits(self.create_state(images=5), DailyLimits(images=10), ResourceType.IMAGE)
        assert result.allowed
        assert not result.is_warning

    def test_warning_at_80_percent(self):
        result = check_limits(self.create_state(images=8), DailyLimits(images=10), ResourceType.IMAGE)
        assert result.allowed
        assert result.is_warning
        assert result.percent == 80
        assert result.limit_type == "images"

    def test_blocked_at_limit(self):
        result = check_limits(self.create_state(images=2), DailyLimits(images=2), ResourceType.IMAGE)
        assert result == LimitCheckResult(
            allowed=False, limit_type="images", current=2, limit=2, percent=100
        )

    def test_zero_limit_blocks(self):
        result = check_limits(self.create_state(), DailyLimits(videos=0), ResourceType.VIDEO)
        assert not result.allowed
        assert result.limit_type == "videos"

    def test_zero_cost_limit_blocks(self):
        result = check_limits(self.create_state(), DailyLimits(total_cost=0), ResourceType.IMAGE)
        assert not result.allowed
        assert result.limit_type == "total_cost"

    def test_other_resource_limit_is_ignored(self):
        result = check_limits(self.create_state(images=100), DailyLimits(images=10), ResourceType.VIDEO)
        assert result.allowed

    def test_audio_adds_pending_duration(self):
        state = self.create_state(speech_minutes=9.0)
        limits = DailyLimits(speech_minutes=10)

        assert check_limits(state, limits, ResourceType.SPEECH, duration_seconds=60).allowed
        blocked = check_limits(state, limits, ResourceType.SPEECH, duration_seconds=90)
        assert not blocked.allowed
        assert blocked.limit_type == "speech_minutes"

    def test_audio_default_duration_is_30_seconds(self):
        state = self.create_state(music_minutes=9.6)
        result = check_limits(state, DailyLimits(music_minutes=10), ResourceType.MUSIC)
        assert not result.allowed

    def test_cost_includes_estimate(self):
        state = self.create_state(total_cost=0.75)
        limits = DailyLimits(total_cost=1.0)

        blocked = check_limits(state, limits, ResourceType.VIDEO, estimated_cost=0.5)
        assert not blocked.allowed
        assert blocked.current == 0.75
        assert blocked.limit == 1.0

        # 75% used and the next charge fits
        assert check_limits(state, limits, ResourceType.VIDEO, estimated_cost=0.2) == LimitCheckResult(allowed=True)

    def test_block_wins_over_warning(self):
        state = self.create_state(images=8, total_cost=1.0)
        limits = DailyLimits(images=10, total_cost=1.0)

        result = check_limits(state, limits, ResourceType.IMAGE)

        assert not result.allowed
        assert result.limit_type == "total_cost"


class TestPercent:

    def test_rounds_half_up(self):
        assert calculate_percent(1, 8) == 13
        assert calculate_percent(8, 10) == 80

    def test_zero_limit(self):
        assert calculate_percent(0, 0) == 100


class TestUsageLimitError:
    """Test the structured limit error."""

    def test_properties(self):
        error = UsageLimitError("images", 10, 10)
        assert error.limit_type == "images"
        assert error.current == 10
        assert error.limit == 10
        assert str(error) == "Daily limit exceeded for images"

    def test_to_dict_for_agents(self):
        data = UsageLimitError("images", 10, 10).to_dict()
        assert data["error"] == "USAGE_LIMIT_EXCEEDED"
        assert data["limit_type"] == "images"
        assert data["hint"] == "To increase: export MEDIA_GUARD_DAILY_LIMIT_IMAGES=20"

    def test_cost_hint_uses_cost_variable(self):
        data = UsageLimitError("total_cost", 0.9, 1.5).to_dict()
        assert data["hint"] == "To increase: export MEDIA_GUARD_DAILY_LIMIT_COST=3"

    def test_raises_as_exception(self):
        with pytest.raises(UsageLimitError):
            raise UsageLimitError("videos", 5, 5)
