"""
Repository pattern for usage data.

Stores one JSON document per calendar partition under a usage directory.
"""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Tuple, Union

from media_guard.config.loader import DEFAULT_USAGE_DIR

from .files import read_json, write_json
from .models import DailyUsageState

logger = logging.getLogger(__name__)


def get_today_date(reset_hour_utc: int = 0, now: Optional[datetime] = None) -> str:
    """Get the usage partition date for the current moment.

    The day boundary is shifted by ``reset_hour_utc``: before that hour (UTC)
    usage still belongs to the previous calendar date.

    Args:
        reset_hour_utc: Hour (0-23) when the usage day resets
        now: Override for the current time (naive values are taken as UTC)

    Returns:
        Date string in YYYY-MM-DD format
    """
    current = _as_utc(now)
    adjusted = current - timedelta(hours=reset_hour_utc)
    return adjusted.date().isoformat()


def get_time_until_reset(
    reset_hour_utc: int = 0,
    now: Optional[datetime] = None
) -> Tuple[int, int]:
    """Get hours and minutes until the next usage reset."""
    current = _as_utc(now)
    reset_time = current.replace(hour=reset_hour_utc, minute=0, second=0, microsecond=0)
    if current >= reset_time:
        reset_time += timedelta(days=1)

    remaining = int((reset_time - current).total_seconds())
    return remaining // 3600, (remaining % 3600) // 60


def _as_utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


class UsageRepository:
    """Repository for daily usage documents.

    Each partition is stored as ``<usage_dir>/<YYYY-MM-DD>.json`` holding the
    full DailyUsageState.
    """

    def __init__(self, usage_dir: Union[str, Path] = DEFAULT_USAGE_DIR):
        """Initialize the repository.

        Args:
            usage_dir: Directory holding one document per date
        """
        self.usage_dir = Path(usage_dir)

    def _path_for(self, date: str) -> Path:
        return self.usage_dir / f"{date}.json"

    def load_daily_usage(self, date: str) -> DailyUsageState:
        """Load the usage state for a date.

        A missing document yields an empty state. A corrupt document is
        logged and also yields an empty state, so accounting can continue.

        Args:
            date: Date string in YYYY-MM-DD format

        Returns:
            DailyUsageState for the date
        """
        path = self._path_for(date)
        try:
            document = read_json(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable usage file {path}, starting fresh: {e}")
            return DailyUsageState(date=date)

        if document is None:
            return DailyUsageState(date=date)

        try:
            return DailyUsageState.from_dict(document)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed usage file {path}, starting fresh: {e}")
            return DailyUsageState(date=date)

    def save_daily_usage(self, state: DailyUsageState) -> None:
        """Persist the full state for its date, replacing the previous document."""
        write_json(self._path_for(state.date), state.to_dict())

    def list_usage_dates(self) -> List[str]:
        """List dates that have usage documents, newest first."""
        if not self.usage_dir.is_dir():
            return []

        dates = []
        for path in self.usage_dir.glob("*.json"):
            try:
                datetime.strptime(path.stem, "%Y-%m-%d")
            except ValueError:
                continue
            dates.append(path.stem)
        return sorted(dates, reverse=True)

    def get_usage_history(self, days: int = 7) -> List[DailyUsageState]:
        """Load the most recent ``days`` partitions, newest first."""
        return [self.load_daily_usage(date) for date in self.list_usage_dates()[:days]]
