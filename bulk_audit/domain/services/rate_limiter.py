"""
Campaign Rate Limiter
Caps job starts per campaign within a rolling one-minute window
"""
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class CampaignRateLimiter:
    """
    Sliding-log limiter: remembers the start time of each of the last `rpm`
    dispatches per campaign.

    A start is allowed when fewer than `rpm` starts fall inside the last
    60 seconds, so no rolling window ever holds more than `rpm` starts.
    The limiter never drops work; callers wait or skip the tick.
    """

    WINDOW = timedelta(seconds=60)

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self._clock = clock
        self._starts: Dict[str, Deque[datetime]] = {}  # campaign_id -> start times

    def _prune(self, campaign_id: str, now: datetime) -> Deque[datetime]:
        starts = self._starts.setdefault(campaign_id, deque())
        while starts and now - starts[0] >= self.WINDOW:
            starts.popleft()
        return starts

    def seed(self, campaign_id: str, starts: Iterable[datetime]) -> None:
        """
        Restore a campaign's window from persisted usage.

        Ignored once the limiter already tracks the campaign.
        """
        if campaign_id in self._starts:
            return
        self._starts[campaign_id] = deque(sorted(starts))

    def check(self, campaign_id: str, rpm: int) -> Tuple[bool, float]:
        """
        Check whether a job may start now.

        Args:
            campaign_id: Campaign asking for a slot
            rpm: Effective jobs-per-minute limit (>= 1)

        Returns:
            (allowed, seconds_until_next_slot)
        """
        now = self._clock()
        starts = self._prune(campaign_id, now)

        if len(starts) < rpm:
            return True, 0.0

        # The oldest start inside the window has to age out first
        oldest = starts[len(starts) - rpm]
        wait = (oldest + self.WINDOW - now).total_seconds()
        logger.debug(f"Rate limit reached for campaign {campaign_id}: {len(starts)}/{rpm}, wait {wait:.1f}s")
        return False, max(0.0, wait)

    def register_start(self, campaign_id: str, rpm: Optional[int] = None) -> datetime:
        """Record a dispatch. Returns the recorded timestamp."""
        now = self._clock()
        starts = self._prune(campaign_id, now)
        starts.append(now)
        if rpm is not None:
            while len(starts) > rpm:
                starts.popleft()
        return now

    def recent_starts(self, campaign_id: str) -> List[datetime]:
        """Starts still inside the window, oldest first (for persistence)"""
        return list(self._prune(campaign_id, self._clock()))

    def get_start_count(self, campaign_id: str) -> int:
        """Starts inside the current window"""
        return len(self._prune(campaign_id, self._clock()))

    def tracked(self) -> Set[str]:
        """Campaigns with a window held in memory"""
        return set(self._starts)

    def forget(self, campaign_id: str) -> None:
        """Drop tracking for a finished campaign."""
        self._starts.pop(campaign_id, None)

    def reset(self) -> None:
        """Reset all windows (for testing)."""
        self._starts.clear()
