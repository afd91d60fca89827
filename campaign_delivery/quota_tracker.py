# filename: quota_tracker.py

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable, Optional

from .config import DeliverySettings
from .utils.time_utils import utc_now, window_start

logger = logging.getLogger(__name__)


@dataclass
class QuotaCheck:
    can_send_now: bool
    remaining: int
    window_reset_at: datetime
    used: int = 0


@dataclass
class QuotaStatus:
    remaining: int
    used: int
    max_per_hour: int
    reset_time: datetime
    window_size_seconds: int
    batch_size: int
    batch_interval_seconds: int

    def to_dict(self) -> dict:
        return {
            'remaining': self.remaining,
            'used': self.used,
            'max_per_hour': self.max_per_hour,
            'reset_time': self.reset_time.isoformat(),
            'window_size_seconds': self.window_size_seconds,
            'batch_size': self.batch_size,
            'batch_interval_seconds': self.batch_interval_seconds,
        }


class QuotaTracker:
    """
    Global send capacity over a trailing window, computed from stored
    sent_at stamps on every call. Nothing is cached in the process, so
    several workers see the same numbers; the check is read-then-act and
    concurrent workers can overrun the cap slightly.
    """

    def __init__(self, store, settings: DeliverySettings,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.settings = settings
        self.clock = clock

    @property
    def cap(self) -> int:
        return self.settings.hourly_cap

    def _reset_time(self, now: datetime) -> datetime:
        # end of the trailing window that started window_seconds ago
        return window_start(now, self.settings.window_seconds) + timedelta(seconds=self.settings.window_seconds)

    def used_in_window(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        return self.store.count_sent_since(window_start(now, self.settings.window_seconds))

    def check_quota(self, requested_count: int) -> QuotaCheck:
        now = self.clock()
        try:
            used = self.used_in_window(now)
        except Exception as e:
            logger.error(f"Error checking global send quota, allowing send: {str(e)}")
            return QuotaCheck(
                can_send_now=True,
                remaining=self.cap,
                window_reset_at=now + timedelta(seconds=self.settings.window_seconds),
            )

        remaining = max(0, self.cap - used)
        return QuotaCheck(
            can_send_now=remaining >= requested_count,
            remaining=remaining,
            window_reset_at=self._reset_time(now),
            used=used,
        )

    def get_quota_status(self) -> QuotaStatus:
        check = self.check_quota(0)
        return QuotaStatus(
            remaining=check.remaining,
            used=check.used,
            max_per_hour=self.cap,
            reset_time=check.window_reset_at,
            window_size_seconds=self.settings.window_seconds,
            batch_size=self.settings.batch_size,
            batch_interval_seconds=self.settings.batch_interval_seconds,
        )

    def check_user_quota(self, user_id: Optional[str]) -> bool:
        """True while the admin has created fewer campaigns than allowed in the window"""
        if not user_id:
            return True
        now = self.clock()
        try:
            created = self.store.count_campaigns_by_user_since(
                user_id, window_start(now, self.settings.window_seconds)
            )
        except Exception as e:
            logger.error(f"Error checking campaign quota for user {user_id}, allowing: {str(e)}")
            return True
        return created < self.settings.max_campaigns_per_user_window
