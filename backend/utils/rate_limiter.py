"""Rate limiting for outbound SMS - fixed windows (minute / hour / day) in the shared store."""
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
import logging

from cache import CacheStore
from config import Settings
from models import SMSPriority, utc_now
from services.sms_errors import RateLimitExceeded

logger = logging.getLogger(__name__)

MINUTE_TTL = 60
HOUR_TTL = 3600
DAY_TTL = 86400


def _window_keys(now: datetime) -> Dict[str, str]:
    return {
        "day": f"sms:rate:daily:{now.strftime('%Y-%m-%d')}",
        "hour": f"sms:rate:hour:{now.strftime('%Y-%m-%dT%H')}",
        "minute": f"sms:rate:minute:{now.strftime('%Y-%m-%dT%H:%M')}",
    }


def _seconds_until_reset(now: datetime, window: str) -> int:
    if window == "minute":
        reset = now.replace(second=0, microsecond=0) + timedelta(minutes=1)
    elif window == "hour":
        reset = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    else:
        reset = now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
    return max(1, int((reset - now).total_seconds()))


class SMSRateLimiter:
    def __init__(
        self,
        cache: CacheStore,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.cache = cache
        self.settings = settings
        self.clock = clock or utc_now

    def _limit_for(self, window: str) -> int:
        return {
            "day": self.settings.daily_limit,
            "hour": self.settings.bulk_per_hour,
            "minute": self.settings.immediate_per_minute,
        }[window]

    async def _hit(self, window: str, key: str, ttl: int, now: datetime) -> None:
        count = await self.cache.incr_with_ttl(key, ttl)
        limit = self._limit_for(window)
        if count > limit:
            retry_after = _seconds_until_reset(now, window)
            logger.warning(f"SMS {window} window exhausted ({count}/{limit}), retry in {retry_after}s")
            raise RateLimitExceeded(window, limit, retry_after)

    async def check(self, priority: str) -> None:
        """
        Count one send against the windows for this priority class.

        The day window applies to every priority; immediate also counts against
        the minute window and bulk against the hour window.

        Raises:
            RateLimitExceeded: when a window's quota is exceeded
        """
        now = self.clock()
        keys = _window_keys(now)
        priority = SMSPriority(priority)

        await self._hit("day", keys["day"], DAY_TTL, now)

        if priority == SMSPriority.IMMEDIATE:
            await self._hit("minute", keys["minute"], MINUTE_TTL, now)
        elif priority == SMSPriority.BULK:
            await self._hit("hour", keys["hour"], HOUR_TTL, now)

    async def get_usage(self) -> Dict[str, Dict[str, int]]:
        """Current counters for the active windows."""
        keys = _window_keys(self.clock())
        usage = {}
        for window, key in keys.items():
            raw = await self.cache.get(key)
            usage[window] = {"used": int(raw or 0), "limit": self._limit_for(window)}
        return usage
