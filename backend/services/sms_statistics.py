"""Rolling daily SMS statistics kept in the shared store (one hash per UTC day, 30-day retention)."""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from cache import CacheStore
from config import STATS_RETENTION_SECONDS
from models import SMSPriority, utc_now

logger = logging.getLogger(__name__)

TRACKED_FIELDS = ("checked", "delivered", "failed", "pending", "total_sent")


def stats_key(day: datetime) -> str:
    return f"sms:stats:{day.strftime('%Y-%m-%d')}"


class SMSStatistics:
    def __init__(self, cache: CacheStore, clock: Optional[Callable[[], datetime]] = None):
        self.cache = cache
        self.clock = clock or utc_now

    async def record_sent(self, priority: str) -> None:
        """Count one successful provider send for today."""
        key = stats_key(self.clock())
        await self.cache.hincrby(key, f"sent_{SMSPriority(priority).value}", 1)
        await self.cache.hincrby(key, "total_sent", 1)
        await self.cache.expire(key, STATS_RETENTION_SECONDS)

    async def record_delivery(self, stats: Dict[str, int]) -> None:
        """Fold one tracking run's counters into today's totals."""
        key = stats_key(self.clock())
        for field in ("checked", "delivered", "failed", "pending"):
            await self.cache.hincrby(key, field, int(stats.get(field, 0)))
        await self.cache.expire(key, STATS_RETENTION_SECONDS)

    async def get_daily(self, days: int = 7) -> Dict[str, Dict[str, int]]:
        """Per-day counters, newest first, for the last `days` UTC days."""
        today = self.clock()
        result = {}
        for offset in range(max(days, 0)):
            day = today - timedelta(days=offset)
            raw = await self.cache.hgetall(stats_key(day))
            result[day.strftime("%Y-%m-%d")] = {
                field: int(raw.get(field, 0) or 0) for field in TRACKED_FIELDS
            }
        return result
