"""
Priority queues for outbound SMS (Redis lists).

sms:<priority>        FIFO: RPUSH on enqueue, atomic LPOP with count on drain
sms:<priority>:retry  jobs waiting for their backoff to elapse

Every entry is a tagged job document (models.QueueEntry). Entries that fail
schema validation are dropped and counted, never retried.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Union

from cache import CacheStore
from config import QUEUE_TTL_SECONDS, Settings, retry_reclaim_interval_seconds
from models import CampaignJob, SMSPriority, SMSQueueJob, decode_job, encode_job, ensure_utc, utc_now
from services.sms_errors import MalformedJobError

logger = logging.getLogger(__name__)

Job = Union[SMSQueueJob, CampaignJob]

PRIORITIES = [p.value for p in SMSPriority]


def queue_key(priority: str) -> str:
    return f"sms:{SMSPriority(priority).value}"


def retry_key(priority: str) -> str:
    return f"sms:{SMSPriority(priority).value}:retry"


class SMSQueues:
    def __init__(
        self,
        cache: CacheStore,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.cache = cache
        self.settings = settings
        self.clock = clock or utc_now

    async def enqueue(self, job: Job) -> str:
        """Append a job to the tail of its queue. Returns the queue key."""
        priority = SMSPriority.BULK.value if isinstance(job, CampaignJob) else job.priority
        key = queue_key(priority)
        await self.cache.push(key, encode_job(job))
        await self.cache.expire(key, QUEUE_TTL_SECONDS)
        return key

    async def pop_batch(self, priority: str, count: int) -> Tuple[List[Job], int]:
        """
        Pop up to `count` jobs from the head of a queue.

        Returns:
            (jobs in FIFO order, number of malformed entries dropped)
        """
        key = queue_key(priority)
        raw_entries = await self.cache.pop_many(key, count)
        jobs: List[Job] = []
        dropped = 0
        for raw in raw_entries:
            try:
                jobs.append(decode_job(raw))
            except MalformedJobError as e:
                dropped += 1
                logger.warning(f"Dropped malformed entry from {key}: {e}")
        return jobs, dropped

    async def push_retry(self, job: SMSQueueJob, delay_seconds: int) -> str:
        """
        Park a job on its retry queue.

        The key outlives the delay by one run of the worker that reclaims this
        priority plus the reclaim grace, so a due entry is always seen once.
        """
        key = retry_key(job.priority)
        await self.cache.push(key, encode_job(job))
        reclaim_seconds = retry_reclaim_interval_seconds(SMSPriority(job.priority).value)
        ttl = int(delay_seconds) + reclaim_seconds + self.settings.retry_reclaim_grace_seconds
        await self.cache.expire(key, ttl)
        return key

    async def reclaim_due_retries(self, priority: str) -> int:
        """Move retry entries whose backoff has elapsed back onto the main queue."""
        key = retry_key(priority)
        now = self.clock()
        moved = 0
        for raw in await self.cache.list_range(key):
            try:
                job = decode_job(raw)
            except MalformedJobError as e:
                await self.cache.remove(key, raw)
                logger.warning(f"Dropped malformed entry from {key}: {e}")
                continue

            due_at = ensure_utc(getattr(job, "next_retry_at", None))
            if due_at is not None and due_at > now:
                continue
            # Only the caller that actually removed the entry re-enqueues it
            if await self.cache.remove(key, raw) == 1:
                await self.cache.push(queue_key(priority), raw)
                await self.cache.expire(queue_key(priority), QUEUE_TTL_SECONDS)
                moved += 1

        if moved:
            logger.info(f"Reclaimed {moved} due retr{'y' if moved == 1 else 'ies'} from {key}")
        return moved

    async def purge(self, key: str) -> Tuple[List[Job], int]:
        """
        Remove expired and malformed entries from one list.

        Returns:
            (expired jobs removed, malformed entries removed)
        """
        now = self.clock()
        expired: List[Job] = []
        malformed = 0
        for raw in await self.cache.list_range(key):
            try:
                job = decode_job(raw)
            except MalformedJobError:
                malformed += await self.cache.remove(key, raw)
                continue
            if job.is_expired(now) and await self.cache.remove(key, raw) == 1:
                expired.append(job)
        return expired, malformed

    async def sizes(self) -> Dict[str, int]:
        return {p: await self.cache.length(queue_key(p)) for p in PRIORITIES}

    async def retry_sizes(self) -> Dict[str, int]:
        return {p: await self.cache.length(retry_key(p)) for p in PRIORITIES}

    def all_keys(self) -> List[str]:
        return [queue_key(p) for p in PRIORITIES] + [retry_key(p) for p in PRIORITIES]
