"""
Retry Manager - the single place that decides whether a failed send is retried.

Bounded attempts with exponential backoff: 2^retry_count minutes (1, 2, 4),
computed before the count is incremented. Queue jobs are parked on their retry
queue and reclaimed by the owning worker once due; scheduled records stay
failed with next_retry_at set and are picked up again by the sweeper.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import Settings
from models import NotificationRecord, SMSQueueJob, SMSStatus, ensure_utc, utc_now
from services.notification_store import NotificationStore
from services.sms_queue import SMSQueues

logger = logging.getLogger(__name__)

MAX_RETRIES_REASON = "max retries exceeded"

# Which path owns a pending retry; the sweeper only picks up its own
RETRY_VIA_QUEUE = "queue"
RETRY_VIA_SWEEP = "sweep"


def backoff_delay(retry_count: int) -> timedelta:
    return timedelta(minutes=2 ** retry_count)


@dataclass
class RetryDecision:
    should_retry: bool
    reason: str
    retry_count: int
    next_retry_at: Optional[datetime] = None


class RetryManager:
    def __init__(
        self,
        store: NotificationStore,
        queues: SMSQueues,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.queues = queues
        self.max_retries = settings.max_retries
        self.clock = clock or utc_now

    async def should_retry(self, job: SMSQueueJob, reason: str) -> RetryDecision:
        """
        Decide on a failed queue job whose record is already `failed`.

        On retry the record moves failed -> queued with the new retry state and
        the job is parked on its retry queue until next_retry_at.
        """
        if job.retry_count >= self.max_retries:
            await self.store.update(job.record_id, {"next_retry_at": None})
            logger.warning(f"SMS {job.record_id} not retried: {MAX_RETRIES_REASON} ({reason})")
            return RetryDecision(False, MAX_RETRIES_REASON, job.retry_count)

        delay = backoff_delay(job.retry_count)
        next_retry_at = self.clock() + delay
        retry_count = job.retry_count + 1

        moved = await self.store.transition(
            job.record_id,
            SMSStatus.FAILED,
            SMSStatus.QUEUED,
            {
                "retry_count": retry_count,
                "next_retry_at": next_retry_at,
                "retry_via": RETRY_VIA_QUEUE,
                "queued_at": self.clock(),
            },
        )
        if moved is None:
            return RetryDecision(False, "record no longer failed", job.retry_count)

        retry_job = job.model_copy(update={
            "retry_count": retry_count,
            "next_retry_at": next_retry_at,
            "expires_at": max(ensure_utc(job.expires_at), next_retry_at + delay),
        })
        await self.queues.push_retry(retry_job, int(delay.total_seconds()))
        logger.info(
            f"SMS {job.record_id} retry {retry_count}/{self.max_retries} at {next_retry_at.isoformat()} ({reason})"
        )
        return RetryDecision(True, reason, retry_count, next_retry_at)

    async def schedule_record_retry(self, record: NotificationRecord, reason: str) -> RetryDecision:
        """Postpone a failed scheduled record; it stays `failed` until the sweeper picks it up."""
        if record.retry_count >= min(record.max_retries, self.max_retries):
            await self.store.update(record.record_id, {"next_retry_at": None})
            logger.warning(f"Scheduled SMS {record.record_id} not retried: {MAX_RETRIES_REASON} ({reason})")
            return RetryDecision(False, MAX_RETRIES_REASON, record.retry_count)

        delay = backoff_delay(record.retry_count)
        next_retry_at = self.clock() + delay
        retry_count = record.retry_count + 1
        await self.store.update(
            record.record_id,
            {"retry_count": retry_count, "next_retry_at": next_retry_at, "retry_via": RETRY_VIA_SWEEP},
        )
        logger.info(f"Scheduled SMS {record.record_id} postponed to {next_retry_at.isoformat()} ({reason})")
        return RetryDecision(True, reason, retry_count, next_retry_at)
