"""
SMS Jobs - periodic workers that drain the priority queues.

    immediate   pop up to 50 from sms:immediate, send, hand failures to the Retry Manager
    standard    same path for sms:high, sms:normal, sms:low (in that order, 50 per run)
    scheduled   send or cancel due scheduled records, plus postponed scheduled retries
    bulk        expand up to 5 campaign entries into per-recipient records, 10 at a time
    delivery    reconcile delivery state with the provider (DeliveryTracker)
    cleanup     drop expired / malformed queue entries and fail their records

Each worker is single-flight through the JobSupervisor. A worker run never
raises: per-item failures are recorded, logged and skipped.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from config import (
    BULK_ENTRIES_PER_RUN,
    CAMPAIGN_BATCH_PAUSE_SECONDS,
    CAMPAIGN_BATCH_SIZE,
    IMMEDIATE_BATCH_SIZE,
    SCHEDULED_BATCH_SIZE,
    STANDARD_BATCH_SIZE,
)
from models import CampaignJob, CampaignRecipient, NotificationRecord, SMSPriority, SMSQueueJob, SMSStatus, utc_now
from services.delivery_tracker import DeliveryTracker
from services.entity_lookup import EntityLookup
from services.job_supervisor import JobSupervisor
from services.notification_store import NotificationStore
from services.retry_manager import RetryManager
from services.sms_errors import RateLimitExceeded, SMSDispatchError
from services.sms_provider import mask_phone
from services.sms_queue import SMSQueues
from services.sms_service import SMSDispatchService, validate_message
from services.sms_templates import recipient_variables, render
from utils.rate_limiter import SMSRateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

STANDARD_PRIORITIES = [SMSPriority.HIGH.value, SMSPriority.NORMAL.value, SMSPriority.LOW.value]
EXPIRED_REASON = "expired in queue"


def chunk_recipients(items: Sequence[T], size: int) -> List[List[T]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _first(metadata: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        if metadata.get(key):
            return str(metadata[key])
    return None


class SMSJobs:
    def __init__(
        self,
        service: SMSDispatchService,
        store: NotificationStore,
        queues: SMSQueues,
        retry_manager: RetryManager,
        rate_limiter: SMSRateLimiter,
        entities: EntityLookup,
        tracker: DeliveryTracker,
        supervisor: Optional[JobSupervisor] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.service = service
        self.store = store
        self.queues = queues
        self.retry_manager = retry_manager
        self.rate_limiter = rate_limiter
        self.entities = entities
        self.tracker = tracker
        self.supervisor = supervisor or JobSupervisor()
        self.clock = clock or utc_now
        self.sleep = sleep

    # ---- public worker entry points (single-flight) ---------------------

    async def process_immediate_queue(self) -> Dict[str, Any]:
        return await self._exclusive("immediate", self._process_immediate)

    async def process_standard_queues(self) -> Dict[str, Any]:
        return await self._exclusive("standard", self._process_standard)

    async def process_scheduled(self) -> Dict[str, Any]:
        return await self._exclusive("scheduled", self._process_scheduled)

    async def process_bulk_queue(self) -> Dict[str, Any]:
        return await self._exclusive("bulk", self._process_bulk)

    async def track_delivery_status(self) -> Dict[str, Any]:
        return await self._exclusive("delivery", self.tracker.track_delivery_status)

    async def cleanup_queues(self) -> Dict[str, Any]:
        return await self._exclusive("cleanup", self._cleanup)

    async def _exclusive(self, name: str, fn: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        async def guarded() -> Dict[str, Any]:
            try:
                return await fn()
            except Exception as e:
                logger.error(f"SMS {name} job failed: {e}", exc_info=True)
                return {"error": str(e)}

        result = await self.supervisor.run_exclusive(name, guarded)
        if result is None:
            return {"skipped": True}
        return result

    # ---- queue drains ---------------------------------------------------

    async def _process_immediate(self) -> Dict[str, Any]:
        logger.info("Starting immediate SMS processing job")
        stats = self._new_stats()
        await self._drain(SMSPriority.IMMEDIATE.value, IMMEDIATE_BATCH_SIZE, stats)
        logger.info(f"Immediate SMS processing completed: {stats}")
        return stats

    async def _process_standard(self) -> Dict[str, Any]:
        logger.info("Starting standard SMS queue processing job")
        stats = self._new_stats()
        budget = STANDARD_BATCH_SIZE
        for priority in STANDARD_PRIORITIES:
            if budget <= 0:
                break
            budget -= await self._drain(priority, budget, stats)
        logger.info(f"Standard SMS queue processing completed: {stats}")
        return stats

    @staticmethod
    def _new_stats() -> Dict[str, int]:
        return {"processed": 0, "successful": 0, "failed": 0, "retried": 0, "expired": 0, "skipped": 0, "malformed": 0}

    async def _drain(self, priority: str, batch_size: int, stats: Dict[str, int]) -> int:
        """Reclaim due retries, then pop and send up to batch_size jobs. Returns entries popped."""
        await self.queues.reclaim_due_retries(priority)
        jobs, dropped = await self.queues.pop_batch(priority, batch_size)
        stats["malformed"] += dropped

        for job in jobs:
            stats["processed"] += 1
            if isinstance(job, CampaignJob):
                # Campaigns belong on sms:bulk only
                logger.warning(f"Dropped campaign {job.campaign_id} found on sms:{priority}")
                stats["malformed"] += 1
                continue
            try:
                outcome = await self._process_job(job)
                stats[outcome] += 1
            except SMSDispatchError as e:
                stats["failed"] += 1
                logger.error(f"SMS job {job.record_id} error: {e}")
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"Unexpected SMS job error for {job.record_id}: {e}", exc_info=True)
        return len(jobs) + dropped

    async def _process_job(self, job: SMSQueueJob) -> str:
        """Send one queued job. Returns the stats bucket it lands in."""
        if job.is_expired(self.clock()):
            await self._expire_job(job)
            return "expired"

        record = await self.store.transition(job.record_id, SMSStatus.QUEUED, SMSStatus.PROCESSING)
        if record is None:
            return "skipped"

        outcome = await self.service.send_record(record, bulk=job.priority == SMSPriority.BULK.value)
        if outcome.success:
            return "successful"

        decision = await self.retry_manager.should_retry(job, outcome.error or "send failed")
        return "retried" if decision.should_retry else "failed"

    async def _expire_job(self, job: SMSQueueJob) -> None:
        await self.store.transition(
            job.record_id,
            SMSStatus.QUEUED,
            SMSStatus.FAILED,
            {"failure_reason": EXPIRED_REASON, "failed_at": self.clock()},
        )
        logger.warning(f"SMS {job.record_id} {EXPIRED_REASON}")

    # ---- scheduled sweep ------------------------------------------------

    async def _process_scheduled(self) -> Dict[str, Any]:
        logger.info("Starting scheduled SMS processing job")
        stats = {"processed": 0, "successful": 0, "failed": 0, "postponed": 0, "cancelled": 0, "skipped": 0}
        now = self.clock()

        due = await self.store.find_due_scheduled(now, SCHEDULED_BATCH_SIZE)
        retries: List[NotificationRecord] = []
        if len(due) < SCHEDULED_BATCH_SIZE:
            retries = await self.store.find_retry_due_scheduled(now, SCHEDULED_BATCH_SIZE - len(due))

        work: List[Tuple[NotificationRecord, str]] = [(r, SMSStatus.SCHEDULED.value) for r in due]
        work += [(r, SMSStatus.FAILED.value) for r in retries]

        for record, current in work:
            stats["processed"] += 1
            try:
                outcome = await self._sweep_record(record, current)
                stats[outcome] += 1
            except SMSDispatchError as e:
                stats["failed"] += 1
                logger.error(f"Scheduled SMS processing error for {record.record_id}: {e}")
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"Unexpected scheduled SMS error for {record.record_id}: {e}", exc_info=True)

        logger.info(f"Scheduled SMS processing completed: {stats}")
        return stats

    async def _sweep_record(self, record: NotificationRecord, current: str) -> str:
        if current == SMSStatus.FAILED.value:
            # Postponed retry: failed -> queued before it can be processed again
            record = await self.store.transition(
                record.record_id,
                SMSStatus.FAILED,
                SMSStatus.QUEUED,
                {"queued_at": self.clock(), "next_retry_at": None},
            )
            if record is None:
                return "skipped"
            current = SMSStatus.QUEUED.value

        valid, reason = await self.validate_scheduled_message(record)
        if not valid:
            await self.store.transition(
                record.record_id,
                current,
                SMSStatus.CANCELLED,
                {"failure_reason": reason, "cancelled_at": self.clock()},
            )
            logger.info(f"Scheduled SMS {record.record_id} cancelled: {reason}")
            return "cancelled"

        processing = await self.store.transition(record.record_id, current, SMSStatus.PROCESSING)
        if processing is None:
            return "skipped"

        outcome = await self.service.send_record(processing)
        if outcome.success:
            return "successful"

        decision = await self.retry_manager.schedule_record_retry(outcome.record, outcome.error or "send failed")
        return "postponed" if decision.should_retry else "failed"

    async def validate_scheduled_message(self, record: NotificationRecord) -> Tuple[bool, Optional[str]]:
        """Revalidate a due scheduled message before sending it."""
        metadata = record.metadata or {}

        event_id = _first(metadata, "event_id", "eventId")
        if event_id and not await self.entities.event_is_active(event_id):
            return False, "Associated event cancelled or deleted"

        user_id = _first(metadata, "user_id", "userId")
        if user_id and not await self.entities.user_is_active(user_id):
            return False, "Recipient user inactive or deleted"

        duplicate = await self.store.find_recent_duplicate(
            record.phone, record.message, self.clock(), exclude_record_id=record.record_id
        )
        if duplicate:
            return False, "Duplicate message sent recently"

        return True, None

    # ---- bulk campaigns -------------------------------------------------

    async def _process_bulk(self) -> Dict[str, Any]:
        logger.info("Starting bulk SMS processing job")
        stats = {"campaigns": 0, "processed": 0, "successful": 0, "failed": 0, "deferred": 0,
                 "retried": 0, "expired": 0, "skipped": 0, "malformed": 0}

        await self.queues.reclaim_due_retries(SMSPriority.BULK.value)
        entries, dropped = await self.queues.pop_batch(SMSPriority.BULK.value, BULK_ENTRIES_PER_RUN)
        stats["malformed"] += dropped

        for entry in entries:
            try:
                if isinstance(entry, SMSQueueJob):
                    stats["processed"] += 1
                    stats[await self._process_job(entry)] += 1
                    continue

                if entry.is_expired(self.clock()):
                    stats["expired"] += 1
                    logger.warning(f"Bulk campaign {entry.campaign_id} {EXPIRED_REASON}, dropped")
                    continue

                stats["campaigns"] += 1
                result = await self.process_campaign(entry)
                for key in ("processed", "successful", "failed", "deferred", "retried"):
                    stats[key] += result[key]
            except SMSDispatchError as e:
                stats["failed"] += 1
                logger.error(f"Bulk SMS entry error: {e}")
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"Unexpected bulk SMS entry error: {e}", exc_info=True)

        logger.info(f"Bulk SMS processing completed: {stats}")
        return stats

    async def process_campaign(self, campaign: CampaignJob) -> Dict[str, int]:
        """
        Fan a campaign out to its recipients, 10 concurrent sends per batch with
        a pause between batches.

        Recipients refused by the bulk rate limit are pushed back as a new entry
        with the same campaign_id and the rest of the campaign waits for the next run.
        """
        stats = {"processed": 0, "successful": 0, "failed": 0, "deferred": 0, "retried": 0}
        total = len(campaign.recipients)
        batches = chunk_recipients(campaign.recipients, CAMPAIGN_BATCH_SIZE)

        for index, batch in enumerate(batches):
            outcomes = await asyncio.gather(
                *(self._send_campaign_recipient(campaign, recipient, total) for recipient in batch)
            )

            deferred = [r for r, outcome in zip(batch, outcomes) if outcome == "deferred"]
            for outcome in outcomes:
                if outcome != "deferred":
                    stats["processed"] += 1
                    stats[outcome] += 1

            if deferred:
                remaining = deferred + [r for later in batches[index + 1:] for r in later]
                await self.queues.enqueue(campaign.model_copy(update={"recipients": remaining}))
                stats["deferred"] = len(remaining)
                logger.warning(
                    f"Bulk campaign {campaign.campaign_id}: rate limit reached, "
                    f"{len(remaining)} recipient(s) deferred to next run"
                )
                break

            if index < len(batches) - 1:
                await self.sleep(CAMPAIGN_BATCH_PAUSE_SECONDS)

        try:
            await self.store.save_campaign_summary(campaign.campaign_id, stats)
        except SMSDispatchError as e:
            logger.error(f"Could not save summary for campaign {campaign.campaign_id}: {e}")

        logger.info(f"Bulk campaign {campaign.campaign_id} processed: {stats}")
        return stats

    async def _send_campaign_recipient(self, campaign: CampaignJob, recipient: CampaignRecipient, total: int) -> str:
        """Returns 'successful', 'retried', 'failed' or 'deferred'."""
        try:
            await self.rate_limiter.check(SMSPriority.BULK.value)
        except RateLimitExceeded:
            return "deferred"

        try:
            variables = recipient_variables(recipient.first_name, recipient.last_name, recipient.variables)
            message = validate_message(render(campaign.message, variables))
            record = self.service.build_record(
                recipient.phone,
                message,
                SMSPriority.BULK.value,
                template_name=campaign.template_name,
                variables=variables,
                metadata={
                    **campaign.metadata,
                    "campaign_id": campaign.campaign_id,
                    "recipient_id": recipient.recipient_id,
                },
                recipient_count=total,
            )
            await self.store.insert(record)
            processing = await self.store.transition(record.record_id, SMSStatus.PENDING, SMSStatus.PROCESSING)
            if processing is None:
                return "failed"

            outcome = await self.service.send_record(processing, bulk=True)
            if outcome.success:
                return "successful"

            decision = await self.retry_manager.should_retry(
                self.service.build_job(outcome.record), outcome.error or "send failed"
            )
            return "retried" if decision.should_retry else "failed"
        except SMSDispatchError as e:
            logger.error(f"Bulk SMS error for {mask_phone(recipient.phone)}: {e}")
            return "failed"
        except Exception as e:
            logger.error(f"Unexpected bulk SMS error for {mask_phone(recipient.phone)}: {e}", exc_info=True)
            return "failed"

    # ---- cleanup --------------------------------------------------------

    async def _cleanup(self) -> Dict[str, Any]:
        logger.info("Starting SMS queue cleanup job")
        stats = {"expired": 0, "malformed": 0, "records_failed": 0}

        for key in self.queues.all_keys():
            try:
                expired, malformed = await self.queues.purge(key)
            except SMSDispatchError as e:
                logger.error(f"Queue cleanup failed for {key}: {e}")
                continue
            stats["malformed"] += malformed
            stats["expired"] += len(expired)

            for job in expired:
                if isinstance(job, CampaignJob):
                    logger.warning(f"Bulk campaign {job.campaign_id} {EXPIRED_REASON}, dropped")
                    continue
                try:
                    if await self.store.transition(
                        job.record_id,
                        SMSStatus.QUEUED,
                        SMSStatus.FAILED,
                        {"failure_reason": EXPIRED_REASON, "failed_at": self.clock()},
                    ):
                        stats["records_failed"] += 1
                except SMSDispatchError as e:
                    logger.error(f"Could not fail expired SMS {job.record_id}: {e}")

        logger.info(f"SMS queue cleanup completed: {stats}")
        return stats
