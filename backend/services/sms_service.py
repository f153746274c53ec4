"""SMS Dispatch Service - entry point for every outbound SMS.

Validates and prices a request, persists its Notification Record, then either
sends it right away (immediate priority), parks it until its scheduled time,
or pushes a job onto the matching priority queue for the workers.
Bulk requests become a single campaign job that the bulk worker expands.
"""
import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from config import MAX_MESSAGE_LENGTH, QUEUE_TTL_SECONDS, Settings
from models import (
    CampaignJob,
    CampaignRecipient,
    DeliveryMetadata,
    DeliveryStatus,
    NotificationRecord,
    SMSPriority,
    SMSQueueJob,
    SMSStatus,
    ensure_utc,
    utc_now,
)
from services.notification_store import NotificationStore
from services.retry_manager import RetryManager
from services.sms_errors import PersistenceError, ProviderError, ValidationError
from services.sms_provider import SMSProviderClient, mask_phone
from services.sms_queue import SMSQueues
from services.sms_statistics import SMSStatistics
from services.sms_templates import get_template, render
from utils.rate_limiter import SMSRateLimiter

logger = logging.getLogger(__name__)

_PHONE_STRIP = re.compile(r"[\s\-()]")
_INTERNATIONAL = re.compile(r"^\+?[1-9]\d{7,14}$")
_LOCAL = re.compile(r"^0\d{9}$")


# ============================================================================
# PURE HELPERS
# ============================================================================

def format_phone(phone: str, country_code: str = "233") -> Optional[str]:
    """Canonical +<digits> form, or None if the number is not acceptable."""
    if not isinstance(phone, str):
        return None
    cleaned = _PHONE_STRIP.sub("", phone)
    if not (_INTERNATIONAL.match(cleaned) or _LOCAL.match(cleaned)):
        return None
    digits = re.sub(r"\D", "", cleaned)
    if digits.startswith("0"):
        digits = country_code + digits[1:]
    elif len(digits) == 9:
        digits = country_code + digits
    return f"+{digits}"


def calculate_segments(message: str) -> int:
    length = len(message)
    if length <= 160:
        return 1
    if length <= 306:
        return 2
    return math.ceil(length / 153)


def volume_discount(recipient_count: int) -> float:
    if recipient_count > 100:
        return 0.8
    if recipient_count > 50:
        return 0.9
    return 1.0


def calculate_cost(message: str, unit_cost: float, recipient_count: int = 1) -> float:
    """Cost of one message to one recipient, with the volume discount for the batch size."""
    return round(calculate_segments(message) * unit_cost * volume_discount(recipient_count), 4)


def calculate_bulk_cost(message: str, unit_cost: float, recipient_count: int) -> float:
    return round(calculate_cost(message, unit_cost, recipient_count) * recipient_count, 4)


def validate_message(message: Optional[str]) -> str:
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Message cannot be empty", field="message")
    message = message.strip()
    if len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(
            f"Message too long ({len(message)} > {MAX_MESSAGE_LENGTH} characters)", field="message"
        )
    return message


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class SendResult:
    record_id: str
    status: str
    cost: float
    segments: int
    currency: str = "GHS"
    external_id: Optional[str] = None
    queue: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    retry_scheduled_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status != SMSStatus.FAILED.value


@dataclass
class ScheduleResult:
    record_id: str
    scheduled_at: datetime
    cost: float
    segments: int


@dataclass
class BulkResult:
    campaign_id: str
    total_recipients: int
    estimated_cost: float
    estimated_segments: int
    rejected_recipients: List[str] = field(default_factory=list)
    status: str = "queued"


@dataclass
class SendOutcome:
    """What the Immediate Sender did with one record."""
    success: bool
    record: NotificationRecord
    error: Optional[str] = None


# ============================================================================
# SERVICE
# ============================================================================

class SMSDispatchService:
    def __init__(
        self,
        settings: Settings,
        store: NotificationStore,
        queues: SMSQueues,
        rate_limiter: SMSRateLimiter,
        provider: SMSProviderClient,
        retry_manager: RetryManager,
        statistics: SMSStatistics,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.store = store
        self.queues = queues
        self.rate_limiter = rate_limiter
        self.provider = provider
        self.retry_manager = retry_manager
        self.statistics = statistics
        self.clock = clock or utc_now

    # ---- helpers --------------------------------------------------------

    def validate_phone(self, phone: str) -> str:
        formatted = format_phone(phone, self.settings.default_country_code)
        if not formatted:
            raise ValidationError(f"Invalid phone number format: {phone!r}", field="phone")
        return formatted

    def calculate_cost(self, message: str, recipient_count: int = 1) -> float:
        return calculate_cost(message, self.settings.unit_cost, recipient_count)

    def calculate_bulk_cost(self, message: str, recipient_count: int) -> float:
        return calculate_bulk_cost(message, self.settings.unit_cost, recipient_count)

    def build_record(
        self,
        phone: str,
        message: str,
        priority: str,
        *,
        template_name: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        scheduled_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        recipient_count: int = 1,
    ) -> NotificationRecord:
        now = self.clock()
        return NotificationRecord(
            phone=phone,
            message=message,
            template_name=template_name,
            template_variables=dict(variables or {}),
            priority=SMSPriority(priority),
            scheduled_at=scheduled_at,
            provider=self.settings.sms_provider_name,
            segments=calculate_segments(message),
            cost=self.calculate_cost(message, recipient_count),
            currency=self.settings.currency,
            max_retries=self.settings.max_retries,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )

    def build_job(self, record: NotificationRecord) -> SMSQueueJob:
        now = self.clock()
        return SMSQueueJob(
            record_id=record.record_id,
            phone=record.phone,
            message=record.message,
            priority=record.priority,
            enqueued_at=now,
            expires_at=now + timedelta(seconds=QUEUE_TTL_SECONDS),
            retry_count=record.retry_count,
        )

    def _resolve_message(
        self,
        message: Optional[str],
        template_name: Optional[str],
        variables: Optional[Dict[str, Any]],
        priority: Optional[str],
    ) -> Tuple[str, str]:
        if template_name:
            template = get_template(template_name)
            return render(template.body, variables), priority or template.priority.value
        return message, priority or SMSPriority.NORMAL.value

    # ---- router ---------------------------------------------------------

    async def send_sms(
        self,
        phone: str,
        message: Optional[str] = None,
        *,
        template_name: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        priority: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        """
        Send one SMS.

        Immediate priority is sent synchronously and the result reflects the
        provider outcome; everything else is acknowledged as queued/scheduled.

        Raises:
            ValidationError: bad destination, message or priority
            RateLimitExceeded: a send window is exhausted; nothing is persisted
            PersistenceError: the record could not be stored
        """
        text, priority = self._resolve_message(message, template_name, variables, priority)
        text = validate_message(text)
        formatted = self.validate_phone(phone)
        try:
            priority = SMSPriority(priority).value
        except ValueError:
            raise ValidationError(f"Unknown priority: {priority}", field="priority") from None
        scheduled_at = ensure_utc(scheduled_at)

        await self.rate_limiter.check(priority)

        record = self.build_record(
            formatted,
            text,
            priority,
            template_name=template_name,
            variables=variables,
            scheduled_at=scheduled_at,
            metadata=metadata,
        )
        await self.store.insert(record)

        if scheduled_at and scheduled_at > self.clock():
            return await self._schedule(record)
        if priority == SMSPriority.IMMEDIATE.value:
            return await self._send_now(record)
        return await self._enqueue(record)

    async def send_templated_sms(
        self,
        template_name: str,
        phone: str,
        variables: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        priority: Optional[str] = None,
    ) -> SendResult:
        metadata = {**(metadata or {}), "template": template_name}
        return await self.send_sms(
            phone,
            template_name=template_name,
            variables=variables,
            priority=priority,
            metadata=metadata,
        )

    async def schedule_sms(
        self,
        phone: str,
        message: str,
        scheduled_at: datetime,
        *,
        priority: str = SMSPriority.NORMAL.value,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ScheduleResult:
        scheduled_at = ensure_utc(scheduled_at)
        if scheduled_at is None or scheduled_at <= self.clock():
            raise ValidationError("Scheduled time must be in the future", field="scheduled_at")

        result = await self.send_sms(
            phone, message, priority=priority, scheduled_at=scheduled_at, metadata=metadata
        )
        return ScheduleResult(
            record_id=result.record_id,
            scheduled_at=scheduled_at,
            cost=result.cost,
            segments=result.segments,
        )

    async def send_bulk_sms(
        self,
        recipients: List[Union[str, Dict[str, Any], CampaignRecipient]],
        message: Optional[str] = None,
        *,
        template_name: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        campaign_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BulkResult:
        """
        Accept a campaign and return an estimate; records are created by the bulk worker.

        Raises:
            ValidationError: empty/oversized recipient list, no valid recipient, bad message
        """
        if not recipients:
            raise ValidationError("Recipients list is required", field="recipients")
        if len(recipients) > self.settings.max_bulk_recipients:
            raise ValidationError(
                f"Too many recipients ({len(recipients)} > {self.settings.max_bulk_recipients})",
                field="recipients",
            )

        if template_name:
            body = get_template(template_name).body
        else:
            body = message
        body = validate_message(body)

        accepted: List[CampaignRecipient] = []
        rejected: List[str] = []
        for raw in recipients:
            recipient = self._coerce_recipient(raw)
            formatted = format_phone(recipient.phone, self.settings.default_country_code)
            if not formatted:
                rejected.append(str(recipient.phone))
                continue
            accepted.append(recipient.model_copy(update={
                "phone": formatted,
                "variables": {**(variables or {}), **recipient.variables},
            }))

        if rejected:
            logger.warning(f"Bulk SMS: dropped {len(rejected)} invalid recipient phone(s)")
        if not accepted:
            raise ValidationError("No valid recipients", field="recipients")

        now = self.clock()
        campaign = CampaignJob(
            campaign_id=campaign_id or str(uuid.uuid4()),
            message=body,
            template_name=template_name,
            recipients=accepted,
            metadata=dict(metadata or {}),
            created_at=now,
            expires_at=now + timedelta(seconds=QUEUE_TTL_SECONDS),
        )
        await self.queues.enqueue(campaign)

        count = len(accepted)
        logger.info(f"Bulk SMS campaign {campaign.campaign_id} queued for {count} recipient(s)")
        return BulkResult(
            campaign_id=campaign.campaign_id,
            total_recipients=count,
            estimated_cost=self.calculate_bulk_cost(body, count),
            estimated_segments=calculate_segments(body) * count,
            rejected_recipients=rejected,
        )

    @staticmethod
    def _coerce_recipient(raw: Union[str, Dict[str, Any], CampaignRecipient]) -> CampaignRecipient:
        if isinstance(raw, CampaignRecipient):
            return raw
        if isinstance(raw, str):
            return CampaignRecipient(phone=raw)
        if isinstance(raw, dict):
            return CampaignRecipient(
                phone=str(raw.get("phone") or ""),
                recipient_id=raw.get("recipient_id") or raw.get("id"),
                first_name=raw.get("first_name") or raw.get("firstName"),
                last_name=raw.get("last_name") or raw.get("lastName"),
                variables=dict(raw.get("variables") or raw.get("metadata") or {}),
            )
        raise ValidationError(f"Unsupported recipient entry: {type(raw).__name__}", field="recipients")

    async def _schedule(self, record: NotificationRecord) -> SendResult:
        await self.store.transition(record.record_id, SMSStatus.PENDING, SMSStatus.SCHEDULED)
        logger.info(f"SMS {record.record_id} scheduled for {record.scheduled_at.isoformat()}")
        return SendResult(
            record_id=record.record_id,
            status=SMSStatus.SCHEDULED.value,
            cost=record.cost,
            segments=record.segments,
            currency=record.currency,
            scheduled_at=record.scheduled_at,
        )

    async def _enqueue(self, record: NotificationRecord) -> SendResult:
        queued = await self.store.transition(
            record.record_id, SMSStatus.PENDING, SMSStatus.QUEUED, {"queued_at": self.clock()}
        )
        try:
            key = await self.queues.enqueue(self.build_job(queued or record))
        except PersistenceError as e:
            await self.store.transition(
                record.record_id,
                SMSStatus.QUEUED,
                SMSStatus.FAILED,
                {"failure_reason": f"enqueue failed: {e}", "failed_at": self.clock()},
            )
            raise
        logger.info(f"SMS for {mask_phone(record.phone)} queued in {key}")
        return SendResult(
            record_id=record.record_id,
            status=SMSStatus.QUEUED.value,
            cost=record.cost,
            segments=record.segments,
            currency=record.currency,
            queue=key,
        )

    async def _send_now(self, record: NotificationRecord) -> SendResult:
        processing = await self.store.transition(record.record_id, SMSStatus.PENDING, SMSStatus.PROCESSING)
        outcome = await self.send_record(processing or record)

        result = SendResult(
            record_id=record.record_id,
            status=outcome.record.status,
            cost=record.cost,
            segments=record.segments,
            currency=record.currency,
            external_id=outcome.record.external_id,
            failure_reason=outcome.error,
        )
        if not outcome.success:
            decision = await self.retry_manager.should_retry(self.build_job(outcome.record), outcome.error or "send failed")
            result.retry_scheduled_at = decision.next_retry_at
        return result

    # ---- immediate sender -----------------------------------------------

    async def send_record(self, record: NotificationRecord, bulk: bool = False) -> SendOutcome:
        """
        Send one record that is already `processing`.

        Success moves it to `sent`; a provider failure moves it to `failed`.
        Never retries; the caller hands failures to the Retry Manager.
        """
        try:
            sent = await self.provider.send(record.phone, record.message, record.record_id, bulk=bulk)
        except ProviderError as e:
            now = self.clock()
            failed = await self.store.transition(
                record.record_id,
                SMSStatus.PROCESSING,
                SMSStatus.FAILED,
                {"failure_reason": str(e), "failed_at": now},
            )
            logger.error(f"SMS {record.record_id} to {mask_phone(record.phone)} failed: {e}")
            return SendOutcome(
                False,
                failed or record.model_copy(update={"status": SMSStatus.FAILED.value, "failure_reason": str(e)}),
                str(e),
            )

        now = self.clock()
        metadata = DeliveryMetadata(
            provider=self.provider.provider_name,
            provider_status=sent.provider_status,
        )
        updated = await self.store.transition(
            record.record_id,
            SMSStatus.PROCESSING,
            SMSStatus.SENT,
            {
                "sent_at": now,
                "external_id": sent.external_id,
                "delivery_status": DeliveryStatus.PENDING.value,
                "delivery_metadata": metadata.model_dump(),
                "failure_reason": None,
                "next_retry_at": None,
            },
        )
        try:
            await self.statistics.record_sent(record.priority)
        except PersistenceError as e:
            logger.warning(f"Could not update send statistics: {e}")

        logger.info(f"SMS {record.record_id} sent to {mask_phone(record.phone)} ({sent.external_id})")
        return SendOutcome(
            True,
            updated or record.model_copy(update={
                "status": SMSStatus.SENT.value,
                "external_id": sent.external_id,
                "sent_at": now,
            }),
        )

    # ---- queries --------------------------------------------------------

    async def get_delivery_status(self, external_id: str) -> Dict[str, Any]:
        result = await self.provider.check_status(external_id)
        return {
            "status": result.status,
            "delivered_at": result.delivered_at.isoformat() if result.delivered_at else None,
            "failure_reason": result.failure_reason,
            "provider_status": result.provider_status,
        }

    async def get_statistics(self, days: int = 7) -> Dict[str, Dict[str, int]]:
        return await self.statistics.get_daily(days)

    async def get_balance(self) -> Dict[str, Any]:
        return await self.provider.get_balance()

    async def get_campaign_status(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get_campaign_summary(campaign_id)

    async def get_health_status(self) -> Dict[str, Any]:
        health: Dict[str, Any] = {
            "status": "healthy",
            "provider": self.settings.sms_provider_name,
            "provider_mode": self.provider.mode.value,
            "queue_sizes": {},
            "retry_queue_sizes": {},
            "pending_record_count": None,
            "rate_limits": {},
            "checked_at": self.clock().isoformat(),
        }
        errors = []
        try:
            health["queue_sizes"] = await self.queues.sizes()
            health["retry_queue_sizes"] = await self.queues.retry_sizes()
            health["rate_limits"] = await self.rate_limiter.get_usage()
        except PersistenceError as e:
            errors.append(str(e))
        try:
            await self.store.ping()
            health["pending_record_count"] = await self.store.count_pending()
        except PersistenceError as e:
            errors.append(str(e))

        if errors:
            health["status"] = "unhealthy"
            health["errors"] = errors
            logger.error(f"SMS health check failed: {'; '.join(errors)}")
        return health
