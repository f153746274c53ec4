from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as SchemaValidationError
from typing import Optional, Dict, Any, List, Literal, Union, Annotated
from datetime import datetime, timezone
from enum import Enum
import uuid

from services.sms_errors import InvalidStatusTransition, MalformedJobError

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class SMSPriority(str, Enum):
    IMMEDIATE = "immediate"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"
    BULK = "bulk"

class SMSStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"

class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"

class ProviderMode(str, Enum):
    LIVE = "live"
    MOCK = "mock"


# ============================================================================
# STATUS STATE MACHINE
# ============================================================================

STATUS_TRANSITIONS = {
    SMSStatus.PENDING: {
        SMSStatus.QUEUED,
        SMSStatus.SCHEDULED,
        SMSStatus.PROCESSING,
        SMSStatus.CANCELLED,
        SMSStatus.FAILED,
    },
    SMSStatus.QUEUED: {SMSStatus.PROCESSING, SMSStatus.CANCELLED, SMSStatus.FAILED},
    SMSStatus.SCHEDULED: {SMSStatus.PROCESSING, SMSStatus.CANCELLED},
    SMSStatus.PROCESSING: {SMSStatus.SENT, SMSStatus.FAILED},
    SMSStatus.SENT: {SMSStatus.DELIVERED, SMSStatus.FAILED},
    # Retry is the only way out of FAILED
    SMSStatus.FAILED: {SMSStatus.QUEUED},
    SMSStatus.DELIVERED: set(),
    SMSStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = {SMSStatus.DELIVERED, SMSStatus.CANCELLED}


def can_transition(current: str, new: str) -> bool:
    return SMSStatus(new) in STATUS_TRANSITIONS[SMSStatus(current)]


def assert_transition(current: str, new: str) -> None:
    if not can_transition(current, new):
        raise InvalidStatusTransition(SMSStatus(current).value, SMSStatus(new).value)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================================
# NOTIFICATION RECORD
# ============================================================================

class StatusSnapshot(BaseModel):
    status: str
    timestamp: datetime
    details: Optional[str] = None

class DeliveryMetadata(BaseModel):
    provider: Optional[str] = None
    provider_status: Optional[str] = None
    last_checked: Optional[datetime] = None
    status_updates: List[StatusSnapshot] = []

class NotificationRecord(BaseModel):
    """One logical send: one recipient, one message."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str = "sms"
    phone: str
    message: str
    template_name: Optional[str] = None
    template_variables: Dict[str, Any] = {}
    priority: SMSPriority = SMSPriority.NORMAL
    status: SMSStatus = SMSStatus.PENDING
    scheduled_at: Optional[datetime] = None
    queued_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    external_id: Optional[str] = None
    provider: Optional[str] = None
    failure_reason: Optional[str] = None
    delivery_status: Optional[DeliveryStatus] = None
    delivery_metadata: DeliveryMetadata = Field(default_factory=DeliveryMetadata)
    segments: int = 1
    cost: float = 0.0
    currency: str = "GHS"
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    retry_via: Optional[str] = None
    metadata: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump()

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "NotificationRecord":
        data = {k: v for k, v in doc.items() if k != "_id"}
        return cls.model_validate(data)


# ============================================================================
# QUEUE JOBS (single tagged schema for every queue entry)
# ============================================================================

class SMSQueueJob(BaseModel):
    """Ephemeral descriptor of one queued Notification Record."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    kind: Literal["sms"] = "sms"
    record_id: str
    phone: str
    message: str
    priority: SMSPriority
    enqueued_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(self.expires_at) <= now

class CampaignRecipient(BaseModel):
    phone: str
    recipient_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    variables: Dict[str, Any] = {}

class CampaignJob(BaseModel):
    """One bulk-send request; expanded into one record per recipient when processed."""
    kind: Literal["campaign"] = "campaign"
    campaign_id: str
    message: str
    template_name: Optional[str] = None
    recipients: List[CampaignRecipient]
    metadata: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(self.expires_at) <= now


QueueEntry = Annotated[Union[SMSQueueJob, CampaignJob], Field(discriminator="kind")]
_queue_entry_adapter = TypeAdapter(QueueEntry)


def encode_job(job: Union[SMSQueueJob, CampaignJob]) -> str:
    return job.model_dump_json()


def decode_job(raw: Union[str, bytes]) -> Union[SMSQueueJob, CampaignJob]:
    try:
        return _queue_entry_adapter.validate_json(raw)
    except SchemaValidationError as e:
        raise MalformedJobError(f"Malformed queue entry: {e.error_count()} schema error(s)") from e


# ============================================================================
# PROVIDER RESULTS
# ============================================================================

class ProviderSendResult(BaseModel):
    external_id: str
    provider_status: str
    mode: ProviderMode
    raw: Dict[str, Any] = {}

class DeliveryStatusResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    status: DeliveryStatus
    delivered_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    provider_status: Optional[str] = None
    details: Optional[str] = None
