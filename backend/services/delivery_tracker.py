"""
Delivery Tracker - reconciles sent messages with the provider's delivery reports.

Polls records sent between 5 minutes and 24 hours ago that have a provider id
and no final delivery state, maps the provider status, and keeps the last five
status snapshots on each record.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from config import TRACKING_BATCH_SIZE
from models import (
    DeliveryStatus,
    NotificationRecord,
    SMSStatus,
    StatusSnapshot,
    utc_now,
)
from services.notification_store import NotificationStore
from services.sms_errors import SMSDispatchError
from services.sms_provider import SMSProviderClient
from services.sms_statistics import SMSStatistics

logger = logging.getLogger(__name__)

STATUS_HISTORY_LIMIT = 5


class DeliveryTracker:
    def __init__(
        self,
        store: NotificationStore,
        provider: SMSProviderClient,
        statistics: SMSStatistics,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.provider = provider
        self.statistics = statistics
        self.clock = clock or utc_now

    async def track_delivery_status(self) -> Dict[str, Any]:
        logger.info("Starting delivery status tracking")
        stats = {"checked": 0, "delivered": 0, "failed": 0, "pending": 0, "errors": 0}
        now = self.clock()

        try:
            records = await self.store.find_trackable(now, TRACKING_BATCH_SIZE)
        except SMSDispatchError as e:
            logger.error(f"Delivery tracking could not load records: {e}")
            stats["errors"] += 1
            return stats

        for record in records:
            try:
                outcome = await self._track_one(record)
                stats["checked"] += 1
                stats[outcome] += 1
            except SMSDispatchError as e:
                stats["errors"] += 1
                logger.error(f"Delivery tracking error for {record.record_id}: {e}")
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"Unexpected delivery tracking error for {record.record_id}: {e}", exc_info=True)

        try:
            await self.statistics.record_delivery(stats)
        except SMSDispatchError as e:
            logger.warning(f"Could not update delivery statistics: {e}")

        logger.info(f"Delivery status tracking completed: {stats}")
        return stats

    async def _track_one(self, record: NotificationRecord) -> str:
        result = await self.provider.check_status(record.external_id)
        now = self.clock()

        history = list(record.delivery_metadata.status_updates) + [
            StatusSnapshot(status=result.status, timestamp=now, details=result.details)
        ]
        metadata = record.delivery_metadata.model_copy(update={
            "last_checked": now,
            "provider_status": result.provider_status,
            "status_updates": history[-STATUS_HISTORY_LIMIT:],
        }).model_dump()

        if result.status == DeliveryStatus.DELIVERED.value:
            await self.store.transition(
                record.record_id,
                SMSStatus.SENT,
                SMSStatus.DELIVERED,
                {
                    "delivery_status": DeliveryStatus.DELIVERED.value,
                    "delivered_at": result.delivered_at or now,
                    "delivery_metadata": metadata,
                },
            )
            return "delivered"

        if result.status == DeliveryStatus.FAILED.value:
            await self.store.transition(
                record.record_id,
                SMSStatus.SENT,
                SMSStatus.FAILED,
                {
                    "delivery_status": DeliveryStatus.FAILED.value,
                    "failure_reason": result.failure_reason or "delivery failed",
                    "failed_at": now,
                    "delivery_metadata": metadata,
                },
            )
            return "failed"

        await self.store.update(
            record.record_id,
            {"delivery_status": DeliveryStatus.PENDING.value, "delivery_metadata": metadata},
        )
        return "pending"
