"""
Notification Record store (MongoDB, collection sms_notifications).

Status changes are conditional updates on the current status, so a record that
another worker already moved is never overwritten: transition() returns None
and the caller skips it.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as SchemaValidationError
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from config import DUPLICATE_WINDOW_SECONDS, TRACKING_MAX_AGE_SECONDS, TRACKING_MIN_AGE_SECONDS
from database import Database
from models import NotificationRecord, SMSStatus, assert_transition, utc_now
from services.sms_errors import PersistenceError

logger = logging.getLogger(__name__)

NOT_YET_SENT = [
    SMSStatus.PENDING.value,
    SMSStatus.QUEUED.value,
    SMSStatus.SCHEDULED.value,
    SMSStatus.PROCESSING.value,
]


class NotificationStore:
    def __init__(self, database: Database):
        self.database = database

    @property
    def notifications(self):
        return self.database.get_db().sms_notifications

    @property
    def campaigns(self):
        return self.database.get_db().sms_campaigns

    def _records(self, docs: List[Dict[str, Any]]) -> List[NotificationRecord]:
        records = []
        for doc in docs:
            try:
                records.append(NotificationRecord.from_document(doc))
            except SchemaValidationError as e:
                logger.warning(f"Skipping unreadable notification {doc.get('record_id')}: {e.error_count()} error(s)")
        return records

    async def _find(self, query: Dict[str, Any], limit: int, sort_field: str) -> List[NotificationRecord]:
        try:
            cursor = self.notifications.find(query, {"_id": 0}).sort(sort_field, 1).limit(limit)
            docs = await cursor.to_list(length=limit)
        except PyMongoError as e:
            raise PersistenceError(f"Notification query failed: {e}") from e
        return self._records(docs)

    async def insert(self, record: NotificationRecord) -> NotificationRecord:
        try:
            await self.notifications.insert_one(record.to_document())
        except PyMongoError as e:
            raise PersistenceError(f"Failed to persist notification {record.record_id}: {e}") from e
        return record

    async def get(self, record_id: str) -> Optional[NotificationRecord]:
        try:
            doc = await self.notifications.find_one({"record_id": record_id}, {"_id": 0})
        except PyMongoError as e:
            raise PersistenceError(f"Failed to load notification {record_id}: {e}") from e
        return NotificationRecord.from_document(doc) if doc else None

    async def update(self, record_id: str, fields: Dict[str, Any]) -> None:
        """Update non-status fields."""
        if "status" in fields:
            raise ValueError("Use transition() to change status")
        try:
            await self.notifications.update_one(
                {"record_id": record_id},
                {"$set": {**fields, "updated_at": utc_now()}},
            )
        except PyMongoError as e:
            raise PersistenceError(f"Failed to update notification {record_id}: {e}") from e

    async def transition(
        self,
        record_id: str,
        expected: str,
        new: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[NotificationRecord]:
        """
        Move a record from `expected` to `new` status and set extra fields.

        Returns the updated record, or None if the record is no longer in
        `expected` (someone else moved it first).

        Raises:
            InvalidStatusTransition: expected -> new is not in the table
            PersistenceError: store unavailable
        """
        assert_transition(expected, new)
        update = {**(fields or {}), "status": SMSStatus(new).value, "updated_at": utc_now()}
        try:
            doc = await self.notifications.find_one_and_update(
                {"record_id": record_id, "status": SMSStatus(expected).value},
                {"$set": update},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise PersistenceError(f"Failed to update notification {record_id}: {e}") from e
        if doc is None:
            logger.info(f"Notification {record_id} no longer {expected}, skipping -> {new}")
            return None
        return NotificationRecord.from_document(doc)

    async def find_due_scheduled(self, now: datetime, limit: int) -> List[NotificationRecord]:
        return await self._find(
            {"type": "sms", "status": SMSStatus.SCHEDULED.value, "scheduled_at": {"$lte": now}},
            limit,
            "scheduled_at",
        )

    async def find_retry_due_scheduled(self, now: datetime, limit: int) -> List[NotificationRecord]:
        """Failed scheduled records the sweeper postponed whose retry is due."""
        return await self._find(
            {
                "type": "sms",
                "status": SMSStatus.FAILED.value,
                "scheduled_at": {"$ne": None},
                "retry_via": "sweep",
                "next_retry_at": {"$ne": None, "$lte": now},
            },
            limit,
            "next_retry_at",
        )

    async def find_trackable(self, now: datetime, limit: int) -> List[NotificationRecord]:
        """Sent records with a provider id and no final delivery state, sent 5 min to 24 h ago."""
        return await self._find(
            {
                "type": "sms",
                "status": SMSStatus.SENT.value,
                "external_id": {"$ne": None},
                "delivery_status": {"$in": [None, "pending"]},
                "sent_at": {
                    "$gte": now - timedelta(seconds=TRACKING_MAX_AGE_SECONDS),
                    "$lte": now - timedelta(seconds=TRACKING_MIN_AGE_SECONDS),
                },
            },
            limit,
            "sent_at",
        )

    async def find_recent_duplicate(
        self,
        phone: str,
        message: str,
        now: datetime,
        exclude_record_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        query: Dict[str, Any] = {
            "phone": phone,
            "message": message,
            "status": {"$in": [SMSStatus.SENT.value, SMSStatus.DELIVERED.value]},
            "sent_at": {"$gte": now - timedelta(seconds=DUPLICATE_WINDOW_SECONDS)},
        }
        if exclude_record_id:
            query["record_id"] = {"$ne": exclude_record_id}
        try:
            return await self.notifications.find_one(query, {"_id": 0, "record_id": 1})
        except PyMongoError as e:
            raise PersistenceError(f"Duplicate check failed: {e}") from e

    async def count_pending(self) -> int:
        try:
            return await self.notifications.count_documents({"type": "sms", "status": {"$in": NOT_YET_SENT}})
        except PyMongoError as e:
            raise PersistenceError(f"Failed to count pending notifications: {e}") from e

    async def save_campaign_summary(self, campaign_id: str, stats: Dict[str, int]) -> None:
        """Fold one processing pass of a campaign into its summary (deferred passes share the id)."""
        now = utc_now()
        try:
            await self.campaigns.update_one(
                {"campaign_id": campaign_id},
                {
                    "$inc": {
                        "processed": int(stats.get("processed", 0)),
                        "successful": int(stats.get("successful", 0)),
                        "failed": int(stats.get("failed", 0)),
                        "deferred": int(stats.get("deferred", 0)),
                    },
                    "$set": {"completed_at": now, "updated_at": now},
                    "$setOnInsert": {"created_at": now},
                },
                upsert=True,
            )
        except PyMongoError as e:
            raise PersistenceError(f"Failed to save campaign {campaign_id}: {e}") from e

    async def get_campaign_summary(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.campaigns.find_one({"campaign_id": campaign_id}, {"_id": 0})
        except PyMongoError as e:
            raise PersistenceError(f"Failed to load campaign {campaign_id}: {e}") from e

    async def ping(self) -> None:
        try:
            await self.database.get_db().command("ping")
        except PyMongoError as e:
            raise PersistenceError(f"MongoDB ping failed: {e}") from e
