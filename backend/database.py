from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
import logging

from config import Settings
from services.sms_errors import PersistenceError

logger = logging.getLogger(__name__)


class Database:
    client: AsyncIOMotorClient = None
    db = None

    def __init__(self, settings: Settings):
        self.mongo_url = settings.mongo_url
        self.db_name = settings.db_name

    async def connect(self):
        try:
            self.client = AsyncIOMotorClient(self.mongo_url, tz_aware=True)
            self.db = self.client[self.db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {self.db_name}")

            await self._create_indexes()
        except PyMongoError as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise PersistenceError(f"MongoDB unavailable: {e}") from e

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for the dispatch queries."""
        try:
            await self.db.sms_notifications.create_index("record_id", unique=True)
            # Scheduled sweep + retry pickup
            await self.db.sms_notifications.create_index([("status", 1), ("scheduled_at", 1)])
            await self.db.sms_notifications.create_index([("status", 1), ("retry_via", 1), ("next_retry_at", 1)])
            # Delivery tracking window
            await self.db.sms_notifications.create_index([("status", 1), ("sent_at", -1)])
            await self.db.sms_notifications.create_index("external_id", sparse=True)
            # Duplicate suppression
            await self.db.sms_notifications.create_index([("phone", 1), ("sent_at", -1)])
            await self.db.sms_notifications.create_index("metadata.campaign_id", sparse=True)

            await self.db.sms_campaigns.create_index("campaign_id", unique=True)
            logger.info("MongoDB indexes created/verified")
        except PyMongoError as e:
            # Indexes may already exist with different options, log but don't fail
            logger.warning(f"Index creation note: {e}")
