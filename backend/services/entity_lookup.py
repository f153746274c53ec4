"""Business-entity checks used when revalidating scheduled messages (events, users)."""
import logging
from typing import Any, Dict

from bson import ObjectId
from pymongo.errors import PyMongoError

from database import Database
from services.sms_errors import PersistenceError

logger = logging.getLogger(__name__)

CANCELLED_EVENT_STATUSES = {"cancelled"}


def _id_query(entity_id: str) -> Dict[str, Any]:
    """Match either a Mongo ObjectId or a string id field."""
    if ObjectId.is_valid(str(entity_id)):
        return {"$or": [{"_id": ObjectId(str(entity_id))}, {"id": str(entity_id)}]}
    return {"id": str(entity_id)}


class EntityLookup:
    def __init__(self, database: Database):
        self.database = database

    async def event_is_active(self, event_id: str) -> bool:
        """True if the event exists and is not cancelled."""
        try:
            event = await self.database.get_db().events.find_one(_id_query(event_id), {"status": 1})
        except PyMongoError as e:
            raise PersistenceError(f"Event lookup failed: {e}") from e
        if not event:
            return False
        return str(event.get("status", "")).lower() not in CANCELLED_EVENT_STATUSES

    async def user_is_active(self, user_id: str) -> bool:
        """True if the user exists and is active."""
        try:
            user = await self.database.get_db().users.find_one(_id_query(user_id), {"is_active": 1})
        except PyMongoError as e:
            raise PersistenceError(f"User lookup failed: {e}") from e
        return bool(user and user.get("is_active", False))
