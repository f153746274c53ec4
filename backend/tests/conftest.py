"""
Pytest configuration and shared fakes for the SMS dispatch tests.

FakeCache stands in for the Redis shared store (lists, counters, hashes, TTLs)
and FakeNotificationStore for the MongoDB record store. Both run on a FakeClock
so window expiry and backoff can be stepped without sleeping.
"""
import sys
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from config import DUPLICATE_WINDOW_SECONDS, TRACKING_MAX_AGE_SECONDS, TRACKING_MIN_AGE_SECONDS, Settings
from models import NotificationRecord, SMSStatus, assert_transition, ensure_utc


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeCache:
    """In-memory shared store with per-key expiry on the fake clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data: Dict[str, Any] = {}
        self.expiry: Dict[str, datetime] = {}

    def _evict(self, key: str) -> None:
        expires = self.expiry.get(key)
        if expires is not None and expires <= self.clock():
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    def ttl(self, key: str) -> Optional[float]:
        self._evict(key)
        expires = self.expiry.get(key)
        return None if expires is None else (expires - self.clock()).total_seconds()

    def advance(self, seconds: float) -> None:
        self.clock.advance(seconds)

    async def get(self, key):
        self._evict(key)
        value = self.data.get(key)
        return None if value is None else str(value)

    async def set(self, key, value, ttl_seconds=None):
        self.data[key] = value
        if ttl_seconds:
            self.expiry[key] = self.clock() + timedelta(seconds=ttl_seconds)
        else:
            self.expiry.pop(key, None)

    async def delete(self, key):
        self.data.pop(key, None)
        self.expiry.pop(key, None)

    async def incr_with_ttl(self, key, ttl_seconds):
        self._evict(key)
        if key not in self.data:
            await self.set(key, 0, ttl_seconds)
        self.data[key] = int(self.data[key]) + 1
        return self.data[key]

    def _list(self, key) -> deque:
        self._evict(key)
        return self.data.setdefault(key, deque())

    async def push(self, key, value):
        items = self._list(key)
        items.append(value)
        return len(items)

    async def pop_many(self, key, count):
        items = self._list(key)
        popped = [items.popleft() for _ in range(min(count, len(items)))]
        if not items:
            await self.delete(key)
        return popped

    async def list_range(self, key, start=0, end=-1):
        self._evict(key)
        items = list(self.data.get(key, []))
        return items[start:] if end == -1 else items[start:end + 1]

    async def remove(self, key, value, count=1):
        self._evict(key)
        items = self.data.get(key)
        if not items:
            return 0
        removed = 0
        while removed < count and value in items:
            items.remove(value)
            removed += 1
        return removed

    async def length(self, key):
        self._evict(key)
        return len(self.data.get(key, []))

    async def expire(self, key, ttl_seconds):
        if key in self.data:
            self.expiry[key] = self.clock() + timedelta(seconds=ttl_seconds)

    async def hincrby(self, key, field, amount=1):
        self._evict(key)
        bucket = self.data.setdefault(key, {})
        bucket[field] = int(bucket.get(field, 0)) + int(amount)
        return bucket[field]

    async def hgetall(self, key):
        self._evict(key)
        return {k: str(v) for k, v in self.data.get(key, {}).items()}


class FakeNotificationStore:
    """In-memory record store applying the same conditional status updates as NotificationStore."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.campaigns: Dict[str, Dict[str, Any]] = {}

    def record(self, record_id: str) -> NotificationRecord:
        return NotificationRecord.from_document(self.docs[record_id])

    def all(self) -> List[NotificationRecord]:
        return [NotificationRecord.from_document(d) for d in self.docs.values()]

    async def insert(self, record):
        self.docs[record.record_id] = record.to_document()
        return record

    async def get(self, record_id):
        doc = self.docs.get(record_id)
        return NotificationRecord.from_document(doc) if doc else None

    async def update(self, record_id, fields):
        assert "status" not in fields
        self.docs[record_id].update(fields, updated_at=self.clock())

    async def transition(self, record_id, expected, new, fields=None):
        assert_transition(expected, new)
        doc = self.docs.get(record_id)
        if doc is None or doc["status"] != SMSStatus(expected).value:
            return None
        doc.update(fields or {})
        doc["status"] = SMSStatus(new).value
        doc["updated_at"] = self.clock()
        self.docs[record_id] = NotificationRecord.from_document(doc).to_document()
        return NotificationRecord.from_document(self.docs[record_id])

    def _select(self, predicate, limit, sort_field):
        matches = [d for d in self.docs.values() if predicate(d)]
        matches.sort(key=lambda d: ensure_utc(d.get(sort_field)) or self.clock())
        return [NotificationRecord.from_document(d) for d in matches[:limit]]

    async def find_due_scheduled(self, now, limit):
        return self._select(
            lambda d: d["status"] == "scheduled" and d["scheduled_at"] and ensure_utc(d["scheduled_at"]) <= now,
            limit,
            "scheduled_at",
        )

    async def find_retry_due_scheduled(self, now, limit):
        return self._select(
            lambda d: d["status"] == "failed"
            and d["scheduled_at"] is not None
            and d.get("retry_via") == "sweep"
            and d["next_retry_at"] is not None
            and ensure_utc(d["next_retry_at"]) <= now,
            limit,
            "next_retry_at",
        )

    async def find_trackable(self, now, limit):
        oldest = now - timedelta(seconds=TRACKING_MAX_AGE_SECONDS)
        newest = now - timedelta(seconds=TRACKING_MIN_AGE_SECONDS)
        return self._select(
            lambda d: d["status"] == "sent"
            and d["external_id"]
            and d["delivery_status"] in (None, "pending")
            and d["sent_at"] is not None
            and oldest <= ensure_utc(d["sent_at"]) <= newest,
            limit,
            "sent_at",
        )

    async def find_recent_duplicate(self, phone, message, now, exclude_record_id=None):
        since = now - timedelta(seconds=DUPLICATE_WINDOW_SECONDS)
        for doc in self.docs.values():
            if (
                doc["phone"] == phone
                and doc["message"] == message
                and doc["status"] in ("sent", "delivered")
                and doc["sent_at"] is not None
                and ensure_utc(doc["sent_at"]) >= since
                and doc["record_id"] != exclude_record_id
            ):
                return {"record_id": doc["record_id"]}
        return None

    async def count_pending(self):
        return sum(1 for d in self.docs.values() if d["status"] in ("pending", "queued", "scheduled", "processing"))

    async def save_campaign_summary(self, campaign_id, stats):
        summary = self.campaigns.setdefault(
            campaign_id,
            {"campaign_id": campaign_id, "processed": 0, "successful": 0, "failed": 0, "deferred": 0},
        )
        for key in ("processed", "successful", "failed", "deferred"):
            summary[key] += int(stats.get(key, 0))
        summary["completed_at"] = self.clock()

    async def get_campaign_summary(self, campaign_id):
        return self.campaigns.get(campaign_id)

    async def ping(self):
        return None


def make_settings(**overrides) -> Settings:
    values = dict(
        mongo_url="mongodb://localhost:27017",
        db_name="sms_test",
        redis_url="redis://localhost:6379/15",
        environment="development",
        sms_base_url="https://sms.test/api/v1",
        sms_api_key="",
        sms_sender_id="CAMS",
        sms_provider_name="SMSnotifyGh",
        immediate_per_minute=100,
        bulk_per_hour=500,
        daily_limit=10000,
        unit_cost=0.05,
        currency="GHS",
        default_country_code="233",
        max_retries=3,
        max_bulk_recipients=500,
        retry_reclaim_grace_seconds=300,
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)


class Pipeline:
    """All dispatch components wired over the fakes, like server.build_services."""

    def __init__(self, settings: Optional[Settings] = None, provider=None):
        from services.delivery_tracker import DeliveryTracker
        from services.job_supervisor import JobSupervisor
        from services.retry_manager import RetryManager
        from services.sms_jobs import SMSJobs
        from services.sms_provider import SMSProviderClient
        from services.sms_queue import SMSQueues
        from services.sms_service import SMSDispatchService
        from services.sms_statistics import SMSStatistics
        from utils.rate_limiter import SMSRateLimiter

        self.settings = settings or make_settings()
        self.clock = FakeClock(datetime(2026, 3, 10, 12, 0, 30, tzinfo=timezone.utc))
        self.cache = FakeCache(self.clock)
        self.store = FakeNotificationStore(self.clock)
        self.queues = SMSQueues(self.cache, self.settings, clock=self.clock)
        self.rate_limiter = SMSRateLimiter(self.cache, self.settings, clock=self.clock)
        self.provider = provider or SMSProviderClient(self.settings)
        self.statistics = SMSStatistics(self.cache, clock=self.clock)
        self.retry_manager = RetryManager(self.store, self.queues, self.settings, clock=self.clock)
        self.entities = AsyncMock()
        self.entities.event_is_active = AsyncMock(return_value=True)
        self.entities.user_is_active = AsyncMock(return_value=True)
        self.dispatch = SMSDispatchService(
            self.settings,
            self.store,
            self.queues,
            self.rate_limiter,
            self.provider,
            self.retry_manager,
            self.statistics,
            clock=self.clock,
        )
        self.tracker = DeliveryTracker(self.store, self.provider, self.statistics, clock=self.clock)
        self.sleep = AsyncMock()
        self.jobs = SMSJobs(
            self.dispatch,
            self.store,
            self.queues,
            self.retry_manager,
            self.rate_limiter,
            self.entities,
            self.tracker,
            JobSupervisor(),
            clock=self.clock,
            sleep=self.sleep,
        )


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 10, 12, 0, 30, tzinfo=timezone.utc))


@pytest.fixture
def cache(clock):
    return FakeCache(clock)


@pytest.fixture
def pipeline():
    return Pipeline()
