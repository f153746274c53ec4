"""
SMS dispatch worker process.

Builds every dispatch component once, connects the record store and the shared
store, and runs the periodic SMS workers until SIGINT/SIGTERM. Request-serving
code embeds the same container through open_services().

Usage (from backend/):
  python server.py
"""
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from cache import CacheStore
from config import Settings, get_settings
from database import Database
from services.delivery_tracker import DeliveryTracker
from services.entity_lookup import EntityLookup
from services.job_supervisor import JobSupervisor
from services.notification_store import NotificationStore
from services.retry_manager import RetryManager
from services.sms_jobs import SMSJobs
from services.sms_provider import SMSProviderClient
from services.sms_queue import SMSQueues
from services.sms_scheduler import SMSScheduler
from services.sms_service import SMSDispatchService
from services.sms_statistics import SMSStatistics
from utils.rate_limiter import SMSRateLimiter

logger = logging.getLogger(__name__)


@dataclass
class SMSServices:
    """Every dispatch component, constructed once and passed by reference."""
    settings: Settings
    database: Database
    cache: CacheStore
    store: NotificationStore
    queues: SMSQueues
    rate_limiter: SMSRateLimiter
    provider: SMSProviderClient
    statistics: SMSStatistics
    retry_manager: RetryManager
    entities: EntityLookup
    dispatch: SMSDispatchService
    tracker: DeliveryTracker
    jobs: SMSJobs
    scheduler: SMSScheduler


def build_services(settings: Settings) -> SMSServices:
    database = Database(settings)
    cache = CacheStore(settings.redis_url)
    store = NotificationStore(database)
    queues = SMSQueues(cache, settings)
    rate_limiter = SMSRateLimiter(cache, settings)
    provider = SMSProviderClient(settings)
    statistics = SMSStatistics(cache)
    retry_manager = RetryManager(store, queues, settings)
    entities = EntityLookup(database)
    dispatch = SMSDispatchService(
        settings, store, queues, rate_limiter, provider, retry_manager, statistics
    )
    tracker = DeliveryTracker(store, provider, statistics)
    jobs = SMSJobs(
        dispatch, store, queues, retry_manager, rate_limiter, entities, tracker, JobSupervisor()
    )
    return SMSServices(
        settings=settings,
        database=database,
        cache=cache,
        store=store,
        queues=queues,
        rate_limiter=rate_limiter,
        provider=provider,
        statistics=statistics,
        retry_manager=retry_manager,
        entities=entities,
        dispatch=dispatch,
        tracker=tracker,
        jobs=jobs,
        scheduler=SMSScheduler(jobs),
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@asynccontextmanager
async def open_services(settings: Optional[Settings] = None) -> AsyncIterator[SMSServices]:
    """Connect the stores for the lifetime of the block."""
    services = build_services(settings or get_settings())
    await services.database.connect()
    try:
        await services.cache.connect()
        try:
            yield services
        finally:
            await services.cache.close()
    finally:
        await services.database.close()


async def run_forever(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # add_signal_handler is not available on every platform
            pass

    async with open_services(settings) as services:
        logger.info(
            f"Starting SMS dispatch workers (provider: {settings.sms_provider_name}, mode: {settings.provider_mode})"
        )
        services.scheduler.start()
        try:
            await stop.wait()
        finally:
            logger.info("Shutting down SMS dispatch workers")
            services.scheduler.stop()


def main():
    settings = get_settings()
    configure_logging(settings)
    asyncio.run(run_forever(settings))


if __name__ == "__main__":
    main()
