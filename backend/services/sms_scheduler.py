"""Periodic scheduling of the SMS workers (APScheduler, in-process)."""
import logging
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from job_runner import (
    run_bulk_sms,
    run_delivery_tracking,
    run_immediate_sms,
    run_queue_cleanup,
    run_scheduled_sms,
    run_standard_sms,
)
from config import WORKER_INTERVAL_MINUTES
from services.sms_jobs import SMSJobs

logger = logging.getLogger(__name__)

# (job id, display name, runner, interval minutes)
# sms_standard drains high/normal/low; sms_cleanup purges expired and malformed queue entries.
SMS_JOB_DEFINITIONS = [
    ("sms_immediate", "Immediate SMS Queue", run_immediate_sms, WORKER_INTERVAL_MINUTES["immediate"]),
    ("sms_standard", "Standard SMS Queues (high/normal/low)", run_standard_sms, WORKER_INTERVAL_MINUTES["standard"]),
    ("sms_scheduled", "Scheduled SMS Sweep", run_scheduled_sms, WORKER_INTERVAL_MINUTES["scheduled"]),
    ("sms_bulk", "Bulk SMS Campaigns", run_bulk_sms, WORKER_INTERVAL_MINUTES["bulk"]),
    ("sms_delivery", "SMS Delivery Tracking", run_delivery_tracking, WORKER_INTERVAL_MINUTES["delivery"]),
    ("sms_cleanup", "SMS Queue Cleanup", run_queue_cleanup, WORKER_INTERVAL_MINUTES["cleanup"]),
]


class SMSScheduler:
    def __init__(self, jobs: SMSJobs, scheduler: Optional[AsyncIOScheduler] = None):
        self.jobs = jobs
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.is_running = False

    def start(self) -> None:
        if self.is_running:
            logger.warning("SMS jobs are already running")
            return

        for job_id, name, runner, minutes in SMS_JOB_DEFINITIONS:
            self.scheduler.add_job(
                runner,
                IntervalTrigger(minutes=minutes),
                args=[self.jobs],
                id=job_id,
                name=name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        self.scheduler.start()
        self.is_running = True
        logger.info("SMS job scheduler started")

    def stop(self) -> None:
        if not self.is_running:
            logger.warning("SMS jobs are not running")
            return
        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("SMS job scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        active_jobs = [job.id for job in self.scheduler.get_jobs()] if self.is_running else []
        return {
            "is_running": self.is_running,
            "active_jobs": active_jobs,
            "job_count": len(active_jobs),
            "worker_states": self.jobs.supervisor.states(),
        }
