"""
Shared job runner for the SMS background workers.
Used by the scheduler and by scripts/run_sms_jobs.py (manual run).
Each run_* returns a dict with "message" and "count" plus the worker's run stats.
"""
import logging
from typing import Any, Dict

from services.sms_jobs import SMSJobs

logger = logging.getLogger(__name__)


def _result(label: str, stats: Dict[str, Any], count_key: str) -> Dict[str, Any]:
    if stats.get("skipped"):
        return {"message": f"{label}: skipped (already running)", "count": 0, "stats": stats}
    if stats.get("error"):
        return {"message": f"{label}: failed ({stats['error']})", "count": 0, "stats": stats}
    count = int(stats.get(count_key, 0))
    return {"message": f"{label}: {count} {count_key}", "count": count, "stats": stats}


async def run_immediate_sms(jobs: SMSJobs):
    stats = await jobs.process_immediate_queue()
    return _result("Immediate SMS queue", stats, "successful")


async def run_standard_sms(jobs: SMSJobs):
    stats = await jobs.process_standard_queues()
    return _result("Standard SMS queues", stats, "successful")


async def run_scheduled_sms(jobs: SMSJobs):
    stats = await jobs.process_scheduled()
    return _result("Scheduled SMS", stats, "successful")


async def run_bulk_sms(jobs: SMSJobs):
    stats = await jobs.process_bulk_queue()
    return _result("Bulk SMS campaigns", stats, "successful")


async def run_delivery_tracking(jobs: SMSJobs):
    stats = await jobs.track_delivery_status()
    return _result("Delivery tracking", stats, "checked")


async def run_queue_cleanup(jobs: SMSJobs):
    stats = await jobs.cleanup_queues()
    return _result("SMS queue cleanup", stats, "expired")


JOB_RUNNERS = {
    "immediate": run_immediate_sms,
    "standard": run_standard_sms,
    "scheduled": run_scheduled_sms,
    "bulk": run_bulk_sms,
    "delivery": run_delivery_tracking,
    "cleanup": run_queue_cleanup,
}
