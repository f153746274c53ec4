"""
Run one SMS worker once and exit (manual / cron use).

Usage (from backend/):
  python -m scripts.run_sms_jobs --job immediate
  python -m scripts.run_sms_jobs --job scheduled
  python -m scripts.run_sms_jobs --job all

Jobs: immediate, standard, scheduled, bulk, delivery, cleanup, all
"""
import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from config import get_settings
from job_runner import JOB_RUNNERS
from server import configure_logging, open_services


async def run_jobs(names) -> int:
    async with open_services() as services:
        for name in names:
            result = await JOB_RUNNERS[name](services.jobs)
            print(f"[{name}] {result['message']}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Run SMS background workers once")
    parser.add_argument(
        "--job",
        choices=sorted(JOB_RUNNERS) + ["all"],
        default="all",
        help="Worker to run (default: all)",
    )
    args = parser.parse_args()

    configure_logging(get_settings())
    names = list(JOB_RUNNERS) if args.job == "all" else [args.job]
    return asyncio.run(run_jobs(names))


if __name__ == "__main__":
    sys.exit(main())
