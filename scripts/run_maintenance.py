"""
Maintenance runner - the entry point for scheduled categorization jobs.

This is what cron calls, for example:

    0 2 * * *  python scripts/run_maintenance.py daily-categorization
    0 3 * * *  python scripts/run_maintenance.py cleanup
    0 4 * * 0  python scripts/run_maintenance.py weekly-stats
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, is_dataclass

from merchant_categorizer.api.middleware.logging import configure_logging
from merchant_categorizer.config import settings
from merchant_categorizer.db.session import AsyncSessionLocal, async_engine
from merchant_categorizer.services.ai_classifier import AIClassifier
from merchant_categorizer.services.maintenance import MaintenanceService
from merchant_categorizer.services.scheduler import PeriodicTask
from merchant_categorizer.services.worker import CategorizationWorker

logger = logging.getLogger(__name__)

JOBS = (
    "daily-categorization",
    "cleanup",
    "weekly-stats",
    "rebuild-mappings",
    "process-jobs",
    "worker",
)


async def run_job(job: str):
    """Run one maintenance job and return its result."""
    if job in ("process-jobs", "worker"):
        worker = CategorizationWorker(AsyncSessionLocal, AIClassifier())
        if job == "process-jobs":
            return await worker.process_backlog()
        ticker = PeriodicTask("categorization-worker", worker.run_once, settings.worker_interval_seconds)
        ticker.start()
        try:
            await asyncio.Event().wait()
        finally:
            await ticker.stop()

    async with AsyncSessionLocal() as db:
        service = MaintenanceService(db)
        if job == "daily-categorization":
            return await service.daily_categorization()
        if job == "cleanup":
            return await service.daily_cleanup()
        if job == "weekly-stats":
            return await service.weekly_stats()
        if job == "rebuild-mappings":
            return {"mappings_written": await service.rebuild_mappings()}
    raise ValueError(f"Unknown job: {job}")


async def _main(job: str) -> int:
    try:
        result = await run_job(job)
    except Exception:
        logger.exception("Maintenance job failed", extra={"job": job})
        return 1
    finally:
        await async_engine.dispose()

    if is_dataclass(result):
        result = asdict(result)
    print(json.dumps(result, indent=2, default=str))
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Merchant categorization maintenance jobs")
    parser.add_argument("job", choices=JOBS, help="Job to run")
    parser.add_argument("--log-level", default=settings.log_level, help="Log level")
    args = parser.parse_args()

    configure_logging(args.log_level, json_output=settings.log_json)
    sys.exit(asyncio.run(_main(args.job)))


if __name__ == "__main__":
    main()
