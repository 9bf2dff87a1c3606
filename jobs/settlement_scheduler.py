"""
Settlement Background Scheduler

Three jobs keep escrows moving without user action:
1. Auto-Release Sweep - refunds buyers on orders funded longer than AUTO_RELEASE_DAYS
2. Outbox Processor - replays escrow records owed after a successful transfer
3. Stale Claim Report - surfaces payout claims that never produced a release hash
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.auto_release_service import get_auto_release_service
from services.outbox_processor import get_outbox_processor

logger = logging.getLogger(__name__)


async def run_auto_release_sweep():
    try:
        summary = await get_auto_release_service().process_auto_release()
        if summary["results"]:
            logger.info(f"⏰ AUTO_RELEASE_JOB: {summary['message']}")
    except Exception as e:
        logger.error(f"❌ AUTO_RELEASE_JOB: sweep crashed: {e}", exc_info=True)


async def run_outbox_processing():
    try:
        await get_outbox_processor().process_pending()
    except Exception as e:
        logger.error(f"❌ OUTBOX_JOB: processing crashed: {e}", exc_info=True)


async def run_stale_claim_report():
    try:
        await get_outbox_processor().report_stale_claims()
    except Exception as e:
        logger.error(f"❌ STALE_CLAIM_JOB: report crashed: {e}", exc_info=True)


class SettlementScheduler:
    """AsyncIOScheduler wrapper owning the settlement jobs"""

    def __init__(self, auto_release_interval_minutes: Optional[int] = None):
        self.auto_release_interval_minutes = (auto_release_interval_minutes
                                              or Config.AUTO_RELEASE_INTERVAL_MINUTES)
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,
            'misfire_grace_time': 120
        }
        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        start = datetime.now().replace(microsecond=0)

        self.scheduler.add_job(
            run_auto_release_sweep,
            trigger=IntervalTrigger(minutes=self.auto_release_interval_minutes, start_date=start),
            id="settlement_auto_release",
            name="⏰ Auto-Release Sweep",
            replace_existing=True
        )
        logger.info(f"✅ Auto-Release Sweep scheduled every {self.auto_release_interval_minutes} minutes")

        self.scheduler.add_job(
            run_outbox_processing,
            trigger=IntervalTrigger(minutes=1, start_date=start.replace(second=10)),
            id="settlement_outbox",
            name="📤 Outbox Processor",
            replace_existing=True
        )
        logger.info("✅ Outbox Processor scheduled every minute")

        self.scheduler.add_job(
            run_stale_claim_report,
            trigger=IntervalTrigger(minutes=5, start_date=start.replace(second=40)),
            id="settlement_stale_claims",
            name="🔒 Stale Release Claim Report",
            replace_existing=True
        )
        logger.info("✅ Stale Release Claim Report scheduled every 5 minutes")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"📋 SETTLEMENT_SCHEDULER: active jobs {job_names}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🛑 SETTLEMENT_SCHEDULER: stopped")


_settlement_scheduler: Optional[SettlementScheduler] = None


def get_settlement_scheduler() -> SettlementScheduler:
    global _settlement_scheduler
    if _settlement_scheduler is None:
        _settlement_scheduler = SettlementScheduler()
    return _settlement_scheduler
