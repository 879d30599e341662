"""
Consolidated Background Job Scheduler - 4 Ledger Jobs

1. Matching - waitlist matching pass
2. Cleanup & Expiry - allocation expiry, waitlist expiry, campaign completion
3. Payout Sweep - monthly automated payouts to screening centers
4. Payout Reconciliation - resolve PROCESSING payouts with the provider
"""

import logging
from datetime import datetime
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from jobs.matching_runner import run_matching_pass
from jobs.expiry_sweeps import run_expiry_sweeps
from jobs.payout_processor import run_payout_sweep, run_payout_reconciliation

from config import Config

logger = logging.getLogger(__name__)


class ConsolidatedScheduler:
    """
    Ledger scheduler

    Scheduling Strategy:
    - Matching: every MATCHING_INTERVAL_MINUTES
    - Cleanup & Expiry: every EXPIRY_SWEEP_INTERVAL_MINUTES
    - Payout Sweep: cron, PAYOUT_SWEEP_DAY of the month at PAYOUT_SWEEP_HOUR UTC
    - Payout Reconciliation: every PAYOUT_RECONCILIATION_INTERVAL_MINUTES
    """

    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120  # 2-minute grace for missed jobs
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the ledger jobs"""

        # ===== JOB 1: MATCHING =====
        self.scheduler.add_job(
            run_matching_pass,
            trigger=IntervalTrigger(
                minutes=Config.MATCHING_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=5, microsecond=0)
            ),
            id="ledger_matching",
            name="🔄 Waitlist Matching Pass",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True
        )
        logger.info(f"✅ Matching scheduled every {Config.MATCHING_INTERVAL_MINUTES} minutes")

        # ===== JOB 2: CLEANUP & EXPIRY =====
        # Staggered 30s after matching so expired funds are visible to the next pass
        self.scheduler.add_job(
            run_expiry_sweeps,
            trigger=IntervalTrigger(
                minutes=Config.EXPIRY_SWEEP_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=35, microsecond=0)
            ),
            id="ledger_cleanup_expiry",
            name="🧹 Cleanup & Expiry - Allocations, Waitlist, Campaigns",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=120,
            replace_existing=True
        )
        logger.info(f"✅ Cleanup & Expiry scheduled every {Config.EXPIRY_SWEEP_INTERVAL_MINUTES} minutes")

        # ===== JOB 3: PAYOUT SWEEP =====
        self.scheduler.add_job(
            run_payout_sweep,
            trigger=CronTrigger(day=Config.PAYOUT_SWEEP_DAY, hour=Config.PAYOUT_SWEEP_HOUR, minute=0),
            id="ledger_payout_sweep",
            name="💼 Automated Center Payout Sweep",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
            replace_existing=True
        )
        logger.info(
            f"✅ Payout sweep scheduled on day {Config.PAYOUT_SWEEP_DAY} at {Config.PAYOUT_SWEEP_HOUR:02d}:00 UTC"
        )

        # ===== JOB 4: PAYOUT RECONCILIATION =====
        self.scheduler.add_job(
            run_payout_reconciliation,
            trigger=IntervalTrigger(
                minutes=Config.PAYOUT_RECONCILIATION_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=50, microsecond=0)
            ),
            id="ledger_payout_reconciliation",
            name="🔎 Payout Reconciliation - Verify Processing Payouts",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=120,
            replace_existing=True
        )
        logger.info(
            f"✅ Payout reconciliation scheduled every {Config.PAYOUT_RECONCILIATION_INTERVAL_MINUTES} minutes"
        )

        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 Active jobs: {[f'{job.name} ({job.id})' for job in jobs]}")

    def start(self):
        """Register the jobs and start the scheduler (requires a running event loop)"""
        self.setup_jobs()
        self.scheduler.start()
        logger.warning("✅ SCHEDULER ENABLED: ledger jobs running")

    def stop(self):
        """Stop the consolidated scheduler"""
        self.scheduler.shutdown()
        logger.info("📴 Consolidated job scheduler stopped")


_global_scheduler = None


def get_consolidated_scheduler_instance():
    """Get the global consolidated scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = ConsolidatedScheduler()
    return _global_scheduler
