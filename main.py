#!/usr/bin/env python3
"""
Ledger Worker Startup

Deterministic startup sequence:
1. Load .env and configure logging
2. Validate configuration
3. Verify database connection and create tables
4. Start the consolidated scheduler (or run a single job and exit)
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

from config import Config  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class LedgerStartupManager:
    """Startup manager with a single, explicit sequence"""

    def __init__(self):
        self.startup_errors = []

    def initialize_database(self) -> bool:
        try:
            logger.info("🗄️ Initializing database...")
            from database import create_tables, test_connection
            if not test_connection():
                raise RuntimeError("Database connection test failed")
            create_tables()
            logger.info("✅ Database initialization complete")
            return True
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False

    def validate_configuration(self) -> bool:
        Config.log_environment_config()
        report = Config.validate()
        if not report["valid"]:
            self.startup_errors.extend(report["errors"])
        return report["valid"]

    def startup(self) -> bool:
        if not self.validate_configuration():
            logger.error(f"❌ Configuration invalid: {self.startup_errors}")
            return False
        return self.initialize_database()


async def run_scheduler_forever():
    from jobs.consolidated_scheduler import get_consolidated_scheduler_instance

    scheduler = get_consolidated_scheduler_instance()
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.stop()


async def run_single_job(job_name: str):
    from jobs.matching_runner import run_matching_pass
    from jobs.expiry_sweeps import run_expiry_sweeps
    from jobs.payout_processor import run_payout_sweep, run_payout_reconciliation

    jobs = {
        "matching": lambda: run_matching_pass(trigger="manual"),
        "expiry": run_expiry_sweeps,
        "payouts": run_payout_sweep,
        "reconcile": run_payout_reconciliation,
    }
    result = await jobs[job_name]()
    logger.info(f"🏁 {job_name} finished: {result}")
    return result


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=f"{Config.PLATFORM_NAME} donation ledger worker")
    parser.add_argument(
        "--run-once",
        choices=["matching", "expiry", "payouts", "reconcile"],
        help="Run one job immediately and exit instead of starting the scheduler",
    )
    args = parser.parse_args(argv)

    manager = LedgerStartupManager()
    if not manager.startup():
        return 1

    try:
        if args.run_once:
            asyncio.run(run_single_job(args.run_once))
        else:
            asyncio.run(run_scheduler_forever())
    except KeyboardInterrupt:
        logger.info("👋 Shutting down ledger worker")
    return 0


if __name__ == "__main__":
    sys.exit(main())
