"""Configuration management for the screening donation ledger"""

import os
import logging
from decimal import Decimal
from typing import Dict, Any

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    PLATFORM_NAME = os.getenv("PLATFORM_NAME", "ZeroCancer")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Payment provider (Paystack)
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    PAYSTACK_ENABLED = os.getenv("PAYSTACK_ENABLED", "true").lower() == "true"
    # Seconds; every outbound provider call is bounded by this
    PAYMENT_PROVIDER_TIMEOUT = int(os.getenv("PAYMENT_PROVIDER_TIMEOUT", "30"))
    CURRENCY = "NGN"

    # Matching
    GENERAL_POOL_CAMPAIGN_ID = os.getenv("GENERAL_POOL_CAMPAIGN_ID", "general-donor-pool")
    GENERAL_POOL_DONOR_ID = "system"
    GENERAL_POOL_MAX_PER_PATIENT = int(os.getenv("GENERAL_POOL_MAX_PER_PATIENT", "1000000000"))
    MAX_ACTIVE_ALLOCATIONS_PER_PATIENT = int(os.getenv("MAX_ACTIVE_ALLOCATIONS_PER_PATIENT", "3"))
    MATCHING_BATCH_SIZE = int(os.getenv("MATCHING_BATCH_SIZE", "500"))
    # expiry_first (default) or balance_first
    MATCHING_PRIORITY_POLICY = os.getenv("MATCHING_PRIORITY_POLICY", "expiry_first")

    # Allocation / waitlist windows
    ALLOCATION_GRACE_WINDOW_DAYS = int(os.getenv("ALLOCATION_GRACE_WINDOW_DAYS", "30"))
    WAITLIST_MAX_AGE_DAYS = int(os.getenv("WAITLIST_MAX_AGE_DAYS", "180"))

    # Settlement; money settings are kobo like every ledger amount
    # flat (default) or percentage
    PAYOUT_FEE_POLICY = os.getenv("PAYOUT_FEE_POLICY", "flat")
    PAYOUT_FLAT_FEE = int(os.getenv("PAYOUT_FLAT_FEE", "1000"))
    PAYOUT_PERCENTAGE_FEE = Decimal(os.getenv("PAYOUT_PERCENTAGE_FEE", "1.5"))
    PAYOUT_MIN_FEE = int(os.getenv("PAYOUT_MIN_FEE", "1000"))
    PAYOUT_MAX_FEE = int(os.getenv("PAYOUT_MAX_FEE", "200000"))
    MIN_PAYOUT_AMOUNT = int(os.getenv("MIN_PAYOUT_AMOUNT", "10000"))
    PAYOUT_MAX_RETRIES = int(os.getenv("PAYOUT_MAX_RETRIES", "3"))

    # Optimistic concurrency
    OPTIMISTIC_LOCK_MAX_RETRIES = int(os.getenv("OPTIMISTIC_LOCK_MAX_RETRIES", "3"))
    OPTIMISTIC_LOCK_RETRY_DELAY = float(os.getenv("OPTIMISTIC_LOCK_RETRY_DELAY", "0.05"))

    # Scheduler cadence
    MATCHING_INTERVAL_MINUTES = int(os.getenv("MATCHING_INTERVAL_MINUTES", "60"))
    EXPIRY_SWEEP_INTERVAL_MINUTES = int(os.getenv("EXPIRY_SWEEP_INTERVAL_MINUTES", "15"))
    PAYOUT_RECONCILIATION_INTERVAL_MINUTES = int(os.getenv("PAYOUT_RECONCILIATION_INTERVAL_MINUTES", "30"))
    # Automated payouts run on this day of the month at PAYOUT_SWEEP_HOUR UTC
    PAYOUT_SWEEP_DAY = os.getenv("PAYOUT_SWEEP_DAY", "1")
    PAYOUT_SWEEP_HOUR = int(os.getenv("PAYOUT_SWEEP_HOUR", "6"))

    # Notifications (Brevo)
    BREVO_API_KEY = os.getenv("BREVO_API_KEY")
    FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@zerocancer.africa")
    FROM_NAME = os.getenv("FROM_NAME", "ZeroCancer")
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@zerocancer.africa")
    NOTIFICATIONS_ENABLED = os.getenv("NOTIFICATIONS_ENABLED", "true").lower() == "true"

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Ledger Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Database configured: {bool(Config.DATABASE_URL)}")
        logger.info(f"   Paystack enabled: {Config.PAYSTACK_ENABLED and bool(Config.PAYSTACK_SECRET_KEY)}")
        logger.info(f"   Fee policy: {Config.PAYOUT_FEE_POLICY}")
        logger.info(f"   Matching policy: {Config.MATCHING_PRIORITY_POLICY}")
        logger.info(f"   Allocation grace window: {Config.ALLOCATION_GRACE_WINDOW_DAYS} days")

    @classmethod
    def validate(cls) -> Dict[str, Any]:
        """Check required settings; returns a report instead of raising"""
        report: Dict[str, Any] = {"valid": True, "warnings": [], "errors": []}

        if not cls.DATABASE_URL:
            report["errors"].append("DATABASE_URL is not set")
            report["valid"] = False

        if not cls.PAYSTACK_SECRET_KEY:
            message = "PAYSTACK_SECRET_KEY is not set - payouts cannot be submitted"
            if cls.IS_PRODUCTION:
                report["errors"].append(message)
                report["valid"] = False
            else:
                report["warnings"].append(message)

        if not cls.BREVO_API_KEY:
            report["warnings"].append("BREVO_API_KEY is not set - email notifications will be skipped")

        if cls.PAYOUT_FEE_POLICY not in ("flat", "percentage"):
            report["errors"].append(f"Unknown PAYOUT_FEE_POLICY: {cls.PAYOUT_FEE_POLICY}")
            report["valid"] = False

        if cls.MATCHING_PRIORITY_POLICY not in ("expiry_first", "balance_first"):
            report["errors"].append(f"Unknown MATCHING_PRIORITY_POLICY: {cls.MATCHING_PRIORITY_POLICY}")
            report["valid"] = False

        for warning in report["warnings"]:
            logger.warning(f"⚠️ CONFIG: {warning}")
        for error in report["errors"]:
            logger.error(f"❌ CONFIG: {error}")

        return report
