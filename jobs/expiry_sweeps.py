"""
Cleanup & expiry job
Expires stale allocations and waitlist entries, then completes drained or expired campaigns
"""

import asyncio
import logging
from typing import Any, Dict

from services.allocation_lifecycle import AllocationLifecycleManager
from services.campaign_service import CampaignService
from services.notification_service import NotificationService
from services.waitlist_service import WaitlistService
from utils.exceptions import InvariantViolation

logger = logging.getLogger(__name__)


async def run_expiry_sweeps() -> Dict[str, Any]:
    """Entry point for the scheduled expiry job; each sweep runs even if an earlier one fails"""
    notification_service = NotificationService()
    summary: Dict[str, Any] = {}

    try:
        manager = AllocationLifecycleManager(notification_service=notification_service)
        sweep = await asyncio.to_thread(manager.expire_stale_allocations)
        summary["allocations_expired"] = len(sweep.expired)
        summary["amount_restored"] = sweep.amount_restored
        summary["allocation_errors"] = len(sweep.errors)
    except InvariantViolation as e:
        notification_service.alert_operators("Allocation expiry halted on invariant violation", {"error": str(e)})
        raise
    except Exception as e:
        logger.error(f"❌ Error expiring allocations: {e}")
        summary["allocation_error"] = str(e)

    try:
        summary["waitlist_expired"] = len(await asyncio.to_thread(WaitlistService().expire_stale_waitlist))
    except Exception as e:
        logger.error(f"❌ Error expiring waitlist entries: {e}")
        summary["waitlist_error"] = str(e)

    try:
        summary["campaigns_completed"] = len(await asyncio.to_thread(CampaignService().complete_finished_campaigns))
    except Exception as e:
        logger.error(f"❌ Error completing campaigns: {e}")
        summary["campaign_error"] = str(e)

    logger.info(f"🧹 Expiry sweeps finished: {summary}")
    return summary
