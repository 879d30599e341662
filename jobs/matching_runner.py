"""
Matching job
Runs a waitlist matching pass on the scheduler cadence or on admin demand
"""

import asyncio
import logging
from typing import Any, Dict

from services.matching_engine import MatchingEngine, MatchOutcome
from services.notification_service import NotificationService
from utils.exceptions import InvariantViolation

logger = logging.getLogger(__name__)


async def run_matching_pass(trigger: str = "scheduler") -> Dict[str, Any]:
    """Entry point for the scheduled matching job"""
    notification_service = NotificationService()
    try:
        logger.info(f"🔄 Starting waitlist matching pass ({trigger})")
        engine = MatchingEngine(notification_service=notification_service)
        # Blocking DB work runs off the scheduler loop
        results = await asyncio.to_thread(engine.run_matching_pass, trigger=trigger)
        summary = {
            "evaluated": len(results),
            "matched": sum(1 for result in results if result.matched),
            "conflicts": sum(1 for result in results if result.outcome == MatchOutcome.CONFLICT),
            "errors": sum(1 for result in results if result.outcome == MatchOutcome.ERROR),
            "allocated": sum(result.amount for result in results if result.matched),
        }
        logger.info(f"✅ Matching pass finished: {summary}")
        return summary

    except InvariantViolation as e:
        notification_service.alert_operators("Matching halted on invariant violation", {"error": str(e)})
        raise
    except Exception as e:
        logger.error(f"❌ Error in matching job: {e}")
        return {"error": str(e)}
