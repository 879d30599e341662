"""
Payout jobs
Monthly automated payout sweep and periodic reconciliation of in-flight payouts
"""

import logging
from typing import Any, Dict

from services.notification_service import NotificationService
from services.settlement_engine import SettlementEngine
from utils.exceptions import InvariantViolation

logger = logging.getLogger(__name__)


async def run_payout_sweep() -> Dict[str, Any]:
    """Entry point for the scheduled payout sweep"""
    notification_service = NotificationService()
    try:
        logger.info("💼 Starting automated payout sweep")
        return await SettlementEngine(notification_service=notification_service).run_payout_sweep()
    except InvariantViolation as e:
        notification_service.alert_operators("Payout sweep halted on invariant violation", {"error": str(e)})
        raise
    except Exception as e:
        logger.error(f"❌ Error in payout sweep: {e}")
        return {"error": str(e)}


async def run_payout_reconciliation() -> Dict[str, Any]:
    """Entry point for the scheduled reconciliation of PROCESSING payouts"""
    notification_service = NotificationService()
    try:
        engine = SettlementEngine(notification_service=notification_service)
        engine.audit_payout_integrity()
        return await engine.reconcile_processing_payouts()
    except InvariantViolation:
        raise
    except Exception as e:
        logger.error(f"❌ Error in payout reconciliation: {e}")
        return {"error": str(e)}
