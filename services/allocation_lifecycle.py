"""
Allocation Lifecycle Manager
Drives allocations out of ACTIVE and keeps campaign balances conserved.

    ACTIVE → CONSUMED   appointment completed (funds are spent)
    ACTIVE → EXPIRED    grace window elapsed without a booking
    ACTIVE → RECLAIMED  patient declined, appointment cancelled or campaign deleted

EXPIRED and RECLAIMED return the amount to the campaign and put the waitlist
entry back to PENDING with its original joined_at, so it keeps its queue position.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Allocation, AllocationStatus, Campaign, WaitlistEntry, WaitlistStatus
)
from services.campaign_fund_manager import CampaignFundManager
from services.notification_service import NotificationService
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import ConflictError, InvariantViolation, LedgerError, NotFoundError, ValidationError
from utils.optimistic_locking import conditional_update
from utils.state_validators import AllocationStateValidator

logger = logging.getLogger(__name__)


@dataclass
class ExpirySweepResult:
    expired: List[str] = field(default_factory=list)
    amount_restored: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)


class AllocationLifecycleManager:
    """State transitions for allocations"""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None,
                 notification_service: Optional[NotificationService] = None):
        self.session_factory = session_factory
        self.notification_service = notification_service

    # ------------------------------------------------------------------
    # Releasing (EXPIRED / RECLAIMED)
    # ------------------------------------------------------------------

    @staticmethod
    def release_allocation(session: Session, allocation: Allocation, new_status: AllocationStatus,
                           reason: str) -> str:
        """
        Release an ACTIVE allocation inside the caller's transaction.

        Returns:
            str: id of the campaign that received the restored funds
        """
        AllocationStateValidator.assert_transition(allocation.status, new_status, allocation.id)
        now = get_naive_utc_now()

        released = conditional_update(
            session, Allocation, allocation.id,
            {"status": new_status.value, "resolved_at": now, "resolution_reason": reason},
            Allocation.status == AllocationStatus.ACTIVE.value,
        )
        if not released:
            raise ConflictError(f"Allocation {allocation.id} is no longer ACTIVE")

        credited_campaign_id = CampaignFundManager.restore(session, allocation.campaign_id, allocation.amount)

        reverted = conditional_update(
            session, WaitlistEntry, allocation.waitlist_id,
            {"status": WaitlistStatus.PENDING.value, "claimed_at": None, "requeued_at": now},
            WaitlistEntry.status == WaitlistStatus.MATCHED.value,
        )
        if not reverted:
            raise ConflictError(f"Waitlist entry {allocation.waitlist_id} is no longer MATCHED")

        logger.info(
            f"↩️ ALLOCATION_{new_status.name}: {allocation.id} amount={allocation.amount} "
            f"→ campaign {credited_campaign_id}; waitlist {allocation.waitlist_id} back to pending ({reason})"
        )
        return credited_campaign_id

    @staticmethod
    def consume_allocation(session: Session, allocation_id: str) -> Allocation:
        """ACTIVE → CONSUMED inside the appointment-completion transaction; funds stay spent"""
        allocation = session.get(Allocation, allocation_id)
        if allocation is None:
            raise NotFoundError("Allocation", allocation_id)
        AllocationStateValidator.assert_transition(allocation.status, AllocationStatus.CONSUMED, allocation.id)

        consumed = conditional_update(
            session, Allocation, allocation.id,
            {
                "status": AllocationStatus.CONSUMED.value,
                "resolved_at": get_naive_utc_now(),
                "resolution_reason": "appointment_completed",
            },
            Allocation.status == AllocationStatus.ACTIVE.value,
        )
        if not consumed:
            raise ConflictError(f"Allocation {allocation.id} is no longer ACTIVE")
        logger.info(f"✅ ALLOCATION_CONSUMED: {allocation.id} amount={allocation.amount}")
        return allocation

    def expire_stale_allocations(self, grace_window: Optional[timedelta] = None) -> ExpirySweepResult:
        """
        Expire ACTIVE allocations older than the grace window that were never booked.

        Each allocation is released in its own transaction so one failure does
        not hold back the rest of the sweep.
        """
        if grace_window is None:
            grace_window = timedelta(days=Config.ALLOCATION_GRACE_WINDOW_DAYS)
        cutoff = get_naive_utc_now() - grace_window
        sweep = ExpirySweepResult()

        with atomic_transaction(session_factory=self.session_factory) as session:
            stale_ids = list(session.scalars(
                select(Allocation.id).where(
                    Allocation.status == AllocationStatus.ACTIVE.value,
                    Allocation.appointment_id.is_(None),
                    Allocation.created_at < cutoff,
                ).order_by(Allocation.created_at.asc())
            ))

        for allocation_id in stale_ids:
            try:
                with atomic_transaction(session_factory=self.session_factory) as session:
                    allocation = session.get(Allocation, allocation_id)
                    if allocation is None or allocation.status != AllocationStatus.ACTIVE.value or allocation.appointment_id:
                        continue
                    self.release_allocation(session, allocation, AllocationStatus.EXPIRED, "grace_window_elapsed")
                    patient = allocation.waitlist_entry.patient
                    screening_name = allocation.waitlist_entry.screening_type.name
                    notice = (patient.email, patient.full_name, screening_name)
                    amount = allocation.amount

                sweep.expired.append(allocation_id)
                sweep.amount_restored += amount
                self._notify_expired(*notice)

            except InvariantViolation:
                raise
            except (LedgerError, SQLAlchemyError) as e:
                logger.error(f"❌ ALLOCATION_EXPIRY_FAILED: {allocation_id}: {e}")
                sweep.errors.append({"allocation_id": allocation_id, "error": str(e)})

        if sweep.expired:
            logger.info(f"⏰ ALLOCATION_EXPIRY_SWEEP: expired {len(sweep.expired)}, restored {sweep.amount_restored}")
        return sweep

    def reclaim_allocation(self, allocation_id: str, reason: str, session: Optional[Session] = None) -> Allocation:
        """Administrative ACTIVE → RECLAIMED; joins the caller's transaction when one is given"""
        with atomic_transaction(session=session, session_factory=self.session_factory) as tx:
            allocation = tx.get(Allocation, allocation_id)
            if allocation is None:
                raise NotFoundError("Allocation", allocation_id)
            self.release_allocation(tx, allocation, AllocationStatus.RECLAIMED, reason)
            return allocation

    def decline_allocation(self, allocation_id: str, patient_id: str) -> Allocation:
        """Patient gives up an unbooked sponsorship; the entry returns to the queue"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            allocation = session.get(Allocation, allocation_id)
            if allocation is None:
                raise NotFoundError("Allocation", allocation_id)
            if allocation.patient_id != patient_id:
                raise ValidationError(f"Allocation {allocation_id} does not belong to patient {patient_id}")
            if allocation.appointment_id:
                raise ValidationError(
                    f"Allocation {allocation_id} is booked; cancel appointment {allocation.appointment_id} instead"
                )
            self.release_allocation(session, allocation, AllocationStatus.RECLAIMED, "patient_declined")
            return allocation

    def _notify_expired(self, patient_email: Optional[str], patient_name: str, screening_name: str) -> None:
        if self.notification_service is None:
            return
        try:
            self.notification_service.notify_allocation_expired(patient_email, patient_name, screening_name)
        except Exception as e:
            logger.error(f"❌ Failed to send expiry notification: {e}")


def verify_budget_conservation(session: Session, campaign_id: str) -> Dict[str, int]:
    """
    Check current + Σ ACTIVE == target − Σ CONSUMED for one campaign.

    Raises:
        InvariantViolation: the balance does not add up
    """
    campaign = session.get(Campaign, campaign_id, populate_existing=True)
    if campaign is None:
        raise NotFoundError("Campaign", campaign_id)

    def _sum(status: AllocationStatus) -> int:
        return session.scalar(
            select(func.coalesce(func.sum(Allocation.amount), 0)).where(
                Allocation.campaign_id == campaign_id,
                Allocation.status == status.value,
            )
        )

    reserved = _sum(AllocationStatus.ACTIVE)
    spent = _sum(AllocationStatus.CONSUMED)
    report = {
        "target_amount": campaign.target_amount,
        "current_amount": campaign.current_amount,
        "reserved": reserved,
        "spent": spent,
    }
    if campaign.current_amount + reserved != campaign.target_amount - spent or reserved + spent > campaign.target_amount:
        raise InvariantViolation(f"Budget conservation broken for campaign {campaign_id}: {report}")
    return report
