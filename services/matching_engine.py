"""
Waitlist Matching Engine
Pairs PENDING waitlist entries with funded campaigns, oldest entry first.

Each entry is matched in its own transaction:
1. Conditional decrement of the chosen campaign's balance
2. Conditional flip of the waitlist entry PENDING → MATCHED
3. Insert of the ACTIVE allocation

A lost race on the campaign moves on to the next candidate; a lost race on the
entry rolls that entry back. Committed matches are never undone by a later
failure, so a pass can be interrupted and re-run safely.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Any

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Allocation, AllocationStatus, Campaign, CampaignStatus, MatchingExecution,
    MatchingExecutionStatus, WaitlistEntry, WaitlistStatus
)
from services.campaign_fund_manager import CampaignFundManager
from services.notification_service import NotificationService
from services.targeting_evaluator import allocation_amount, is_eligible, targeting_score
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import BudgetExceededError, ConflictError, InvariantViolation, LedgerError
from utils.optimistic_locking import conditional_update
from utils.reference_generator import generate_execution_reference

logger = logging.getLogger(__name__)


class MatchOutcome(Enum):
    MATCHED = "matched"
    NO_ELIGIBLE_CAMPAIGN = "no_eligible_campaign"
    LIMIT_REACHED = "limit_reached"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass
class MatchResult:
    """Outcome of evaluating one waitlist entry"""
    waitlist_id: str
    patient_id: str
    screening_type_id: str
    outcome: MatchOutcome
    campaign_id: Optional[str] = None
    allocation_id: Optional[str] = None
    amount: int = 0
    targeting_score: int = 0
    candidates_considered: int = 0
    detail: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.outcome == MatchOutcome.MATCHED


@dataclass
class _PendingNotification:
    patient_email: Optional[str]
    patient_name: str
    screening_name: str
    amount: int
    campaign_title: str


# ============================================================================
# PRIORITY POLICIES
# ============================================================================

def expiry_first_key(campaign: Campaign):
    """Soonest expiry first (undated last), then largest balance, then oldest, then id"""
    return (
        campaign.is_general_pool,
        campaign.expiry_date is None,
        campaign.expiry_date or datetime.max,
        -campaign.current_amount,
        campaign.created_at,
        campaign.id,
    )


def balance_first_key(campaign: Campaign):
    """Largest balance first, then soonest expiry, then oldest, then id"""
    return (
        campaign.is_general_pool,
        -campaign.current_amount,
        campaign.expiry_date is None,
        campaign.expiry_date or datetime.max,
        campaign.created_at,
        campaign.id,
    )


PRIORITY_POLICIES: Dict[str, Callable[[Campaign], Any]] = {
    "expiry_first": expiry_first_key,
    "balance_first": balance_first_key,
}


class MatchingEngine:
    """Runs FIFO matching passes over the waitlist"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        notification_service: Optional[NotificationService] = None,
        max_entries: Optional[int] = None,
        priority_policy: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.notification_service = notification_service
        self.max_entries = Config.MATCHING_BATCH_SIZE if max_entries is None else max_entries

        policy_name = priority_policy or Config.MATCHING_PRIORITY_POLICY
        if policy_name not in PRIORITY_POLICIES:
            raise ValueError(f"Unknown matching priority policy: {policy_name}")
        self.priority_key = PRIORITY_POLICIES[policy_name]
        self.priority_policy = policy_name

    def run_matching_pass(self, trigger: str = "scheduler") -> List[MatchResult]:
        """
        Evaluate PENDING waitlist entries oldest-first and allocate funds where possible.

        Returns:
            List[MatchResult]: one result per entry evaluated this pass
        """
        started = time.monotonic()
        execution_id = self._start_execution(trigger)
        logger.info(f"🔄 MATCHING_PASS_STARTED: execution={execution_id} policy={self.priority_policy}")

        results: List[MatchResult] = []
        errors: List[Dict[str, str]] = []
        try:
            for entry_id in self._pending_entry_ids():
                result, notification = self._match_entry(entry_id, execution_id)
                if result is None:
                    continue
                results.append(result)
                if result.outcome == MatchOutcome.ERROR:
                    errors.append({"waitlist_id": entry_id, "error": result.detail})
                if notification is not None:
                    self._notify_matched(notification)
        except Exception as e:
            errors.append({"error": f"{type(e).__name__}: {e}"})
            self._finish_execution(execution_id, results, errors, started, MatchingExecutionStatus.FAILED)
            logger.error(f"❌ MATCHING_PASS_FAILED: execution={execution_id}: {e}")
            raise

        self._finish_execution(execution_id, results, errors, started, MatchingExecutionStatus.COMPLETED)
        matched = sum(1 for result in results if result.matched)
        logger.info(
            f"✅ MATCHING_PASS_COMPLETE: execution={execution_id} evaluated={len(results)} "
            f"matched={matched} funds={sum(result.amount for result in results)}"
        )
        return results

    # ------------------------------------------------------------------
    # Per-entry unit of work
    # ------------------------------------------------------------------

    def _pending_entry_ids(self) -> List[str]:
        with atomic_transaction(session_factory=self.session_factory) as session:
            return list(session.scalars(
                select(WaitlistEntry.id)
                .where(WaitlistEntry.status == WaitlistStatus.PENDING.value)
                .order_by(WaitlistEntry.joined_at.asc(), WaitlistEntry.id.asc())
                .limit(self.max_entries)
            ))

    def _match_entry(self, entry_id: str, execution_id: str):
        """Returns (MatchResult or None when the entry is no longer PENDING, notification or None)"""
        try:
            with atomic_transaction(session_factory=self.session_factory) as session:
                return self._allocate_for_entry(session, entry_id, execution_id)

        except InvariantViolation:
            raise
        except (ConflictError, IntegrityError) as e:
            logger.warning(f"🔒 MATCH_CONFLICT: waitlist {entry_id} lost a concurrent update: {e}")
            return self._bare_result(entry_id, MatchOutcome.CONFLICT, str(e)), None
        except (LedgerError, SQLAlchemyError) as e:
            logger.error(f"❌ MATCH_ERROR: waitlist {entry_id}: {e}")
            return self._bare_result(entry_id, MatchOutcome.ERROR, str(e)), None

    def _allocate_for_entry(self, session: Session, entry_id: str, execution_id: str):
        entry = session.get(WaitlistEntry, entry_id)
        if entry is None or entry.status != WaitlistStatus.PENDING.value:
            return None, None

        result = MatchResult(
            waitlist_id=entry.id,
            patient_id=entry.patient_id,
            screening_type_id=entry.screening_type_id,
            outcome=MatchOutcome.NO_ELIGIBLE_CAMPAIGN,
        )

        limit_reason = self._patient_limit_reason(session, entry)
        if limit_reason:
            result.outcome = MatchOutcome.LIMIT_REACHED
            result.detail = limit_reason
            logger.info(f"⏭️ MATCH_SKIPPED: waitlist {entry.id}: {limit_reason}")
            return result, None

        now = get_naive_utc_now()
        patient = entry.patient
        screening_type = entry.screening_type
        candidates = self._candidate_campaigns(session, entry, now)
        result.candidates_considered = len(candidates)

        for campaign in candidates:
            amount = allocation_amount(campaign, screening_type.agreed_price)
            try:
                CampaignFundManager.reserve(session, campaign.id, amount)
            except BudgetExceededError:
                logger.debug(f"💸 CANDIDATE_DRAINED: campaign {campaign.id} cannot fund {amount}")
                continue

            claimed = conditional_update(
                session, WaitlistEntry, entry.id,
                {"status": WaitlistStatus.MATCHED.value, "claimed_at": now},
                WaitlistEntry.status == WaitlistStatus.PENDING.value,
            )
            if not claimed:
                raise ConflictError(f"Waitlist entry {entry.id} was matched by another pass")

            allocation = Allocation(
                campaign_id=campaign.id,
                waitlist_id=entry.id,
                patient_id=entry.patient_id,
                screening_type_id=entry.screening_type_id,
                amount=amount,
                status=AllocationStatus.ACTIVE.value,
                matching_execution_id=execution_id,
                created_at=now,
            )
            session.add(allocation)
            session.flush()

            result.outcome = MatchOutcome.MATCHED
            result.campaign_id = campaign.id
            result.allocation_id = allocation.id
            result.amount = amount
            result.targeting_score = targeting_score(campaign, patient, now)
            logger.info(
                f"✅ MATCH_CREATED: waitlist {entry.id} patient {entry.patient_id} ← "
                f"campaign {campaign.id} amount={amount} allocation={allocation.id}"
            )
            notification = _PendingNotification(
                patient_email=patient.email,
                patient_name=patient.full_name,
                screening_name=screening_type.name,
                amount=amount,
                campaign_title=campaign.title,
            )
            return result, notification

        logger.info(f"💤 NO_FUNDING: waitlist {entry.id} stays pending ({len(candidates)} candidates)")
        return result, None

    def _patient_limit_reason(self, session: Session, entry: WaitlistEntry) -> Optional[str]:
        active_for_patient = session.scalar(
            select(func.count(Allocation.id)).where(
                Allocation.patient_id == entry.patient_id,
                Allocation.status == AllocationStatus.ACTIVE.value,
            )
        )
        if active_for_patient >= Config.MAX_ACTIVE_ALLOCATIONS_PER_PATIENT:
            return f"patient already holds {active_for_patient} active allocations"

        active_for_pair = session.scalar(
            select(func.count(Allocation.id)).where(
                Allocation.patient_id == entry.patient_id,
                Allocation.screening_type_id == entry.screening_type_id,
                Allocation.status == AllocationStatus.ACTIVE.value,
            )
        )
        if active_for_pair:
            return "patient already holds an active allocation for this screening"
        return None

    def _candidate_campaigns(self, session: Session, entry: WaitlistEntry, now: datetime) -> List[Campaign]:
        campaigns = session.scalars(
            select(Campaign).where(
                Campaign.status == CampaignStatus.ACTIVE.value,
                Campaign.current_amount > 0,
            )
        ).all()
        price = entry.screening_type.agreed_price
        eligible = [
            campaign for campaign in campaigns
            if is_eligible(campaign, entry.patient, entry.screening_type_id, price, now)
        ]
        return sorted(eligible, key=self.priority_key)

    def _bare_result(self, entry_id: str, outcome: MatchOutcome, detail: str) -> MatchResult:
        with atomic_transaction(session_factory=self.session_factory) as session:
            entry = session.get(WaitlistEntry, entry_id)
            return MatchResult(
                waitlist_id=entry_id,
                patient_id=entry.patient_id if entry else None,
                screening_type_id=entry.screening_type_id if entry else None,
                outcome=outcome,
                detail=detail,
            )

    # ------------------------------------------------------------------
    # Audit and notifications
    # ------------------------------------------------------------------

    def _start_execution(self, trigger: str) -> str:
        with atomic_transaction(session_factory=self.session_factory) as session:
            execution = MatchingExecution(
                execution_reference=generate_execution_reference(),
                status=MatchingExecutionStatus.RUNNING.value,
                trigger=trigger,
            )
            session.add(execution)
            session.flush()
            return execution.id

    def _finish_execution(self, execution_id: str, results: List[MatchResult], errors: List[Dict[str, str]],
                          started: float, status: MatchingExecutionStatus) -> None:
        outcomes = [result.outcome for result in results]
        with atomic_transaction(session_factory=self.session_factory) as session:
            execution = session.get(MatchingExecution, execution_id)
            execution.status = status.value
            execution.completed_at = get_naive_utc_now()
            execution.entries_evaluated = len(results)
            execution.successful_matches = outcomes.count(MatchOutcome.MATCHED)
            execution.skipped_no_funding = outcomes.count(MatchOutcome.NO_ELIGIBLE_CAMPAIGN)
            execution.skipped_limits = outcomes.count(MatchOutcome.LIMIT_REACHED)
            execution.conflicts = outcomes.count(MatchOutcome.CONFLICT)
            execution.total_funds_allocated = sum(result.amount for result in results if result.matched)
            execution.processing_time_ms = int((time.monotonic() - started) * 1000)
            execution.errors = errors or None

    def _notify_matched(self, notification: _PendingNotification) -> None:
        if self.notification_service is None:
            return
        try:
            self.notification_service.notify_patient_matched(
                notification.patient_email,
                notification.patient_name,
                notification.screening_name,
                notification.amount,
                notification.campaign_title,
            )
        except Exception as e:
            logger.error(f"❌ Failed to send match notification: {e}")
