"""
Campaign Service
Funding, top-ups, completion and deletion of donor campaigns.

Deletion always names what happens to the unspent balance:

    RecycleToGeneralPool()          balance joins the general donor pool
    TransferToCampaign(target_id)   balance joins another campaign
    RefundToDonor()                 balance is recorded as a pending donor refund

Anything else is rejected before a single row changes.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Union

from sqlalchemy import select, or_, and_
from sqlalchemy.orm import Session

from config import Config
from models import (
    Allocation, AllocationStatus, Campaign, CampaignStatus, ScreeningType, TargetGender,
    Transaction, TransactionStatus, TransactionType
)
from services.allocation_lifecycle import AllocationLifecycleManager
from services.campaign_fund_manager import (
    CampaignFundManager, DISPOSITION_RECYCLE, DISPOSITION_REFUND, DISPOSITION_TRANSFER
)
from services.targeting_evaluator import validate_targeting
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.exceptions import NotFoundError, ValidationError
from utils.optimistic_locking import conditional_update, versioned_update, with_optimistic_locking
from utils.state_validators import CampaignStateValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecycleToGeneralPool:
    pass


@dataclass(frozen=True)
class TransferToCampaign:
    target_campaign_id: str


@dataclass(frozen=True)
class RefundToDonor:
    pass


Disposition = Union[RecycleToGeneralPool, TransferToCampaign, RefundToDonor]


@dataclass
class CampaignDeletionResult:
    campaign_id: str
    disposition: str
    amount_moved: int = 0
    destination_campaign_id: Optional[str] = None
    refund_transaction_id: Optional[str] = None
    reclaimed_allocation_ids: List[str] = field(default_factory=list)


class CampaignService:
    """Donor campaign operations"""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    def _record_donation(self, session: Session, amount: int, payment_reference: str,
                         campaign_id: str, channel: str) -> Transaction:
        now = get_naive_utc_now()
        donation = Transaction(
            type=TransactionType.DONATION.value,
            amount=amount,
            status=TransactionStatus.PAID.value,
            payment_reference=payment_reference,
            payment_channel=channel,
            related_campaign_id=campaign_id,
            paid_at=now,
        )
        session.add(donation)
        session.flush()
        return donation

    def _existing_donation(self, session: Session, payment_reference: str) -> Optional[Transaction]:
        return session.scalar(select(Transaction).where(Transaction.payment_reference == payment_reference))

    def fund_campaign(
        self,
        donor_id: str,
        target_amount: int,
        max_per_patient: int,
        screening_type_ids: Iterable[str],
        funding_reference: str,
        title: str = "Untitled Campaign",
        purpose: Optional[str] = None,
        target_states: Optional[List[str]] = None,
        target_lgas: Optional[List[str]] = None,
        target_gender: str = TargetGender.ALL.value,
        age_min: Optional[int] = None,
        age_max: Optional[int] = None,
        expiry_date: Optional[datetime] = None,
        payment_channel: str = "paystack",
    ) -> Campaign:
        """
        Create an ACTIVE campaign once its funding payment is confirmed.

        Replaying the same funding_reference returns the campaign it created.
        """
        screening_type_ids = list(screening_type_ids or [])
        expiry_date = ensure_naive_datetime(expiry_date)
        validate_targeting(
            target_amount, max_per_patient, screening_type_ids, target_gender,
            age_min, age_max, target_states, target_lgas, expiry_date,
        )
        if not funding_reference:
            raise ValidationError("funding_reference is required to create a campaign")

        with atomic_transaction(session_factory=self.session_factory) as session:
            replay = self._existing_donation(session, funding_reference)
            if replay is not None:
                logger.info(f"🔁 CAMPAIGN_FUNDING_REPLAY: {funding_reference} already funded {replay.related_campaign_id}")
                return session.get(Campaign, replay.related_campaign_id)

            screening_types = session.scalars(
                select(ScreeningType).where(ScreeningType.id.in_(screening_type_ids))
            ).all()
            missing = set(screening_type_ids) - {screening_type.id for screening_type in screening_types}
            if missing:
                raise NotFoundError("ScreeningType", ", ".join(sorted(missing)))

            campaign = Campaign(
                donor_id=donor_id,
                title=title,
                purpose=purpose,
                target_amount=target_amount,
                current_amount=target_amount,
                max_per_patient=max_per_patient,
                target_states=list(target_states or []),
                target_lgas=list(target_lgas or []),
                target_gender=target_gender.strip().lower(),
                age_min=age_min,
                age_max=age_max,
                expiry_date=expiry_date,
                funding_reference=funding_reference,
                status=CampaignStatus.ACTIVE.value,
                screening_types=list(screening_types),
            )
            session.add(campaign)
            session.flush()
            self._record_donation(session, target_amount, funding_reference, campaign.id, payment_channel)

            logger.info(
                f"🎯 CAMPAIGN_FUNDED: {campaign.id} donor={donor_id} amount={target_amount} "
                f"max_per_patient={max_per_patient} screenings={sorted(screening_type_ids)}"
            )
            return campaign

    def top_up_campaign(self, campaign_id: str, amount: int, payment_reference: str,
                        payment_channel: str = "paystack") -> Campaign:
        """Add confirmed donor money to an existing campaign"""
        if not payment_reference:
            raise ValidationError("payment_reference is required for a top-up")

        with atomic_transaction(session_factory=self.session_factory) as session:
            if self._existing_donation(session, payment_reference) is not None:
                logger.info(f"🔁 TOP_UP_REPLAY: {payment_reference} already applied")
                return session.get(Campaign, campaign_id)

            if session.get(Campaign, campaign_id) is None:
                raise NotFoundError("Campaign", campaign_id)
            CampaignFundManager.credit(session, campaign_id, amount)
            self._record_donation(session, amount, payment_reference, campaign_id, payment_channel)
            logger.info(f"💰 CAMPAIGN_TOPPED_UP: {campaign_id} +{amount}")
            return session.get(Campaign, campaign_id, populate_existing=True)

    def add_to_general_pool(self, amount: int, payment_reference: str,
                            payment_channel: str = "anonymous_donation") -> Campaign:
        """Anonymous donations fund the general pool, which is created on first use"""
        if not payment_reference:
            raise ValidationError("payment_reference is required for a donation")

        with atomic_transaction(session_factory=self.session_factory) as session:
            pool = CampaignFundManager.ensure_general_pool(session)
            if self._existing_donation(session, payment_reference) is not None:
                logger.info(f"🔁 GENERAL_POOL_REPLAY: {payment_reference} already applied")
                return pool

            CampaignFundManager.credit(session, pool.id, amount)
            self._record_donation(session, amount, payment_reference, pool.id, payment_channel)
            logger.info(f"🏦 GENERAL_POOL_DONATION: +{amount} ({payment_reference})")
            return session.get(Campaign, pool.id, populate_existing=True)

    # ------------------------------------------------------------------
    # Completion sweep
    # ------------------------------------------------------------------

    def complete_finished_campaigns(self) -> List[str]:
        """ACTIVE campaigns that are drained or past expiry become COMPLETED"""
        now = get_naive_utc_now()
        finished_condition = or_(
            Campaign.current_amount == 0,
            and_(Campaign.expiry_date.is_not(None), Campaign.expiry_date <= now),
        )
        completed: List[str] = []

        with atomic_transaction(session_factory=self.session_factory) as session:
            candidate_ids = list(session.scalars(
                select(Campaign.id).where(
                    Campaign.status == CampaignStatus.ACTIVE.value,
                    Campaign.id != Config.GENERAL_POOL_CAMPAIGN_ID,
                    finished_condition,
                )
            ))
            for campaign_id in candidate_ids:
                if conditional_update(
                    session, Campaign, campaign_id,
                    {"status": CampaignStatus.COMPLETED.value, "version": Campaign.version + 1},
                    Campaign.status == CampaignStatus.ACTIVE.value,
                    finished_condition,
                ):
                    completed.append(campaign_id)

        if completed:
            logger.info(f"🏁 CAMPAIGNS_COMPLETED: {len(completed)} campaigns drained or expired")
        return completed

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    @with_optimistic_locking()
    def delete_campaign(self, campaign_id: str, disposition: Disposition,
                        deleted_by: str = "admin") -> CampaignDeletionResult:
        """
        Delete a campaign and dispose of its unspent balance.

        Unbooked ACTIVE allocations are reclaimed first and their waitlist entries
        return to the queue. Booked allocations stay ACTIVE; if they are later
        released their funds follow the same disposition.

        Raises:
            ValidationError: missing/unknown disposition, general pool, bad transfer target
            ConflictError: the campaign kept changing underneath every retry
        """
        disposition_tag, target_id = self._disposition_fields(campaign_id, disposition)

        with atomic_transaction(session_factory=self.session_factory) as session:
            campaign = session.get(Campaign, campaign_id)
            if campaign is None:
                raise NotFoundError("Campaign", campaign_id)
            if campaign.is_general_pool:
                raise ValidationError("The general donor pool cannot be deleted")
            CampaignStateValidator.assert_transition(campaign.status, CampaignStatus.DELETED, campaign.id)

            if target_id is not None:
                target = session.get(Campaign, target_id)
                if target is None:
                    raise NotFoundError("Campaign", target_id)
                if target.status == CampaignStatus.DELETED.value:
                    raise ValidationError(f"Transfer target {target_id} is deleted")

            result = CampaignDeletionResult(campaign_id=campaign_id, disposition=disposition_tag)

            unbooked = session.scalars(
                select(Allocation).where(
                    Allocation.campaign_id == campaign_id,
                    Allocation.status == AllocationStatus.ACTIVE.value,
                    Allocation.appointment_id.is_(None),
                )
            ).all()
            for allocation in unbooked:
                AllocationLifecycleManager.release_allocation(
                    session, allocation, AllocationStatus.RECLAIMED, "campaign_deleted"
                )
                result.reclaimed_allocation_ids.append(allocation.id)

            campaign = session.get(Campaign, campaign_id, populate_existing=True)
            versioned_update(
                session, Campaign, campaign_id,
                {
                    "status": CampaignStatus.DELETED.value,
                    "deleted_at": get_naive_utc_now(),
                    "disposition": disposition_tag,
                    "disposition_target_id": target_id,
                },
                campaign.version,
            )

            balance = campaign.current_amount
            if balance > 0:
                result.amount_moved = balance
                if disposition_tag == DISPOSITION_REFUND:
                    refund = CampaignFundManager.refund_to_donor(session, campaign, balance)
                    result.refund_transaction_id = refund.id
                else:
                    destination_id = target_id or CampaignFundManager.ensure_general_pool(session).id
                    CampaignFundManager.move_balance(session, campaign_id, destination_id, balance)
                    result.destination_campaign_id = destination_id

            logger.warning(
                f"🗑️ CAMPAIGN_DELETED: {campaign_id} by {deleted_by} disposition={disposition_tag} "
                f"moved={result.amount_moved} reclaimed={len(result.reclaimed_allocation_ids)}"
            )
            return result

    @staticmethod
    def _disposition_fields(campaign_id: str, disposition) -> tuple:
        if isinstance(disposition, RecycleToGeneralPool):
            return DISPOSITION_RECYCLE, None
        if isinstance(disposition, TransferToCampaign):
            if not disposition.target_campaign_id:
                raise ValidationError("TransferToCampaign requires a target_campaign_id")
            if disposition.target_campaign_id == campaign_id:
                raise ValidationError("A campaign cannot transfer its balance to itself")
            return DISPOSITION_TRANSFER, disposition.target_campaign_id
        if isinstance(disposition, RefundToDonor):
            return DISPOSITION_REFUND, None
        raise ValidationError(
            f"Campaign deletion requires an explicit disposition, got {disposition!r}"
        )
