"""
Campaign Fund Manager
Every write to a campaign's balance goes through here as a conditional UPDATE.

Balance columns:
- target_amount: total money committed to the campaign
- current_amount: the part of it still spendable (not reserved or spent)

All methods take the caller's session and never commit; they run inside the
caller's unit of work so a balance move and its ledger rows land together.
"""

import logging
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from config import Config
from models import Campaign, CampaignStatus, Transaction, TransactionType, TransactionStatus
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import BudgetExceededError, ConflictError, InvariantViolation, NotFoundError, ValidationError
from utils.optimistic_locking import conditional_update
from utils.reference_generator import generate_payment_reference

logger = logging.getLogger(__name__)

# Disposition tags recorded on deleted campaigns
DISPOSITION_RECYCLE = "recycle"
DISPOSITION_TRANSFER = "transfer"
DISPOSITION_REFUND = "refund"


class CampaignFundManager:
    """Conditional balance writes for campaigns"""

    @classmethod
    def _require_positive(cls, amount: int) -> None:
        if not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"Amount must be a positive integer, got {amount!r}")

    @classmethod
    def reserve(cls, session: Session, campaign_id: str, amount: int) -> None:
        """
        Decrement current_amount for a new allocation.

        Raises:
            BudgetExceededError: campaign is not ACTIVE or has less than amount left
        """
        cls._require_positive(amount)
        reserved = conditional_update(
            session, Campaign, campaign_id,
            {
                "current_amount": Campaign.current_amount - amount,
                "version": Campaign.version + 1,
                "updated_at": get_naive_utc_now(),
            },
            Campaign.status == CampaignStatus.ACTIVE.value,
            Campaign.current_amount >= amount,
        )
        if not reserved:
            raise BudgetExceededError(campaign_id, amount)
        logger.debug(f"💰 FUNDS_RESERVED: {amount} from campaign {campaign_id}")

    @classmethod
    def restore(cls, session: Session, campaign_id: str, amount: int) -> str:
        """
        Return a released allocation's amount to its campaign.

        Funds coming back to a deleted campaign follow its recorded disposition.
        A completed campaign that has not expired becomes ACTIVE again.

        Returns:
            str: id of the campaign that finally received the funds
        """
        cls._require_positive(amount)
        restored = conditional_update(
            session, Campaign, campaign_id,
            {
                "current_amount": Campaign.current_amount + amount,
                "version": Campaign.version + 1,
                "updated_at": get_naive_utc_now(),
            },
            Campaign.current_amount + amount <= Campaign.target_amount,
        )
        if not restored:
            raise InvariantViolation(
                f"Restoring {amount} to campaign {campaign_id} would exceed its target_amount"
            )

        campaign = session.get(Campaign, campaign_id, populate_existing=True)
        if campaign.status == CampaignStatus.DELETED.value:
            return cls._forward_per_disposition(session, campaign, amount)

        cls._reactivate_if_fundable(session, campaign_id)
        logger.debug(f"↩️ FUNDS_RESTORED: {amount} to campaign {campaign_id}")
        return campaign_id

    @classmethod
    def credit(cls, session: Session, campaign_id: str, amount: int) -> None:
        """New money for a campaign: raises both target_amount and current_amount"""
        cls._require_positive(amount)
        credited = conditional_update(
            session, Campaign, campaign_id,
            {
                "target_amount": Campaign.target_amount + amount,
                "current_amount": Campaign.current_amount + amount,
                "version": Campaign.version + 1,
                "updated_at": get_naive_utc_now(),
            },
            Campaign.status != CampaignStatus.DELETED.value,
        )
        if not credited:
            if session.get(Campaign, campaign_id) is None:
                raise NotFoundError("Campaign", campaign_id)
            raise ValidationError(f"Campaign {campaign_id} is deleted and cannot receive funds")
        cls._reactivate_if_fundable(session, campaign_id)

    @classmethod
    def debit(cls, session: Session, campaign_id: str, amount: int) -> None:
        """Money leaving a campaign: lowers both target_amount and current_amount"""
        cls._require_positive(amount)
        debited = conditional_update(
            session, Campaign, campaign_id,
            {
                "target_amount": Campaign.target_amount - amount,
                "current_amount": Campaign.current_amount - amount,
                "version": Campaign.version + 1,
                "updated_at": get_naive_utc_now(),
            },
            Campaign.current_amount >= amount,
        )
        if not debited:
            raise BudgetExceededError(campaign_id, amount)

    @classmethod
    def move_balance(cls, session: Session, source_id: str, target_id: str, amount: int) -> None:
        """Move committed, unspent money from one campaign to another"""
        if source_id == target_id:
            raise ValidationError("Cannot move a campaign balance onto itself")
        cls.debit(session, source_id, amount)
        cls.credit(session, target_id, amount)
        logger.info(f"🔀 BALANCE_MOVED: {amount} from {source_id} to {target_id}")

    @classmethod
    def refund_to_donor(cls, session: Session, campaign: Campaign, amount: int) -> Transaction:
        """Debit the campaign and record a pending REFUND transaction for its donor"""
        cls.debit(session, campaign.id, amount)
        refund = Transaction(
            type=TransactionType.REFUND.value,
            amount=amount,
            status=TransactionStatus.PENDING.value,
            payment_reference=generate_payment_reference("RFD"),
            payment_channel="donor_refund",
            related_campaign_id=campaign.id,
        )
        session.add(refund)
        session.flush()
        logger.info(f"💸 DONOR_REFUND_RECORDED: {amount} for campaign {campaign.id} (donor {campaign.donor_id})")
        return refund

    @classmethod
    def ensure_general_pool(cls, session: Session) -> Campaign:
        """Return the system-owned general pool, creating it empty on first use"""
        pool = session.get(Campaign, Config.GENERAL_POOL_CAMPAIGN_ID)
        if pool is None:
            pool = Campaign(
                id=Config.GENERAL_POOL_CAMPAIGN_ID,
                donor_id=Config.GENERAL_POOL_DONOR_ID,
                title="General Donation Pool",
                purpose="General Donation Pool",
                target_amount=0,
                current_amount=0,
                max_per_patient=Config.GENERAL_POOL_MAX_PER_PATIENT,
                status=CampaignStatus.ACTIVE.value,
            )
            session.add(pool)
            session.flush()
            logger.info(f"🏦 GENERAL_POOL_CREATED: {pool.id}")
        return pool

    @classmethod
    def _reactivate_if_fundable(cls, session: Session, campaign_id: str) -> None:
        now = get_naive_utc_now()
        reactivated = conditional_update(
            session, Campaign, campaign_id,
            {"status": CampaignStatus.ACTIVE.value},
            Campaign.status == CampaignStatus.COMPLETED.value,
            Campaign.current_amount > 0,
            or_(Campaign.expiry_date.is_(None), Campaign.expiry_date > now),
        )
        if reactivated:
            logger.info(f"♻️ CAMPAIGN_REACTIVATED: {campaign_id} has spendable funds again")

    @classmethod
    def _forward_per_disposition(cls, session: Session, campaign: Campaign, amount: int) -> str:
        """Funds released after deletion follow the campaign's disposition"""
        if campaign.disposition == DISPOSITION_REFUND:
            cls.refund_to_donor(session, campaign, amount)
            return campaign.id

        destination_id = cls._disposition_destination(session, campaign)
        cls.move_balance(session, campaign.id, destination_id, amount)
        return destination_id

    @classmethod
    def _disposition_destination(cls, session: Session, campaign: Campaign) -> str:
        if campaign.disposition == DISPOSITION_TRANSFER and campaign.disposition_target_id:
            target: Optional[Campaign] = session.get(Campaign, campaign.disposition_target_id)
            if target is not None and target.status != CampaignStatus.DELETED.value:
                return target.id
            logger.warning(
                f"⚠️ DISPOSITION_FALLBACK: transfer target {campaign.disposition_target_id} "
                f"unavailable, recycling to general pool"
            )
        elif campaign.disposition != DISPOSITION_RECYCLE:
            raise ConflictError(f"Deleted campaign {campaign.id} has no usable disposition")
        return cls.ensure_general_pool(session).id
