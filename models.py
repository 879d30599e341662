"""
ZeroCancer Donation Ledger - Database Schema
============================================

Focused schema for the donation-funded screening lifecycle:
- Donor campaigns with geographic/demographic targeting
- Patient waitlist entries and campaign allocations
- Appointments and their payment transactions
- Batched payouts to screening centers

All money columns hold integer Naira minor units. Timestamps are naive UTC.
"""

from datetime import datetime, date
from enum import Enum
from typing import Optional, List
from sqlalchemy import (
    Column, Table, Integer, BigInteger, String, DateTime, Date, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON, text
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now
from utils.reference_generator import generate_entity_id


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class Gender(Enum):
    MALE = "male"
    FEMALE = "female"


class TargetGender(Enum):
    """Campaign gender filter"""
    MALE = "male"
    FEMALE = "female"
    ALL = "all"


class CampaignStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DELETED = "deleted"


class WaitlistStatus(Enum):
    PENDING = "pending"
    MATCHED = "matched"
    EXPIRED = "expired"


class AllocationStatus(Enum):
    """Reservation of campaign funds for one patient's one screening"""
    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    RECLAIMED = "reclaimed"


class AppointmentStatus(Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransactionType(Enum):
    APPOINTMENT = "appointment"
    DONATION = "donation"
    PAYOUT = "payout"
    REFUND = "refund"


class TransactionStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PayoutStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class PayoutType(Enum):
    MANUAL = "manual"
    AUTOMATED = "automated"
    RETRY = "retry"


class CenterStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class MatchingExecutionStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _status_check(column: str, enum_cls, name: str) -> CheckConstraint:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return CheckConstraint(f"{column} IN ({values})", name=name)


# ============================================================================
# REFERENCE DATA
# ============================================================================

campaign_screening_types = Table(
    "campaign_screening_types",
    Base.metadata,
    Column("campaign_id", String(40), ForeignKey("campaigns.id"), primary_key=True),
    Column("screening_type_id", String(40), ForeignKey("screening_types.id"), primary_key=True),
)


class ScreeningType(Base):
    """Screening service a campaign can sponsor"""
    __tablename__ = 'screening_types'

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_entity_id("ST"))
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    # Per-patient cost; the default allocation amount
    agreed_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint('agreed_price > 0', name='ck_screening_type_price_positive'),
    )


class ScreeningCenter(Base):
    """Screening center receiving payouts"""
    __tablename__ = 'screening_centers'

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_entity_id("SC"))
    center_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    lga: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=CenterStatus.ACTIVE.value, nullable=False)

    # Settlement destination
    bank_name: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    bank_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    bank_account: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    account_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    recipient_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)  # Provider-side recipient

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        _status_check('status', CenterStatus, 'ck_center_status_valid'),
    )


class PatientProfile(Base):
    """Demographic snapshot used by campaign targeting"""
    __tablename__ = 'patient_profiles'

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_entity_id("PT"))
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    lga: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    def age_on(self, today: date) -> Optional[int]:
        """Whole years of age on the given date, None when date of birth is unknown"""
        if self.date_of_birth is None:
            return None
        dob = self.date_of_birth
        return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))


# ============================================================================
# CAMPAIGNS
# ============================================================================

class Campaign(Base):
    """Donor-funded pool earmarked for sponsored screenings"""
    __tablename__ = 'campaigns'

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_entity_id("CP"))
    donor_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="Untitled Campaign")
    purpose: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Money
    target_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)    # Total committed
    current_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)   # Remaining spendable
    max_per_patient: Mapped[int] = mapped_column(BigInteger, nullable=False)  # Allocation ceiling

    # Targeting filters (empty list = any)
    target_states: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    target_lgas: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    target_gender: Mapped[str] = mapped_column(String(10), default=TargetGender.ALL.value, nullable=False)
    age_min: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    age_max: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=CampaignStatus.ACTIVE.value, nullable=False, index=True)
    expiry_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    funding_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Optimistic concurrency counter, bumped by every conditional balance write
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Deletion audit
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    disposition: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    disposition_target_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    screening_types: Mapped[List["ScreeningType"]] = relationship(
        "ScreeningType", secondary=campaign_screening_types, lazy="selectin"
    )
    allocations: Mapped[List["Allocation"]] = relationship("Allocation", back_populates="campaign")

    __table_args__ = (
        _status_check('status', CampaignStatus, 'ck_campaign_status_valid'),
        _status_check('target_gender', TargetGender, 'ck_campaign_gender_valid'),
        CheckConstraint('current_amount >= 0', name='ck_campaign_current_non_negative'),
        CheckConstraint('current_amount <= target_amount', name='ck_campaign_current_within_target'),
        CheckConstraint('max_per_patient > 0', name='ck_campaign_max_per_patient_positive'),
    )

    @property
    def screening_type_ids(self) -> set:
        return {screening_type.id for screening_type in self.screening_types}

    @property
    def is_general_pool(self) -> bool:
        from config import Config
        return self.id == Config.GENERAL_POOL_CAMPAIGN_ID


# ============================================================================
# WAITLIST AND ALLOCATIONS
# ============================================================================

class WaitlistEntry(Base):
    """A patient's request for a donation-funded screening"""
    __tablename__ = 'waitlist_entries'

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_entity_id("WL"))
    patient_id: Mapped[str] = mapped_column(String(40), ForeignKey('patient_profiles.id'), nullable=False, index=True)
    screening_type_id: Mapped[str] = mapped_column(String(40), ForeignKey('screening_types.id'), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=WaitlistStatus.PENDING.value, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    requeued_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    patient: Mapped["PatientProfile"] = relationship("PatientProfile")
    screening_type: Mapped["ScreeningType"] = relationship("ScreeningType")

    __table_args__ = (
        _status_check('status', WaitlistStatus, 'ck_waitlist_status_valid'),
        Index('ix_waitlist_status_joined', 'status', 'joined_at'),
        # At most one PENDING entry per patient and screening type
        Index(
            'uq_waitlist_pending_pair', 'patient_id', 'screening_type_id',
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


class Allocation(Base):
    """Reservation of campaign money against one waitlist entry"""
    __tablename__ = 'allocations'

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_entity_id("AL"))
    campaign_id: Mapped[str] = mapped_column(String(40), ForeignKey('campaigns.id'), nullable=False, index=True)
    waitlist_id: Mapped[str] = mapped_column(String(40), ForeignKey('waitlist_entries.id'), nullable=False, index=True)
    patient_id: Mapped[str] = mapped_column(String(40), ForeignKey('patient_profiles.id'), nullable=False, index=True)
    screening_type_id: Mapped[str] = mapped_column(String(40), ForeignKey('screening_types.id'), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=AllocationStatus.ACTIVE.value, nullable=False)
    matching_execution_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    # Set on booking; plain column because appointments also point back here
    appointment_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolution_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    campaign: Mapped["Campaign"] = relationship("Campaign", back_populates="allocations")
    waitlist_entry: Mapped["WaitlistEntry"] = relationship("WaitlistEntry")

    __table_args__ = (
        _status_check('status', AllocationStatus, 'ck_allocation_status_valid'),
        CheckConstraint('amount > 0', name='ck_allocation_amount_positive'),
        Index('ix_allocations_status_created', 'status', 'created_at'),
        # At most one ACTIVE allocation per patient and screening type
        Index(
            'uq_allocation_active_pair', 'patient_id', 'screening_type_id',
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class MatchingExecution(Base):
    """Audit record of one matching pass"""
    __tablename__ = 'matching_executions'

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_entity_id("MX"))
    execution_reference: Mapped[str] = mapped_column(String(60), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=MatchingExecutionStatus.RUNNING.value, nullable=False)
    trigger: Mapped[str] = mapped_column(String(40), default="scheduler", nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    entries_evaluated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_matches: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_no_funding: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_limits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conflicts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_funds_allocated: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        _status_check('status', MatchingExecutionStatus, 'ck_matching_execution_status_valid'),
    )


# ============================================================================
# APPOINTMENTS AND TRANSACTIONS
# ============================================================================

class Transaction(Base):
    """Money movement record; immutable once paid except for a refund flag"""
    __tablename__ = 'transactions'

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_entity_id("TX"))
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=TransactionStatus.PENDING.value, nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    payment_channel: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    related_campaign_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True, index=True)
    # Payout currently holding this transaction; set/cleared by conditional update only
    claimed_payout_id: Mapped[Optional[str]] = mapped_column(String(40), ForeignKey('payouts.id'), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        _status_check('type', TransactionType, 'ck_transaction_type_valid'),
        _status_check('status', TransactionStatus, 'ck_transaction_status_valid'),
        CheckConstraint('amount > 0', name='ck_transaction_amount_positive'),
        Index('ix_transactions_type_status', 'type', 'status'),
    )


class Appointment(Base):
    """Booked screening at a center, self-pay or donation-funded"""
    __tablename__ = 'appointments'

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_entity_id("AP"))
    patient_id: Mapped[str] = mapped_column(String(40), ForeignKey('patient_profiles.id'), nullable=False, index=True)
    center_id: Mapped[str] = mapped_column(String(40), ForeignKey('screening_centers.id'), nullable=False, index=True)
    screening_type_id: Mapped[str] = mapped_column(String(40), ForeignKey('screening_types.id'), nullable=False)
    appointment_datetime: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_donation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    allocation_id: Mapped[Optional[str]] = mapped_column(String(40), ForeignKey('allocations.id'), nullable=True, unique=True)
    transaction_id: Mapped[str] = mapped_column(String(40), ForeignKey('transactions.id'), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), default=AppointmentStatus.SCHEDULED.value, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    transaction: Mapped["Transaction"] = relationship("Transaction")
    patient: Mapped["PatientProfile"] = relationship("PatientProfile")
    screening_type: Mapped["ScreeningType"] = relationship("ScreeningType")

    __table_args__ = (
        _status_check('status', AppointmentStatus, 'ck_appointment_status_valid'),
        Index('ix_appointments_center_status', 'center_id', 'status'),
    )


# ============================================================================
# SETTLEMENT
# ============================================================================

class Payout(Base):
    """Batch of center earnings submitted to the payment provider"""
    __tablename__ = 'payouts'

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_entity_id("PO"))
    batch_reference: Mapped[str] = mapped_column(String(60), unique=True, nullable=False)  # Provider idempotency key
    payout_number: Mapped[str] = mapped_column(String(30), nullable=False)
    center_id: Mapped[str] = mapped_column(String(40), ForeignKey('screening_centers.id'), nullable=False, index=True)

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)      # Gross
    fee_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    net_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=PayoutStatus.PENDING.value, nullable=False)
    type: Mapped[str] = mapped_column(String(20), default=PayoutType.AUTOMATED.value, nullable=False)
    initiated_by: Mapped[str] = mapped_column(String(60), default="system", nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    period_start: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    provider_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # FAILED payout replaced by a RETRY payout; kept for audit
    superseded_by_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    items: Mapped[List["PayoutItem"]] = relationship(
        "PayoutItem", back_populates="payout", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        _status_check('status', PayoutStatus, 'ck_payout_status_valid'),
        _status_check('type', PayoutType, 'ck_payout_type_valid'),
        CheckConstraint('amount > 0', name='ck_payout_amount_positive'),
        CheckConstraint('fee_amount >= 0', name='ck_payout_fee_non_negative'),
        CheckConstraint('net_amount = amount - fee_amount', name='ck_payout_net_equals_calculation'),
        Index('ix_payouts_center_status', 'center_id', 'status'),
    )


class PayoutItem(Base):
    """One transaction's contribution to a payout"""
    __tablename__ = 'payout_items'

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_entity_id("PI"))
    payout_id: Mapped[str] = mapped_column(String(40), ForeignKey('payouts.id'), nullable=False, index=True)
    transaction_id: Mapped[str] = mapped_column(String(40), ForeignKey('transactions.id'), nullable=False, index=True)
    appointment_id: Mapped[Optional[str]] = mapped_column(String(40), ForeignKey('appointments.id'), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    service_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    payout: Mapped["Payout"] = relationship("Payout", back_populates="items")
    transaction: Mapped["Transaction"] = relationship("Transaction")

    __table_args__ = (
        UniqueConstraint('payout_id', 'transaction_id', name='uq_payout_item_transaction'),
    )
