"""
Appointment Service
Booking, payment confirmation and status changes for screening appointments.

Donation appointments are paid from an ACTIVE allocation: the booking records
a PAID transaction immediately. Self-pay appointments start with a PENDING
transaction that the payment provider later confirms.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import (
    Allocation, AllocationStatus, Appointment, AppointmentStatus, CenterStatus, PatientProfile,
    ScreeningCenter, ScreeningType, Transaction, TransactionStatus, TransactionType
)
from services.allocation_lifecycle import AllocationLifecycleManager
from services.notification_service import NotificationService
from services.payment_provider import PaymentProvider, ProviderResult
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.exceptions import ConflictError, NotFoundError, ProviderError, ValidationError
from utils.optimistic_locking import conditional_update
from utils.reference_generator import generate_payment_reference
from utils.state_validators import AppointmentStateValidator, TransactionStateValidator

logger = logging.getLogger(__name__)


@dataclass
class SelfPayBooking:
    appointment: Appointment
    transaction: Transaction
    provider_result: ProviderResult


class AppointmentService:
    """Appointment booking and lifecycle"""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None,
                 payment_provider: Optional[PaymentProvider] = None,
                 notification_service: Optional[NotificationService] = None):
        self.session_factory = session_factory
        self.notification_service = notification_service
        if payment_provider is None:
            from services.paystack_service import PaystackService
            payment_provider = PaystackService()
        self.payment_provider = payment_provider

    @staticmethod
    def _active_center(session: Session, center_id: str) -> ScreeningCenter:
        center = session.get(ScreeningCenter, center_id)
        if center is None:
            raise NotFoundError("ScreeningCenter", center_id)
        if center.status != CenterStatus.ACTIVE.value:
            raise ValidationError(f"Screening center {center.center_name} is not accepting bookings")
        return center

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    def book_donation_appointment(self, allocation_id: str, patient_id: str, center_id: str,
                                  appointment_datetime: datetime) -> Appointment:
        """Book against an ACTIVE allocation; the allocation stops being subject to expiry"""
        appointment_datetime = ensure_naive_datetime(appointment_datetime)

        with atomic_transaction(session_factory=self.session_factory) as session:
            allocation = session.get(Allocation, allocation_id)
            if allocation is None:
                raise NotFoundError("Allocation", allocation_id)
            if allocation.patient_id != patient_id:
                raise ValidationError(f"Allocation {allocation_id} does not belong to patient {patient_id}")
            if allocation.status != AllocationStatus.ACTIVE.value:
                raise ValidationError(f"Allocation {allocation_id} is {allocation.status}, not active")
            if allocation.appointment_id:
                raise ValidationError(f"Allocation {allocation_id} is already booked")
            self._active_center(session, center_id)

            now = get_naive_utc_now()
            transaction = Transaction(
                type=TransactionType.APPOINTMENT.value,
                amount=allocation.amount,
                status=TransactionStatus.PAID.value,
                payment_reference=generate_payment_reference("DON"),
                payment_channel="donation",
                related_campaign_id=allocation.campaign_id,
                paid_at=now,
            )
            session.add(transaction)
            session.flush()

            appointment = Appointment(
                patient_id=patient_id,
                center_id=center_id,
                screening_type_id=allocation.screening_type_id,
                appointment_datetime=appointment_datetime,
                is_donation=True,
                allocation_id=allocation.id,
                transaction_id=transaction.id,
                status=AppointmentStatus.SCHEDULED.value,
            )
            session.add(appointment)
            session.flush()

            booked = conditional_update(
                session, Allocation, allocation.id,
                {"appointment_id": appointment.id},
                Allocation.status == AllocationStatus.ACTIVE.value,
                Allocation.appointment_id.is_(None),
            )
            if not booked:
                raise ConflictError(f"Allocation {allocation_id} was booked or released concurrently")

            logger.info(
                f"📅 DONATION_APPOINTMENT_BOOKED: {appointment.id} allocation={allocation.id} "
                f"center={center_id} amount={allocation.amount}"
            )
            return appointment

    async def book_self_pay_appointment(self, patient_id: str, center_id: str, screening_type_id: str,
                                        appointment_datetime: datetime) -> SelfPayBooking:
        """Create the appointment with a PENDING transaction and start the provider charge"""
        appointment_datetime = ensure_naive_datetime(appointment_datetime)

        with atomic_transaction(session_factory=self.session_factory) as session:
            patient = session.get(PatientProfile, patient_id)
            if patient is None:
                raise NotFoundError("Patient", patient_id)
            screening_type = session.get(ScreeningType, screening_type_id)
            if screening_type is None:
                raise NotFoundError("ScreeningType", screening_type_id)
            self._active_center(session, center_id)

            transaction = Transaction(
                type=TransactionType.APPOINTMENT.value,
                amount=screening_type.agreed_price,
                status=TransactionStatus.PENDING.value,
                payment_reference=generate_payment_reference("APT"),
                payment_channel="paystack",
            )
            session.add(transaction)
            session.flush()

            appointment = Appointment(
                patient_id=patient_id,
                center_id=center_id,
                screening_type_id=screening_type_id,
                appointment_datetime=appointment_datetime,
                is_donation=False,
                transaction_id=transaction.id,
                status=AppointmentStatus.SCHEDULED.value,
            )
            session.add(appointment)
            session.flush()
            patient_email = patient.email

        try:
            provider_result = await asyncio.wait_for(
                self.payment_provider.charge(transaction.payment_reference, transaction.amount, patient_email),
                timeout=Config.PAYMENT_PROVIDER_TIMEOUT,
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            reason = str(e) or "provider timeout"
            logger.error(f"❌ SELF_PAY_CHARGE_FAILED: {transaction.payment_reference}: {reason}")
            self._fail_self_pay(transaction.id, appointment.id, f"charge_failed: {reason}")
            raise

        logger.info(
            f"📅 SELF_PAY_APPOINTMENT_BOOKED: {appointment.id} reference={transaction.payment_reference} "
            f"amount={transaction.amount}"
        )
        return SelfPayBooking(appointment=appointment, transaction=transaction, provider_result=provider_result)

    async def confirm_self_pay_payment(self, reference: str) -> Transaction:
        """Settle a PENDING self-pay transaction from the provider's verdict; safe to repeat"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            transaction = session.scalar(select(Transaction).where(Transaction.payment_reference == reference))
            if transaction is None:
                raise NotFoundError("Transaction", reference)
            if transaction.status != TransactionStatus.PENDING.value:
                logger.info(f"🔁 PAYMENT_ALREADY_SETTLED: {reference} is {transaction.status}")
                return transaction
            appointment_id = session.scalar(
                select(Appointment.id).where(Appointment.transaction_id == transaction.id)
            )

        verdict = await self.payment_provider.verify(reference)

        if verdict.pending:
            logger.info(f"⏳ PAYMENT_PENDING: {reference} not settled yet")
            return transaction

        if not verdict.succeeded:
            self._fail_self_pay(transaction.id, appointment_id, verdict.message or "payment_failed")
            with atomic_transaction(session_factory=self.session_factory) as session:
                return session.get(Transaction, transaction.id)

        with atomic_transaction(session_factory=self.session_factory) as session:
            TransactionStateValidator.assert_transition(transaction.status, TransactionStatus.PAID, transaction.id)
            paid = conditional_update(
                session, Transaction, transaction.id,
                {"status": TransactionStatus.PAID.value, "paid_at": get_naive_utc_now()},
                Transaction.status == TransactionStatus.PENDING.value,
            )
            if paid:
                logger.info(f"✅ PAYMENT_CONFIRMED: {reference} amount={transaction.amount}")
            return session.get(Transaction, transaction.id, populate_existing=True)

    def _fail_self_pay(self, transaction_id: str, appointment_id: Optional[str], reason: str) -> None:
        with atomic_transaction(session_factory=self.session_factory) as session:
            conditional_update(
                session, Transaction, transaction_id,
                {"status": TransactionStatus.FAILED.value},
                Transaction.status == TransactionStatus.PENDING.value,
            )
            if appointment_id:
                conditional_update(
                    session, Appointment, appointment_id,
                    {"status": AppointmentStatus.CANCELLED.value, "cancellation_reason": reason[:200]},
                    Appointment.status == AppointmentStatus.SCHEDULED.value,
                )
        logger.warning(f"⚠️ SELF_PAY_FAILED: transaction {transaction_id}: {reason}")

    # ------------------------------------------------------------------
    # Status machine
    # ------------------------------------------------------------------

    def update_appointment_status(self, appointment_id: str, new_status: AppointmentStatus,
                                  reason: Optional[str] = None) -> Appointment:
        """
        Move an appointment along SCHEDULED → IN_PROGRESS → COMPLETED, or to CANCELLED.

        COMPLETED consumes the donation allocation and makes the transaction
        payout-eligible. Cancelling a donation appointment reclaims its
        allocation and marks the transaction REFUNDED.
        """
        new_status = AppointmentStatus(new_status)
        notice = None

        with atomic_transaction(session_factory=self.session_factory) as session:
            appointment = session.get(Appointment, appointment_id)
            if appointment is None:
                raise NotFoundError("Appointment", appointment_id)
            AppointmentStateValidator.assert_transition(appointment.status, new_status, appointment.id)

            now = get_naive_utc_now()
            transaction = appointment.transaction
            values = {"status": new_status.value}

            if new_status == AppointmentStatus.COMPLETED:
                if transaction.status != TransactionStatus.PAID.value:
                    raise ValidationError(
                        f"Appointment {appointment_id} cannot complete: payment is {transaction.status}"
                    )
                if appointment.is_donation:
                    AllocationLifecycleManager.consume_allocation(session, appointment.allocation_id)
                values["completed_at"] = now
                center = session.get(ScreeningCenter, appointment.center_id)
                notice = (appointment.patient.email, appointment.patient.full_name,
                          appointment.screening_type.name, center.center_name)

            elif new_status == AppointmentStatus.CANCELLED:
                values["cancellation_reason"] = (reason or "cancelled")[:200]
                if appointment.is_donation:
                    allocation = session.get(Allocation, appointment.allocation_id)
                    AllocationLifecycleManager.release_allocation(
                        session, allocation, AllocationStatus.RECLAIMED, "appointment_cancelled"
                    )
                    self._refund_transaction(session, transaction, now)
                elif transaction.status == TransactionStatus.PENDING.value:
                    conditional_update(
                        session, Transaction, transaction.id,
                        {"status": TransactionStatus.FAILED.value},
                        Transaction.status == TransactionStatus.PENDING.value,
                    )

            changed = conditional_update(
                session, Appointment, appointment.id, values,
                Appointment.status == appointment.status,
            )
            if not changed:
                raise ConflictError(f"Appointment {appointment_id} changed status concurrently")

            logger.info(f"📋 APPOINTMENT_STATUS: {appointment_id} {appointment.status} → {new_status.value}")
            appointment = session.get(Appointment, appointment_id, populate_existing=True)

        if notice and self.notification_service is not None:
            try:
                self.notification_service.notify_appointment_completed(*notice)
            except Exception as e:
                logger.error(f"❌ Failed to send completion notification: {e}")
        return appointment

    @staticmethod
    def _refund_transaction(session: Session, transaction: Transaction, now: datetime) -> None:
        TransactionStateValidator.assert_transition(transaction.status, TransactionStatus.REFUNDED, transaction.id)
        refunded = conditional_update(
            session, Transaction, transaction.id,
            {"status": TransactionStatus.REFUNDED.value, "refunded_at": now},
            Transaction.status == TransactionStatus.PAID.value,
            Transaction.claimed_payout_id.is_(None),
        )
        if not refunded:
            raise ConflictError(f"Transaction {transaction.id} is claimed by a payout or no longer PAID")
