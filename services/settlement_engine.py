"""
Settlement Engine
Turns completed appointments into batched payouts to screening centers.

A transaction is payout-eligible when it is a PAID appointment transaction,
its appointment is COMPLETED at the center, and it is not an item of any
payout other than a FAILED one. The same query backs balances, batch
building and manual payouts.

Payout lifecycle:
    PENDING → PROCESSING → SUCCESS
                         → FAILED   (claims released; items eligible again; retryable)

Each included transaction is claimed by a conditional update of
claimed_payout_id, so two concurrent batch builds can never pay the same
transaction twice.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from models import (
    Appointment, AppointmentStatus, CenterStatus, Payout, PayoutItem, PayoutStatus, PayoutType,
    ScreeningCenter, ScreeningType, Transaction, TransactionStatus, TransactionType
)
from services.notification_service import NotificationService
from services.payment_provider import BankDetails, PaymentProvider, ProviderResult, PROVIDER_FAILED
from services.payout_fee_service import PayoutFeePolicy, get_fee_policy
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import (
    ConflictError, InvariantViolation, LedgerError, NotFoundError, ProviderError, ValidationError
)
from utils.optimistic_locking import conditional_update
from utils.reference_generator import generate_payout_batch_reference, generate_payout_number
from utils.state_validators import PayoutStateValidator

logger = logging.getLogger(__name__)


@dataclass
class CenterBalance:
    """Read-only view of what a center is owed and has been paid"""
    center_id: str
    eligible_amount: int = 0
    eligible_transaction_count: int = 0
    eligible_transaction_ids: List[str] = field(default_factory=list)
    total_paid_out: int = 0
    pending_payouts: int = 0
    last_payout_date: Optional[datetime] = None


@dataclass
class _PayoutOutcome:
    payout_id: str
    status: str
    notify: Optional[Tuple[Optional[str], str, str, int, bool, Optional[str]]] = None


def live_payout_transaction_ids():
    """Transactions already held by a payout that has not FAILED"""
    return (
        select(PayoutItem.transaction_id)
        .join(Payout, Payout.id == PayoutItem.payout_id)
        .where(Payout.status != PayoutStatus.FAILED.value)
    )


def eligible_transactions_query(center_id: str, transaction_ids: Optional[Iterable[str]] = None):
    """The single definition of payout eligibility"""
    query = (
        select(Transaction, Appointment)
        .join(Appointment, Appointment.transaction_id == Transaction.id)
        .where(
            Transaction.type == TransactionType.APPOINTMENT.value,
            Transaction.status == TransactionStatus.PAID.value,
            Appointment.status == AppointmentStatus.COMPLETED.value,
            Appointment.center_id == center_id,
            Transaction.id.not_in(live_payout_transaction_ids()),
        )
        .order_by(Appointment.completed_at.asc(), Transaction.id.asc())
    )
    if transaction_ids is not None:
        query = query.where(Transaction.id.in_(list(transaction_ids)))
    return query


class SettlementEngine:
    """Payout batching, submission, retry and reconciliation"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        payment_provider: Optional[PaymentProvider] = None,
        fee_policy: Optional[PayoutFeePolicy] = None,
        notification_service: Optional[NotificationService] = None,
    ):
        self.session_factory = session_factory
        self.fee_policy = fee_policy or get_fee_policy()
        self.notification_service = notification_service
        if payment_provider is None:
            from services.paystack_service import PaystackService
            payment_provider = PaystackService()
        self.payment_provider = payment_provider

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def _center_balance(self, session: Session, center_id: str) -> CenterBalance:
        rows = session.execute(eligible_transactions_query(center_id)).all()
        balance = CenterBalance(
            center_id=center_id,
            eligible_amount=sum(transaction.amount for transaction, _ in rows),
            eligible_transaction_count=len(rows),
            eligible_transaction_ids=[transaction.id for transaction, _ in rows],
        )
        balance.total_paid_out = session.scalar(
            select(func.coalesce(func.sum(Payout.net_amount), 0)).where(
                Payout.center_id == center_id, Payout.status == PayoutStatus.SUCCESS.value
            )
        )
        balance.pending_payouts = session.scalar(
            select(func.coalesce(func.sum(Payout.amount), 0)).where(
                Payout.center_id == center_id,
                Payout.status.in_([PayoutStatus.PENDING.value, PayoutStatus.PROCESSING.value]),
            )
        )
        balance.last_payout_date = session.scalar(
            select(func.max(Payout.completed_at)).where(
                Payout.center_id == center_id, Payout.status == PayoutStatus.SUCCESS.value
            )
        )
        return balance

    def get_center_balance(self, center_id: str) -> CenterBalance:
        with atomic_transaction(session_factory=self.session_factory) as session:
            if session.get(ScreeningCenter, center_id) is None:
                raise NotFoundError("ScreeningCenter", center_id)
            return self._center_balance(session, center_id)

    def get_all_center_balances(self) -> List[CenterBalance]:
        with atomic_transaction(session_factory=self.session_factory) as session:
            center_ids = session.scalars(select(ScreeningCenter.id).order_by(ScreeningCenter.created_at)).all()
            return [self._center_balance(session, center_id) for center_id in center_ids]

    # ------------------------------------------------------------------
    # Batch building
    # ------------------------------------------------------------------

    def _create_payout(
        self,
        session: Session,
        center: ScreeningCenter,
        rows: List[Tuple[Transaction, Appointment]],
        payout_type: PayoutType,
        initiated_by: str,
        reason: Optional[str] = None,
        retry_count: int = 0,
    ) -> Payout:
        amount = sum(transaction.amount for transaction, _ in rows)
        fee_amount = self.fee_policy.fee(amount)
        net_amount = amount - fee_amount
        if net_amount <= 0:
            raise ValidationError(f"Payout of {amount} leaves nothing after the {fee_amount} fee")

        service_dates = [appointment.completed_at for _, appointment in rows if appointment.completed_at]
        payout = Payout(
            batch_reference=generate_payout_batch_reference(),
            payout_number=generate_payout_number(),
            center_id=center.id,
            amount=amount,
            fee_amount=fee_amount,
            net_amount=net_amount,
            status=PayoutStatus.PENDING.value,
            type=payout_type.value,
            initiated_by=initiated_by,
            reason=reason,
            period_start=min(service_dates) if service_dates else None,
            period_end=max(service_dates) if service_dates else None,
            retry_count=retry_count,
        )
        session.add(payout)
        try:
            session.flush()
        except IntegrityError as e:
            raise ConflictError(f"Batch reference {payout.batch_reference} is already in use") from e

        screening_names = dict(session.execute(
            select(ScreeningType.id, ScreeningType.name).where(
                ScreeningType.id.in_({appointment.screening_type_id for _, appointment in rows})
            )
        ).all())

        for transaction, appointment in rows:
            claimed = conditional_update(
                session, Transaction, transaction.id,
                {"claimed_payout_id": payout.id},
                Transaction.claimed_payout_id.is_(None),
                Transaction.status == TransactionStatus.PAID.value,
            )
            if not claimed:
                raise ConflictError(f"Transaction {transaction.id} was claimed by another payout")
            payout.items.append(PayoutItem(
                transaction_id=transaction.id,
                appointment_id=appointment.id,
                amount=transaction.amount,
                service_date=appointment.completed_at,
                description=f"{screening_names.get(appointment.screening_type_id, 'Screening')} "
                            f"({'donation' if appointment.is_donation else 'self-pay'})",
            ))
        session.flush()

        logger.info(
            f"📦 PAYOUT_BATCH_CREATED: {payout.payout_number} ({payout.batch_reference}) center={center.id} "
            f"type={payout_type.value} items={len(rows)} amount={amount} fee={fee_amount} net={net_amount}"
        )
        return payout

    def build_payout_batch(self, center_id: str, payout_type: PayoutType = PayoutType.AUTOMATED,
                           initiated_by: str = "system", reason: Optional[str] = None) -> Optional[Payout]:
        """
        Batch every eligible transaction of a center into one PENDING payout.

        Returns None when nothing is eligible, or for automated runs when the
        total is below MIN_PAYOUT_AMOUNT. Calling it again before the payout
        fails finds nothing to batch.
        """
        payout_type = PayoutType(payout_type)
        with atomic_transaction(session_factory=self.session_factory) as session:
            center = session.get(ScreeningCenter, center_id)
            if center is None:
                raise NotFoundError("ScreeningCenter", center_id)

            rows = session.execute(eligible_transactions_query(center_id)).all()
            if not rows:
                logger.info(f"💤 PAYOUT_NOTHING_ELIGIBLE: center {center_id}")
                return None

            total = sum(transaction.amount for transaction, _ in rows)
            if payout_type == PayoutType.AUTOMATED and total < Config.MIN_PAYOUT_AMOUNT:
                logger.info(
                    f"⏭️ PAYOUT_BELOW_MINIMUM: center {center_id} eligible {total} < {Config.MIN_PAYOUT_AMOUNT}"
                )
                return None

            return self._create_payout(session, center, rows, payout_type, initiated_by, reason)

    def build_manual_payout(self, center_id: str, transaction_ids: List[str], initiated_by: str,
                            reason: Optional[str] = None) -> Payout:
        """Admin payout over hand-picked transactions; every one must be eligible"""
        requested = list(dict.fromkeys(transaction_ids or []))
        if not requested:
            raise ValidationError("Manual payout needs at least one transaction")

        with atomic_transaction(session_factory=self.session_factory) as session:
            center = session.get(ScreeningCenter, center_id)
            if center is None:
                raise NotFoundError("ScreeningCenter", center_id)

            rows = session.execute(eligible_transactions_query(center_id, requested)).all()
            found = {transaction.id for transaction, _ in rows}
            ineligible = [transaction_id for transaction_id in requested if transaction_id not in found]
            if ineligible:
                raise ValidationError(
                    f"Transactions not eligible for payout at center {center_id}: {', '.join(ineligible)}"
                )
            return self._create_payout(session, center, rows, PayoutType.MANUAL, initiated_by, reason)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_payout(self, payout_id: str) -> Payout:
        """
        Send a PENDING payout to the provider.

        Success → SUCCESS. A provider "pending" leaves it PROCESSING for
        reconciliation. A provider error or timeout is followed by a verify
        on the batch reference; unless that shows the transfer succeeded or is
        still in flight, the payout becomes FAILED and its items eligible again.
        """
        with atomic_transaction(session_factory=self.session_factory) as session:
            payout = session.get(Payout, payout_id)
            if payout is None:
                raise NotFoundError("Payout", payout_id)
            PayoutStateValidator.assert_transition(payout.status, PayoutStatus.PROCESSING, payout.id)

            moved = conditional_update(
                session, Payout, payout.id,
                {"status": PayoutStatus.PROCESSING.value, "processed_at": get_naive_utc_now()},
                Payout.status == PayoutStatus.PENDING.value,
            )
            if not moved:
                raise ConflictError(f"Payout {payout_id} is already being submitted")

            center = session.get(ScreeningCenter, payout.center_id)
            batch_reference = payout.batch_reference
            net_amount = payout.net_amount
            bank_details = None
            if center.bank_account and center.bank_code:
                bank_details = BankDetails(
                    account_name=center.account_name or center.center_name,
                    account_number=center.bank_account,
                    bank_code=center.bank_code,
                    recipient_code=center.recipient_code,
                )

        logger.info(f"🚀 PAYOUT_SUBMITTING: {batch_reference} net={net_amount}")

        if bank_details is None:
            result = ProviderResult(status=PROVIDER_FAILED, reference=batch_reference,
                                    message="Center has no bank account on file")
        else:
            try:
                result = await asyncio.wait_for(
                    self.payment_provider.payout(batch_reference, bank_details, net_amount),
                    timeout=Config.PAYMENT_PROVIDER_TIMEOUT,
                )
            except (ProviderError, asyncio.TimeoutError) as e:
                error_message = str(e) or f"Payment provider timed out after {Config.PAYMENT_PROVIDER_TIMEOUT}s"
                logger.error(f"❌ PAYOUT_PROVIDER_ERROR: {batch_reference}: {error_message}")
                result = await self._verify_after_error(batch_reference, error_message)

        outcome = self._apply_provider_result(payout_id, result)
        self._notify_outcome(outcome)
        with atomic_transaction(session_factory=self.session_factory) as session:
            return session.get(Payout, payout_id)

    async def _verify_after_error(self, batch_reference: str, error_message: str) -> ProviderResult:
        """The transfer may have landed before the error; ask before declaring failure"""
        try:
            verdict = await asyncio.wait_for(
                self.payment_provider.verify(batch_reference),
                timeout=Config.PAYMENT_PROVIDER_TIMEOUT,
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ PAYOUT_VERIFY_FAILED: {batch_reference}: {e or 'timeout'}")
            return ProviderResult(status=PROVIDER_FAILED, reference=batch_reference, message=error_message)

        if verdict.succeeded or verdict.pending:
            logger.info(f"🔎 PAYOUT_VERIFIED_AFTER_ERROR: {batch_reference} is {verdict.status}")
            return verdict
        return ProviderResult(status=PROVIDER_FAILED, reference=batch_reference, message=error_message,
                              raw=verdict.raw)

    def _apply_provider_result(self, payout_id: str, result: ProviderResult) -> _PayoutOutcome:
        now = get_naive_utc_now()
        with atomic_transaction(session_factory=self.session_factory) as session:
            payout = session.get(Payout, payout_id)
            center = session.get(ScreeningCenter, payout.center_id)

            recipient_code = (result.raw or {}).get("recipient_code")
            if recipient_code and not center.recipient_code:
                center.recipient_code = recipient_code

            if result.succeeded:
                PayoutStateValidator.assert_transition(payout.status, PayoutStatus.SUCCESS, payout.id)
                if not conditional_update(
                    session, Payout, payout.id,
                    {
                        "status": PayoutStatus.SUCCESS.value,
                        "completed_at": now,
                        "provider_reference": result.provider_reference or payout.provider_reference,
                    },
                    Payout.status == PayoutStatus.PROCESSING.value,
                ):
                    raise ConflictError(f"Payout {payout_id} left PROCESSING concurrently")
                logger.info(f"✅ PAYOUT_SUCCESS: {payout.batch_reference} net={payout.net_amount}")
                return _PayoutOutcome(payout.id, PayoutStatus.SUCCESS.value, notify=(
                    center.email, center.center_name, payout.payout_number, payout.net_amount, True, None
                ))

            if result.pending:
                if result.provider_reference:
                    conditional_update(
                        session, Payout, payout.id,
                        {"provider_reference": result.provider_reference},
                        Payout.status == PayoutStatus.PROCESSING.value,
                    )
                logger.info(f"⏳ PAYOUT_PENDING: {payout.batch_reference} awaiting provider confirmation")
                return _PayoutOutcome(payout.id, PayoutStatus.PROCESSING.value)

            failure_reason = result.message or "Payout failed"
            PayoutStateValidator.assert_transition(payout.status, PayoutStatus.FAILED, payout.id)
            if not conditional_update(
                session, Payout, payout.id,
                {"status": PayoutStatus.FAILED.value, "failure_reason": failure_reason, "failed_at": now},
                Payout.status == PayoutStatus.PROCESSING.value,
            ):
                raise ConflictError(f"Payout {payout_id} left PROCESSING concurrently")
            released = session.execute(
                update(Transaction)
                .where(Transaction.claimed_payout_id == payout.id)
                .values(claimed_payout_id=None)
                .execution_options(synchronize_session=False)
            ).rowcount
            logger.error(
                f"❌ PAYOUT_FAILED: {payout.batch_reference}: {failure_reason} "
                f"({released} transactions eligible again)"
            )
            return _PayoutOutcome(payout.id, PayoutStatus.FAILED.value, notify=(
                center.email, center.center_name, payout.payout_number, payout.net_amount, False, failure_reason
            ))

    def _notify_outcome(self, outcome: _PayoutOutcome) -> None:
        if outcome.notify is None or self.notification_service is None:
            return
        try:
            self.notification_service.notify_payout_result(*outcome.notify)
        except Exception as e:
            logger.error(f"❌ Failed to send payout notification: {e}")

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def retry_payout(self, payout_id: str, initiated_by: str = "system") -> Payout:
        """New RETRY payout over a FAILED payout's transactions; the old one records its successor"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            failed = session.get(Payout, payout_id)
            if failed is None:
                raise NotFoundError("Payout", payout_id)
            if failed.status != PayoutStatus.FAILED.value:
                raise ValidationError(f"Only failed payouts can be retried; {payout_id} is {failed.status}")
            if failed.superseded_by_id:
                raise ValidationError(f"Payout {payout_id} was already retried as {failed.superseded_by_id}")
            if failed.retry_count >= Config.PAYOUT_MAX_RETRIES:
                raise ValidationError(
                    f"Payout {payout_id} reached the retry limit ({Config.PAYOUT_MAX_RETRIES})"
                )

            transaction_ids = [item.transaction_id for item in failed.items]
            rows = session.execute(eligible_transactions_query(failed.center_id, transaction_ids)).all()
            if len(rows) != len(transaction_ids):
                raise ConflictError(
                    f"Some transactions of payout {payout_id} were paid out elsewhere; build a new batch instead"
                )

            center = session.get(ScreeningCenter, failed.center_id)
            retry = self._create_payout(
                session, center, rows, PayoutType.RETRY, initiated_by,
                reason=f"Retry of {failed.payout_number}",
                retry_count=failed.retry_count + 1,
            )
            if not conditional_update(
                session, Payout, failed.id,
                {"superseded_by_id": retry.id},
                Payout.superseded_by_id.is_(None),
            ):
                raise ConflictError(f"Payout {payout_id} was retried concurrently")

            logger.info(f"🔁 PAYOUT_RETRY_CREATED: {retry.payout_number} supersedes {failed.payout_number}")
            return retry

    # ------------------------------------------------------------------
    # Fleet-wide jobs
    # ------------------------------------------------------------------

    async def run_payout_sweep(self, initiated_by: str = "scheduler") -> Dict[str, Any]:
        """Automated build + submit for every active center; one center's failure never stops the rest"""
        self.audit_payout_integrity()

        with atomic_transaction(session_factory=self.session_factory) as session:
            center_ids = session.scalars(
                select(ScreeningCenter.id)
                .where(ScreeningCenter.status == CenterStatus.ACTIVE.value)
                .order_by(ScreeningCenter.created_at)
            ).all()

        summary: Dict[str, Any] = {"centers": len(center_ids), "created": 0, "succeeded": 0,
                                   "processing": 0, "failed": 0, "errors": []}
        for center_id in center_ids:
            try:
                payout = self.build_payout_batch(center_id, PayoutType.AUTOMATED, initiated_by)
                if payout is None:
                    continue
                summary["created"] += 1
                submitted = await self.submit_payout(payout.id)
                if submitted.status == PayoutStatus.SUCCESS.value:
                    summary["succeeded"] += 1
                elif submitted.status == PayoutStatus.PROCESSING.value:
                    summary["processing"] += 1
                else:
                    summary["failed"] += 1
            except InvariantViolation:
                raise
            except (LedgerError, SQLAlchemyError) as e:
                logger.error(f"❌ PAYOUT_SWEEP_CENTER_FAILED: {center_id}: {e}")
                summary["errors"].append({"center_id": center_id, "error": str(e)})

        logger.info(
            f"💼 PAYOUT_SWEEP_COMPLETE: centers={summary['centers']} created={summary['created']} "
            f"succeeded={summary['succeeded']} processing={summary['processing']} failed={summary['failed']}"
        )
        return summary

    async def reconcile_processing_payouts(self) -> Dict[str, int]:
        """Resolve PROCESSING payouts by asking the provider about their batch references"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            processing = session.execute(
                select(Payout.id, Payout.batch_reference).where(Payout.status == PayoutStatus.PROCESSING.value)
            ).all()

        summary = {"checked": len(processing), "succeeded": 0, "failed": 0, "still_processing": 0, "errors": 0}
        for payout_id, batch_reference in processing:
            try:
                verdict = await asyncio.wait_for(
                    self.payment_provider.verify(batch_reference),
                    timeout=Config.PAYMENT_PROVIDER_TIMEOUT,
                )
            except (ProviderError, asyncio.TimeoutError) as e:
                logger.warning(f"⚠️ RECONCILE_VERIFY_FAILED: {batch_reference}: {e or 'timeout'}")
                summary["errors"] += 1
                continue

            try:
                outcome = self._apply_provider_result(payout_id, verdict)
            except ConflictError as e:
                logger.warning(f"🔒 RECONCILE_CONFLICT: {batch_reference}: {e}")
                summary["errors"] += 1
                continue

            self._notify_outcome(outcome)
            if outcome.status == PayoutStatus.SUCCESS.value:
                summary["succeeded"] += 1
            elif outcome.status == PayoutStatus.FAILED.value:
                summary["failed"] += 1
            else:
                summary["still_processing"] += 1

        if processing:
            logger.info(f"🔎 PAYOUT_RECONCILIATION: {summary}")
        return summary

    def audit_payout_integrity(self) -> Dict[str, int]:
        """
        Confirm no transaction sits in two live payouts.

        Raises:
            InvariantViolation: never auto-corrected; operators are alerted
        """
        with atomic_transaction(session_factory=self.session_factory) as session:
            duplicates = session.execute(
                select(PayoutItem.transaction_id, func.count(func.distinct(Payout.id)))
                .join(Payout, Payout.id == PayoutItem.payout_id)
                .where(Payout.status != PayoutStatus.FAILED.value)
                .group_by(PayoutItem.transaction_id)
                .having(func.count(func.distinct(Payout.id)) > 1)
            ).all()
            live_items = session.scalar(
                select(func.count(PayoutItem.id))
                .join(Payout, Payout.id == PayoutItem.payout_id)
                .where(Payout.status != PayoutStatus.FAILED.value)
            )

        if duplicates:
            details = {transaction_id: count for transaction_id, count in duplicates}
            if self.notification_service is not None:
                try:
                    self.notification_service.alert_operators("Double payout detected", details)
                except Exception as e:
                    logger.error(f"❌ Failed to alert operators: {e}")
            raise InvariantViolation(f"Transactions attached to multiple live payouts: {details}")

        return {"live_items": live_items, "duplicates": 0}
