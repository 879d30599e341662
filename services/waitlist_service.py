"""Waitlist intake and expiry"""

import logging
from datetime import timedelta
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import PatientProfile, ScreeningType, WaitlistEntry, WaitlistStatus
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import ConflictError, NotFoundError, ValidationError
from utils.optimistic_locking import conditional_update

logger = logging.getLogger(__name__)


class WaitlistService:
    """Patients queue here for donation-funded screenings"""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self.session_factory = session_factory

    def can_join_waitlist(self, session: Session, patient_id: str, screening_type_id: str) -> bool:
        """A patient may hold only one open (PENDING or MATCHED) entry per screening type"""
        existing = session.scalar(
            select(WaitlistEntry.id).where(
                WaitlistEntry.patient_id == patient_id,
                WaitlistEntry.screening_type_id == screening_type_id,
                WaitlistEntry.status.in_([WaitlistStatus.PENDING.value, WaitlistStatus.MATCHED.value]),
            ).limit(1)
        )
        return existing is None

    def join_waitlist(self, patient_id: str, screening_type_id: str) -> WaitlistEntry:
        """Create a PENDING entry; joined_at fixes the patient's place in the queue"""
        with atomic_transaction(session_factory=self.session_factory) as session:
            if session.get(PatientProfile, patient_id) is None:
                raise NotFoundError("Patient", patient_id)
            screening_type = session.get(ScreeningType, screening_type_id)
            if screening_type is None:
                raise NotFoundError("ScreeningType", screening_type_id)
            if not screening_type.active:
                raise ValidationError(f"Screening type {screening_type.name} is not currently offered")
            if not self.can_join_waitlist(session, patient_id, screening_type_id):
                raise ValidationError(
                    f"Patient {patient_id} already has an open waitlist entry for {screening_type.name}"
                )

            entry = WaitlistEntry(
                patient_id=patient_id,
                screening_type_id=screening_type_id,
                status=WaitlistStatus.PENDING.value,
                joined_at=get_naive_utc_now(),
            )
            session.add(entry)
            try:
                session.flush()
            except IntegrityError as e:
                raise ConflictError(f"Concurrent waitlist join for patient {patient_id}") from e

            logger.info(f"📝 WAITLIST_JOINED: patient {patient_id} screening {screening_type_id} entry {entry.id}")
            return entry

    def expire_stale_waitlist(self, max_age: Optional[timedelta] = None) -> List[str]:
        """
        PENDING entries idle longer than max_age become EXPIRED; MATCHED entries are left alone.

        Age runs from the latest requeue when an allocation was released, otherwise
        from joined_at. Queue order still uses joined_at.
        """
        if max_age is None:
            max_age = timedelta(days=Config.WAITLIST_MAX_AGE_DAYS)
        now = get_naive_utc_now()
        cutoff = now - max_age
        expired: List[str] = []

        with atomic_transaction(session_factory=self.session_factory) as session:
            stale_ids = list(session.scalars(
                select(WaitlistEntry.id).where(
                    WaitlistEntry.status == WaitlistStatus.PENDING.value,
                    func.coalesce(WaitlistEntry.requeued_at, WaitlistEntry.joined_at) < cutoff,
                )
            ))
            for entry_id in stale_ids:
                if conditional_update(
                    session, WaitlistEntry, entry_id,
                    {"status": WaitlistStatus.EXPIRED.value, "expired_at": now},
                    WaitlistEntry.status == WaitlistStatus.PENDING.value,
                ):
                    expired.append(entry_id)

        if expired:
            logger.info(f"⏰ WAITLIST_EXPIRY_SWEEP: expired {len(expired)} entries older than {max_age.days} days")
        return expired
