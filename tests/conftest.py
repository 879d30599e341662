"""
Shared fixtures for the ledger test suite

Key Components:
1. In-memory SQLite database, rebuilt for every test
2. Test data factory for campaigns, patients, centers and waitlist entries
3. Fake payment provider implementing the PaymentProvider contract
4. Recording notification service (email disabled)
"""

import os
import sys

# Must be set before config/database are imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_ledger"
os.environ.pop("BREVO_API_KEY", None)
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

import pytest
import pytest_asyncio  # noqa: F401
from sqlalchemy import update

import database
from models import (
    Allocation, Appointment, AppointmentStatus, Base, Campaign, CampaignStatus, CenterStatus,
    PatientProfile, ScreeningCenter, ScreeningType, TargetGender, WaitlistEntry, WaitlistStatus
)
from services.notification_service import NotificationService
from services.payment_provider import (
    BankDetails, PaymentProvider, ProviderResult, PROVIDER_FAILED, PROVIDER_PENDING, PROVIDER_SUCCESS
)
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import ProviderError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@pytest.fixture(autouse=True)
def fresh_database():
    """Every test starts from an empty schema"""
    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield
    Base.metadata.drop_all(bind=database.engine)


@pytest.fixture
def test_db_session():
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


class FakePaymentProvider(PaymentProvider):
    """In-memory gateway; payout behaviour is switched per test"""

    def __init__(self):
        self.payout_behavior = "success"
        self.verify_behavior: Optional[str] = None
        self.payout_calls: List[Dict] = []
        self.charge_calls: List[Dict] = []
        self.verify_calls: List[str] = []
        self.results: Dict[str, ProviderResult] = {}

    async def charge(self, reference: str, amount: int, email: str) -> ProviderResult:
        self.charge_calls.append({"reference": reference, "amount": amount, "email": email})
        return ProviderResult(
            status=PROVIDER_PENDING,
            reference=reference,
            authorization_url=f"https://checkout.test/{reference}",
        )

    async def payout(self, batch_reference: str, bank_details: BankDetails, net_amount: int) -> ProviderResult:
        self.payout_calls.append({
            "batch_reference": batch_reference,
            "account_number": bank_details.account_number,
            "net_amount": net_amount,
        })
        if self.payout_behavior == "timeout":
            raise asyncio.TimeoutError()
        if self.payout_behavior == "error":
            raise ProviderError("Paystack 503: upstream unavailable")
        if self.payout_behavior == "timeout_but_landed":
            self.results[batch_reference] = ProviderResult(PROVIDER_SUCCESS, batch_reference, "TRF_landed")
            raise asyncio.TimeoutError()
        if self.payout_behavior == "pending":
            result = ProviderResult(PROVIDER_PENDING, batch_reference, "TRF_pending")
        elif self.payout_behavior == "failed":
            result = ProviderResult(PROVIDER_FAILED, batch_reference, message="Account name mismatch")
        else:
            result = ProviderResult(PROVIDER_SUCCESS, batch_reference, f"TRF_{len(self.payout_calls)}",
                                    raw={"recipient_code": "RCP_test"})
        self.results[batch_reference] = result
        return result

    async def verify(self, reference: str) -> ProviderResult:
        self.verify_calls.append(reference)
        if self.verify_behavior == "error":
            raise ProviderError("Paystack 502: bad gateway")
        if self.verify_behavior is not None:
            return ProviderResult(self.verify_behavior, reference, f"VERIFIED_{reference}")
        return self.results.get(
            reference, ProviderResult(PROVIDER_FAILED, reference, message="Reference not found")
        )


@pytest.fixture
def fake_provider():
    return FakePaymentProvider()


@pytest.fixture
def notifications():
    """Email disabled; every notification attempt is still recorded in .sent"""
    return NotificationService(api_key="")


class TestDataFactory:
    """Factory for creating test database records"""

    __test__ = False

    def __init__(self):
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def _save(self, obj):
        with database.managed_session() as session:
            session.add(obj)
            session.flush()
        return obj

    def get(self, model, entity_id):
        """Fresh read in its own session"""
        with database.managed_session() as session:
            return session.get(model, entity_id)

    def create_screening_type(self, name: str = "Cervical Cancer Screening", agreed_price: int = 5000) -> ScreeningType:
        return self._save(ScreeningType(name=name, agreed_price=agreed_price, active=True))

    def create_patient(self, gender: str = "female", date_of_birth: date = date(1985, 6, 15),
                       state: str = "Lagos", lga: str = "Ikeja", email: Optional[str] = None) -> PatientProfile:
        number = self._next()
        return self._save(PatientProfile(
            full_name=f"Patient {number}",
            email=email or f"patient{number}@example.com",
            gender=gender,
            date_of_birth=date_of_birth,
            state=state,
            lga=lga,
        ))

    def create_center(self, with_bank: bool = True, status: str = CenterStatus.ACTIVE.value) -> ScreeningCenter:
        number = self._next()
        center = ScreeningCenter(
            center_name=f"Screening Center {number}",
            email=f"center{number}@example.com",
            state="Lagos",
            lga="Ikeja",
            status=status,
        )
        if with_bank:
            center.bank_name = "Test Bank"
            center.bank_code = "058"
            center.bank_account = f"01234567{number:02d}"
            center.account_name = f"Screening Center {number} Ltd"
        return self._save(center)

    def create_campaign(self, screening_types: List[ScreeningType], target_amount: int = 10000,
                        max_per_patient: int = 2500, current_amount: Optional[int] = None,
                        expiry_date: Optional[datetime] = None, created_at: Optional[datetime] = None,
                        **targeting) -> Campaign:
        with database.managed_session() as session:
            campaign = Campaign(
                donor_id=f"donor-{self._next()}",
                title=targeting.pop("title", "Test Campaign"),
                target_amount=target_amount,
                current_amount=target_amount if current_amount is None else current_amount,
                max_per_patient=max_per_patient,
                target_states=targeting.pop("target_states", []),
                target_lgas=targeting.pop("target_lgas", []),
                target_gender=targeting.pop("target_gender", TargetGender.ALL.value),
                age_min=targeting.pop("age_min", None),
                age_max=targeting.pop("age_max", None),
                status=targeting.pop("status", CampaignStatus.ACTIVE.value),
                expiry_date=expiry_date,
                created_at=created_at or get_naive_utc_now(),
                screening_types=[session.get(ScreeningType, st.id) for st in screening_types],
            )
            session.add(campaign)
            session.flush()
            return campaign

    def create_general_pool(self, amount: int) -> Campaign:
        from services.campaign_service import CampaignService
        return CampaignService().add_to_general_pool(amount, f"ANON_{self._next()}")

    def create_waitlist_entry(self, patient: PatientProfile, screening_type: ScreeningType,
                              joined_at: Optional[datetime] = None) -> WaitlistEntry:
        return self._save(WaitlistEntry(
            patient_id=patient.id,
            screening_type_id=screening_type.id,
            status=WaitlistStatus.PENDING.value,
            joined_at=joined_at or get_naive_utc_now(),
        ))

    def backdate_allocation(self, allocation_id: str, days: int) -> None:
        with database.managed_session() as session:
            session.execute(
                update(Allocation)
                .where(Allocation.id == allocation_id)
                .values(created_at=get_naive_utc_now() - timedelta(days=days))
            )

    def completed_donation_appointment(self, center: ScreeningCenter, screening_type: ScreeningType,
                                       campaign: Optional[Campaign] = None) -> Appointment:
        """Full chain: waitlist → match → booking → completion"""
        from services.appointment_service import AppointmentService
        from services.matching_engine import MatchingEngine

        patient = self.create_patient()
        if campaign is None:
            campaign = self.create_campaign([screening_type], target_amount=2500, max_per_patient=2500)
        self.create_waitlist_entry(patient, screening_type)
        results = MatchingEngine().run_matching_pass(trigger="test")
        allocation_id = next(result.allocation_id for result in results if result.patient_id == patient.id)

        service = AppointmentService()
        appointment = service.book_donation_appointment(
            allocation_id, patient.id, center.id, get_naive_utc_now() + timedelta(days=3)
        )
        return service.update_appointment_status(appointment.id, AppointmentStatus.COMPLETED)


@pytest.fixture
def test_data_factory():
    """Provide test data factory"""
    return TestDataFactory()
