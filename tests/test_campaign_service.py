"""
Test Campaign Service
Funding, top-ups, completion and deletion with balance disposition
"""

import pytest
from datetime import timedelta

from sqlalchemy import select

import database
from config import Config
from models import (
    Allocation, AllocationStatus, Appointment, AppointmentStatus, Campaign, CampaignStatus,
    Transaction, TransactionStatus, TransactionType, WaitlistEntry, WaitlistStatus
)
from services.allocation_lifecycle import verify_budget_conservation
from services.appointment_service import AppointmentService
from services.campaign_service import (
    CampaignService, RecycleToGeneralPool, RefundToDonor, TransferToCampaign
)
from services.matching_engine import MatchingEngine
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import NotFoundError, StateTransitionError, ValidationError


class TestCampaignFunding:
    """Test campaign creation and top-ups"""

    def test_fund_campaign(self, test_data_factory):
        screening = test_data_factory.create_screening_type()

        campaign = CampaignService().fund_campaign(
            donor_id="donor-42", target_amount=10000, max_per_patient=2500,
            screening_type_ids=[screening.id], funding_reference="PSK_fund_001",
            title="Lagos Women", target_states=["Lagos"], target_gender="Female",
        )

        stored = test_data_factory.get(Campaign, campaign.id)
        assert stored.status == CampaignStatus.ACTIVE.value
        assert stored.current_amount == stored.target_amount == 10000
        assert stored.target_gender == "female"
        assert stored.screening_type_ids == {screening.id}

        with database.managed_session() as session:
            donation = session.scalar(select(Transaction).where(Transaction.payment_reference == "PSK_fund_001"))
            assert donation.type == TransactionType.DONATION.value
            assert donation.status == TransactionStatus.PAID.value
            assert donation.related_campaign_id == campaign.id

    def test_funding_replay_is_idempotent(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        service = CampaignService()
        kwargs = dict(donor_id="donor-42", target_amount=10000, max_per_patient=2500,
                      screening_type_ids=[screening.id], funding_reference="PSK_fund_002")

        first = service.fund_campaign(**kwargs)
        second = service.fund_campaign(**kwargs)

        assert first.id == second.id
        with database.managed_session() as session:
            assert session.query(Campaign).count() == 1

    def test_invalid_funding_rejected(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        service = CampaignService()

        with pytest.raises(ValidationError):
            service.fund_campaign("donor", 0, 2500, [screening.id], "PSK_bad")
        with pytest.raises(ValidationError):
            service.fund_campaign("donor", 10000, 2500, [screening.id], "")
        with pytest.raises(NotFoundError):
            service.fund_campaign("donor", 10000, 2500, ["ST_missing"], "PSK_missing")

        with database.managed_session() as session:
            assert session.query(Campaign).count() == 0

    def test_top_up_reactivates_completed_campaign(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        campaign = test_data_factory.create_campaign([screening], target_amount=2500, current_amount=0)
        service = CampaignService()
        assert service.complete_finished_campaigns() == [campaign.id]

        topped = service.top_up_campaign(campaign.id, 5000, "PSK_topup_1")
        service.top_up_campaign(campaign.id, 5000, "PSK_topup_1")

        assert topped.status == CampaignStatus.ACTIVE.value
        stored = test_data_factory.get(Campaign, campaign.id)
        assert stored.target_amount == 7500
        assert stored.current_amount == 5000

    def test_general_pool_donations(self, test_data_factory):
        service = CampaignService()
        service.add_to_general_pool(3000, "ANON_1")
        service.add_to_general_pool(3000, "ANON_1")
        pool = service.add_to_general_pool(2000, "ANON_2")

        assert pool.id == Config.GENERAL_POOL_CAMPAIGN_ID
        assert pool.donor_id == Config.GENERAL_POOL_DONOR_ID
        assert pool.current_amount == pool.target_amount == 5000


class TestCampaignCompletion:
    """Test the drained/expired completion sweep"""

    def test_drained_and_expired_campaigns_complete(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        drained = test_data_factory.create_campaign([screening], target_amount=2500, current_amount=0)
        expired = test_data_factory.create_campaign(
            [screening], expiry_date=get_naive_utc_now() - timedelta(minutes=1)
        )
        running = test_data_factory.create_campaign([screening])
        CampaignService().add_to_general_pool(1000, "ANON_pool")

        completed = CampaignService().complete_finished_campaigns()

        assert sorted(completed) == sorted([drained.id, expired.id])
        assert test_data_factory.get(Campaign, running.id).status == CampaignStatus.ACTIVE.value
        assert test_data_factory.get(Campaign, Config.GENERAL_POOL_CAMPAIGN_ID).status == CampaignStatus.ACTIVE.value


class TestCampaignDeletion:
    """Test deletion with an explicit disposition"""

    @pytest.fixture
    def funded(self, test_data_factory):
        """10,000 campaign with one unbooked 2,500 allocation"""
        screening = test_data_factory.create_screening_type()
        campaign = test_data_factory.create_campaign([screening], target_amount=10000, max_per_patient=2500)
        patient = test_data_factory.create_patient()
        test_data_factory.create_waitlist_entry(patient, screening)
        [result] = MatchingEngine().run_matching_pass()
        return {"screening": screening, "campaign": campaign, "patient": patient,
                "allocation_id": result.allocation_id}

    @pytest.mark.parametrize("disposition", [None, "recycle", object()])
    def test_disposition_required(self, funded, test_data_factory, disposition):
        with pytest.raises(ValidationError):
            CampaignService().delete_campaign(funded["campaign"].id, disposition)

        stored = test_data_factory.get(Campaign, funded["campaign"].id)
        assert stored.status == CampaignStatus.ACTIVE.value
        assert stored.current_amount == 7500

    def test_recycle_to_general_pool(self, funded, test_data_factory):
        result = CampaignService().delete_campaign(funded["campaign"].id, RecycleToGeneralPool())

        assert result.reclaimed_allocation_ids == [funded["allocation_id"]]
        assert result.amount_moved == 10000
        assert result.destination_campaign_id == Config.GENERAL_POOL_CAMPAIGN_ID

        deleted = test_data_factory.get(Campaign, funded["campaign"].id)
        assert deleted.status == CampaignStatus.DELETED.value
        assert deleted.disposition == "recycle"
        assert deleted.current_amount == 0
        assert deleted.deleted_at is not None

        pool = test_data_factory.get(Campaign, Config.GENERAL_POOL_CAMPAIGN_ID)
        assert pool.current_amount == pool.target_amount == 10000

        allocation = test_data_factory.get(Allocation, funded["allocation_id"])
        assert allocation.status == AllocationStatus.RECLAIMED.value
        entry = test_data_factory.get(WaitlistEntry, allocation.waitlist_id)
        assert entry.status == WaitlistStatus.PENDING.value

    def test_transfer_to_campaign(self, funded, test_data_factory):
        other = test_data_factory.create_campaign([funded["screening"]], target_amount=5000)

        result = CampaignService().delete_campaign(funded["campaign"].id, TransferToCampaign(other.id))

        assert result.destination_campaign_id == other.id
        stored = test_data_factory.get(Campaign, other.id)
        assert stored.current_amount == stored.target_amount == 15000

    def test_refund_to_donor(self, funded, test_data_factory):
        result = CampaignService().delete_campaign(funded["campaign"].id, RefundToDonor())

        refund = test_data_factory.get(Transaction, result.refund_transaction_id)
        assert refund.type == TransactionType.REFUND.value
        assert refund.status == TransactionStatus.PENDING.value
        assert refund.amount == 10000
        assert refund.payment_reference.startswith("RFD_")
        assert refund.related_campaign_id == funded["campaign"].id

    def test_invalid_transfer_targets(self, funded, test_data_factory):
        service = CampaignService()
        with pytest.raises(ValidationError):
            service.delete_campaign(funded["campaign"].id, TransferToCampaign(funded["campaign"].id))
        with pytest.raises(NotFoundError):
            service.delete_campaign(funded["campaign"].id, TransferToCampaign("CP_missing"))

        gone = test_data_factory.create_campaign([funded["screening"]])
        service.delete_campaign(gone.id, RecycleToGeneralPool())
        with pytest.raises(ValidationError):
            service.delete_campaign(funded["campaign"].id, TransferToCampaign(gone.id))

    def test_cannot_delete_twice(self, funded):
        service = CampaignService()
        service.delete_campaign(funded["campaign"].id, RecycleToGeneralPool())
        with pytest.raises(StateTransitionError):
            service.delete_campaign(funded["campaign"].id, RefundToDonor())

    def test_general_pool_cannot_be_deleted(self):
        service = CampaignService()
        service.add_to_general_pool(1000, "ANON_keep")
        with pytest.raises(ValidationError):
            service.delete_campaign(Config.GENERAL_POOL_CAMPAIGN_ID, RefundToDonor())

    def test_booked_allocation_funds_follow_disposition(self, funded, test_data_factory):
        """Booked allocations survive deletion; if later cancelled, their money goes to the pool"""
        center = test_data_factory.create_center()
        appointments = AppointmentService()
        appointment = appointments.book_donation_appointment(
            funded["allocation_id"], funded["patient"].id, center.id, get_naive_utc_now() + timedelta(days=2)
        )

        result = CampaignService().delete_campaign(funded["campaign"].id, RecycleToGeneralPool())
        assert result.reclaimed_allocation_ids == []
        assert result.amount_moved == 7500
        assert test_data_factory.get(Allocation, funded["allocation_id"]).status == AllocationStatus.ACTIVE.value

        appointments.update_appointment_status(appointment.id, AppointmentStatus.CANCELLED)

        pool = test_data_factory.get(Campaign, Config.GENERAL_POOL_CAMPAIGN_ID)
        assert pool.current_amount == 10000
        deleted = test_data_factory.get(Campaign, funded["campaign"].id)
        assert deleted.current_amount == deleted.target_amount == 0
        with database.managed_session() as session:
            verify_budget_conservation(session, funded["campaign"].id)
            verify_budget_conservation(session, Config.GENERAL_POOL_CAMPAIGN_ID)

    def test_booked_allocation_can_still_complete(self, funded, test_data_factory):
        center = test_data_factory.create_center()
        appointments = AppointmentService()
        appointment = appointments.book_donation_appointment(
            funded["allocation_id"], funded["patient"].id, center.id, get_naive_utc_now()
        )
        CampaignService().delete_campaign(funded["campaign"].id, RefundToDonor())

        completed = appointments.update_appointment_status(appointment.id, AppointmentStatus.COMPLETED)

        assert completed.status == AppointmentStatus.COMPLETED.value
        with database.managed_session() as session:
            report = verify_budget_conservation(session, funded["campaign"].id)
            assert report["spent"] == 2500
            assert session.get(Appointment, appointment.id).status == AppointmentStatus.COMPLETED.value
