"""
Test Matching Engine
FIFO waitlist matching, campaign priority and per-patient limits
"""

import pytest
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

import database
from config import Config
from models import (
    Allocation, AllocationStatus, Campaign, MatchingExecution, MatchingExecutionStatus,
    WaitlistEntry, WaitlistStatus
)
from services.allocation_lifecycle import verify_budget_conservation
from services import matching_engine
from services.campaign_fund_manager import CampaignFundManager
from services.matching_engine import MatchingEngine, MatchOutcome
from utils.datetime_helpers import get_naive_utc_now
from utils.optimistic_locking import conditional_update


def queue(factory, screening_type, count, start_days_ago=10):
    """Patients joined one hour apart, oldest first"""
    base = get_naive_utc_now() - timedelta(days=start_days_ago)
    patients = []
    for index in range(count):
        patient = factory.create_patient()
        factory.create_waitlist_entry(patient, screening_type, joined_at=base + timedelta(hours=index))
        patients.append(patient)
    return patients


class TestMatchingPass:
    """Test the basic matching pass"""

    def test_three_patients_share_one_campaign(self, test_data_factory):
        """10,000 campaign capped at 2,500 per patient funds three 5,000 screenings"""
        screening = test_data_factory.create_screening_type(agreed_price=5000)
        campaign = test_data_factory.create_campaign([screening], target_amount=10000, max_per_patient=2500)
        patients = queue(test_data_factory, screening, 3)

        results = MatchingEngine().run_matching_pass(trigger="test")

        assert [result.patient_id for result in results] == [patient.id for patient in patients]
        assert all(result.matched for result in results)
        assert all(result.amount == 2500 for result in results)
        assert all(result.campaign_id == campaign.id for result in results)
        assert test_data_factory.get(Campaign, campaign.id).current_amount == 2500

        with database.managed_session() as session:
            statuses = set(session.scalars(select(WaitlistEntry.status)))
            allocations = session.query(Allocation).all()
            assert statuses == {WaitlistStatus.MATCHED.value}
            assert len(allocations) == 3
            assert {allocation.status for allocation in allocations} == {AllocationStatus.ACTIVE.value}
            report = verify_budget_conservation(session, campaign.id)
            assert report["reserved"] == 7500

    def test_second_pass_has_nothing_to_do(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        test_data_factory.create_campaign([screening])
        queue(test_data_factory, screening, 2)

        engine = MatchingEngine()
        assert len(engine.run_matching_pass()) == 2
        assert engine.run_matching_pass() == [], "Matched entries must not be evaluated again"

    def test_fifo_under_scarcity(self, test_data_factory):
        """Only the two oldest entries are funded when money runs out"""
        screening = test_data_factory.create_screening_type()
        test_data_factory.create_campaign([screening], target_amount=5000, max_per_patient=2500)
        first, second, third = queue(test_data_factory, screening, 3)

        results = {result.patient_id: result for result in MatchingEngine().run_matching_pass()}

        assert results[first.id].matched
        assert results[second.id].matched
        assert results[third.id].outcome == MatchOutcome.NO_ELIGIBLE_CAMPAIGN

        with database.managed_session() as session:
            entry = session.query(WaitlistEntry).filter_by(patient_id=third.id).one()
            assert entry.status == WaitlistStatus.PENDING.value, "Unfunded entry keeps waiting"

    def test_targeting_exclusion(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        test_data_factory.create_campaign([screening], target_states=["Kano"])
        patient = test_data_factory.create_patient(state="Lagos")
        test_data_factory.create_waitlist_entry(patient, screening)

        [result] = MatchingEngine().run_matching_pass()

        assert result.outcome == MatchOutcome.NO_ELIGIBLE_CAMPAIGN
        assert result.candidates_considered == 0

    def test_unsponsored_screening_not_funded(self, test_data_factory):
        cervical = test_data_factory.create_screening_type(name="Cervical")
        breast = test_data_factory.create_screening_type(name="Breast")
        test_data_factory.create_campaign([cervical])
        patient = test_data_factory.create_patient()
        test_data_factory.create_waitlist_entry(patient, breast)

        [result] = MatchingEngine().run_matching_pass()
        assert not result.matched

    def test_targeting_score_recorded(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        test_data_factory.create_campaign([screening], target_states=["Lagos"], target_lgas=["Ikeja"])
        queue(test_data_factory, screening, 1)

        [result] = MatchingEngine().run_matching_pass()
        assert result.targeting_score == 45


class TestCampaignPriority:
    """Test which campaign funds an entry when several qualify"""

    def test_expiry_first_prefers_soonest_expiry(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        now = get_naive_utc_now()
        test_data_factory.create_campaign([screening], target_amount=50000,
                                      expiry_date=now + timedelta(days=90))
        sooner = test_data_factory.create_campaign([screening], target_amount=5000,
                                                   expiry_date=now + timedelta(days=5))
        test_data_factory.create_campaign([screening], target_amount=90000)
        queue(test_data_factory, screening, 1)

        [result] = MatchingEngine(priority_policy="expiry_first").run_matching_pass()

        assert result.campaign_id == sooner.id

    def test_balance_first_prefers_largest_balance(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        now = get_naive_utc_now()
        test_data_factory.create_campaign([screening], target_amount=5000, expiry_date=now + timedelta(days=5))
        largest = test_data_factory.create_campaign([screening], target_amount=90000)
        queue(test_data_factory, screening, 1)

        [result] = MatchingEngine(priority_policy="balance_first").run_matching_pass()
        assert result.campaign_id == largest.id

    def test_oldest_campaign_breaks_ties(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        now = get_naive_utc_now()
        older = test_data_factory.create_campaign([screening], created_at=now - timedelta(days=30))
        test_data_factory.create_campaign([screening], created_at=now - timedelta(days=1))
        queue(test_data_factory, screening, 1)

        [result] = MatchingEngine().run_matching_pass()
        assert result.campaign_id == older.id

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            MatchingEngine(priority_policy="random")


class TestGeneralPool:
    """Test the untargeted general donor pool"""

    def test_general_pool_funds_when_nothing_else_can(self, test_data_factory):
        screening = test_data_factory.create_screening_type(agreed_price=5000)
        test_data_factory.create_general_pool(20000)
        queue(test_data_factory, screening, 1)

        [result] = MatchingEngine().run_matching_pass()

        assert result.matched
        assert result.campaign_id == Config.GENERAL_POOL_CAMPAIGN_ID
        assert result.amount == 5000
        assert test_data_factory.get(Campaign, Config.GENERAL_POOL_CAMPAIGN_ID).current_amount == 15000

    def test_targeted_campaign_preferred_over_pool(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        test_data_factory.create_general_pool(1000000)
        campaign = test_data_factory.create_campaign([screening], target_amount=2500)
        queue(test_data_factory, screening, 1)

        [result] = MatchingEngine(priority_policy="balance_first").run_matching_pass()
        assert result.campaign_id == campaign.id


class TestPatientLimits:
    """Test per-patient allocation limits"""

    def test_active_allocation_cap(self, test_data_factory, monkeypatch):
        monkeypatch.setattr(Config, "MAX_ACTIVE_ALLOCATIONS_PER_PATIENT", 1)
        cervical = test_data_factory.create_screening_type(name="Cervical")
        breast = test_data_factory.create_screening_type(name="Breast")
        test_data_factory.create_campaign([cervical, breast], target_amount=20000)
        patient = test_data_factory.create_patient()
        now = get_naive_utc_now()
        test_data_factory.create_waitlist_entry(patient, cervical, joined_at=now - timedelta(days=2))
        test_data_factory.create_waitlist_entry(patient, breast, joined_at=now - timedelta(days=1))

        first, second = MatchingEngine().run_matching_pass()

        assert first.matched
        assert second.outcome == MatchOutcome.LIMIT_REACHED

    def test_one_active_allocation_per_screening(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        test_data_factory.create_campaign([screening], target_amount=20000)
        patient = test_data_factory.create_patient()
        test_data_factory.create_waitlist_entry(patient, screening)
        MatchingEngine().run_matching_pass()

        # A second request for the same screening while the first is still active
        test_data_factory.create_waitlist_entry(patient, screening)
        [result] = MatchingEngine().run_matching_pass()

        assert result.outcome == MatchOutcome.LIMIT_REACHED


class TestMatchingAudit:
    """Test execution records and notifications"""

    def test_execution_metrics(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        test_data_factory.create_campaign([screening], target_amount=5000, max_per_patient=2500)
        queue(test_data_factory, screening, 3)

        MatchingEngine().run_matching_pass(trigger="admin")

        with database.managed_session() as session:
            execution = session.query(MatchingExecution).one()
            assert execution.status == MatchingExecutionStatus.COMPLETED.value
            assert execution.trigger == "admin"
            assert execution.entries_evaluated == 3
            assert execution.successful_matches == 2
            assert execution.skipped_no_funding == 1
            assert execution.total_funds_allocated == 5000
            assert execution.completed_at is not None

    def test_patient_notified_after_match(self, test_data_factory, notifications):
        screening = test_data_factory.create_screening_type(name="Cervical")
        test_data_factory.create_campaign([screening], title="Lagos Women")
        patient = test_data_factory.create_patient(email="ada@example.com")
        test_data_factory.create_waitlist_entry(patient, screening)

        MatchingEngine(notification_service=notifications).run_matching_pass()

        assert notifications.sent == [{
            "to": "ada@example.com",
            "subject": f"{Config.PLATFORM_NAME}: your Cervical screening is sponsored",
            "category": "patient_matched",
        }]


class TestConcurrentWrites:
    """Lost races and per-entry failures inside a pass"""

    def test_entry_matched_elsewhere_rolls_back(self, test_data_factory, monkeypatch):
        screening = test_data_factory.create_screening_type()
        campaign = test_data_factory.create_campaign([screening], target_amount=10000)
        [patient] = queue(test_data_factory, screening, 1)

        def flip_already_taken(session, model, entity_id, values, *conditions):
            if model is WaitlistEntry:
                return False
            return conditional_update(session, model, entity_id, values, *conditions)

        monkeypatch.setattr(matching_engine, "conditional_update", flip_already_taken)

        [result] = MatchingEngine().run_matching_pass()

        assert result.outcome == MatchOutcome.CONFLICT
        assert result.patient_id == patient.id
        assert test_data_factory.get(Campaign, campaign.id).current_amount == 10000
        with database.managed_session() as session:
            assert session.scalars(select(Allocation)).all() == []

    def test_drained_candidate_falls_through(self, test_data_factory, monkeypatch):
        screening = test_data_factory.create_screening_type()
        now = get_naive_utc_now()
        preferred = test_data_factory.create_campaign(
            [screening], target_amount=2500, expiry_date=now + timedelta(days=5)
        )
        fallback = test_data_factory.create_campaign([screening], target_amount=10000)
        queue(test_data_factory, screening, 1)

        original_reserve = CampaignFundManager.reserve
        drawn = []

        def reserve_after_competing_draw(cls, session, campaign_id, amount):
            if campaign_id == preferred.id and not drawn:
                drawn.append(campaign_id)
                original_reserve(session, campaign_id, 1000)
            return original_reserve(session, campaign_id, amount)

        monkeypatch.setattr(CampaignFundManager, "reserve", classmethod(reserve_after_competing_draw))

        [result] = MatchingEngine().run_matching_pass()

        assert result.matched
        assert result.campaign_id == fallback.id
        assert result.candidates_considered == 2
        assert test_data_factory.get(Campaign, fallback.id).current_amount == 7500
        assert test_data_factory.get(Campaign, preferred.id).current_amount == 1500

    def test_failing_entry_does_not_undo_other_matches(self, test_data_factory, monkeypatch):
        screening = test_data_factory.create_screening_type()
        campaign = test_data_factory.create_campaign([screening], target_amount=10000)
        first, middle, last = queue(test_data_factory, screening, 3)

        original_limit_check = MatchingEngine._patient_limit_reason

        def limit_check_with_outage(self, session, entry):
            if entry.patient_id == middle.id:
                raise SQLAlchemyError("server closed the connection unexpectedly")
            return original_limit_check(self, session, entry)

        monkeypatch.setattr(MatchingEngine, "_patient_limit_reason", limit_check_with_outage)

        results = MatchingEngine().run_matching_pass()

        assert [result.outcome for result in results] == [
            MatchOutcome.MATCHED, MatchOutcome.ERROR, MatchOutcome.MATCHED
        ]
        assert [result.patient_id for result in results] == [first.id, middle.id, last.id]
        assert test_data_factory.get(Campaign, campaign.id).current_amount == 5000
        with database.managed_session() as session:
            statuses = {
                entry.patient_id: entry.status for entry in session.scalars(select(WaitlistEntry))
            }
            execution = session.scalars(select(MatchingExecution)).one()
            assert execution.status == MatchingExecutionStatus.COMPLETED.value
            assert execution.errors[0]["error"] == "server closed the connection unexpectedly"
        assert statuses == {
            first.id: WaitlistStatus.MATCHED.value,
            middle.id: WaitlistStatus.PENDING.value,
            last.id: WaitlistStatus.MATCHED.value,
        }

    def test_zero_batch_size_evaluates_nothing(self, test_data_factory):
        screening = test_data_factory.create_screening_type()
        test_data_factory.create_campaign([screening])
        queue(test_data_factory, screening, 2)

        assert MatchingEngine(max_entries=0).run_matching_pass() == []
