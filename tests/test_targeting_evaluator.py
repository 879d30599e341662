"""
Test Targeting Evaluator
Pure eligibility rules, evaluated on transient (unsaved) models
"""

import pytest
from datetime import date, datetime, timedelta

from config import Config
from models import Campaign, CampaignStatus, PatientProfile, ScreeningType, TargetGender
from services.targeting_evaluator import (
    allocation_amount, is_eligible, patient_age, targeting_score, validate_targeting
)
from utils.exceptions import ValidationError

NOW = datetime(2026, 3, 1, 12, 0, 0)


def make_screening(screening_id="ST_cervical", price=5000):
    return ScreeningType(id=screening_id, name="Cervical", agreed_price=price, active=True)


def make_campaign(**overrides):
    values = dict(
        id="CP_test",
        donor_id="donor-1",
        title="Lagos Women",
        target_amount=10000,
        current_amount=10000,
        max_per_patient=2500,
        target_states=[],
        target_lgas=[],
        target_gender=TargetGender.ALL.value,
        age_min=None,
        age_max=None,
        status=CampaignStatus.ACTIVE.value,
        expiry_date=None,
        created_at=NOW - timedelta(days=10),
        screening_types=[make_screening()],
    )
    values.update(overrides)
    return Campaign(**values)


def make_patient(**overrides):
    values = dict(
        id="PT_test",
        full_name="Ada Obi",
        gender="female",
        date_of_birth=date(1980, 6, 15),
        state="Lagos",
        lga="Ikeja",
    )
    values.update(overrides)
    return PatientProfile(**values)


class TestEligibility:
    """Test each targeting filter in isolation"""

    def test_untargeted_campaign_accepts_anyone(self):
        assert is_eligible(make_campaign(), make_patient(), "ST_cervical", 5000, NOW)

    def test_screening_type_must_be_sponsored(self):
        assert not is_eligible(make_campaign(), make_patient(), "ST_breast", 5000, NOW)

    def test_inactive_campaign_rejected(self):
        for status in (CampaignStatus.COMPLETED.value, CampaignStatus.DELETED.value):
            assert not is_eligible(make_campaign(status=status), make_patient(), "ST_cervical", 5000, NOW)

    def test_expired_campaign_rejected(self):
        campaign = make_campaign(expiry_date=NOW - timedelta(seconds=1))
        assert not is_eligible(campaign, make_patient(), "ST_cervical", 5000, NOW)

        campaign = make_campaign(expiry_date=NOW + timedelta(days=1))
        assert is_eligible(campaign, make_patient(), "ST_cervical", 5000, NOW)

    def test_state_filter_case_insensitive(self):
        campaign = make_campaign(target_states=["lagos", "Ogun"])
        assert is_eligible(campaign, make_patient(state="LAGOS"), "ST_cervical", 5000, NOW)
        assert not is_eligible(campaign, make_patient(state="Kano"), "ST_cervical", 5000, NOW)
        assert not is_eligible(campaign, make_patient(state=None), "ST_cervical", 5000, NOW)

    def test_lga_filter(self):
        campaign = make_campaign(target_lgas=["Ikeja"])
        assert is_eligible(campaign, make_patient(lga="Ikeja"), "ST_cervical", 5000, NOW)
        assert not is_eligible(campaign, make_patient(lga="Surulere"), "ST_cervical", 5000, NOW)

    def test_gender_filter(self):
        campaign = make_campaign(target_gender=TargetGender.FEMALE.value)
        assert is_eligible(campaign, make_patient(gender="female"), "ST_cervical", 5000, NOW)
        assert not is_eligible(campaign, make_patient(gender="male"), "ST_cervical", 5000, NOW)

    def test_age_bounds_inclusive(self):
        campaign = make_campaign(age_min=30, age_max=45)
        # Turns 30 on 2026-03-01
        assert is_eligible(campaign, make_patient(date_of_birth=date(1996, 3, 1)), "ST_cervical", 5000, NOW)
        assert not is_eligible(campaign, make_patient(date_of_birth=date(1996, 3, 2)), "ST_cervical", 5000, NOW)
        assert is_eligible(campaign, make_patient(date_of_birth=date(1980, 6, 15)), "ST_cervical", 5000, NOW)
        assert not is_eligible(campaign, make_patient(date_of_birth=date(1970, 1, 1)), "ST_cervical", 5000, NOW)

    def test_age_filter_requires_known_birth_date(self):
        campaign = make_campaign(age_min=18)
        assert not is_eligible(campaign, make_patient(date_of_birth=None), "ST_cervical", 5000, NOW)

    def test_balance_must_cover_allocation(self):
        assert not is_eligible(make_campaign(current_amount=2499), make_patient(), "ST_cervical", 5000, NOW)
        assert is_eligible(make_campaign(current_amount=2500), make_patient(), "ST_cervical", 5000, NOW)

    def test_general_pool_covers_every_screening(self):
        pool = make_campaign(id=Config.GENERAL_POOL_CAMPAIGN_ID, screening_types=[])
        assert pool.is_general_pool
        assert is_eligible(pool, make_patient(), "ST_anything", 5000, NOW)


class TestAllocationAmount:
    """Test per-patient allocation sizing"""

    def test_capped_by_max_per_patient(self):
        assert allocation_amount(make_campaign(max_per_patient=2500), 5000) == 2500

    def test_screening_price_when_cheaper(self):
        assert allocation_amount(make_campaign(max_per_patient=8000), 5000) == 5000


class TestTargetingScore:
    """Test diagnostic specificity score"""

    def test_untargeted_scores_zero(self):
        assert targeting_score(make_campaign(), make_patient(), NOW) == 0

    def test_all_filters_matching(self):
        campaign = make_campaign(
            target_states=["Lagos"], target_lgas=["Ikeja"],
            target_gender=TargetGender.FEMALE.value, age_min=30, age_max=50,
        )
        assert targeting_score(campaign, make_patient(), NOW) == 70

    def test_patient_age_helper(self):
        assert patient_age(make_patient(date_of_birth=date(1980, 6, 15)), NOW) == 45
        assert patient_age(make_patient(date_of_birth=None), NOW) is None


class TestValidateTargeting:
    """Test malformed campaign input is rejected"""

    def test_valid_input_passes(self):
        validate_targeting(10000, 2500, ["ST_cervical"], "female", 18, 65, ["Lagos"], ["Ikeja"])

    @pytest.mark.parametrize("kwargs", [
        dict(target_amount=0, max_per_patient=2500, screening_type_ids=["ST"]),
        dict(target_amount=-5, max_per_patient=2500, screening_type_ids=["ST"]),
        dict(target_amount=10000, max_per_patient=0, screening_type_ids=["ST"]),
        dict(target_amount=10000, max_per_patient=2500, screening_type_ids=[]),
        dict(target_amount=10000, max_per_patient=2500, screening_type_ids=["ST"], target_gender="other"),
        dict(target_amount=10000, max_per_patient=2500, screening_type_ids=["ST"], age_min=50, age_max=40),
        dict(target_amount=10000, max_per_patient=2500, screening_type_ids=["ST"], age_min=-1),
        dict(target_amount=10000, max_per_patient=2500, screening_type_ids=["ST"], target_states="Lagos"),
        dict(target_amount=10000, max_per_patient=2500, screening_type_ids=["ST"], target_lgas=[""]),
    ])
    def test_invalid_input_rejected(self, kwargs):
        with pytest.raises(ValidationError):
            validate_targeting(**kwargs)

    def test_past_expiry_rejected(self):
        with pytest.raises(ValidationError):
            validate_targeting(10000, 2500, ["ST"], expiry_date=datetime(2000, 1, 1))
