"""
Targeting Evaluator
Pure decision functions deciding whether a campaign may fund a patient's screening.

Nothing here touches the database or mutates its inputs, so the matching
engine and the tests can call it freely.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from models import Campaign, CampaignStatus, PatientProfile, TargetGender
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Diagnostic weights for how specifically a campaign targets a patient
AGE_MATCH_SCORE = 10
GENDER_MATCH_SCORE = 15
STATE_MATCH_SCORE = 20
LGA_MATCH_SCORE = 25


def _normalize(value: Optional[str]) -> Optional[str]:
    return value.strip().lower() if isinstance(value, str) else value


def _in_filter(value: Optional[str], allowed: Optional[Iterable[str]]) -> bool:
    """Empty filter matches anyone; a non-empty filter requires a known, listed value"""
    if not allowed:
        return True
    if value is None:
        return False
    return _normalize(value) in {_normalize(item) for item in allowed}


def patient_age(patient: PatientProfile, now: Optional[datetime] = None) -> Optional[int]:
    return patient.age_on((now or get_naive_utc_now()).date())


def allocation_amount(campaign: Campaign, per_patient_cost: int) -> int:
    """Amount reserved for one patient: the screening cost, capped by the campaign"""
    return min(per_patient_cost, campaign.max_per_patient)


def _gender_matches(campaign: Campaign, patient: PatientProfile) -> bool:
    if campaign.target_gender in (None, TargetGender.ALL.value):
        return True
    return _normalize(patient.gender) == campaign.target_gender


def _age_matches(campaign: Campaign, patient: PatientProfile, now: datetime) -> bool:
    if campaign.age_min is None and campaign.age_max is None:
        return True
    age = patient.age_on(now.date())
    if age is None:
        return False
    if campaign.age_min is not None and age < campaign.age_min:
        return False
    if campaign.age_max is not None and age > campaign.age_max:
        return False
    return True


def is_eligible(
    campaign: Campaign,
    patient: PatientProfile,
    screening_type_id: str,
    per_patient_cost: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    True when every targeting rule holds for this campaign and patient.

    Args:
        campaign: Candidate campaign (screening types must be loaded)
        patient: Patient demographic profile
        screening_type_id: Screening the waitlist entry asks for
        per_patient_cost: Agreed price of that screening
        now: Evaluation instant, naive UTC (defaults to the current time)
    """
    now = now or get_naive_utc_now()

    if campaign.status != CampaignStatus.ACTIVE.value:
        return False
    if campaign.expiry_date is not None and now >= campaign.expiry_date:
        return False
    # The general pool is an untargeted fallback covering every screening type
    if not campaign.is_general_pool and screening_type_id not in campaign.screening_type_ids:
        return False
    if not _in_filter(patient.state, campaign.target_states):
        return False
    if not _in_filter(patient.lga, campaign.target_lgas):
        return False
    if not _gender_matches(campaign, patient):
        return False
    if not _age_matches(campaign, patient, now):
        return False

    return campaign.current_amount >= allocation_amount(campaign, per_patient_cost)


def targeting_score(campaign: Campaign, patient: PatientProfile, now: Optional[datetime] = None) -> int:
    """How specifically the campaign's filters single out this patient; diagnostics only"""
    now = now or get_naive_utc_now()
    score = 0
    if (campaign.age_min is not None or campaign.age_max is not None) and _age_matches(campaign, patient, now):
        score += AGE_MATCH_SCORE
    if campaign.target_gender not in (None, TargetGender.ALL.value) and _gender_matches(campaign, patient):
        score += GENDER_MATCH_SCORE
    if campaign.target_states and _in_filter(patient.state, campaign.target_states):
        score += STATE_MATCH_SCORE
    if campaign.target_lgas and _in_filter(patient.lga, campaign.target_lgas):
        score += LGA_MATCH_SCORE
    return score


def validate_targeting(
    target_amount: int,
    max_per_patient: int,
    screening_type_ids: Iterable[str],
    target_gender: str = TargetGender.ALL.value,
    age_min: Optional[int] = None,
    age_max: Optional[int] = None,
    target_states: Optional[Iterable[str]] = None,
    target_lgas: Optional[Iterable[str]] = None,
    expiry_date: Optional[datetime] = None,
) -> None:
    """Reject malformed campaign filters before anything is written"""
    if not isinstance(target_amount, int) or target_amount <= 0:
        raise ValidationError(f"target_amount must be a positive integer, got {target_amount!r}")
    if not isinstance(max_per_patient, int) or max_per_patient <= 0:
        raise ValidationError(f"max_per_patient must be a positive integer, got {max_per_patient!r}")
    if not list(screening_type_ids or []):
        raise ValidationError("Campaign must sponsor at least one screening type")

    valid_genders = {member.value for member in TargetGender}
    if _normalize(target_gender) not in valid_genders:
        raise ValidationError(f"Unknown target_gender {target_gender!r}")

    for label, bound in (("age_min", age_min), ("age_max", age_max)):
        if bound is not None and (not isinstance(bound, int) or bound < 0):
            raise ValidationError(f"{label} must be a non-negative integer, got {bound!r}")
    if age_min is not None and age_max is not None and age_min > age_max:
        raise ValidationError(f"age_min {age_min} is greater than age_max {age_max}")

    for label, values in (("target_states", target_states), ("target_lgas", target_lgas)):
        if values is None:
            continue
        if isinstance(values, str) or not all(isinstance(item, str) and item.strip() for item in values):
            raise ValidationError(f"{label} must be a list of non-empty names")

    if expiry_date is not None and expiry_date <= get_naive_utc_now():
        raise ValidationError("expiry_date must be in the future")


__all__ = [
    "is_eligible",
    "allocation_amount",
    "targeting_score",
    "validate_targeting",
    "patient_age",
]
