"""
Ledger State Transition Validators
==================================

Prevents invalid state transitions across the donation lifecycle:
waitlist → allocation → appointment → transaction → payout.
Validates every status change so a terminal state can never be resurrected.
"""

import logging
from typing import Dict, Set, Tuple, Type
from enum import Enum

from models import (
    WaitlistStatus, AllocationStatus, AppointmentStatus, TransactionStatus,
    PayoutStatus, CampaignStatus
)
from utils.exceptions import StateTransitionError

logger = logging.getLogger(__name__)


class LedgerStateValidator:
    """
    Base validator: subclasses declare the enum and its transition map.
    States mapping to an empty set are terminal.
    """

    STATUS_ENUM: Type[Enum] = None
    ENTITY_NAME: str = "entity"
    VALID_TRANSITIONS: Dict[Enum, Set[Enum]] = {}

    @classmethod
    def _coerce(cls, status) -> Enum:
        return status if isinstance(status, cls.STATUS_ENUM) else cls.STATUS_ENUM(status)

    @classmethod
    def validate_transition(cls, from_status, to_status, entity_id: str = None) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        ref = f"{cls.ENTITY_NAME} {entity_id}" if entity_id else cls.ENTITY_NAME
        try:
            from_enum = cls._coerce(from_status)
            to_enum = cls._coerce(to_status)
        except ValueError as e:
            return False, f"{ref}: unknown status ({e})"

        allowed = cls.VALID_TRANSITIONS.get(from_enum, set())
        if to_enum not in allowed:
            if not allowed:
                return False, f"{ref}: {from_enum.value} is terminal"
            return False, f"{ref}: {from_enum.value} → {to_enum.value} not allowed"
        return True, f"{ref}: {from_enum.value} → {to_enum.value}"

    @classmethod
    def is_valid_transition(cls, from_status, to_status) -> bool:
        is_valid, _ = cls.validate_transition(from_status, to_status)
        return is_valid

    @classmethod
    def assert_transition(cls, from_status, to_status, entity_id: str = None) -> None:
        """Raise StateTransitionError for an illegal move"""
        is_valid, reason = cls.validate_transition(from_status, to_status, entity_id)
        if not is_valid:
            logger.error(f"🚫 INVALID_TRANSITION: {reason}")
            raise StateTransitionError(reason)

    @classmethod
    def is_terminal_state(cls, status) -> bool:
        return not cls.VALID_TRANSITIONS.get(cls._coerce(status), set())


class WaitlistStateValidator(LedgerStateValidator):
    STATUS_ENUM = WaitlistStatus
    ENTITY_NAME = "Waitlist entry"
    VALID_TRANSITIONS = {
        WaitlistStatus.PENDING: {WaitlistStatus.MATCHED, WaitlistStatus.EXPIRED},
        # Reverts when the allocation expires or is reclaimed
        WaitlistStatus.MATCHED: {WaitlistStatus.PENDING},
        WaitlistStatus.EXPIRED: set(),
    }


class AllocationStateValidator(LedgerStateValidator):
    STATUS_ENUM = AllocationStatus
    ENTITY_NAME = "Allocation"
    VALID_TRANSITIONS = {
        AllocationStatus.ACTIVE: {
            AllocationStatus.CONSUMED,
            AllocationStatus.EXPIRED,
            AllocationStatus.RECLAIMED,
        },
        AllocationStatus.CONSUMED: set(),
        AllocationStatus.EXPIRED: set(),
        AllocationStatus.RECLAIMED: set(),
    }


class AppointmentStateValidator(LedgerStateValidator):
    STATUS_ENUM = AppointmentStatus
    ENTITY_NAME = "Appointment"
    VALID_TRANSITIONS = {
        AppointmentStatus.SCHEDULED: {
            AppointmentStatus.IN_PROGRESS,
            AppointmentStatus.COMPLETED,
            AppointmentStatus.CANCELLED,
        },
        AppointmentStatus.IN_PROGRESS: {
            AppointmentStatus.COMPLETED,
            AppointmentStatus.CANCELLED,
        },
        AppointmentStatus.COMPLETED: set(),
        AppointmentStatus.CANCELLED: set(),
    }


class TransactionStateValidator(LedgerStateValidator):
    STATUS_ENUM = TransactionStatus
    ENTITY_NAME = "Transaction"
    VALID_TRANSITIONS = {
        TransactionStatus.PENDING: {TransactionStatus.PAID, TransactionStatus.FAILED},
        # Immutable once paid except for a single refund
        TransactionStatus.PAID: {TransactionStatus.REFUNDED},
        TransactionStatus.FAILED: set(),
        TransactionStatus.REFUNDED: set(),
    }


class PayoutStateValidator(LedgerStateValidator):
    STATUS_ENUM = PayoutStatus
    ENTITY_NAME = "Payout"
    VALID_TRANSITIONS = {
        PayoutStatus.PENDING: {PayoutStatus.PROCESSING},
        PayoutStatus.PROCESSING: {PayoutStatus.SUCCESS, PayoutStatus.FAILED},
        PayoutStatus.SUCCESS: set(),
        # Retries create a new payout; the failed one stays failed for audit
        PayoutStatus.FAILED: set(),
    }


class CampaignStateValidator(LedgerStateValidator):
    STATUS_ENUM = CampaignStatus
    ENTITY_NAME = "Campaign"
    VALID_TRANSITIONS = {
        CampaignStatus.ACTIVE: {CampaignStatus.COMPLETED, CampaignStatus.DELETED},
        # A top-up can revive a completed campaign that has not expired
        CampaignStatus.COMPLETED: {CampaignStatus.ACTIVE, CampaignStatus.DELETED},
        CampaignStatus.DELETED: set(),
    }


__all__ = [
    "LedgerStateValidator",
    "WaitlistStateValidator",
    "AllocationStateValidator",
    "AppointmentStateValidator",
    "TransactionStateValidator",
    "PayoutStateValidator",
    "CampaignStateValidator",
]
