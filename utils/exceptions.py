"""
Ledger Exception Taxonomy
Every failure a ledger operation can surface to its caller
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for all ledger errors"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(LedgerError):
    """Malformed input (targeting filters, negative amounts); raised before any mutation"""
    pass


class StateTransitionError(ValidationError):
    """Raised when an invalid state transition is attempted"""
    pass


class NotFoundError(LedgerError):
    """Referenced ledger row does not exist"""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ConflictError(LedgerError):
    """
    Optimistic-concurrency retries exhausted on a conditional write.
    The unit of work was rolled back; the caller retries it from a fresh read.
    """
    pass


class BudgetExceededError(LedgerError):
    """Allocation amount would exceed the campaign's remaining balance"""

    def __init__(self, campaign_id: str, requested: int, available: Optional[int] = None):
        self.campaign_id = campaign_id
        self.requested = requested
        self.available = available
        detail = f" (available {available})" if available is not None else ""
        super().__init__(f"Campaign {campaign_id} cannot fund {requested}{detail}")


class ProviderError(LedgerError):
    """Payment provider timeout, 5xx or rejected request; message is recorded verbatim"""

    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class InvariantViolation(LedgerError):
    """
    Ledger invariant broken (e.g. a transaction attached to two live payouts).
    Indicates a bug: halts the running job and must never be auto-corrected.
    """

    def __init__(self, message: str):
        super().__init__(message)
        logger.critical(f"🚨 INVARIANT_VIOLATION: {message}")
