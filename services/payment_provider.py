"""
Payment provider contract
The ledger only ever talks to a gateway through these three calls.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Normalized outcome statuses
PROVIDER_SUCCESS = "success"
PROVIDER_PENDING = "pending"
PROVIDER_FAILED = "failed"


@dataclass
class ProviderResult:
    """Normalized gateway response"""
    status: str
    reference: str
    provider_reference: Optional[str] = None
    message: Optional[str] = None
    authorization_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == PROVIDER_SUCCESS

    @property
    def pending(self) -> bool:
        return self.status == PROVIDER_PENDING


@dataclass(frozen=True)
class BankDetails:
    """Settlement destination for a center payout"""
    account_name: str
    account_number: str
    bank_code: str
    recipient_code: Optional[str] = None


class PaymentProvider(ABC):
    """
    Opaque gateway boundary.

    Implementations raise ProviderError on timeouts, 5xx responses and
    transport failures. The reference passed to payout() is the idempotency
    key: repeating a call with the same reference must not move money twice.
    """

    @abstractmethod
    async def charge(self, reference: str, amount: int, email: str) -> ProviderResult:
        """Start collecting a patient payment"""

    @abstractmethod
    async def payout(self, batch_reference: str, bank_details: BankDetails, net_amount: int) -> ProviderResult:
        """Transfer net_amount to a center's bank account"""

    @abstractmethod
    async def verify(self, reference: str) -> ProviderResult:
        """Look up the final state of a charge or payout by its reference"""
