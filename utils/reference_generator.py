"""
Reference and ID generation for ledger entities and provider calls

Formats:
- Entity IDs:          <PREFIX>_<timestamp36><random hex>      e.g. AL_lx2k9a1f3C9D2E41
- Payout batch ref:    PAY_YYYYMM_<6 hex>                       (provider idempotency key)
- Payout number:       PO-YYYYMMDD-NNNN
- Payment reference:   <PREFIX>_YYYYMMDDHHMMSS_<8 hex>
- Execution reference: MATCH_YYYYMMDDHHMMSS_<6 hex>
"""

import logging
import secrets
import time
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

_BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_entity_id(prefix: str) -> str:
    """Opaque, roughly time-ordered primary key for a ledger row"""
    timestamp = _to_base36(int(time.time() * 1000))
    return f"{prefix}_{timestamp}{secrets.token_hex(8).upper()}"


def generate_payout_batch_reference() -> str:
    """Unique batch reference; doubles as the provider idempotency key"""
    year_month = _utc_now().strftime("%Y%m")
    return f"PAY_{year_month}_{secrets.token_hex(6).upper()}"


def generate_payout_number() -> str:
    date_part = _utc_now().strftime("%Y%m%d")
    return f"PO-{date_part}-{secrets.randbelow(10000):04d}"


def generate_payment_reference(prefix: str = "TRF") -> str:
    timestamp = _utc_now().strftime("%Y%m%d%H%M%S")
    return f"{prefix}_{timestamp}_{secrets.token_hex(4).upper()}"


def generate_execution_reference() -> str:
    timestamp = _utc_now().strftime("%Y%m%d%H%M%S")
    return f"MATCH_{timestamp}_{secrets.token_hex(3).upper()}"
