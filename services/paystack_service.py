#!/usr/bin/env python3
"""
Paystack Payment Service for NGN collections and center payouts
Implements the PaymentProvider contract over Paystack's REST API:
- charge  → POST /transaction/initialize
- payout  → POST /transferrecipient (first time per center) + POST /transfer
- verify  → GET /transfer/verify/{ref} for payout batches, /transaction/verify/{ref} otherwise
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from services.payment_provider import (
    BankDetails, PaymentProvider, ProviderResult, PROVIDER_FAILED, PROVIDER_PENDING, PROVIDER_SUCCESS
)
from utils.exceptions import ProviderError

logger = logging.getLogger(__name__)

PAYOUT_REFERENCE_PREFIX = "PAY_"

_SUCCESS_STATES = {"success"}
_PENDING_STATES = {"pending", "processing", "ongoing", "queued", "otp", "received"}


def normalize_status(provider_status: Optional[str]) -> str:
    """Map a Paystack transaction/transfer status onto success/pending/failed"""
    value = (provider_status or "").lower()
    if value in _SUCCESS_STATES:
        return PROVIDER_SUCCESS
    if value in _PENDING_STATES:
        return PROVIDER_PENDING
    return PROVIDER_FAILED


class PaystackService(PaymentProvider):
    """Paystack client; every call is bounded by PAYMENT_PROVIDER_TIMEOUT"""

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[int] = None):
        self.secret_key = secret_key or Config.PAYSTACK_SECRET_KEY
        self.base_url = (base_url or Config.PAYSTACK_BASE_URL).rstrip("/")
        self.timeout = timeout or Config.PAYMENT_PROVIDER_TIMEOUT

        if not self.secret_key:
            logger.warning("PAYSTACK_SECRET_KEY not configured - Paystack payments will not work")

    def is_available(self) -> bool:
        return bool(self.secret_key) and Config.PAYSTACK_ENABLED

    async def _make_request(self, method: str, endpoint: str, data: Optional[Dict] = None,
                            allow_not_found: bool = False) -> Dict[str, Any]:
        """
        Authenticated request returning the decoded body.

        Raises:
            ProviderError: timeout, transport failure, 5xx (retryable) or a rejected request
        """
        if not self.is_available():
            raise ProviderError("Paystack service not available - missing secret key", retryable=False)

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, headers=headers, json=data) as response:
                    try:
                        response_data = await response.json(content_type=None)
                    except ValueError:
                        response_data = {"message": await response.text()}
                    response_data = response_data or {}

                    if response.status in (200, 201) and response_data.get("status") is True:
                        logger.info(f"Paystack API success: {method} {endpoint}")
                        return response_data

                    message = response_data.get("message") or f"HTTP {response.status}"
                    if response.status == 404 and allow_not_found:
                        return {"status": False, "not_found": True, "message": message}
                    if response.status >= 500:
                        logger.error(f"Paystack server error: {response.status} - {message}")
                        raise ProviderError(f"Paystack {response.status}: {message}", retryable=True,
                                            status_code=response.status)
                    if response.status == 429:
                        logger.warning(f"Paystack rate limited on {endpoint}")
                        raise ProviderError(f"Paystack rate limited: {message}", retryable=True, status_code=429)

                    logger.error(f"Paystack API error: {response.status} - {message}")
                    raise ProviderError(f"Paystack rejected request: {message}", retryable=False,
                                        status_code=response.status)

        except asyncio.TimeoutError as e:
            logger.error(f"Timeout connecting to Paystack API ({self.base_url}) after {self.timeout}s")
            raise ProviderError(f"Paystack timeout after {self.timeout}s", retryable=True) from e
        except aiohttp.ClientError as e:
            logger.error(f"Network error accessing Paystack API: {type(e).__name__}: {e}")
            raise ProviderError(f"Paystack network error: {e}", retryable=True) from e

    async def charge(self, reference: str, amount: int, email: str) -> ProviderResult:
        payload = {
            "email": email,
            "amount": amount,
            "reference": reference,
            "currency": Config.CURRENCY,
        }
        response = await self._make_request("POST", "/transaction/initialize", payload)
        data = response.get("data") or {}
        return ProviderResult(
            status=PROVIDER_PENDING,
            reference=reference,
            provider_reference=data.get("access_code"),
            authorization_url=data.get("authorization_url"),
            message=response.get("message"),
            raw=data,
        )

    async def create_transfer_recipient(self, bank_details: BankDetails) -> str:
        payload = {
            "type": "nuban",
            "name": bank_details.account_name,
            "account_number": bank_details.account_number,
            "bank_code": bank_details.bank_code,
            "currency": Config.CURRENCY,
        }
        response = await self._make_request("POST", "/transferrecipient", payload)
        recipient_code = (response.get("data") or {}).get("recipient_code")
        if not recipient_code:
            raise ProviderError("Paystack did not return a recipient_code", retryable=False)
        logger.info(f"🏦 PAYSTACK_RECIPIENT_CREATED: {recipient_code} for account ending {bank_details.account_number[-4:]}")
        return recipient_code

    async def payout(self, batch_reference: str, bank_details: BankDetails, net_amount: int) -> ProviderResult:
        recipient_code = bank_details.recipient_code or await self.create_transfer_recipient(bank_details)
        payload = {
            "source": "balance",
            "amount": net_amount,
            "recipient": recipient_code,
            "reference": batch_reference,
            "reason": f"{Config.PLATFORM_NAME} screening payout {batch_reference}",
            "currency": Config.CURRENCY,
        }
        response = await self._make_request("POST", "/transfer", payload)
        data = response.get("data") or {}
        status = normalize_status(data.get("status"))
        logger.info(f"💸 PAYSTACK_TRANSFER: {batch_reference} amount={net_amount} status={data.get('status')}")
        return ProviderResult(
            status=status,
            reference=batch_reference,
            provider_reference=data.get("transfer_code"),
            message=response.get("message"),
            raw={**data, "recipient_code": recipient_code},
        )

    async def verify(self, reference: str) -> ProviderResult:
        if reference.startswith(PAYOUT_REFERENCE_PREFIX):
            endpoint = f"/transfer/verify/{reference}"
        else:
            endpoint = f"/transaction/verify/{reference}"

        response = await self._make_request("GET", endpoint, allow_not_found=True)
        if response.get("not_found"):
            return ProviderResult(status=PROVIDER_FAILED, reference=reference,
                                  message=f"Reference not found: {response.get('message')}")

        data = response.get("data") or {}
        return ProviderResult(
            status=normalize_status(data.get("status")),
            reference=reference,
            provider_reference=data.get("transfer_code") or (str(data["id"]) if data.get("id") else None),
            message=data.get("gateway_response") or data.get("reason") or response.get("message"),
            raw=data,
        )
