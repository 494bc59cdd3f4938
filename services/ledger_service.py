"""
Ledger adapter.

The ledger is the authority on payments: it confirms inbound token transfers,
submits outbound payout/refund transfers and reports their status. The
engines only depend on the ``LedgerAdapter`` contract; ``HttpLedgerAdapter``
talks to the chain gateway over HTTP.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

import aiohttp

from services.errors import PermanentExternalError, TransientExternalError

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    CONFIRMED = "confirmed"
    NOT_FOUND = "not_found"
    AMOUNT_MISMATCH = "amount_mismatch"


class TransferStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentVerification:
    status: PaymentStatus
    amount: Optional[float] = None
    confirmed_at: Optional[datetime] = None

    @property
    def confirmed(self) -> bool:
        return self.status == PaymentStatus.CONFIRMED


class LedgerAdapter(ABC):

    @abstractmethod
    async def verify_payment(self, tx_ref: str, expected_amount: float, expected_recipient: str) -> PaymentVerification:
        ...

    @abstractmethod
    async def send_transfer(self, destination: str, amount: float, asset: str, reference: str) -> str:
        """Submit a transfer and return its transaction reference.

        ``reference`` is an idempotency key: resubmitting the same reference
        returns the original transfer instead of creating a second one.
        """

    @abstractmethod
    async def find_transfer(self, reference: str) -> Optional[str]:
        """Transaction reference of the transfer submitted under ``reference``, or None"""

    @abstractmethod
    async def get_transfer_status(self, tx_ref: str) -> TransferStatus:
        ...


class HttpLedgerAdapter(LedgerAdapter):
    def __init__(self, base_url: str, api_key: str = "", timeout_s: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)

    def _headers(self, idempotency_key: str = None):
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(self, method: str, path: str, payload: dict = None, params: dict = None,
                       idempotency_key: str = None, missing_ok: bool = False) -> Optional[dict]:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, json=payload, params=params,
                                           headers=self._headers(idempotency_key)) as response:
                    if response.status >= 500:
                        raise TransientExternalError(f"Ledger {method} {path} returned {response.status}")
                    if response.status == 404 and missing_ok:
                        return None
                    if response.status >= 400:
                        text = await response.text()
                        raise PermanentExternalError(f"Ledger {method} {path} rejected ({response.status}): {text}")
                    return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientExternalError(f"Ledger {method} {path} unreachable: {e}") from e

    async def verify_payment(self, tx_ref: str, expected_amount: float, expected_recipient: str) -> PaymentVerification:
        data = await self._request("POST", "/payments/verify", {
            "tx_ref": tx_ref,
            "expected_amount": expected_amount,
            "expected_recipient": expected_recipient,
        })
        confirmed_at = data.get("confirmed_at")
        return PaymentVerification(
            status=PaymentStatus(data["status"]),
            amount=data.get("amount"),
            confirmed_at=datetime.fromisoformat(confirmed_at) if confirmed_at else None,
        )

    async def send_transfer(self, destination: str, amount: float, asset: str, reference: str) -> str:
        data = await self._request("POST", "/transfers", {
            "destination": destination,
            "amount": amount,
            "asset": asset,
            "reference": reference,
        }, idempotency_key=reference)
        tx_ref = data.get("tx_ref")
        if not tx_ref:
            raise PermanentExternalError("Ledger accepted transfer without a transaction reference")
        logger.info(f"Transfer of {amount} {asset} to {destination} submitted: {tx_ref}")
        return tx_ref

    async def find_transfer(self, reference: str) -> Optional[str]:
        data = await self._request("GET", "/transfers", params={"reference": reference}, missing_ok=True)
        if not data:
            return None
        return data.get("tx_ref")

    async def get_transfer_status(self, tx_ref: str) -> TransferStatus:
        data = await self._request("GET", f"/transfers/{tx_ref}")
        return TransferStatus(data["status"])
