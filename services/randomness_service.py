"""
Randomness adapter.

A draw asks for randomness scoped to the raffle id. Sources either resolve
inline (``random_value`` set on the returned request) or later, in which case
the value arrives through ``get_randomness`` polling or the oracle callback.
"""
import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import aiohttp

from services.base import new_id
from services.errors import PermanentExternalError, TransientExternalError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RandomnessRequest:
    request_id: str
    random_value: Optional[str] = None


class RandomnessAdapter(ABC):

    @abstractmethod
    async def request_randomness(self, scope_id: str) -> RandomnessRequest:
        ...

    @abstractmethod
    async def get_randomness(self, request_id: str) -> Optional[str]:
        """Return the value once available, ``None`` while still pending"""


class LocalRandomnessAdapter(RandomnessAdapter):
    """Process-local entropy, resolved inline. Used when no oracle is configured."""

    def __init__(self):
        self._values = {}

    async def request_randomness(self, scope_id: str) -> RandomnessRequest:
        request_id = f"{scope_id}:{new_id()}"
        value = secrets.token_hex(32)
        self._values[request_id] = value
        logger.info(f"Local randomness generated for {scope_id}")
        return RandomnessRequest(request_id=request_id, random_value=value)

    async def get_randomness(self, request_id: str) -> Optional[str]:
        return self._values.get(request_id)


class HttpRandomnessAdapter(RandomnessAdapter):
    """Client for an external randomness oracle"""

    def __init__(self, base_url: str, api_key: str = "", timeout_s: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def _request(self, method: str, path: str, payload: dict = None) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, f"{self.base_url}{path}", json=payload, headers=headers) as response:
                    if response.status >= 500:
                        raise TransientExternalError(f"Randomness oracle returned {response.status}")
                    if response.status >= 400:
                        text = await response.text()
                        raise PermanentExternalError(f"Randomness oracle rejected {path}: {text}")
                    return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientExternalError(f"Randomness oracle unreachable: {e}") from e

    async def request_randomness(self, scope_id: str) -> RandomnessRequest:
        data = await self._request("POST", "/requests", {"scope_id": scope_id})
        logger.info(f"Randomness requested for {scope_id}: {data['request_id']}")
        return RandomnessRequest(request_id=data["request_id"], random_value=data.get("random_value"))

    async def get_randomness(self, request_id: str) -> Optional[str]:
        data = await self._request("GET", f"/requests/{request_id}")
        return data.get("random_value")
